"""Shared types, logging and small helpers."""
