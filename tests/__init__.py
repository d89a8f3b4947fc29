"""
Pattern locator test suite

Structure:
- unit/: Unit tests for individual components (synthetic pools, fake estimators)
- integration/: End-to-end detection on synthetic images with real ORB + RANSAC
"""
