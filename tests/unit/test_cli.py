"""
Unit tests for the command line entry point
"""

import json

import cv2
import numpy as np

from locator.pipeline import main


def write_scene(tmp_path):
    rng = np.random.default_rng(42)
    gray = np.kron(rng.integers(0, 256, size=(20, 20)), np.ones((8, 8))).astype(np.uint8)
    pattern = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
    refs = tmp_path / "refs"
    refs.mkdir()
    cv2.imwrite(str(refs / "blocks.png"), pattern)

    scene = np.full((360, 480, 3), 128, np.uint8)
    scene[120:280, 200:360] = pattern
    target = tmp_path / "scene.png"
    cv2.imwrite(str(target), scene)
    return refs, target


class TestMain:
    """Test cases for main"""

    def test_writes_results_row(self, tmp_path):
        refs, target = write_scene(tmp_path)
        out = tmp_path / "out" / "detections.jsonl"
        exclusions = tmp_path / "ocr.json"
        exclusions.write_text(json.dumps([{"bbox": [0, 0, 20, 20], "confidence": 90}]))
        cfg = tmp_path / "params.yaml"
        cfg.write_text("preprocessing:\n  enabled: false\n")

        code = main([
            "--config", str(cfg),
            "--image", str(target),
            "--references", str(refs),
            "--exclusions", str(exclusions),
            "--out", str(out),
            "--no-cache",
            "--workers", "2",
        ])

        assert code == 0
        (row,) = [json.loads(line) for line in out.read_text().splitlines()]
        assert row["status"] == "ok"
        assert row["exclusions"][0]["w"] == 20.0
        assert "blocks" in row["detections"]

    def test_unreadable_image(self, tmp_path):
        refs, _ = write_scene(tmp_path)
        code = main([
            "--config", str(tmp_path / "missing.yaml"),
            "--image", str(tmp_path / "nope.png"),
            "--references", str(refs),
            "--no-cache",
        ])
        assert code == 2

    def test_config_file(self, tmp_path):
        refs, target = write_scene(tmp_path)
        out = tmp_path / "rows.jsonl"
        cfg = tmp_path / "params.yaml"
        cfg.write_text(
            "logging:\n"
            "  level: WARNING\n"
            f"  results_file: {out}\n"
            "processing:\n"
            f"  cache_dir: {tmp_path / 'cache'}\n"
        )

        assert main(["--config", str(cfg), "--image", str(target), "--references", str(refs)]) == 0
        assert out.is_file()
        assert list((tmp_path / "cache").glob("locator_refs_*.npz"))
