"""
Unit tests for the localization run driver and frame processing
"""

import json

import numpy as np
import pytest

from common.types import ExclusionRegion, FeatureSet
from locator.config import LocatorConfig
from locator.events import RecordingEventSink
from locator.features import ProviderFailure
from locator.pipeline import _write_results_row, localize, process_frame


class StaticProvider:
    """Hands out prebuilt pools (or failures) by reference name."""

    def __init__(self, outcomes):
        self.outcomes = outcomes

    def correspond(self, pattern, target):
        return self.outcomes[pattern.name]


class TestLocalize:
    """Test cases for localize"""

    def test_no_correspondences(self, helpers, image):
        patterns = [helpers.make_pattern("a"), helpers.make_pattern("bb")]
        res = localize(patterns, {}, image, sink=RecordingEventSink())
        assert len(res.detections) == 0
        assert res.candidates == 0
        assert not res.object_mask.any()

    def test_single_instance(self, helpers, image):
        p = helpers.make_pattern("logo")
        T = helpers.translation(100, 80)
        est = helpers.ModelEstimator([T])
        sink = RecordingEventSink()

        res = localize([p], {"logo": helpers.make_pool(p, [T], [50])}, image, estimator=est, sink=sink)

        assert res.detections.names() == ["logo"]
        (d,) = res.detections["logo"]
        assert d.box.to_list() == [100.0, 80.0, 40.0, 30.0]
        assert d.inlier_ratio == pytest.approx(1.0)
        assert res.object_mask[80:110, 100:140].all()
        assert int(res.object_mask.sum()) == 40 * 30
        assert sink.of("run_finished")[0].data["detections"] == 1

    def test_exclusion_removes_detection(self, helpers, image):
        """A detection fully covered by an exclusion region is dropped"""
        p = helpers.make_pattern("logo")
        T = helpers.translation(100, 80)
        pools = {"logo": helpers.make_pool(p, [T], [50])}

        res = localize(
            [p], pools, image, [ExclusionRegion(100, 80, 40, 30)],
            estimator=helpers.ModelEstimator([T]), sink=RecordingEventSink(),
        )

        assert "logo" not in res.detections
        assert res.detections.total == 0

    def test_overlap_across_references(self, helpers, image):
        """Two references at the same place: the more confident one is kept"""
        a = helpers.make_pattern("a", descriptors=50)
        b = helpers.make_pattern("bb", descriptors=100)
        T = helpers.translation(60, 60)
        pools = {"a": helpers.make_pool(a, [T], [40]), "bb": helpers.make_pool(b, [T], [60], seed=1)}

        res = localize([a, b], pools, image, estimator=helpers.ModelEstimator([T]), sink=RecordingEventSink())

        assert res.candidates == 2
        assert res.detections.names() == ["a"]
        assert res.detections["a"][0].confidence == pytest.approx(0.8)

    def test_workers_do_not_change_result(self, helpers, image):
        patterns = [helpers.make_pattern(n) for n in ("a", "bb", "ccc", "dddd")]
        Ts = [helpers.translation(10 + 90 * i, 20 + 50 * i) for i in range(4)]

        def run(workers):
            pools = {p.name: helpers.make_pool(p, [T], [30], outliers=5, seed=i)
                     for i, (p, T) in enumerate(zip(patterns, Ts))}
            return localize(patterns, pools, image, estimator=helpers.ModelEstimator(Ts),
                            sink=RecordingEventSink(), workers=workers)

        serial = run(1)
        threaded = run(4)
        assert serial.detections == threaded.detections
        assert serial.detections.names() == ["a", "bb", "ccc", "dddd"]

    def test_idempotent(self, helpers, image):
        p = helpers.make_pattern("logo")
        Ts = [helpers.translation(20, 20), helpers.translation(250, 200)]
        out = []
        for _ in range(2):
            pool = helpers.make_pool(p, Ts, [40, 30], outliers=4)
            out.append(localize([p], {"logo": pool}, image, estimator=helpers.ModelEstimator(Ts),
                                sink=RecordingEventSink()).detections.to_dict())
        assert out[0] == out[1]
        assert len(out[0]["logo"]) == 2

    def test_grey_target(self, helpers):
        gray = np.full((300, 400), 77, np.uint8)
        p = helpers.make_pattern("logo")
        T = helpers.translation(5, 5)
        res = localize([p], {"logo": helpers.make_pool(p, [T], [20])}, gray,
                       estimator=helpers.ModelEstimator([T]), sink=RecordingEventSink())
        assert res.detections["logo"][0].color == (77, 77, 77)


class TestProcessFrame:
    """Test cases for process_frame"""

    def test_empty_frame(self, helpers):
        fr = process_frame(None, [helpers.make_pattern()])
        assert not fr.success
        assert fr.error_message
        assert fr.detections.total == 0
        assert fr.to_row()["status"] == "error"

    def test_with_injected_collaborators(self, helpers, image):
        cfg = LocatorConfig()
        cfg.preprocessing.enabled = False
        p = helpers.make_pattern("logo")
        q = helpers.make_pattern("qq")
        T = helpers.translation(100, 80)
        provider = StaticProvider({"logo": helpers.make_pool(p, [T], [50]), "qq": ProviderFailure("no_target_features")})
        sink = RecordingEventSink()

        fr = process_frame(image, [p, q], cfg, provider=provider,
                           estimator=helpers.ModelEstimator([T]), sink=sink)

        assert fr.success
        assert fr.detections.names() == ["logo"]
        assert fr.result.skipped == {"qq": "no_target_features"}
        assert sink.of("pattern_skipped")[0].data["reason"] == "no_target_features"
        row = fr.to_row()
        assert row["status"] == "ok"
        assert row["detections"]["logo"][0]["box"] == [100.0, 80.0, 40.0, 30.0]

    def test_too_few_matches_skipped(self, helpers, image):
        p = helpers.make_pattern("logo")
        provider = StaticProvider({"logo": helpers.make_pool(p, [helpers.translation(0, 0)], [5])})
        fr = process_frame(image, [p], provider=provider, sink=RecordingEventSink())
        assert fr.success
        assert fr.result.skipped == {"logo": "insufficient_matches"}

    def test_bad_roi_reported(self, helpers, image):
        fr = process_frame(image, [helpers.make_pattern()], roi=(1000, 1000, 10, 10), sink=RecordingEventSink())
        assert not fr.success
        assert "ROI" in fr.error_message

    def test_results_row_written(self, tmp_path, helpers):
        fr = process_frame(None, [helpers.make_pattern()])
        out = tmp_path / "logs" / "detections.jsonl"
        _write_results_row(out, fr.to_row())
        _write_results_row(out, fr.to_row())
        rows = [json.loads(line) for line in out.read_text().splitlines()]
        assert len(rows) == 2
        assert rows[0]["detections"] == {}


class TestFeatureSetShape:
    def test_empty_descriptor_array_normalized(self):
        fs = FeatureSet(np.zeros((0, 2)), np.zeros((0,), np.uint8))
        assert fs.descriptors.shape == (0, 32)
        assert len(fs) == 0
