from __future__ import annotations

import json
import tempfile
import unittest

from foulreview.artifacts import ANALYSIS_TYPE, ArtifactStore, analyses_from_artifact, validate_analysis_id
from foulreview.determination import default_determination
from foulreview.summary import summarize_frames
from foulreview.types import FrameAnalysis, SequenceSummary


def _analyses() -> list[FrameAnalysis]:
    return [
        FrameAnalysis(frame_number=1, timestamp_sec=1, action="Drive", foul_indicators=[]),
        FrameAnalysis(frame_number=2, timestamp_sec=2, action="Contact", foul_indicators=["holding"]),
    ]


class AnalysisIdTest(unittest.TestCase):
    def test_validate_analysis_id(self) -> None:
        self.assertEqual(validate_analysis_id(1700000000000), 1700000000000)
        self.assertEqual(validate_analysis_id("42"), 42)
        for value in (None, "", "abc", 0, -5, True):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    validate_analysis_id(value)


class ArtifactStoreTest(unittest.TestCase):
    def test_analysis_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ArtifactStore(tmp)
            analyses = _analyses()
            summary = summarize_frames(analyses)
            path = store.save_analysis(
                17,
                analyses,
                summary,
                SequenceSummary(progression="Drive and hold"),
                frame_quality={1: "good"},
            )
            self.assertEqual(path.name, "analysis_17.json")

            payload = store.load_analysis(17)
            assert payload is not None
            self.assertEqual(payload["timestamp"], 17)
            self.assertEqual(payload["frameCount"], 2)
            self.assertEqual(payload["type"], ANALYSIS_TYPE)
            self.assertFalse(payload["fallbackMode"])
            self.assertNotIn("frameQuality", payload)
            self.assertEqual(payload["summary"]["framesWithFoulIndicators"], 1)
            self.assertEqual(payload["sequenceAnalysis"], {"progression": "Drive and hold"})
            self.assertTrue(payload["createdAt"].endswith("Z"))

            restored = analyses_from_artifact(payload)
            self.assertEqual([a.to_dict() for a in restored], [a.to_dict() for a in analyses])

    def test_fallback_analysis_keeps_frame_quality(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ArtifactStore(tmp)
            summary = summarize_frames(_analyses(), fallback_mode=True)
            store.save_analysis(18, _analyses(), summary, None, frame_quality={2: "poor", 1: "good"})
            payload = store.load_analysis(18)
            assert payload is not None
            self.assertTrue(payload["fallbackMode"])
            self.assertEqual(payload["frameQuality"], {"1": "good", "2": "poor"})
            self.assertIsNone(payload["sequenceAnalysis"])

    def test_determination_and_missing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ArtifactStore(tmp)
            self.assertIsNone(store.load_analysis(5))
            self.assertIsNone(store.load_determination(5))

            path = store.save_determination(
                5,
                default_determination(),
                determination_status="default",
                retrieval_status="unavailable",
            )
            self.assertEqual(path.name, "foul_5.json")
            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["analysisId"], 5)
            self.assertFalse(payload["hasFoul"])
            self.assertEqual(payload["confidence"], "low")
            self.assertEqual(payload["determinationStatus"], "default")
            self.assertEqual(payload["retrievalStatus"], "unavailable")
            self.assertEqual(list(store.root.glob("*.tmp")), [])

    def test_same_id_overwrites(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ArtifactStore(tmp)
            analyses = _analyses()
            store.save_analysis(9, analyses, summarize_frames(analyses), None)
            store.save_analysis(9, analyses[:1], summarize_frames(analyses[:1]), None)
            payload = store.load_analysis(9)
            assert payload is not None
            self.assertEqual(payload["frameCount"], 1)

    def test_empty_artifact_rejected(self) -> None:
        with self.assertRaises(ValueError):
            analyses_from_artifact({"analyses": []})


if __name__ == "__main__":
    unittest.main()
