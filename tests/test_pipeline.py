from __future__ import annotations

import json
from pathlib import Path
import tempfile
import unittest
from typing import Sequence
from unittest import mock

from foulreview.artifacts import ArtifactStore
from foulreview.config import ReviewConfig
from foulreview.embedders import HashingEmbedder
from foulreview.frames import frame_filename
from foulreview.knowledge import BaseRetriever
from foulreview.pipeline import FoulReviewPipeline
from foulreview.rulebook import RetrievalConfig, RulebookIndex
from foulreview.store import SqliteRuleStore
from foulreview.summary import NO_FOUL_RECOMMENDATION
from foulreview.types import FrameRecord, RuleDocument, RulePassage, RuleSection
from foulreview.vlm import BaseGenerator


BATCH_REPLY = """FRAME 1:
ACTION: Guard drives baseline
PLAYER_MOVEMENT: Defender moving to cut off the drive
CONTACT: none
BALL_STATUS: Guard dribbling
FOUL_INDICATORS:

FRAME 2:
ACTION: Guard goes up for a shooting attempt
PLAYER_MOVEMENT: Defender still moving under the basket
CONTACT: Body contact and a push at the rim
BALL_STATUS: Ball in the shooter's hands
FOUL_INDICATORS:
* blocking path
* illegal contact

FRAME 3:
ACTION: Shooter falls
PLAYER_MOVEMENT: Players landing
CONTACT: Continuing contact
BALL_STATUS: Loose ball
FOUL_INDICATORS: none

SEQUENCE_ANALYSIS:
PROGRESSION: Baseline drive, late rotation, collision at the rim.
KEY_MOMENTS: Frame 2
FOUL_DETERMINATION: Blocking foul on the defender.
"""

SINGLE_REPLY = """ACTION: Guard drives baseline
PLAYER_MOVEMENT: Defender stationary
CONTACT: Minimal contact
BALL_STATUS: Guard dribbling
FOUL_INDICATORS:
ANALYSIS_QUALITY: good
"""

RULING_REPLY = json.dumps(
    {
        "hasFoul": True,
        "confidence": "medium",
        "foulType": "blocking foul",
        "ruleCitations": [{"ruleNumber": "Rule 12B", "ruleText": "Blocking", "relevance": "Late rotation"}],
        "explanation": "The defender was still moving in frame 2.",
        "keyMoments": [{"frameNumber": 2, "description": "Collision at the rim"}],
    }
)


class FakeGenerator(BaseGenerator):
    """Answers by prompt kind; an Exception value is raised instead of returned."""

    model_name = "fake-vl"

    def __init__(
        self,
        *,
        batch: str | Exception = BATCH_REPLY,
        single: str = SINGLE_REPLY,
        ruling: str | Exception = RULING_REPLY,
        failing_images: Sequence[bytes] = (),
    ) -> None:
        self.batch = batch
        self.single = single
        self.ruling = ruling
        self.failing_images = set(failing_images)
        self.calls: list[tuple[str, int]] = []

    def generate(self, prompt: str, images: Sequence[bytes] = ()) -> str:
        if prompt.startswith("You are analyzing a basketball video"):
            self.calls.append(("batch", len(images)))
            reply = self.batch
        elif prompt.startswith("Analyze this basketball frame"):
            self.calls.append(("single", len(images)))
            if images and images[0] in self.failing_images:
                raise RuntimeError("model timed out")
            reply = self.single
        else:
            self.calls.append(("ruling", len(images)))
            reply = self.ruling
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeRetriever(BaseRetriever):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.queries: list[str] = []

    def retrieve(self, query: str, top_k: int = 5) -> list[RulePassage]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return [RulePassage(text="[Rule 12B] Blocking is illegal contact.", source_label="NBA Rulebook (Rule 12B)")]


def _write_frames(root: Path, count: int, analysis_id: int = 1000) -> list[FrameRecord]:
    frames = []
    for index in range(1, count + 1):
        path = root / frame_filename(analysis_id, index)
        path.write_bytes(f"frame-{index}".encode("ascii"))
        frames.append(FrameRecord(index=index, source_ref=str(path), timestamp_sec=index))
    return frames


class FoulReviewPipelineTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.artifacts = ArtifactStore(self.root / "analyses")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_full_review(self) -> None:
        frames = _write_frames(self.root, 3)
        generator = FakeGenerator()
        retriever = FakeRetriever()
        pipeline = FoulReviewPipeline(generator, retriever, self.artifacts)

        result = pipeline.review(frames, analysis_id=1000)

        self.assertEqual(generator.calls, [("batch", 3), ("ruling", 0)])
        self.assertEqual(len(result.analyses), 3)
        self.assertEqual(result.analyses[1].foul_indicators, ["blocking path", "illegal contact"])
        self.assertEqual(result.summary.frames_with_foul_indicators, 1)
        self.assertEqual(result.summary.foul_indicator_percentage, 33)
        self.assertFalse(result.fallback_mode)
        assert result.sequence_analysis is not None
        self.assertEqual(result.sequence_analysis.foul_determination, "Blocking foul on the defender.")
        self.assertTrue(result.determination.has_foul)
        self.assertEqual(result.determination.foul_type, "blocking foul")
        self.assertEqual(result.retrieval_status, "ok")
        self.assertEqual(result.determination_status, "parsed")
        self.assertFalse(result.degraded)
        self.assertTrue(result.persisted)
        self.assertEqual(result.warnings, [])
        self.assertIn("shooting foul", result.key_terms)
        self.assertIn("blocking path", retriever.queries[0])

        payload = result.to_dict()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["analysisId"], 1000)
        self.assertEqual(payload["foulDetermination"]["foulType"], "blocking foul")
        self.assertEqual(len(payload["rulePassages"]), 1)

        stored = self.artifacts.load_analysis(1000)
        assert stored is not None
        self.assertEqual(stored["frameCount"], 3)
        self.assertFalse(stored["fallbackMode"])
        ruling = self.artifacts.load_determination(1000)
        assert ruling is not None
        self.assertTrue(ruling["hasFoul"])
        self.assertEqual(ruling["retrievalStatus"], "ok")

    def test_fallback_isolates_one_failed_frame(self) -> None:
        frames = _write_frames(self.root, 3)
        generator = FakeGenerator(batch=RuntimeError("payload too large"), failing_images=[b"frame-2"])
        pipeline = FoulReviewPipeline(generator, FakeRetriever(), self.artifacts)

        result = pipeline.review(frames, analysis_id=1000)

        self.assertTrue(result.fallback_mode)
        self.assertTrue(result.degraded)
        self.assertEqual(len(result.analyses), 3)
        self.assertEqual([a.frame_number for a in result.analyses], [1, 2, 3])
        self.assertTrue(result.analyses[1].is_sentinel)
        self.assertFalse(result.analyses[0].is_sentinel)
        self.assertFalse(result.analyses[2].is_sentinel)
        self.assertIsNone(result.sequence_analysis)
        self.assertEqual(
            [kind for kind, _ in generator.calls],
            ["batch", "single", "single", "single", "ruling"],
        )
        self.assertTrue(any("payload too large" in w for w in result.warnings))
        self.assertTrue(any("Frame 2" in w for w in result.warnings))

        stored = self.artifacts.load_analysis(1000)
        assert stored is not None
        self.assertTrue(stored["fallbackMode"])
        self.assertEqual(stored["frameQuality"], {"1": "good", "3": "good"})

    def test_unreachable_rulebook_still_rules(self) -> None:
        frames = _write_frames(self.root, 2)
        pipeline = FoulReviewPipeline(
            FakeGenerator(), FakeRetriever(FileNotFoundError("index missing")), self.artifacts
        )
        result = pipeline.review(frames, analysis_id=1000)

        self.assertEqual(result.retrieval_status, "unavailable")
        self.assertEqual(result.rule_passages, [])
        self.assertEqual(result.determination_status, "parsed")
        self.assertTrue(result.determination.has_foul)
        self.assertTrue(result.degraded)

    def test_mismatched_rule_index_does_not_stop_the_review(self) -> None:
        db_path = self.root / "rules.sqlite"
        store = SqliteRuleStore(db_path)
        store.initialize(recreate=True)
        RulebookIndex(store=store, embedder=HashingEmbedder(dim=256)).index_documents(
            [
                RuleDocument(
                    doc_id="blocking",
                    title="Blocking",
                    source="NBA Rulebook",
                    sections=[RuleSection("Blocking is illegal personal contact.", "Rule 12B, Section II")],
                )
            ]
        )
        config = ReviewConfig(
            workspace_dir=str(self.root / "ws"),
            log_progress=False,
            retrieval=RetrievalConfig(db_path=str(db_path)),
        )
        frames = _write_frames(self.root, 2)

        with mock.patch("foulreview.pipeline.ChatCompletionGenerator", return_value=FakeGenerator()):
            result = FoulReviewPipeline.from_config(config).review(frames, analysis_id=1000)

        self.assertEqual(result.retrieval_status, "unavailable")
        self.assertEqual(result.rule_passages, [])
        self.assertEqual(result.determination_status, "parsed")
        self.assertTrue(result.determination.has_foul)
        self.assertTrue(result.persisted)

    def test_total_parse_failure_and_malformed_ruling(self) -> None:
        frames = _write_frames(self.root, 4)
        generator = FakeGenerator(batch="Sorry, I cannot analyze these images.", ruling="No foul here.")
        retriever = FakeRetriever()
        result = FoulReviewPipeline(generator, retriever, self.artifacts).review(frames, analysis_id=1000)

        self.assertEqual(len(result.analyses), 4)
        self.assertTrue(all(a.is_sentinel for a in result.analyses))
        self.assertEqual(result.summary.common_foul_indicators, [])
        self.assertEqual(result.summary.recommendation, NO_FOUL_RECOMMENDATION)
        self.assertEqual(result.key_terms, [])
        self.assertIn("personal foul, incidental contact", retriever.queries[0])
        self.assertEqual(result.determination_status, "default")
        self.assertFalse(result.determination.has_foul)
        self.assertEqual(result.determination.confidence, "low")
        self.assertTrue(any("No frames could be parsed" in w for w in result.warnings))

    def test_ruling_transport_failure(self) -> None:
        frames = _write_frames(self.root, 1)
        generator = FakeGenerator(ruling=RuntimeError("connection reset"))
        result = FoulReviewPipeline(generator, None, self.artifacts).review(frames, analysis_id=1000)
        self.assertEqual(result.determination_status, "error")
        self.assertEqual(result.retrieval_status, "disabled")
        self.assertFalse(result.determination.has_foul)

    def test_persistence_failure_is_reported(self) -> None:
        blocker = self.root / "not-a-dir"
        blocker.write_text("occupied", encoding="utf-8")
        frames = _write_frames(self.root, 2)
        pipeline = FoulReviewPipeline(FakeGenerator(), FakeRetriever(), ArtifactStore(blocker))

        result = pipeline.review(frames, analysis_id=1000)

        self.assertFalse(result.persisted)
        self.assertTrue(result.determination.has_foul)
        self.assertTrue(any("not saved" in w for w in result.warnings))

    def test_determine_from_stored_analysis(self) -> None:
        frames = _write_frames(self.root, 3)
        pipeline = FoulReviewPipeline(FakeGenerator(), FakeRetriever(), self.artifacts)
        first = pipeline.review(frames, analysis_id=1000)

        rerun = pipeline.determine(1000)
        assert rerun is not None
        self.assertEqual([a.to_dict() for a in rerun.analyses], [a.to_dict() for a in first.analyses])
        self.assertEqual(rerun.summary.to_dict(), first.summary.to_dict())
        self.assertEqual(rerun.sequence_analysis, first.sequence_analysis)
        self.assertTrue(rerun.determination.has_foul)

        self.assertIsNone(pipeline.determine(999))

    def test_default_analysis_id(self) -> None:
        frames = _write_frames(self.root, 1)
        result = FoulReviewPipeline(FakeGenerator(), None, None).review(frames)
        self.assertGreater(result.analysis_id, 1_600_000_000_000)
        self.assertFalse(result.persisted)

    def test_invalid_input_raises(self) -> None:
        pipeline = FoulReviewPipeline(FakeGenerator(), None, self.artifacts)
        with self.assertRaises(ValueError):
            pipeline.review([], analysis_id=1000)
        with self.assertRaises(ValueError):
            pipeline.review([FrameRecord(index=1, source_ref=str(self.root / "missing.jpg"), timestamp_sec=1)])
        frames = _write_frames(self.root, 1)
        with self.assertRaises(ValueError):
            pipeline.review(frames, analysis_id=0)
        with self.assertRaises(ValueError):
            pipeline.determine(None)  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
