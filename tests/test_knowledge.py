from __future__ import annotations

import unittest

from foulreview.knowledge import (
    RETRIEVAL_DISABLED,
    RETRIEVAL_ERROR,
    RETRIEVAL_OK,
    RETRIEVAL_UNAVAILABLE,
    BaseRetriever,
    build_rules_query,
    extract_key_terms,
    retrieve_rule_passages,
)
from foulreview.summary import summarize_frames
from foulreview.types import FrameAnalysis, RulePassage, sentinel_analysis
from foulreview.vlm import GenerationRequestError


class _StaticRetriever(BaseRetriever):
    def __init__(self, passages: list[RulePassage]) -> None:
        self.passages = passages
        self.queries: list[tuple[str, int]] = []

    def retrieve(self, query: str, top_k: int = 5) -> list[RulePassage]:
        self.queries.append((query, top_k))
        return list(self.passages)


class _FailingRetriever(BaseRetriever):
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def retrieve(self, query: str, top_k: int = 5) -> list[RulePassage]:
        raise self.exc


class KeyTermTest(unittest.TestCase):
    def setUp(self) -> None:
        self.frames = [
            FrameAnalysis(
                frame_number=1,
                timestamp_sec=1,
                action="Guard shooting a layup",
                player_movement="Defender moving laterally",
                contact="Defender makes contact and a push",
                ball_status="In the shooter's hands",
                foul_indicators=["blocking path"],
            ),
            sentinel_analysis(2, 2),
        ]
        self.summary = summarize_frames(self.frames)

    def test_terms_in_order_with_derived_phrases(self) -> None:
        terms = extract_key_terms(self.summary, self.frames)
        self.assertEqual(
            terms,
            ["blocking path", "contact", "push", "moving", "shooting foul", "blocking"],
        )

    def test_sentinel_placeholders_contribute_nothing(self) -> None:
        frames = [sentinel_analysis(1, 1)]
        self.assertEqual(extract_key_terms(summarize_frames(frames), frames), [])

    def test_terms_are_capped(self) -> None:
        terms = extract_key_terms(self.summary, self.frames, max_terms=4)
        self.assertEqual(terms, ["blocking path", "contact", "shooting foul", "blocking"])

    def test_derived_phrases_survive_the_cap(self) -> None:
        frames = [
            FrameAnalysis(
                frame_number=n,
                timestamp_sec=n,
                action="Player shooting a jumper",
                foul_indicators=[f"indicator {n}a", f"indicator {n}b"],
            )
            for n in range(1, 14)
        ]
        terms = extract_key_terms(summarize_frames(frames), frames)
        self.assertEqual(len(terms), 24)
        self.assertEqual(terms[-1], "shooting foul")
        self.assertEqual(terms[:2], ["indicator 1a", "indicator 1b"])

    def test_screen_and_charging_phrases(self) -> None:
        frames = [
            FrameAnalysis(
                frame_number=1,
                timestamp_sec=1,
                action="Center sets a screen at the elbow",
                foul_indicators=["Charging into a set defender"],
            )
        ]
        terms = extract_key_terms(summarize_frames(frames), frames)
        self.assertIn("illegal screen", terms)
        self.assertIn("charging", terms)

    def test_query_text(self) -> None:
        query = build_rules_query(["holding", "push"])
        self.assertEqual(
            query,
            "NBA basketball rules regarding: holding, push. Include specific rule numbers and definitions.",
        )
        self.assertIn("personal foul, incidental contact", build_rules_query([]))


class RetrievalAdapterTest(unittest.TestCase):
    def test_ok_truncates_to_top_k(self) -> None:
        passages = [RulePassage(text=f"rule {n}", source_label="NBA Rulebook") for n in range(8)]
        retriever = _StaticRetriever(passages)
        outcome = retrieve_rule_passages(retriever, "query", top_k=3)
        self.assertEqual(outcome.status, RETRIEVAL_OK)
        self.assertEqual(len(outcome.passages), 3)
        self.assertEqual(retriever.queries, [("query", 3)])

    def test_missing_or_forbidden_corpus_is_unavailable(self) -> None:
        for exc in (
            FileNotFoundError("no index"),
            PermissionError("denied"),
            LookupError("not initialized"),
            GenerationRequestError("forbidden", status=403),
        ):
            with self.subTest(exc=exc):
                outcome = retrieve_rule_passages(_FailingRetriever(exc), "query")
                self.assertEqual(outcome.status, RETRIEVAL_UNAVAILABLE)
                self.assertEqual(outcome.passages, [])

    def test_other_failures_are_errors(self) -> None:
        for exc in (RuntimeError("boom"), GenerationRequestError("server", status=503)):
            with self.subTest(exc=exc):
                outcome = retrieve_rule_passages(_FailingRetriever(exc), "query")
                self.assertEqual(outcome.status, RETRIEVAL_ERROR)
                self.assertEqual(outcome.passages, [])
                self.assertIsNotNone(outcome.error)

    def test_no_retriever_is_disabled(self) -> None:
        outcome = retrieve_rule_passages(None, "query")
        self.assertEqual(outcome.status, RETRIEVAL_DISABLED)
        self.assertEqual(outcome.passages, [])


if __name__ == "__main__":
    unittest.main()
