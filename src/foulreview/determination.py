from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Sequence

from .progress import log_progress
from .types import (
    CONFIDENCE_LEVELS,
    AnalysisAggregate,
    FoulDetermination,
    FrameAnalysis,
    KeyMoment,
    RuleCitation,
    RulePassage,
    SequenceSummary,
)
from .vlm import BaseGenerator, extract_json_object_from_text


DETERMINATION_PARSED = "parsed"
DETERMINATION_DEFAULT = "default"
DETERMINATION_ERROR = "error"

UNSPECIFIED_FOUL_TYPE = "unspecified foul"
UNDETERMINED_EXPLANATION = "Unable to make a clear determination based on the available information."

CRITICAL_REMINDERS = (
    "NOT ALL CONTACT IS A FOUL - Incidental contact that doesn't affect the play is LEGAL",
    "Consider the FULL SEQUENCE - A defender who establishes position early has rights",
    "Basketball allows physical play - minor bumps, brushes, and contact are normal",
    "The contact must provide an ADVANTAGE or significantly AFFECT THE PLAY to be a foul",
    "When frames show rapid movement between positions, this suggests momentum and incidental contact",
    "If you're unsure whether contact is incidental or illegal, it's probably INCIDENTAL",
)

CLOSING_QUESTIONS = (
    "Did the contact ACTUALLY affect the play or was it incidental?",
    "Would this contact be called in a real NBA game (where refs allow physical play)?",
    "Did the defender establish legal position BEFORE the offensive player's motion?",
    "Is this the type of contact that happens dozens of times per game without calls?",
    "Are you being influenced by slow-motion frames that make normal contact look worse?",
)

RESPONSE_SCHEMA = """{
  "hasFoul": boolean,
  "confidence": "high" | "medium" | "low",
  "foulType": "string (e.g., 'blocking foul', 'charging foul', 'reach-in foul', etc.) - only if hasFoul is true",
  "ruleCitations": [
    {
      "ruleNumber": "string (e.g., 'Rule 12B, Section I, a')",
      "ruleText": "string (relevant excerpt from the rule)",
      "relevance": "string (how this rule applies to the play)"
    }
  ],
  "explanation": "string (detailed explanation of your decision, referencing specific frames and rules)",
  "keyMoments": [
    {
      "frameNumber": number,
      "description": "string (what happened in this frame that influenced the decision)"
    }
  ]
}"""


def format_rule_passages(passages: Sequence[RulePassage]) -> str:
    blocks = [
        f"\nRule Reference {position}:\n{passage.text}\nSource: {passage.source_label or 'NBA Rulebook'}"
        for position, passage in enumerate(passages, start=1)
    ]
    return "\n---".join(blocks)


def build_determination_prompt(
    summary: AnalysisAggregate,
    analyses: Sequence[FrameAnalysis],
    sequence_summary: SequenceSummary | None,
    passages: Sequence[RulePassage],
) -> str:
    frame_json = json.dumps([analysis.to_dict() for analysis in analyses], indent=2, ensure_ascii=True)
    indicators = ", ".join(summary.common_foul_indicators) or "(none)"
    sections = [
        "You are an expert NBA referee making a final foul determination. You must analyze this play "
        "as if watching a VIDEO, not isolated frames. Be CONSERVATIVE in your foul calls - basketball "
        "is a contact sport and incidental contact is part of the game.",
        f"FRAME-BY-FRAME ANALYSIS:\n{frame_json}",
        "ANALYSIS SUMMARY:\n"
        f"- Total frames analyzed: {summary.total_frames}\n"
        f"- Frames with foul indicators: {summary.frames_with_foul_indicators}\n"
        f"- Common foul indicators: {indicators}",
    ]
    if sequence_summary is not None:
        sections.append(
            "SEQUENCE ANALYSIS:\n"
            f"- Progression: {sequence_summary.progression or 'not provided'}\n"
            f"- Key Moments: {sequence_summary.key_moments or 'not provided'}\n"
            f"- Initial Determination: {sequence_summary.foul_determination or 'not provided'}"
        )
    if passages:
        sections.append(f"RELEVANT NBA RULEBOOK SECTIONS:\n{format_rule_passages(passages)}")
    else:
        sections.append(
            "RELEVANT NBA RULEBOOK SECTIONS:\n"
            "No rulebook excerpts are available; rely on your knowledge of the official NBA rules."
        )
    reminders = "\n".join(f"{idx}. {text}" for idx, text in enumerate(CRITICAL_REMINDERS, start=1))
    sections.append(f"CRITICAL REMINDERS BEFORE MAKING YOUR DETERMINATION:\n{reminders}")
    sections.append(
        "Based on this information, provide your determination in the following JSON format:\n"
        f"{RESPONSE_SCHEMA}"
    )
    questions = "\n".join(f"{idx}. {text}" for idx, text in enumerate(CLOSING_QUESTIONS, start=1))
    sections.append(f"Consider:\n{questions}")
    sections.append(
        "BE CONSERVATIVE: Only call fouls for CLEAR violations that significantly affect the play. "
        "When in doubt, NO FOUL."
    )
    return "\n\n".join(sections)


def default_determination(explanation: str = UNDETERMINED_EXPLANATION) -> FoulDetermination:
    return FoulDetermination(has_foul=False, confidence="low", explanation=explanation)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "foul", "1"}
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value)


def _coerce_citations(value: Any) -> tuple[RuleCitation, ...]:
    if not isinstance(value, list):
        return ()
    out: list[RuleCitation] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        out.append(
            RuleCitation(
                rule_number=_as_text(item.get("ruleNumber")),
                rule_text=_as_text(item.get("ruleText")),
                relevance=_as_text(item.get("relevance")),
            )
        )
    return tuple(out)


def _coerce_key_moments(value: Any) -> tuple[KeyMoment, ...]:
    if not isinstance(value, list):
        return ()
    out: list[KeyMoment] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        try:
            frame_number = int(item.get("frameNumber"))
        except (TypeError, ValueError, OverflowError):
            continue
        out.append(KeyMoment(frame_number=frame_number, description=_as_text(item.get("description"))))
    return tuple(out)


def coerce_determination(payload: dict[str, Any]) -> FoulDetermination:
    """Fit a model-produced object to the determination schema."""
    has_foul = _as_bool(payload.get("hasFoul"))
    confidence = _as_text(payload.get("confidence")).lower()
    if confidence not in CONFIDENCE_LEVELS:
        confidence = "low"
    foul_type: str | None = None
    if has_foul:
        foul_type = _as_text(payload.get("foulType")) or UNSPECIFIED_FOUL_TYPE
    return FoulDetermination(
        has_foul=has_foul,
        confidence=confidence,
        foul_type=foul_type,
        rule_citations=_coerce_citations(payload.get("ruleCitations")),
        explanation=_as_text(payload.get("explanation")) or UNDETERMINED_EXPLANATION,
        key_moments=_coerce_key_moments(payload.get("keyMoments")),
    )


def parse_determination_response(text: str) -> FoulDetermination | None:
    try:
        payload = extract_json_object_from_text(text or "")
    except (ValueError, RecursionError):
        return None
    try:
        return coerce_determination(payload)
    except Exception:
        # Any payload that cannot be fitted to the schema gets the default ruling.
        return None


@dataclass(slots=True)
class SynthesisOutcome:
    determination: FoulDetermination
    status: str
    prompt: str
    raw_response_text: str = ""
    error: str | None = None


def synthesize_determination(
    generator: BaseGenerator,
    summary: AnalysisAggregate,
    analyses: Sequence[FrameAnalysis],
    sequence_summary: SequenceSummary | None,
    passages: Sequence[RulePassage],
    *,
    log: bool = False,
) -> SynthesisOutcome:
    """
    One generation call; always yields a ruling.

    No retry: an unparseable reply or a failed call both produce the
    conservative no-foul default with low confidence.
    """
    prompt = build_determination_prompt(summary, analyses, sequence_summary, passages)
    try:
        text = generator.generate(prompt)
    except Exception as exc:
        log_progress(log, f"Determination call failed: {exc}")
        return SynthesisOutcome(
            determination=default_determination(),
            status=DETERMINATION_ERROR,
            prompt=prompt,
            error=str(exc),
        )

    determination = parse_determination_response(text)
    if determination is None:
        log_progress(log, f"Could not parse determination JSON; first 300 chars: {text[:300]!r}")
        return SynthesisOutcome(
            determination=default_determination(),
            status=DETERMINATION_DEFAULT,
            prompt=prompt,
            raw_response_text=text,
        )
    return SynthesisOutcome(
        determination=determination,
        status=DETERMINATION_PARSED,
        prompt=prompt,
        raw_response_text=text,
    )
