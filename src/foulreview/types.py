from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


UNKNOWN_ACTION = "Unknown action"
UNKNOWN_MOVEMENT = "Unknown movement"
UNKNOWN_CONTACT = "Unknown contact"
UNKNOWN_BALL_STATUS = "Unknown ball status"

CONFIDENCE_LEVELS = ("high", "medium", "low")


@dataclass(slots=True, frozen=True)
class FrameRecord:
    index: int
    source_ref: str
    timestamp_sec: int

    def __post_init__(self) -> None:
        if self.index < 1:
            raise ValueError(f"Frame index must be >= 1, got {self.index}")
        if self.timestamp_sec < 0:
            raise ValueError(f"Frame timestamp must be >= 0, got {self.timestamp_sec}")

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "path": self.source_ref, "timestamp": self.timestamp_sec}

    @staticmethod
    def from_dict(data: Mapping[str, Any], *, position: int | None = None) -> "FrameRecord":
        path = data.get("path", data.get("source_ref"))
        if not isinstance(path, str) or not path.strip():
            raise ValueError("Frame entry is missing a path")
        raw_index = data.get("index")
        if raw_index is None:
            if position is None:
                raise ValueError("Frame entry is missing an index")
            raw_index = position
        index = int(raw_index)
        timestamp = int(data.get("timestamp", data.get("timestamp_sec", index)))
        return FrameRecord(index=index, source_ref=path, timestamp_sec=timestamp)


@dataclass(slots=True)
class FrameAnalysis:
    frame_number: int
    timestamp_sec: int
    action: str = UNKNOWN_ACTION
    player_movement: str = UNKNOWN_MOVEMENT
    contact: str = UNKNOWN_CONTACT
    ball_status: str = UNKNOWN_BALL_STATUS
    foul_indicators: list[str] = field(default_factory=list)

    @property
    def is_sentinel(self) -> bool:
        return (
            self.action == UNKNOWN_ACTION
            and self.player_movement == UNKNOWN_MOVEMENT
            and self.contact == UNKNOWN_CONTACT
            and self.ball_status == UNKNOWN_BALL_STATUS
            and not self.foul_indicators
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "frameNumber": self.frame_number,
            "timestamp": self.timestamp_sec,
            "action": self.action,
            "playerMovement": self.player_movement,
            "contact": self.contact,
            "ballStatus": self.ball_status,
            "foulIndicators": list(self.foul_indicators),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "FrameAnalysis":
        indicators = data.get("foulIndicators", [])
        if not isinstance(indicators, list):
            indicators = []
        return FrameAnalysis(
            frame_number=int(data["frameNumber"]),
            timestamp_sec=int(data.get("timestamp", 0)),
            action=str(data.get("action") or UNKNOWN_ACTION),
            player_movement=str(data.get("playerMovement") or UNKNOWN_MOVEMENT),
            contact=str(data.get("contact") or UNKNOWN_CONTACT),
            ball_status=str(data.get("ballStatus") or UNKNOWN_BALL_STATUS),
            foul_indicators=[str(item) for item in indicators if str(item).strip()],
        )


def sentinel_analysis(frame_number: int, timestamp_sec: int) -> FrameAnalysis:
    """Placeholder record for a frame the model never described."""
    return FrameAnalysis(frame_number=frame_number, timestamp_sec=timestamp_sec)


@dataclass(slots=True)
class SequenceSummary:
    progression: str | None = None
    key_moments: str | None = None
    foul_determination: str | None = None

    def is_empty(self) -> bool:
        return not (self.progression or self.key_moments or self.foul_determination)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.progression is not None:
            out["progression"] = self.progression
        if self.key_moments is not None:
            out["keyMoments"] = self.key_moments
        if self.foul_determination is not None:
            out["foulDetermination"] = self.foul_determination
        return out

    @staticmethod
    def from_dict(data: Mapping[str, Any] | None) -> "SequenceSummary | None":
        if not isinstance(data, Mapping):
            return None
        summary = SequenceSummary(
            progression=data.get("progression"),
            key_moments=data.get("keyMoments"),
            foul_determination=data.get("foulDetermination"),
        )
        return None if summary.is_empty() else summary


@dataclass(slots=True)
class AnalysisAggregate:
    total_frames: int
    frames_with_foul_indicators: int
    foul_indicator_percentage: int
    common_foul_indicators: list[str]
    recommendation: str
    fallback_mode: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalFrames": self.total_frames,
            "framesWithFoulIndicators": self.frames_with_foul_indicators,
            "foulIndicatorPercentage": self.foul_indicator_percentage,
            "commonFoulIndicators": list(self.common_foul_indicators),
            "recommendation": self.recommendation,
        }


@dataclass(slots=True, frozen=True)
class RulePassage:
    text: str
    source_label: str
    score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"text": self.text, "source": self.source_label}
        if self.score is not None:
            out["score"] = round(self.score, 4)
        return out


@dataclass(slots=True)
class RuleCitation:
    rule_number: str
    rule_text: str
    relevance: str

    def to_dict(self) -> dict[str, Any]:
        return {"ruleNumber": self.rule_number, "ruleText": self.rule_text, "relevance": self.relevance}


@dataclass(slots=True)
class KeyMoment:
    frame_number: int
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {"frameNumber": self.frame_number, "description": self.description}


@dataclass(slots=True, frozen=True)
class FoulDetermination:
    has_foul: bool
    confidence: str
    explanation: str
    foul_type: str | None = None
    rule_citations: tuple[RuleCitation, ...] = ()
    key_moments: tuple[KeyMoment, ...] = ()

    def __post_init__(self) -> None:
        if self.confidence not in CONFIDENCE_LEVELS:
            raise ValueError(f"confidence must be one of {CONFIDENCE_LEVELS}, got {self.confidence!r}")
        if self.has_foul and not self.foul_type:
            raise ValueError("foul_type is required when has_foul is true")
        if not self.has_foul and self.foul_type is not None:
            raise ValueError("foul_type must be absent when has_foul is false")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "hasFoul": self.has_foul,
            "confidence": self.confidence,
        }
        if self.foul_type is not None:
            out["foulType"] = self.foul_type
        out["ruleCitations"] = [item.to_dict() for item in self.rule_citations]
        out["explanation"] = self.explanation
        out["keyMoments"] = [item.to_dict() for item in self.key_moments]
        return out


@dataclass(slots=True)
class ReviewResult:
    analysis_id: int
    analyses: list[FrameAnalysis]
    summary: AnalysisAggregate
    sequence_analysis: SequenceSummary | None
    determination: FoulDetermination
    rule_passages: list[RulePassage] = field(default_factory=list)
    key_terms: list[str] = field(default_factory=list)
    retrieval_status: str = "ok"
    determination_status: str = "parsed"
    persisted: bool = True
    warnings: list[str] = field(default_factory=list)

    @property
    def fallback_mode(self) -> bool:
        return self.summary.fallback_mode

    @property
    def degraded(self) -> bool:
        return self.fallback_mode or self.retrieval_status != "ok" or self.determination_status != "parsed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "analysisId": self.analysis_id,
            "analyses": [item.to_dict() for item in self.analyses],
            "summary": self.summary.to_dict(),
            "sequenceAnalysis": self.sequence_analysis.to_dict() if self.sequence_analysis else None,
            "fallbackMode": self.fallback_mode,
            "keyTerms": list(self.key_terms),
            "rulePassages": [item.to_dict() for item in self.rule_passages],
            "retrievalStatus": self.retrieval_status,
            "determinationStatus": self.determination_status,
            "foulDetermination": self.determination.to_dict(),
            "degraded": self.degraded,
            "persisted": self.persisted,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class RuleSection:
    text: str
    rule_number: str | None = None


@dataclass(slots=True)
class RuleDocument:
    doc_id: str
    title: str
    source: str
    sections: list[RuleSection] = field(default_factory=list)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "RuleDocument":
        required = ("doc_id", "title", "sections")
        missing = [key for key in required if key not in data]
        if missing:
            raise ValueError(f"Missing required keys: {', '.join(missing)}")

        sections: list[RuleSection] = []
        for raw in data["sections"]:
            if not isinstance(raw, dict) or not str(raw.get("text", "")).strip():
                continue
            rule_number = raw.get("rule_number", raw.get("rule"))
            sections.append(
                RuleSection(
                    text=str(raw["text"]).strip(),
                    rule_number=str(rule_number).strip() if rule_number else None,
                )
            )

        if not sections:
            raise ValueError("Rule document has no usable sections")

        return RuleDocument(
            doc_id=str(data["doc_id"]),
            title=str(data["title"]),
            source=str(data.get("source") or data["title"]),
            sections=sections,
        )


@dataclass(slots=True)
class RuleChunk:
    doc_id: str
    title: str
    source: str
    text: str
    rule_numbers: list[str] = field(default_factory=list)

    @property
    def source_label(self) -> str:
        if self.rule_numbers:
            return f"{self.source} ({'; '.join(self.rule_numbers)})"
        return self.source
