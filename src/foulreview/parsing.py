from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Iterable, Sequence

from .indicators import normalize_indicators
from .types import (
    UNKNOWN_ACTION,
    UNKNOWN_BALL_STATUS,
    UNKNOWN_CONTACT,
    UNKNOWN_MOVEMENT,
    FrameAnalysis,
    FrameRecord,
    SequenceSummary,
    sentinel_analysis,
)


FRAME_FIELD_LABELS = ("ACTION", "PLAYER_MOVEMENT", "CONTACT", "BALL_STATUS", "FOUL_INDICATORS")
QUALITY_LABEL = "ANALYSIS_QUALITY"
QUALITY_LEVELS = ("excellent", "good", "fair", "poor")
DEFAULT_QUALITY = "fair"

# Markdown headings and bold/italic markers the model wraps around labels.
_EMPHASIS = r"(?:#{1,6}\s*)?\*{0,2}\s*"

FRAME_HEADER_PATTERN = re.compile(rf"^{_EMPHASIS}FRAME\s*(\d+)\s*\**\s*(?:$|[:(\[*-])", re.IGNORECASE)
SEQUENCE_HEADER_PATTERN = re.compile(rf"^{_EMPHASIS}SEQUENCE_ANALYSIS\b", re.IGNORECASE)
FIELD_PATTERN = re.compile(
    rf"^\*{{0,2}}({'|'.join([*FRAME_FIELD_LABELS, QUALITY_LABEL])})\*{{0,2}}\s*:\s*\**\s*(.*)$",
    re.IGNORECASE,
)
SUMMARY_FIELD_PATTERN = re.compile(
    r"\b(PROGRESSION|KEY_MOMENTS|FOUL_DETERMINATION)\**\s*:\s*\**\s*(.+)$",
    re.IGNORECASE,
)
BULLET_PATTERN = re.compile(r"^[*\-•]\s*")

# Blank lines tolerated inside a bulleted FOUL_INDICATORS continuation.
MAX_BULLET_BLANK_LINES = 2

_FIELD_DEFAULTS = {
    "ACTION": UNKNOWN_ACTION,
    "PLAYER_MOVEMENT": UNKNOWN_MOVEMENT,
    "CONTACT": UNKNOWN_CONTACT,
    "BALL_STATUS": UNKNOWN_BALL_STATUS,
}


class ScanState(Enum):
    AWAITING_FRAME_HEADER = "awaiting-frame-header"
    FRAME_FIELDS = "accumulating-frame-fields"
    BULLET_CONTINUATION = "accumulating-bullet-continuation"
    SEQUENCE_SUMMARY = "in-sequence-summary"


@dataclass(slots=True)
class _FrameDraft:
    frame_number: int
    fields: dict[str, str] = field(default_factory=dict)
    indicators: list[str] | None = None
    bullets: list[str] = field(default_factory=list)
    quality: str | None = None

    def to_analysis(self, timestamp_sec: int) -> FrameAnalysis:
        values = {label: self.fields.get(label) or default for label, default in _FIELD_DEFAULTS.items()}
        return FrameAnalysis(
            frame_number=self.frame_number,
            timestamp_sec=timestamp_sec,
            action=values["ACTION"],
            player_movement=values["PLAYER_MOVEMENT"],
            contact=values["CONTACT"],
            ball_status=values["BALL_STATUS"],
            foul_indicators=list(self.indicators or []),
        )


class ResponseScanner:
    """
    Line-oriented state machine over a free-text model response.

    With ``frame_headers=True`` the scanner waits for ``FRAME n:`` headers,
    accumulates the five field labels per frame and stops per-frame scanning
    at ``SEQUENCE_ANALYSIS``; every later line is kept for the summary
    extractor. With ``frame_headers=False`` the whole text is one frame and
    ``ANALYSIS_QUALITY:`` is recognized as an extra label.

    A ``FOUL_INDICATORS:`` label with an empty remainder enters the bullet
    continuation state. It collects ``*``/``-`` lines and ends at a field
    label, a frame header, the sequence header, any other non-bullet text, or
    the third consecutive blank line. The terminating line is then handled as
    if no continuation had been open.
    """

    def __init__(self, *, frame_headers: bool = True, frame_number: int = 1) -> None:
        self.frame_headers = frame_headers
        self.drafts: list[_FrameDraft] = []
        self.summary_lines: list[str] = []
        self.saw_sequence_header = False
        self._blank_run = 0
        if frame_headers:
            self.state = ScanState.AWAITING_FRAME_HEADER
            self._current: _FrameDraft | None = None
        else:
            self.state = ScanState.FRAME_FIELDS
            self._current = _FrameDraft(frame_number)

    def feed_text(self, text: str) -> "ResponseScanner":
        for line in text.splitlines():
            self.feed(line)
        self.finish()
        return self

    def feed(self, line: str) -> None:
        stripped = line.strip()
        if self.state is ScanState.SEQUENCE_SUMMARY:
            self.summary_lines.append(stripped)
            return
        if self.state is ScanState.BULLET_CONTINUATION:
            if self._consume_bullet(stripped):
                return
            self._close_bullets()

        if self.frame_headers:
            if SEQUENCE_HEADER_PATTERN.match(stripped):
                self._flush()
                self.saw_sequence_header = True
                self.state = ScanState.SEQUENCE_SUMMARY
                return
            header = FRAME_HEADER_PATTERN.match(stripped)
            if header:
                self._flush()
                self._current = _FrameDraft(int(header.group(1)))
                self.state = ScanState.FRAME_FIELDS
                return

        if self._current is None or not stripped:
            return
        match = self._match_field(stripped)
        if match is None:
            return
        label, value = match
        if label == QUALITY_LABEL:
            self._current.quality = value.strip(" .*").lower() or None
        elif label == "FOUL_INDICATORS":
            if value:
                self._current.indicators = normalize_indicators(value)
            else:
                self._current.indicators = []
                self._current.bullets = []
                self._blank_run = 0
                self.state = ScanState.BULLET_CONTINUATION
        else:
            self._current.fields[label] = value

    def finish(self) -> None:
        if self.state is ScanState.BULLET_CONTINUATION:
            self._close_bullets()
        self._flush()

    def _match_field(self, stripped: str) -> tuple[str, str] | None:
        match = FIELD_PATTERN.match(stripped)
        if not match:
            return None
        label = match.group(1).upper()
        if label == QUALITY_LABEL and self.frame_headers:
            return None
        value = match.group(2).strip()
        # Trailing bold marker left over from "**ACTION: text**".
        if value.endswith("**"):
            value = value[:-2].rstrip()
        return label, value

    def _is_terminator(self, stripped: str) -> bool:
        if self._match_field(stripped) is not None:
            return True
        if self.frame_headers and (
            FRAME_HEADER_PATTERN.match(stripped) or SEQUENCE_HEADER_PATTERN.match(stripped)
        ):
            return True
        return False

    def _consume_bullet(self, stripped: str) -> bool:
        if not stripped:
            self._blank_run += 1
            return self._blank_run <= MAX_BULLET_BLANK_LINES
        if self._is_terminator(stripped):
            return False
        if not BULLET_PATTERN.match(stripped):
            return False
        self._blank_run = 0
        content = BULLET_PATTERN.sub("", stripped, count=1).strip().strip("*-").strip()
        if content and self._current is not None:
            self._current.bullets.append(content)
        return True

    def _close_bullets(self) -> None:
        if self._current is not None:
            self._current.indicators = normalize_indicators(self._current.bullets)
            self._current.bullets = []
        self.state = ScanState.FRAME_FIELDS

    def _flush(self) -> None:
        if self._current is not None:
            self.drafts.append(self._current)
        self._current = None


def _summary_from_lines(lines: Iterable[str]) -> SequenceSummary | None:
    summary = SequenceSummary()
    for line in lines:
        match = SUMMARY_FIELD_PATTERN.search(line.strip())
        if not match:
            continue
        value = match.group(2).strip().rstrip("*").strip()
        if not value:
            continue
        label = match.group(1).upper()
        if label == "PROGRESSION":
            summary.progression = value
        elif label == "KEY_MOMENTS":
            summary.key_moments = value
        else:
            summary.foul_determination = value
    return None if summary.is_empty() else summary


def extract_sequence_summary(text: str) -> SequenceSummary | None:
    """Read PROGRESSION / KEY_MOMENTS / FOUL_DETERMINATION after the SEQUENCE_ANALYSIS header."""
    lines = text.splitlines()
    for idx, line in enumerate(lines):
        if SEQUENCE_HEADER_PATTERN.match(line.strip()):
            return _summary_from_lines(lines[idx + 1 :])
    return None


@dataclass(slots=True)
class MultiFrameParse:
    analyses: list[FrameAnalysis]
    sequence_summary: SequenceSummary | None
    parsed_frame_numbers: list[int]
    filled_frame_numbers: list[int]
    ignored_frame_numbers: list[int]

    @property
    def parse_failed(self) -> bool:
        return not self.parsed_frame_numbers


def order_frames(frames: Sequence[FrameRecord]) -> list[FrameRecord]:
    if not frames:
        raise ValueError("At least one frame is required")
    return sorted(frames, key=lambda frame: frame.index)


def parse_multi_frame_response(text: str, frames: Sequence[FrameRecord]) -> MultiFrameParse:
    """
    Turn a batch response describing N frames into exactly N records.

    Frame numbers are positional (1..N over ``frames`` ordered by index).
    Headers outside that range and repeated headers are ignored; the first
    occurrence of a frame wins. Every frame the text did not describe gets a
    sentinel record carrying that frame's own timestamp, including the case
    where nothing at all could be parsed.
    """
    ordered = order_frames(frames)
    total = len(ordered)
    scanner = ResponseScanner(frame_headers=True).feed_text(text or "")

    recovered: dict[int, FrameAnalysis] = {}
    ignored: list[int] = []
    for draft in scanner.drafts:
        number = draft.frame_number
        if number < 1 or number > total or number in recovered:
            ignored.append(number)
            continue
        recovered[number] = draft.to_analysis(ordered[number - 1].timestamp_sec)

    analyses: list[FrameAnalysis] = []
    filled: list[int] = []
    for position, frame in enumerate(ordered, start=1):
        analysis = recovered.get(position)
        if analysis is None:
            analysis = sentinel_analysis(position, frame.timestamp_sec)
            filled.append(position)
        analyses.append(analysis)

    summary = _summary_from_lines(scanner.summary_lines) if scanner.saw_sequence_header else None
    return MultiFrameParse(
        analyses=analyses,
        sequence_summary=summary,
        parsed_frame_numbers=sorted(recovered),
        filled_frame_numbers=filled,
        ignored_frame_numbers=ignored,
    )


@dataclass(slots=True)
class SingleFrameReading:
    analysis: FrameAnalysis
    quality: str = DEFAULT_QUALITY


def parse_single_frame_response(text: str, frame_number: int, timestamp_sec: int) -> SingleFrameReading:
    scanner = ResponseScanner(frame_headers=False, frame_number=frame_number).feed_text(text or "")
    draft = scanner.drafts[0]
    quality = draft.quality if draft.quality in QUALITY_LEVELS else DEFAULT_QUALITY
    return SingleFrameReading(analysis=draft.to_analysis(timestamp_sec), quality=quality)
