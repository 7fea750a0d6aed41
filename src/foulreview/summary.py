from __future__ import annotations

import math
from typing import Sequence

from .types import AnalysisAggregate, FrameAnalysis


POTENTIAL_FOUL_RECOMMENDATION = "Potential foul detected - review flagged frames"
NO_FOUL_RECOMMENDATION = "No clear foul indicators detected"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def summarize_frames(analyses: Sequence[FrameAnalysis], *, fallback_mode: bool = False) -> AnalysisAggregate:
    """Cross-frame statistics; a coarse pre-screen, not the ruling."""
    total = len(analyses)
    if total == 0:
        raise ValueError("Cannot summarize an analysis with zero frames")

    flagged = sum(1 for analysis in analyses if analysis.foul_indicators)
    indicators: list[str] = []
    seen: set[str] = set()
    for analysis in analyses:
        for indicator in analysis.foul_indicators:
            if indicator not in seen:
                seen.add(indicator)
                indicators.append(indicator)

    return AnalysisAggregate(
        total_frames=total,
        frames_with_foul_indicators=flagged,
        foul_indicator_percentage=_round_half_up(100 * flagged / total),
        common_foul_indicators=indicators,
        recommendation=POTENTIAL_FOUL_RECOMMENDATION if flagged else NO_FOUL_RECOMMENDATION,
        fallback_mode=fallback_mode,
    )
