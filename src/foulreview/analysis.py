from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .frames import load_frame_images
from .parsing import MultiFrameParse, order_frames, parse_multi_frame_response, parse_single_frame_response
from .progress import log_progress
from .types import FrameAnalysis, FrameRecord, SequenceSummary, sentinel_analysis
from .vlm import BaseGenerator


SINGLE_FRAME_PROMPT = """Analyze this basketball frame for potential foul scenarios. Provide a structured analysis in this exact format:

ACTION: [One sentence describing the main basketball action - dribbling, shooting, defending, etc.]
PLAYER_MOVEMENT: [Describe if players are moving, stationary, or changing direction - key for blocking vs charging fouls]
CONTACT: [Describe any physical contact between players - none, minimal, significant, or illegal contact]
BALL_STATUS: [Where is the ball and who has possession - dribbling, shooting, loose ball, etc.]
FOUL_INDICATORS: [List specific indicators that suggest a foul - illegal contact, moving screen, reach-in, blocking path, etc. If no foul indicators are present, leave this completely empty after the colon]
ANALYSIS_QUALITY: [Rate the clarity and visibility of the basketball action in this frame: excellent, good, fair, poor]

Focus on details that help determine fouls:
- Is the defender moving or stationary?
- Is there illegal contact (pushing, holding, hitting)?
- Is a player in legal guarding position?
- Are there any illegal screens or blocks?
- Is there a reach-in foul or hand checking?

IMPORTANT FOR FOUL_INDICATORS:
- If you detect foul indicators, list them separated by commas: reach-in foul, illegal contact, moving screen
- If you detect NO foul indicators, leave it completely empty after the colon like this: "FOUL_INDICATORS:"
- Do NOT use brackets [], parentheses (), or placeholder text like "none"

Be specific and brief. Focus on basketball rules violations."""


def build_batch_prompt(frame_count: int) -> str:
    return f"""You are analyzing a basketball video that has been broken down into {frame_count} sequential frames. These frames represent a continuous play captured at 1 frame per second.

CRITICAL INSTRUCTION: Analyze this as if you're watching a VIDEO, not isolated images. Consider the full temporal context and motion between frames before making any foul determinations.

IMPORTANT CONTEXT FOR BASKETBALL FOULS:
- Incidental contact is NOT a foul - basketball is a contact sport
- A defender who establishes legal guarding position BEFORE an offensive player begins their upward motion has the right to that space
- An offensive player who initiates contact with a stationary, legal defender may be called for a charge
- Contact must affect the play or provide an advantage to be considered a foul
- Many plays that LOOK like fouls in a single frame are actually legal when viewed in motion

For EACH frame (numbered 1 to {frame_count}), provide analysis in this EXACT format:

FRAME 1:
ACTION: [One sentence describing the main basketball action]
PLAYER_MOVEMENT: [Describe if players are moving, stationary, or changing direction - note changes from previous frame]
CONTACT: [Describe any physical contact - none, minimal, incidental, or significant]
BALL_STATUS: [Where is the ball and who has possession]
FOUL_INDICATORS: [ONLY list if there are CLEAR violations. If contact appears incidental or legal, leave empty]

FRAME 2:
ACTION: [One sentence describing the main basketball action]
PLAYER_MOVEMENT: [Describe movement and note how it differs from Frame 1]
CONTACT: [Describe contact and whether it's developing, continuing, or resolving from Frame 1]
BALL_STATUS: [Ball location and possession changes from Frame 1]
FOUL_INDICATORS: [ONLY list if there are CLEAR violations. If contact appears incidental or legal, leave empty]

Continue this pattern for all {frame_count} frames, always noting changes and progression from previous frames.

After analyzing all frames, provide:

SEQUENCE_ANALYSIS:
PROGRESSION: [Describe the complete play from start to finish as if describing a video]
KEY_MOMENTS: [Which frames show the most important basketball actions - not just contact]
FOUL_DETERMINATION: [Based on the FULL SEQUENCE and NBA rules, is there a foul? Be conservative - when in doubt, it's likely incidental contact. Consider: Did the contact affect the play? Was it initiated by offense or defense? Did the defender have legal position?]

Remember:
- A play that shows contact in Frame 4 might be legal if the defender established position in Frame 2
- Fast movements between frames suggest momentum that can cause incidental contact
- Not all contact is a foul - focus on whether it's illegal AND affects the play
- Consider who initiated the contact and whether players were in legal positions

BE CONSERVATIVE: Only call fouls that are CLEAR violations when viewing the complete sequence."""


@dataclass(slots=True)
class FrameSetAnalysis:
    analyses: list[FrameAnalysis]
    sequence_summary: SequenceSummary | None = None
    fallback_mode: bool = False
    frame_quality: dict[int, str] = field(default_factory=dict)
    frame_errors: dict[int, str] = field(default_factory=dict)
    batch_error: str | None = None
    parse: MultiFrameParse | None = None


def analyze_batch(
    generator: BaseGenerator,
    frames: Sequence[FrameRecord],
    *,
    max_workers: int = 4,
    log: bool = False,
) -> FrameSetAnalysis:
    """
    Describe every frame in one call and parse the reply.

    Raises whatever the frame loading or the generation call raises; an
    unparseable reply is not an error and yields sentinel records instead.
    """
    ordered = order_frames(frames)
    log_progress(log, f"Starting multi-frame analysis for {len(ordered)} frames")
    images = load_frame_images(ordered, max_workers=max_workers)
    text = generator.generate(build_batch_prompt(len(ordered)), images)
    parsed = parse_multi_frame_response(text, ordered)
    if parsed.parse_failed:
        log_progress(log, "Failed to parse any frames from the batch response")
        log_progress(log, f"First 500 chars of response: {text[:500]!r}")
    elif parsed.filled_frame_numbers:
        log_progress(log, f"Batch response skipped frames {parsed.filled_frame_numbers}; filled with placeholders")
    if parsed.ignored_frame_numbers:
        log_progress(log, f"Ignored duplicate or out-of-range frame headers {parsed.ignored_frame_numbers}")
    return FrameSetAnalysis(
        analyses=parsed.analyses,
        sequence_summary=parsed.sequence_summary,
        parse=parsed,
    )


def analyze_individually(
    generator: BaseGenerator,
    frames: Sequence[FrameRecord],
    *,
    log: bool = False,
) -> FrameSetAnalysis:
    """
    Fallback path: one call per frame, strictly in index order.

    A frame whose read or call fails gets a sentinel record; the remaining
    frames are still analyzed.
    """
    ordered = order_frames(frames)
    result = FrameSetAnalysis(analyses=[], fallback_mode=True)
    for position, frame in enumerate(ordered, start=1):
        try:
            image = Path(frame.source_ref).read_bytes()
            text = generator.generate(SINGLE_FRAME_PROMPT, [image])
            reading = parse_single_frame_response(text, position, frame.timestamp_sec)
        except Exception as exc:
            log_progress(log, f"Error analyzing frame {position}: {exc}")
            result.analyses.append(sentinel_analysis(position, frame.timestamp_sec))
            result.frame_errors[position] = str(exc)
            continue
        result.analyses.append(reading.analysis)
        result.frame_quality[position] = reading.quality
    return result


def analyze_frames(
    generator: BaseGenerator,
    frames: Sequence[FrameRecord],
    *,
    max_workers: int = 4,
    log: bool = False,
) -> FrameSetAnalysis:
    try:
        return analyze_batch(generator, frames, max_workers=max_workers, log=log)
    except Exception as exc:
        log_progress(log, f"Batch analysis failed ({exc}); falling back to individual frame processing")
        result = analyze_individually(generator, frames, log=log)
        result.batch_error = str(exc)
        return result
