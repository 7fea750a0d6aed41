from __future__ import annotations

from pathlib import Path
import time
from typing import Sequence

from .analysis import FrameSetAnalysis, analyze_frames
from .artifacts import ArtifactStore, analyses_from_artifact, validate_analysis_id
from .config import DEFAULT_FRAME_WORKERS, ReviewConfig
from .determination import DETERMINATION_DEFAULT, DETERMINATION_ERROR, synthesize_determination
from .knowledge import (
    DEFAULT_MAX_TERMS,
    DEFAULT_TOP_K,
    RETRIEVAL_ERROR,
    RETRIEVAL_UNAVAILABLE,
    BaseRetriever,
    build_rules_query,
    extract_key_terms,
    retrieve_rule_passages,
)
from .progress import log_progress
from .rulebook import open_rulebook_index
from .summary import summarize_frames
from .types import AnalysisAggregate, FrameAnalysis, FrameRecord, ReviewResult, SequenceSummary
from .vlm import BaseGenerator, ChatCompletionGenerator


def new_analysis_id() -> int:
    return int(time.time() * 1000)


def validate_frames(frames: Sequence[FrameRecord] | None) -> list[FrameRecord]:
    if not frames:
        raise ValueError("Invalid frames data: expected a non-empty list of frames")
    indices = [frame.index for frame in frames]
    if len(set(indices)) != len(indices):
        raise ValueError("Invalid frames data: duplicate frame indices")
    missing = [frame.source_ref for frame in frames if not Path(frame.source_ref).is_file()]
    if missing:
        raise ValueError(f"Frame file(s) not found: {', '.join(missing)}")
    return sorted(frames, key=lambda frame: frame.index)


def _analysis_warnings(frame_set: FrameSetAnalysis) -> list[str]:
    warnings: list[str] = []
    if frame_set.fallback_mode:
        warnings.append(f"Batch analysis failed; frames were analyzed individually ({frame_set.batch_error})")
    for frame_number, error in sorted(frame_set.frame_errors.items()):
        warnings.append(f"Frame {frame_number} could not be analyzed: {error}")
    parse = frame_set.parse
    if parse is not None:
        if parse.parse_failed:
            warnings.append("No frames could be parsed from the batch response")
        elif parse.filled_frame_numbers:
            numbers = ", ".join(str(n) for n in parse.filled_frame_numbers)
            warnings.append(f"Batch response did not describe frames {numbers}")
    return warnings


class FoulReviewPipeline:
    """
    End-to-end review of one clip: describe frames, aggregate, look up
    rules, rule on the play and persist both artifacts.

    Only invalid input raises. Model, parsing, retrieval and persistence
    failures degrade the result and are reported in its status fields.
    """

    def __init__(
        self,
        generator: BaseGenerator,
        retriever: BaseRetriever | None = None,
        artifacts: ArtifactStore | None = None,
        *,
        top_k: int = DEFAULT_TOP_K,
        max_query_terms: int = DEFAULT_MAX_TERMS,
        frame_load_workers: int = DEFAULT_FRAME_WORKERS,
        log: bool = False,
    ) -> None:
        self.generator = generator
        self.retriever = retriever
        self.artifacts = artifacts
        self.top_k = top_k
        self.max_query_terms = max_query_terms
        self.frame_load_workers = frame_load_workers
        self.log = log

    @classmethod
    def from_config(cls, config: ReviewConfig) -> "FoulReviewPipeline":
        config.validate()
        return cls(
            generator=ChatCompletionGenerator(config.generation),
            retriever=open_rulebook_index(config.retrieval),
            artifacts=ArtifactStore(config.analyses_dir),
            top_k=config.retrieval.top_k,
            max_query_terms=config.max_query_terms,
            frame_load_workers=config.frame_load_workers,
            log=config.log_progress,
        )

    def review(self, frames: Sequence[FrameRecord], analysis_id: int | None = None) -> ReviewResult:
        ordered = validate_frames(frames)
        analysis_id = new_analysis_id() if analysis_id is None else validate_analysis_id(analysis_id)
        log_progress(self.log, f"Reviewing {len(ordered)} frames as analysis {analysis_id}")

        frame_set = analyze_frames(
            self.generator,
            ordered,
            max_workers=self.frame_load_workers,
            log=self.log,
        )
        summary = summarize_frames(frame_set.analyses, fallback_mode=frame_set.fallback_mode)
        warnings = _analysis_warnings(frame_set)

        persisted = True
        if self.artifacts is not None:
            try:
                path = self.artifacts.save_analysis(
                    analysis_id,
                    frame_set.analyses,
                    summary,
                    frame_set.sequence_summary,
                    frame_quality=frame_set.frame_quality,
                )
                log_progress(self.log, f"Saved analysis to {path}")
            except OSError as exc:
                log_progress(self.log, f"Could not save analysis: {exc}")
                warnings.append(f"Analysis was not saved: {exc}")
                persisted = False

        return self._determine(
            analysis_id,
            frame_set.analyses,
            summary,
            frame_set.sequence_summary,
            warnings=warnings,
            persisted=persisted,
        )

    def determine(self, analysis_id: int) -> ReviewResult | None:
        """Re-run the ruling for a stored analysis; None when it was never saved."""
        analysis_id = validate_analysis_id(analysis_id)
        if self.artifacts is None:
            raise ValueError("No artifact store configured")
        payload = self.artifacts.load_analysis(analysis_id)
        if payload is None:
            log_progress(self.log, f"Analysis {analysis_id} not found")
            return None
        analyses = analyses_from_artifact(payload)
        summary = summarize_frames(analyses, fallback_mode=bool(payload.get("fallbackMode", False)))
        sequence_summary = SequenceSummary.from_dict(payload.get("sequenceAnalysis"))
        return self._determine(analysis_id, analyses, summary, sequence_summary, warnings=[], persisted=True)

    def _determine(
        self,
        analysis_id: int,
        analyses: list[FrameAnalysis],
        summary: AnalysisAggregate,
        sequence_summary: SequenceSummary | None,
        *,
        warnings: list[str],
        persisted: bool,
    ) -> ReviewResult:
        key_terms = extract_key_terms(summary, analyses, max_terms=self.max_query_terms)
        query = build_rules_query(key_terms)
        log_progress(self.log, f"Rules query: {query}")
        retrieval = retrieve_rule_passages(self.retriever, query, top_k=self.top_k, log=self.log)
        if retrieval.status in {RETRIEVAL_UNAVAILABLE, RETRIEVAL_ERROR}:
            warnings.append(f"Rulebook lookup {retrieval.status}: {retrieval.error}")

        synthesis = synthesize_determination(
            self.generator,
            summary,
            analyses,
            sequence_summary,
            retrieval.passages,
            log=self.log,
        )
        if synthesis.status == DETERMINATION_ERROR:
            warnings.append(f"Determination call failed: {synthesis.error}")
        elif synthesis.status == DETERMINATION_DEFAULT:
            warnings.append("Determination response could not be parsed; using the default ruling")

        if self.artifacts is not None:
            try:
                path = self.artifacts.save_determination(
                    analysis_id,
                    synthesis.determination,
                    determination_status=synthesis.status,
                    retrieval_status=retrieval.status,
                )
                log_progress(self.log, f"Saved determination to {path}")
            except OSError as exc:
                log_progress(self.log, f"Could not save determination: {exc}")
                warnings.append(f"Determination was not saved: {exc}")
                persisted = False
        else:
            persisted = False

        return ReviewResult(
            analysis_id=analysis_id,
            analyses=list(analyses),
            summary=summary,
            sequence_analysis=sequence_summary,
            determination=synthesis.determination,
            rule_passages=list(retrieval.passages),
            key_terms=key_terms,
            retrieval_status=retrieval.status,
            determination_status=synthesis.status,
            persisted=persisted,
            warnings=warnings,
        )
