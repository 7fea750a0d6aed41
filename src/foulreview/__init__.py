"""Basketball foul review from sampled video frames."""

from .analysis import analyze_frames
from .artifacts import ArtifactStore
from .config import ReviewConfig
from .determination import synthesize_determination
from .embedders import BaseEmbedder, HashingEmbedder, SentenceTransformerEmbedder
from .frames import FrameStore, frames_from_rows
from .indicators import normalize_indicators
from .knowledge import BaseRetriever, build_rules_query, extract_key_terms, retrieve_rule_passages
from .parsing import parse_multi_frame_response, parse_single_frame_response
from .pipeline import FoulReviewPipeline
from .rulebook import RetrievalConfig, RulebookIndex, open_rulebook_index
from .summary import summarize_frames
from .types import (
    AnalysisAggregate,
    FoulDetermination,
    FrameAnalysis,
    FrameRecord,
    ReviewResult,
    RulePassage,
    SequenceSummary,
)
from .vlm import BaseGenerator, ChatCompletionGenerator, GenerationConfig, extract_chat_completion_text

__all__ = [
    "AnalysisAggregate",
    "ArtifactStore",
    "BaseEmbedder",
    "BaseGenerator",
    "BaseRetriever",
    "ChatCompletionGenerator",
    "FoulDetermination",
    "FoulReviewPipeline",
    "FrameAnalysis",
    "FrameRecord",
    "FrameStore",
    "GenerationConfig",
    "HashingEmbedder",
    "RetrievalConfig",
    "ReviewConfig",
    "ReviewResult",
    "RulePassage",
    "RulebookIndex",
    "SentenceTransformerEmbedder",
    "SequenceSummary",
    "analyze_frames",
    "build_rules_query",
    "extract_chat_completion_text",
    "extract_key_terms",
    "frames_from_rows",
    "normalize_indicators",
    "open_rulebook_index",
    "parse_multi_frame_response",
    "parse_single_frame_response",
    "retrieve_rule_passages",
    "summarize_frames",
    "synthesize_determination",
]
