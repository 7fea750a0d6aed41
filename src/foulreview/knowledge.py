from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import re
from typing import Sequence

from .progress import log_progress
from .types import UNKNOWN_CONTACT, UNKNOWN_MOVEMENT, AnalysisAggregate, FrameAnalysis, RulePassage


CONTACT_TERMS = ("contact", "push", "hold", "hit", "grab", "bump", "collision")
MOVEMENT_TERMS = ("moving", "stationary", "jumping", "landing", "screening", "blocking")

CONTACT_PATTERN = re.compile(rf"\b({'|'.join(CONTACT_TERMS)})\b", re.IGNORECASE)
MOVEMENT_PATTERN = re.compile(rf"\b({'|'.join(MOVEMENT_TERMS)})\b", re.IGNORECASE)

DEFAULT_TOP_K = 5
DEFAULT_MAX_TERMS = 24
# Used when the analysis yields no salient terms at all.
GENERIC_TERMS = ("personal foul", "incidental contact")

RETRIEVAL_OK = "ok"
RETRIEVAL_UNAVAILABLE = "unavailable"
RETRIEVAL_ERROR = "error"
RETRIEVAL_DISABLED = "disabled"


class BaseRetriever(ABC):
    """Ranked passage lookup over the rule corpus."""

    @abstractmethod
    def retrieve(self, query: str, top_k: int = DEFAULT_TOP_K) -> list[RulePassage]:
        raise NotImplementedError


class _TermSet:
    def __init__(self, max_terms: int) -> None:
        self.max_terms = max_terms
        self.terms: list[str] = []
        self._seen: set[str] = set()

    def add(self, term: str, *, force: bool = False) -> None:
        clean = term.strip()
        key = clean.lower()
        if not clean or key in self._seen:
            return
        if not force and len(self.terms) >= self.max_terms:
            return
        self._seen.add(key)
        self.terms.append(clean)


def _derived_phrases(analyses: Sequence[FrameAnalysis]) -> list[str]:
    actions = [frame.action.lower() for frame in analyses]
    indicators = [indicator.lower() for frame in analyses for indicator in frame.foul_indicators]
    phrases: list[str] = []
    if any("shoot" in action for action in actions):
        phrases.append("shooting foul")
    if any("screen" in action for action in actions):
        phrases.append("illegal screen")
    if any("charging" in indicator for indicator in indicators):
        phrases.append("charging")
    if any("blocking" in indicator for indicator in indicators):
        phrases.append("blocking")
    return phrases


def extract_key_terms(
    summary: AnalysisAggregate,
    analyses: Sequence[FrameAnalysis],
    *,
    max_terms: int = DEFAULT_MAX_TERMS,
) -> list[str]:
    """
    Compress per-frame prose into a short list of rule-lookup terms.

    Order: summary indicators, then per frame the contact words, movement
    words and the frame's own indicators, then the derived phrases. The
    derived phrases always make the list; ``max_terms`` caps the rest so
    that the total stays within it.
    """
    if max_terms <= 0:
        raise ValueError("max_terms must be > 0")
    derived = _derived_phrases(analyses)
    terms = _TermSet(max(max_terms - len(derived), 0))
    for indicator in summary.common_foul_indicators:
        terms.add(indicator)

    for frame in analyses:
        if frame.contact != UNKNOWN_CONTACT:
            for hit in CONTACT_PATTERN.findall(frame.contact):
                terms.add(hit.lower())
        if frame.player_movement != UNKNOWN_MOVEMENT:
            for hit in MOVEMENT_PATTERN.findall(frame.player_movement):
                terms.add(hit.lower())
        for indicator in frame.foul_indicators:
            terms.add(indicator.lower())

    for phrase in derived:
        terms.add(phrase, force=True)
    return terms.terms


def build_rules_query(terms: Sequence[str]) -> str:
    joined = ", ".join(terms) if terms else ", ".join(GENERIC_TERMS)
    return f"NBA basketball rules regarding: {joined}. Include specific rule numbers and definitions."


def is_client_fault(exc: BaseException) -> bool:
    """Errors meaning the knowledge base is absent or off-limits, not broken."""
    if isinstance(exc, (FileNotFoundError, PermissionError, LookupError)):
        return True
    return bool(getattr(exc, "client_fault", False))


@dataclass(slots=True)
class RetrievalOutcome:
    passages: list[RulePassage] = field(default_factory=list)
    status: str = RETRIEVAL_OK
    error: str | None = None


def retrieve_rule_passages(
    retriever: BaseRetriever | None,
    query: str,
    *,
    top_k: int = DEFAULT_TOP_K,
    log: bool = False,
) -> RetrievalOutcome:
    """
    Query the rule corpus, degrading to no passages on any failure.

    Rule grounding is optional for the ruling: a missing or forbidden
    knowledge base is reported as ``unavailable``, anything else as
    ``error``, and neither is raised.
    """
    if retriever is None:
        return RetrievalOutcome(status=RETRIEVAL_DISABLED)
    try:
        passages = list(retriever.retrieve(query, top_k=top_k))[:top_k]
    except Exception as exc:
        if is_client_fault(exc):
            log_progress(log, f"Knowledge base not accessible ({exc}); proceeding without rulebook context")
            return RetrievalOutcome(status=RETRIEVAL_UNAVAILABLE, error=str(exc))
        log_progress(log, f"Unexpected error querying knowledge base: {exc!r}")
        return RetrievalOutcome(status=RETRIEVAL_ERROR, error=f"{type(exc).__name__}: {exc}")
    log_progress(log, f"Retrieved {len(passages)} rule passages")
    return RetrievalOutcome(passages=passages, status=RETRIEVAL_OK)
