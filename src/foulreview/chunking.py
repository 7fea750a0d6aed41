from __future__ import annotations

from dataclasses import dataclass

from .types import RuleChunk, RuleDocument, RuleSection


@dataclass(slots=True)
class ChunkConfig:
    max_words: int = 160
    stride_words: int = 60
    min_words: int = 12

    def validate(self) -> None:
        if self.max_words <= 0 or self.stride_words <= 0 or self.min_words <= 0:
            raise ValueError("Chunk sizes must be positive")
        if self.stride_words >= self.max_words:
            raise ValueError("stride_words must be smaller than max_words")
        if self.min_words > self.max_words:
            raise ValueError("min_words cannot exceed max_words")


def _count_words(text: str) -> int:
    return len(text.split())


def _rule_numbers(window: list[RuleSection]) -> list[str]:
    out: list[str] = []
    for section in window:
        if section.rule_number and section.rule_number not in out:
            out.append(section.rule_number)
    return out


def _window_to_chunk(document: RuleDocument, window: list[RuleSection]) -> RuleChunk:
    parts: list[str] = []
    last_label: str | None = None
    for section in window:
        # Repeat the rule label only where it changes inside the window.
        if section.rule_number and section.rule_number != last_label:
            parts.append(f"[{section.rule_number}] {section.text}")
            last_label = section.rule_number
        else:
            parts.append(section.text)
    return RuleChunk(
        doc_id=document.doc_id,
        title=document.title,
        source=document.source,
        text="\n".join(parts).strip(),
        rule_numbers=_rule_numbers(window),
    )


def chunk_sections(document: RuleDocument, config: ChunkConfig) -> list[RuleChunk]:
    """Chunk rulebook sections into overlapping passages."""
    config.validate()
    chunks: list[RuleChunk] = []
    window: list[RuleSection] = []
    window_word_count = 0
    emitted_through = -1

    for position, section in enumerate(document.sections):
        words = _count_words(section.text)
        if words == 0:
            continue
        window.append(section)
        window_word_count += words

        while window_word_count >= config.max_words:
            chunks.append(_window_to_chunk(document, window))
            emitted_through = position

            # Slide forward until roughly stride_words words remain.
            while window and window_word_count > config.stride_words:
                popped = window.pop(0)
                window_word_count -= _count_words(popped.text)

    # A tail already fully covered by the last emitted chunk adds nothing.
    has_new_text = emitted_through < len(document.sections) - 1
    if window and has_new_text and (window_word_count >= config.min_words or not chunks):
        chunks.append(_window_to_chunk(document, window))

    return chunks
