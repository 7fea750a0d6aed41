from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
import re
from typing import Iterable

from .chunking import ChunkConfig, chunk_sections
from .embedders import BaseEmbedder, build_embedder
from .knowledge import DEFAULT_TOP_K, BaseRetriever
from .store import SearchResult, SqliteRuleStore
from .types import RuleChunk, RuleDocument, RulePassage, RuleSection


RULE_HEADING_PATTERN = re.compile(r"^RULE\s+(?:NO\.?\s*)?(\d+[A-Z]?)\b[\s,:.-]*(.*)$", re.IGNORECASE)
SECTION_HEADING_PATTERN = re.compile(r"^SECTION\s+([IVXLC]+|\d+)\b[\s,:.-]*(.*)$", re.IGNORECASE)
RULEBOOK_SUFFIXES = {".json", ".txt", ".md"}
DEFAULT_RULES_DB = "data/rules_index.sqlite"


class RuleIndexMismatchError(ValueError, LookupError):
    """The index was built by a different embedder than the one querying it."""


@dataclass(slots=True)
class RetrievalConfig:
    db_path: str = DEFAULT_RULES_DB
    embedder: str = "hashing"
    model: str | None = None
    top_k: int = DEFAULT_TOP_K
    enabled: bool = True

    def validate(self) -> None:
        if self.top_k <= 0:
            raise ValueError("top_k must be > 0")
        if self.enabled and not str(self.db_path).strip():
            raise ValueError("Rule index path cannot be empty")


class RulebookIndex(BaseRetriever):
    def __init__(self, store: SqliteRuleStore, embedder: BaseEmbedder) -> None:
        self.store = store
        self.embedder = embedder

    def index_documents(
        self,
        documents: Iterable[RuleDocument],
        config: ChunkConfig | None = None,
        batch_size: int = 64,
    ) -> int:
        config = config or ChunkConfig()
        chunks: list[RuleChunk] = []
        doc_ids: list[str] = []
        for document in documents:
            doc_ids.append(document.doc_id)
            chunks.extend(chunk_sections(document, config))

        if not chunks:
            return 0

        self.store.set_metadata("model_name", self.embedder.model_name)
        self.store.set_metadata("embedding_dim", str(self.embedder.embedding_dim))

        # Re-indexing a document replaces its previous passages.
        for doc_id in doc_ids:
            self.store.delete_document(doc_id)

        for offset in range(0, len(chunks), batch_size):
            batch = chunks[offset : offset + batch_size]
            vectors = self.embedder.embed([chunk.text for chunk in batch])
            if vectors.shape[1] != self.embedder.embedding_dim:
                raise ValueError("Embedder produced unexpected vector dimension")
            self.store.upsert_chunks(
                chunks=batch,
                embeddings=vectors,
                model_name=self.embedder.model_name,
                embedding_dim=self.embedder.embedding_dim,
            )
        return len(chunks)

    def search(self, query: str, top_k: int = DEFAULT_TOP_K) -> list[SearchResult]:
        if not query.strip():
            return []
        ensure_model_compatibility(self.store, self.embedder.model_name, self.embedder.embedding_dim)
        query_vec = self.embedder.embed([query])[0]
        return self.store.search(
            query_embedding=query_vec,
            top_k=top_k,
            model_name=self.embedder.model_name,
        )

    def retrieve(self, query: str, top_k: int = DEFAULT_TOP_K) -> list[RulePassage]:
        return [
            RulePassage(text=item.chunk.text, source_label=item.chunk.source_label, score=item.score)
            for item in self.search(query, top_k=top_k)
        ]


def open_rulebook_index(config: RetrievalConfig) -> RulebookIndex | None:
    """
    Retriever over an existing index, or None when retrieval is switched off.

    Neither a missing index file nor one built by another embedder is
    checked here; the first query reports it and the caller degrades.
    """
    config.validate()
    if not config.enabled:
        return None
    store = SqliteRuleStore(config.db_path)
    return RulebookIndex(store=store, embedder=build_embedder(config.embedder, config.model))


def parse_rulebook_text(text: str, *, doc_id: str, title: str, source: str | None = None) -> RuleDocument:
    """
    Split plain rulebook text into paragraphs labelled with their rule/section.

    ``RULE 12B`` / ``Rule No. 4`` headings set the rule label and reset the
    section; ``Section I`` headings refine it. Any heading text after the
    number becomes a paragraph of its own.
    """
    sections: list[RuleSection] = []
    rule: str | None = None
    section: str | None = None
    paragraph: list[str] = []

    def label() -> str | None:
        if rule and section:
            return f"Rule {rule}, Section {section}"
        if rule:
            return f"Rule {rule}"
        return None

    def flush() -> None:
        if paragraph:
            sections.append(RuleSection(text=" ".join(paragraph), rule_number=label()))
            paragraph.clear()

    for raw_line in text.splitlines():
        line = raw_line.strip().lstrip("#").strip()
        if not line:
            flush()
            continue
        rule_match = RULE_HEADING_PATTERN.match(line)
        section_match = SECTION_HEADING_PATTERN.match(line)
        if rule_match:
            flush()
            rule, section = rule_match.group(1).upper(), None
            heading = rule_match.group(2).strip()
        elif section_match:
            flush()
            section = section_match.group(1).upper()
            heading = section_match.group(2).strip()
        else:
            paragraph.append(line)
            continue
        if heading:
            sections.append(RuleSection(text=heading, rule_number=label()))

    flush()
    if not sections:
        raise ValueError(f"Rulebook {doc_id} has no usable text")
    return RuleDocument(doc_id=doc_id, title=title, source=source or title, sections=sections)


def load_rule_documents(input_dir: str | Path) -> list[RuleDocument]:
    path = Path(input_dir)
    if not path.is_dir():
        raise FileNotFoundError(f"Rulebook directory not found: {path}")
    documents: list[RuleDocument] = []
    for file in sorted(path.iterdir()):
        suffix = file.suffix.lower()
        if suffix not in RULEBOOK_SUFFIXES or not file.is_file():
            continue
        if suffix == ".json":
            data = json.loads(file.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"Rulebook file must be a JSON object: {file}")
            documents.append(RuleDocument.from_dict(data))
        else:
            title = file.stem.replace("_", " ").replace("-", " ").strip().title()
            documents.append(
                parse_rulebook_text(file.read_text(encoding="utf-8"), doc_id=file.stem, title=title)
            )
    return documents


def ensure_model_compatibility(store: SqliteRuleStore, model_name: str, embedding_dim: int) -> None:
    stored_model = store.get_metadata("model_name")
    stored_dim = store.get_metadata("embedding_dim")
    if stored_model and stored_model != model_name:
        raise RuleIndexMismatchError(
            f"Rule index built with model '{stored_model}', but current embedder is '{model_name}'. "
            "Use --recreate to rebuild the index."
        )
    if stored_dim and int(stored_dim) != embedding_dim:
        raise RuleIndexMismatchError(
            f"Rule index built with embedding dim {stored_dim}, but current embedder uses {embedding_dim}. "
            "Use --recreate to rebuild the index."
        )


def to_json(results: list[SearchResult]) -> str:
    payload = [
        {
            "score": round(item.score, 4),
            "doc_id": item.chunk.doc_id,
            "title": item.chunk.title,
            "source": item.chunk.source_label,
            "rule_numbers": item.chunk.rule_numbers,
            "text": item.chunk.text,
        }
        for item in results
    ]
    return json.dumps(payload, indent=2, ensure_ascii=True)
