from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import numpy as np

from .types import RuleChunk


@dataclass(slots=True)
class SearchResult:
    score: float
    chunk: RuleChunk


class SqliteRuleStore:
    """Rulebook passages and their embeddings in a single SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)

    def exists(self) -> bool:
        return self.db_path.is_file()

    def initialize(self, recreate: bool = False) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            if recreate:
                conn.execute("DROP TABLE IF EXISTS rule_chunks;")
                conn.execute("DROP TABLE IF EXISTS index_metadata;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rule_chunks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    doc_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    source TEXT NOT NULL,
                    text TEXT NOT NULL,
                    rule_numbers_json TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    embedding_dim INTEGER NOT NULL,
                    model_name TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_rule_chunks_doc ON rule_chunks(doc_id);")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS index_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        if not self.exists():
            raise FileNotFoundError(f"Rule index not found: {self.db_path}")
        return sqlite3.connect(self.db_path)

    def set_metadata(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO index_metadata(key, value) VALUES(?, ?)",
                (key, value),
            )
            conn.commit()

    def get_metadata(self, key: str) -> str | None:
        with self._connect() as conn:
            try:
                row = conn.execute("SELECT value FROM index_metadata WHERE key = ?", (key,)).fetchone()
            except sqlite3.OperationalError:
                return None
            return row[0] if row else None

    def delete_document(self, doc_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM rule_chunks WHERE doc_id = ?", (doc_id,))
            conn.commit()
            return int(cursor.rowcount or 0)

    def count(self) -> int:
        with self._connect() as conn:
            try:
                row = conn.execute("SELECT COUNT(*) FROM rule_chunks").fetchone()
            except sqlite3.OperationalError:
                return 0
            return int(row[0]) if row else 0

    def upsert_chunks(
        self,
        chunks: Iterable[RuleChunk],
        embeddings: np.ndarray,
        model_name: str,
        embedding_dim: int,
    ) -> None:
        with self._connect() as conn:
            rows = []
            for chunk, vector in zip(chunks, embeddings, strict=True):
                rows.append(
                    (
                        chunk.doc_id,
                        chunk.title,
                        chunk.source,
                        chunk.text,
                        json.dumps(chunk.rule_numbers, ensure_ascii=True),
                        np.asarray(vector, dtype=np.float32).tobytes(),
                        embedding_dim,
                        model_name,
                    )
                )
            conn.executemany(
                """
                INSERT INTO rule_chunks(
                    doc_id, title, source, text, rule_numbers_json,
                    embedding, embedding_dim, model_name
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?);
                """,
                rows,
            )
            conn.commit()

    def search(
        self,
        query_embedding: np.ndarray,
        top_k: int = 5,
        model_name: str | None = None,
    ) -> list[SearchResult]:
        query = """
            SELECT
                doc_id, title, source, text, rule_numbers_json,
                embedding, embedding_dim, model_name
            FROM rule_chunks
            WHERE 1=1
        """
        params: list[object] = []
        if model_name:
            query += " AND model_name = ?"
            params.append(model_name)

        with self._connect() as conn:
            try:
                rows = conn.execute(query, params).fetchall()
            except sqlite3.OperationalError as exc:
                raise LookupError(f"Rule index at {self.db_path} is not initialized") from exc

        if not rows:
            return []

        embeddings = np.vstack(
            [np.frombuffer(row[5], dtype=np.float32, count=row[6]) for row in rows]
        ).astype(np.float32)
        scores = embeddings @ query_embedding.astype(np.float32)
        top_idx = np.argsort(-scores, kind="stable")[:top_k]

        results: list[SearchResult] = []
        for idx in top_idx:
            row = rows[int(idx)]
            chunk = RuleChunk(
                doc_id=row[0],
                title=row[1],
                source=row[2],
                text=row[3],
                rule_numbers=list(json.loads(row[4])),
            )
            results.append(SearchResult(score=float(scores[idx]), chunk=chunk))
        return results
