from __future__ import annotations

import argparse
from dataclasses import dataclass, field
import json
from pathlib import Path
from typing import Any, Mapping

from .knowledge import DEFAULT_MAX_TERMS, DEFAULT_TOP_K
from .rulebook import DEFAULT_RULES_DB, RetrievalConfig
from .vlm import GenerationConfig


DEFAULT_WORKSPACE = "data/review"
DEFAULT_SAMPLE_FPS = 1.0
DEFAULT_FRAME_WORKERS = 4


@dataclass(slots=True)
class ReviewConfig:
    workspace_dir: str = DEFAULT_WORKSPACE
    sample_fps: float = DEFAULT_SAMPLE_FPS
    frame_load_workers: int = DEFAULT_FRAME_WORKERS
    max_query_terms: int = DEFAULT_MAX_TERMS
    log_progress: bool = True
    generation: GenerationConfig = field(default_factory=GenerationConfig.from_env)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    @property
    def frames_dir(self) -> Path:
        return Path(self.workspace_dir) / "frames"

    @property
    def analyses_dir(self) -> Path:
        return Path(self.workspace_dir) / "analyses"

    def validate(self) -> None:
        if not str(self.workspace_dir).strip():
            raise ValueError("workspace_dir cannot be empty")
        if self.sample_fps <= 0:
            raise ValueError("sample_fps must be > 0")
        if self.frame_load_workers <= 0:
            raise ValueError("frame_load_workers must be > 0")
        if self.max_query_terms <= 0:
            raise ValueError("max_query_terms must be > 0")
        self.generation.validate()
        self.retrieval.validate()


def load_cli_config(path: str | Path | None) -> dict[str, Any]:
    """
    Read a JSON file of CLI defaults; keys use flag names with ``-`` or ``_``.

    A top-level ``review`` object is used when present.
    """
    if not path:
        return {}
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("CLI config must be a JSON object")
    payload = raw.get("review")
    if isinstance(payload, dict):
        raw = payload
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            continue
        out[key.strip().replace("-", "_")] = value
    return out


def apply_config_defaults(
    *,
    args: argparse.Namespace,
    parser: argparse.ArgumentParser,
    config: Mapping[str, Any],
) -> argparse.Namespace:
    """Fill every option still at its parser default from ``config``."""
    if not config:
        return args
    defaults: dict[str, Any] = {}
    for action in parser._actions:
        dest = getattr(action, "dest", None)
        if dest:
            defaults[dest] = action.default
    for dest, value in config.items():
        if not hasattr(args, dest):
            continue
        if getattr(args, dest) == defaults.get(dest):
            setattr(args, dest, value)
    return args


def review_config_from_args(args: argparse.Namespace) -> ReviewConfig:
    generation = GenerationConfig.from_env()
    if getattr(args, "llm_endpoint", None):
        generation.endpoint = args.llm_endpoint
    if getattr(args, "llm_model", None):
        generation.model = args.llm_model
    if getattr(args, "llm_api_key", None):
        generation.api_key = args.llm_api_key
    if getattr(args, "llm_max_tokens", None) is not None:
        generation.max_tokens = int(args.llm_max_tokens)
    if getattr(args, "llm_timeout_sec", None) is not None:
        generation.timeout_sec = float(args.llm_timeout_sec)
    if getattr(args, "llm_temperature", None) is not None:
        generation.temperature = float(args.llm_temperature)

    retrieval = RetrievalConfig(
        db_path=str(getattr(args, "db", DEFAULT_RULES_DB)),
        embedder=str(getattr(args, "embedder", "hashing")),
        model=getattr(args, "model", None),
        top_k=int(getattr(args, "top_k", DEFAULT_TOP_K)),
        enabled=not bool(getattr(args, "no_rules", False)),
    )
    config = ReviewConfig(
        workspace_dir=str(getattr(args, "workspace", DEFAULT_WORKSPACE)),
        sample_fps=float(getattr(args, "sample_fps", DEFAULT_SAMPLE_FPS)),
        frame_load_workers=int(getattr(args, "frame_workers", DEFAULT_FRAME_WORKERS)),
        max_query_terms=int(getattr(args, "max_terms", DEFAULT_MAX_TERMS)),
        log_progress=not bool(getattr(args, "quiet", False)),
        generation=generation,
        retrieval=retrieval,
    )
    config.validate()
    return config
