from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from .artifacts import ArtifactStore, validate_analysis_id
from .config import (
    DEFAULT_FRAME_WORKERS,
    DEFAULT_SAMPLE_FPS,
    DEFAULT_WORKSPACE,
    apply_config_defaults,
    load_cli_config,
    review_config_from_args,
)
from .embedders import EMBEDDER_KINDS, build_embedder
from .frames import FrameStore, load_frames_json
from .knowledge import DEFAULT_MAX_TERMS, DEFAULT_TOP_K
from .pipeline import FoulReviewPipeline, new_analysis_id
from .progress import log_progress
from .rulebook import (
    DEFAULT_RULES_DB,
    RetrievalConfig,
    RulebookIndex,
    ensure_model_compatibility,
    load_rule_documents,
    open_rulebook_index,
    to_json,
)
from .store import SqliteRuleStore


DEFAULT_CLI_CONFIG_PATH = Path("config/foul_review.defaults.json")


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="Optional JSON config with default CLI values (CLI flags still take priority)",
    )
    parser.add_argument("--quiet", action="store_true", help="Suppress progress logs on stderr")


def _add_rules_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--db", default=DEFAULT_RULES_DB, help="SQLite rule index path")
    parser.add_argument("--embedder", default="hashing", choices=list(EMBEDDER_KINDS))
    parser.add_argument("--model", default=None, help="Embedder model name if applicable")
    parser.add_argument("--top-k", type=int, default=DEFAULT_TOP_K)


def _add_review_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--workspace", default=DEFAULT_WORKSPACE, help="Directory holding frames/ and analyses/")
    parser.add_argument("--llm-endpoint", default=None, help="OpenAI-compatible chat completions URL")
    parser.add_argument("--llm-model", default=None, help="Vision-language model name")
    parser.add_argument("--llm-api-key", default=None, help="Bearer token for the model endpoint")
    parser.add_argument("--llm-max-tokens", type=int, default=None)
    parser.add_argument("--llm-timeout-sec", type=float, default=None)
    parser.add_argument("--llm-temperature", type=float, default=None)
    parser.add_argument(
        "--frame-workers", type=int, default=DEFAULT_FRAME_WORKERS, help="Threads used to read frame files"
    )
    parser.add_argument("--max-terms", type=int, default=DEFAULT_MAX_TERMS, help="Cap on rule lookup terms")
    parser.add_argument("--no-rules", action="store_true", help="Skip the rulebook lookup")
    _add_rules_options(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Basketball foul review from video frames")
    subparsers = parser.add_subparsers(dest="command", required=True)

    index = subparsers.add_parser("index-rules", help="Index rulebook files into the rule store")
    _add_common(index)
    index.add_argument("--rules-dir", default="rules", help="Directory with .json/.txt/.md rulebook files")
    index.add_argument("--batch-size", type=int, default=64)
    index.add_argument("--recreate", action="store_true", help="Drop and rebuild the index")
    _add_rules_options(index)

    search = subparsers.add_parser("search-rules", help="Search the rule store")
    _add_common(search)
    search.add_argument("--query", default=None, help="Natural-language query")
    _add_rules_options(search)

    extract = subparsers.add_parser("extract", help="Sample a video into numbered frames")
    _add_common(extract)
    extract.add_argument("--video", default=None, help="Input video path")
    extract.add_argument("--workspace", default=DEFAULT_WORKSPACE, help="Directory holding frames/ and analyses/")
    extract.add_argument("--analysis-id", type=int, default=None, help="Defaults to the current time in ms")
    extract.add_argument("--sample-fps", type=float, default=DEFAULT_SAMPLE_FPS)
    extract.add_argument("--keep-video", action="store_true", help="Do not delete the source video")

    analyze = subparsers.add_parser("analyze", help="Analyze frames and rule on the play")
    _add_common(analyze)
    source = analyze.add_mutually_exclusive_group()
    source.add_argument("--video", default=None, help="Extract frames from this video first")
    source.add_argument("--frames-json", default=None, help="JSON frame list (as printed by `extract`)")
    analyze.add_argument("--analysis-id", type=int, default=None, help="Defaults to the current time in ms")
    analyze.add_argument("--sample-fps", type=float, default=DEFAULT_SAMPLE_FPS)
    analyze.add_argument("--keep-video", action="store_true", help="Do not delete the source video")
    _add_review_options(analyze)

    determine = subparsers.add_parser("determine", help="Re-run the ruling for a stored analysis")
    _add_common(determine)
    determine.add_argument("--analysis-id", type=int, default=None, help="Stored analysis id")
    _add_review_options(determine)

    show = subparsers.add_parser("show", help="Print the stored artifacts of an analysis")
    _add_common(show)
    show.add_argument("--analysis-id", type=int, default=None, help="Stored analysis id")
    show.add_argument("--workspace", default=DEFAULT_WORKSPACE, help="Directory holding frames/ and analyses/")

    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True))


def cmd_index_rules(args: argparse.Namespace) -> int:
    documents = load_rule_documents(args.rules_dir)
    embedder = build_embedder(args.embedder, args.model)
    store = SqliteRuleStore(args.db)
    store.initialize(recreate=args.recreate)
    ensure_model_compatibility(store, embedder.model_name, embedder.embedding_dim)

    index = RulebookIndex(store=store, embedder=embedder)
    count = index.index_documents(documents, batch_size=args.batch_size)
    print(f"Indexed {count} rule chunks from {len(documents)} documents into {args.db} using {embedder.model_name}")
    return 0


def cmd_search_rules(args: argparse.Namespace) -> int:
    if not args.query:
        raise ValueError("Missing required --query (or set `query` in config file)")
    index = open_rulebook_index(
        RetrievalConfig(db_path=args.db, embedder=args.embedder, model=args.model, top_k=args.top_k)
    )
    if index is None:
        raise ValueError("Rule retrieval is disabled")
    print(to_json(index.search(args.query, top_k=args.top_k)))
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    if not args.video:
        raise ValueError("Missing required --video (or set `video` in config file)")
    analysis_id = new_analysis_id() if args.analysis_id is None else validate_analysis_id(args.analysis_id)
    frames_dir = Path(args.workspace) / "frames"
    log_progress(not args.quiet, f"Extracting frames from {args.video} at {args.sample_fps} fps")
    result = FrameStore(frames_dir).extract(
        args.video,
        analysis_id,
        sample_fps=args.sample_fps,
        keep_video=args.keep_video,
    )
    log_progress(not args.quiet, f"Extracted {len(result.frames)} frames into {frames_dir}")
    _print_json(result.to_dict())
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    config = review_config_from_args(args)
    analysis_id = args.analysis_id
    if args.video:
        if analysis_id is None:
            analysis_id = new_analysis_id()
        extraction = FrameStore(config.frames_dir).extract(
            args.video,
            validate_analysis_id(analysis_id),
            sample_fps=config.sample_fps,
            keep_video=args.keep_video,
        )
        frames = extraction.frames
        log_progress(config.log_progress, f"Extracted {len(frames)} frames from {args.video}")
    elif args.frames_json:
        frames, stored_id = load_frames_json(args.frames_json)
        if analysis_id is None:
            analysis_id = stored_id
    else:
        raise ValueError("Provide one of --video or --frames-json")

    pipeline = FoulReviewPipeline.from_config(config)
    result = pipeline.review(frames, analysis_id=analysis_id)
    _print_json(result.to_dict())
    return 0


def cmd_determine(args: argparse.Namespace) -> int:
    if args.analysis_id is None:
        raise ValueError("Analysis ID is required")
    config = review_config_from_args(args)
    pipeline = FoulReviewPipeline.from_config(config)
    result = pipeline.determine(args.analysis_id)
    if result is None:
        _print_json({"success": False, "error": f"Analysis {args.analysis_id} not found"})
        return 1
    _print_json(result.to_dict())
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    if args.analysis_id is None:
        raise ValueError("Analysis ID is required")
    store = ArtifactStore(Path(args.workspace) / "analyses")
    analysis = store.load_analysis(args.analysis_id)
    if analysis is None:
        _print_json({"success": False, "error": f"Analysis {args.analysis_id} not found"})
        return 1
    _print_json(
        {
            "success": True,
            "analysis": analysis,
            "foulDetermination": store.load_determination(args.analysis_id),
        }
    )
    return 0


COMMANDS = {
    "index-rules": cmd_index_rules,
    "search-rules": cmd_search_rules,
    "extract": cmd_extract,
    "analyze": cmd_analyze,
    "determine": cmd_determine,
    "show": cmd_show,
}


def _subparser(parser: argparse.ArgumentParser, command: str) -> argparse.ArgumentParser:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action.choices[command]
    raise ValueError(f"Unsupported command: {command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config_path = getattr(args, "config", None)
    if not config_path and DEFAULT_CLI_CONFIG_PATH.exists():
        config_path = str(DEFAULT_CLI_CONFIG_PATH)
    cli_config = load_cli_config(config_path)
    args = apply_config_defaults(args=args, parser=_subparser(parser, args.command), config=cli_config)

    handler = COMMANDS.get(args.command)
    if handler is None:
        raise ValueError(f"Unsupported command: {args.command}")
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
