from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from pathlib import Path
from typing import Any, Mapping

from .types import AnalysisAggregate, FoulDetermination, FrameAnalysis, SequenceSummary


ANALYSIS_TYPE = "basketball_foul_analysis"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def validate_analysis_id(analysis_id: Any) -> int:
    if isinstance(analysis_id, bool):
        raise ValueError("Analysis ID is required")
    try:
        value = int(analysis_id)
    except (TypeError, ValueError) as exc:
        raise ValueError("Analysis ID is required") from exc
    if value <= 0:
        raise ValueError(f"Analysis ID must be a positive integer, got {analysis_id!r}")
    return value


class ArtifactStore:
    """
    JSON artifacts keyed by analysis id.

    ``analysis_<id>.json`` holds the frame analyses and summary,
    ``foul_<id>.json`` the final determination. Writing the same id twice
    replaces the earlier file.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def analysis_path(self, analysis_id: int) -> Path:
        return self.root / f"analysis_{validate_analysis_id(analysis_id)}.json"

    def determination_path(self, analysis_id: int) -> Path:
        return self.root / f"foul_{validate_analysis_id(analysis_id)}.json"

    def _write(self, path: Path, payload: Mapping[str, Any]) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=True), encoding="utf-8")
        os.replace(tmp, path)
        return path

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Stored artifact is not a JSON object: {path}")
        return payload

    def save_analysis(
        self,
        analysis_id: int,
        analyses: list[FrameAnalysis],
        summary: AnalysisAggregate,
        sequence_summary: SequenceSummary | None,
        *,
        frame_quality: Mapping[int, str] | None = None,
    ) -> Path:
        payload: dict[str, Any] = {
            "timestamp": analysis_id,
            "frameCount": len(analyses),
            "analyses": [item.to_dict() for item in analyses],
            "createdAt": _utc_now(),
            "type": ANALYSIS_TYPE,
            "summary": summary.to_dict(),
            "sequenceAnalysis": sequence_summary.to_dict() if sequence_summary else None,
            "fallbackMode": summary.fallback_mode,
        }
        if summary.fallback_mode and frame_quality:
            payload["frameQuality"] = {str(key): value for key, value in sorted(frame_quality.items())}
        return self._write(self.analysis_path(analysis_id), payload)

    def save_determination(
        self,
        analysis_id: int,
        determination: FoulDetermination,
        *,
        determination_status: str,
        retrieval_status: str,
    ) -> Path:
        payload = {
            "analysisId": analysis_id,
            **determination.to_dict(),
            "createdAt": _utc_now(),
            "determinationStatus": determination_status,
            "retrievalStatus": retrieval_status,
        }
        return self._write(self.determination_path(analysis_id), payload)

    def load_analysis(self, analysis_id: int) -> dict[str, Any] | None:
        return self._read(self.analysis_path(analysis_id))

    def load_determination(self, analysis_id: int) -> dict[str, Any] | None:
        return self._read(self.determination_path(analysis_id))


def analyses_from_artifact(payload: Mapping[str, Any]) -> list[FrameAnalysis]:
    rows = payload.get("analyses")
    if not isinstance(rows, list) or not rows:
        raise ValueError("Stored analysis has no frame analyses")
    return [FrameAnalysis.from_dict(row) for row in rows if isinstance(row, Mapping)]
