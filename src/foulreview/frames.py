from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import json
from pathlib import Path
import re
from typing import Any, Sequence

from .types import FrameRecord


FRAME_PREFIX_TEMPLATE = "frames_{analysis_id}_"
FRAME_SUFFIX = ".jpg"
IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp"}
_FRAME_INDEX_PATTERN = re.compile(r"_(\d+)\.[A-Za-z]+$")


def _ensure_cv2() -> Any:
    try:
        import cv2  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "opencv-python-headless is required for frame extraction. "
            "Install with: pip install -e '.[video]'"
        ) from exc
    return cv2


def frame_filename(analysis_id: int, index: int) -> str:
    return f"{FRAME_PREFIX_TEMPLATE.format(analysis_id=analysis_id)}{index:02d}{FRAME_SUFFIX}"


def sample_timestamp(position: int, sample_fps: float = 1.0) -> int:
    """Whole second (1-based) of the clip in which sampled frame ``position`` falls."""
    if sample_fps <= 0:
        raise ValueError("sample_fps must be > 0")
    return int((position - 1) / sample_fps) + 1


def is_safe_frame_name(name: str) -> bool:
    if not name or name in {".", ".."}:
        return False
    return ".." not in name and "/" not in name and "\\" not in name and "\x00" not in name


@dataclass(slots=True)
class ExtractionResult:
    analysis_id: int
    frames: list[FrameRecord]
    source_fps: float
    duration_sec: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysisId": self.analysis_id,
            "timestamp": self.analysis_id,
            "frames": [frame.to_dict() for frame in self.frames],
            "sourceFps": round(self.source_fps, 3),
            "durationSec": round(self.duration_sec, 3),
        }


class FrameStore:
    """
    Directory of extracted frames, addressed by filename.

    Frames of one clip share the ``frames_<analysisId>_`` prefix and are
    numbered from 1 in playback order.
    """

    def __init__(self, frames_dir: str | Path) -> None:
        self.frames_dir = Path(frames_dir)

    def resolve(self, name: str) -> Path:
        if not is_safe_frame_name(name):
            raise ValueError(f"Invalid frame name: {name!r}")
        path = self.frames_dir / name
        if not path.is_file():
            raise FileNotFoundError(f"Frame not found: {name}")
        return path

    def read_bytes(self, name: str) -> bytes:
        return self.resolve(name).read_bytes()

    def frames_for(self, analysis_id: int, sample_fps: float = 1.0) -> list[FrameRecord]:
        prefix = FRAME_PREFIX_TEMPLATE.format(analysis_id=analysis_id)
        if not self.frames_dir.exists():
            return []
        paths = sorted(
            (
                path
                for path in self.frames_dir.iterdir()
                if path.name.startswith(prefix) and path.suffix.lower() in IMAGE_SUFFIXES
            ),
            key=lambda path: (frame_index_from_name(path.name) or 0, path.name),
        )
        records: list[FrameRecord] = []
        for position, path in enumerate(paths, start=1):
            records.append(
                FrameRecord(
                    index=position,
                    source_ref=str(path),
                    timestamp_sec=sample_timestamp(position, sample_fps),
                )
            )
        return records

    def extract(
        self,
        video_path: str | Path,
        analysis_id: int,
        *,
        sample_fps: float = 1.0,
        keep_video: bool = False,
    ) -> ExtractionResult:
        """
        Sample ``video_path`` at ``sample_fps`` into this store.

        The source video is deleted afterwards unless ``keep_video`` is set,
        including when extraction fails.
        """
        path = Path(video_path)
        try:
            return self._extract(path, analysis_id, sample_fps)
        finally:
            if not keep_video:
                path.unlink(missing_ok=True)

    def _extract(self, path: Path, analysis_id: int, sample_fps: float) -> ExtractionResult:
        cv2 = _ensure_cv2()
        if not path.exists():
            raise FileNotFoundError(f"Video not found: {path}")
        if sample_fps <= 0:
            raise ValueError("sample_fps must be > 0")
        self.frames_dir.mkdir(parents=True, exist_ok=True)

        cap = cv2.VideoCapture(str(path))
        if not cap.isOpened():
            raise RuntimeError(f"Could not open video: {path}")

        src_fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        if src_fps <= 0:
            src_fps = 30.0
        frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        duration_sec = (frame_count / src_fps) if frame_count > 0 else 0.0

        sample_step = max(1, int(round(src_fps / sample_fps)))
        written: list[Path] = []
        idx = 0
        try:
            while True:
                ok, frame = cap.read()
                if not ok:
                    break
                if idx % sample_step == 0:
                    image_path = self.frames_dir / frame_filename(analysis_id, len(written) + 1)
                    if not cv2.imwrite(str(image_path), frame):
                        raise RuntimeError(f"Could not write frame: {image_path}")
                    written.append(image_path)
                idx += 1
        except Exception:
            for image_path in written:
                image_path.unlink(missing_ok=True)
            raise
        finally:
            cap.release()

        if not written:
            raise RuntimeError(f"No frames could be decoded from video: {path}")

        frames = [
            FrameRecord(
                index=position,
                source_ref=str(image_path),
                timestamp_sec=sample_timestamp(position, sample_fps),
            )
            for position, image_path in enumerate(written, start=1)
        ]
        return ExtractionResult(
            analysis_id=analysis_id,
            frames=frames,
            source_fps=src_fps,
            duration_sec=duration_sec,
        )


def load_frame_images(frames: Sequence[FrameRecord], max_workers: int = 4) -> list[bytes]:
    """Read frame bytes concurrently; the result follows ``frames`` order."""

    def _read(frame: FrameRecord) -> bytes:
        return Path(frame.source_ref).read_bytes()

    if not frames:
        return []
    workers = max(1, min(int(max_workers), len(frames)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_read, frames))


def frames_from_rows(rows: Any) -> list[FrameRecord]:
    """
    Validate a caller-supplied frame list (``[{"path": ..., "timestamp": ...}]``).
    """
    if not isinstance(rows, list) or not rows:
        raise ValueError("Invalid frames data: expected a non-empty list of frames")
    frames: list[FrameRecord] = []
    for position, row in enumerate(rows, start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Invalid frames data: entry {position} is not an object")
        try:
            frames.append(FrameRecord.from_dict(row, position=position))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid frames data: entry {position}: {exc}") from exc
    indices = [frame.index for frame in frames]
    if len(set(indices)) != len(indices):
        raise ValueError("Invalid frames data: duplicate frame indices")
    return sorted(frames, key=lambda frame: frame.index)


def load_frames_json(path: str | Path) -> tuple[list[FrameRecord], int | None]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    analysis_id: int | None = None
    if isinstance(raw, dict):
        if raw.get("timestamp") is not None:
            analysis_id = int(raw["timestamp"])
        raw = raw.get("frames")
    return frames_from_rows(raw), analysis_id


def frame_index_from_name(name: str) -> int | None:
    match = _FRAME_INDEX_PATTERN.search(name)
    return int(match.group(1)) if match else None
