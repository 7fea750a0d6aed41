from __future__ import annotations

import json
from pathlib import Path
import tempfile
import unittest
from unittest import mock

from foulreview.frames import (
    FrameStore,
    frame_filename,
    frame_index_from_name,
    frames_from_rows,
    is_safe_frame_name,
    load_frame_images,
    load_frames_json,
    sample_timestamp,
)
from foulreview.types import FrameRecord


class FrameRowsTest(unittest.TestCase):
    def test_rows_default_index_and_timestamp(self) -> None:
        frames = frames_from_rows([{"path": "a.jpg", "timestamp": 1}, {"path": "b.jpg"}])
        self.assertEqual([f.index for f in frames], [1, 2])
        self.assertEqual([f.timestamp_sec for f in frames], [1, 2])
        self.assertEqual(frames[1].source_ref, "b.jpg")

    def test_rows_sorted_by_index(self) -> None:
        frames = frames_from_rows([{"path": "b.jpg", "index": 2}, {"path": "a.jpg", "index": 1}])
        self.assertEqual([f.source_ref for f in frames], ["a.jpg", "b.jpg"])

    def test_invalid_rows(self) -> None:
        for rows in (
            [],
            None,
            {"path": "a.jpg"},
            ["a.jpg"],
            [{"path": ""}],
            [{"path": "a.jpg", "index": "one"}],
            [{"path": "a.jpg", "index": 0}],
            [{"path": "a.jpg", "index": 1}, {"path": "b.jpg", "index": 1}],
        ):
            with self.subTest(rows=rows):
                with self.assertRaises(ValueError):
                    frames_from_rows(rows)

    def test_load_frames_json_with_analysis_id(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "frames.json"
            path.write_text(
                json.dumps({"timestamp": 1700000000000, "frames": [{"index": 1, "path": "x.jpg", "timestamp": 1}]}),
                encoding="utf-8",
            )
            frames, analysis_id = load_frames_json(path)
            self.assertEqual(analysis_id, 1700000000000)
            self.assertEqual(frames[0].source_ref, "x.jpg")

            path.write_text(json.dumps([{"path": "y.jpg"}]), encoding="utf-8")
            frames, analysis_id = load_frames_json(path)
            self.assertIsNone(analysis_id)
            self.assertEqual(frames[0].index, 1)


class _FakeCapture:
    def __init__(self, frame_count: int, fps: float) -> None:
        self.remaining = frame_count
        self.frame_count = frame_count
        self.fps = fps

    def isOpened(self) -> bool:
        return True

    def get(self, prop: int) -> float:
        return self.fps if prop == _FakeCv2.CAP_PROP_FPS else float(self.frame_count)

    def read(self) -> tuple[bool, bytes | None]:
        if self.remaining <= 0:
            return False, None
        self.remaining -= 1
        return True, b"pixels"

    def release(self) -> None:
        pass


class _FakeCv2:
    CAP_PROP_FPS = 5
    CAP_PROP_FRAME_COUNT = 7

    def __init__(self, frame_count: int, fps: float) -> None:
        self.frame_count = frame_count
        self.fps = fps

    def VideoCapture(self, path: str) -> _FakeCapture:
        return _FakeCapture(self.frame_count, self.fps)

    def imwrite(self, path: str, frame: bytes) -> bool:
        Path(path).write_bytes(frame)
        return True


class FrameStoreTest(unittest.TestCase):
    def test_naming(self) -> None:
        self.assertEqual(frame_filename(42, 3), "frames_42_03.jpg")
        self.assertEqual(frame_index_from_name("frames_42_103.jpg"), 103)
        self.assertIsNone(frame_index_from_name("cover.jpg"))

    def test_frames_for_orders_numerically(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            for index in (2, 10, 1, 100):
                (root / f"frames_7_{index:02d}.jpg").write_bytes(b"img")
            (root / "frames_70_01.jpg").write_bytes(b"other clip")
            (root / "frames_7_notes.txt").write_text("ignored", encoding="utf-8")

            frames = FrameStore(root).frames_for(7)
            self.assertEqual(
                [Path(f.source_ref).name for f in frames],
                ["frames_7_01.jpg", "frames_7_02.jpg", "frames_7_10.jpg", "frames_7_100.jpg"],
            )
            self.assertEqual([f.index for f in frames], [1, 2, 3, 4])
            self.assertEqual([f.timestamp_sec for f in frames], [1, 2, 3, 4])
            self.assertEqual(FrameStore(root / "missing").frames_for(7), [])

    def test_resolve_rejects_traversal(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = FrameStore(tmp)
            (Path(tmp) / "frames_1_01.jpg").write_bytes(b"jpeg")
            self.assertEqual(store.read_bytes("frames_1_01.jpg"), b"jpeg")
            for name in ("../secret.jpg", "a/b.jpg", "a\\b.jpg", "..", ""):
                with self.subTest(name=name):
                    self.assertFalse(is_safe_frame_name(name))
                    with self.assertRaises(ValueError):
                        store.resolve(name)
            with self.assertRaises(FileNotFoundError):
                store.resolve("frames_1_02.jpg")

    def test_sample_timestamp_follows_rate(self) -> None:
        self.assertEqual([sample_timestamp(p) for p in (1, 2, 3)], [1, 2, 3])
        self.assertEqual([sample_timestamp(p, 2.0) for p in (1, 2, 3, 4, 5)], [1, 1, 2, 2, 3])
        self.assertEqual([sample_timestamp(p, 0.5) for p in (1, 2, 3)], [1, 3, 5])
        with self.assertRaises(ValueError):
            sample_timestamp(1, 0)

    def test_extract_stamps_frames_at_sample_rate(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            video = Path(tmp) / "clip.mp4"
            video.write_bytes(b"video")
            store = FrameStore(Path(tmp) / "frames")
            with mock.patch("foulreview.frames._ensure_cv2", return_value=_FakeCv2(frame_count=60, fps=10.0)):
                result = store.extract(video, 9, sample_fps=2.0)

            self.assertEqual(len(result.frames), 12)
            self.assertEqual([f.timestamp_sec for f in result.frames[:4]], [1, 1, 2, 2])
            self.assertEqual(result.frames[-1].timestamp_sec, 6)
            self.assertEqual(Path(result.frames[0].source_ref).name, "frames_9_01.jpg")
            self.assertFalse(video.exists())
            self.assertEqual([f.timestamp_sec for f in store.frames_for(9, sample_fps=2.0)][:3], [1, 1, 2])

    def test_failed_extraction_still_removes_video(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            video = Path(tmp) / "clip.mp4"
            video.write_bytes(b"not a video")
            store = FrameStore(Path(tmp) / "frames")
            with self.assertRaises((ImportError, RuntimeError)):
                store.extract(video, 5)
            self.assertFalse(video.exists())

            video.write_bytes(b"not a video")
            with self.assertRaises((ImportError, RuntimeError)):
                store.extract(video, 5, keep_video=True)
            self.assertTrue(video.exists())

    def test_load_frame_images_keeps_order(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            frames = []
            for index in range(1, 6):
                path = Path(tmp) / frame_filename(1, index)
                path.write_bytes(f"frame-{index}".encode("ascii"))
                frames.append(FrameRecord(index=index, source_ref=str(path), timestamp_sec=index))
            images = load_frame_images(frames, max_workers=3)
            self.assertEqual(images, [f"frame-{i}".encode("ascii") for i in range(1, 6)])
            self.assertEqual(load_frame_images([]), [])


if __name__ == "__main__":
    unittest.main()
