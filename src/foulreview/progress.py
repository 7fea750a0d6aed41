from __future__ import annotations

import sys


def log_progress(enabled: bool, message: str) -> None:
    if not enabled:
        return
    print(f"[foulreview] {message}", file=sys.stderr, flush=True)
