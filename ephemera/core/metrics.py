from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "uploads": 0,
            "uploads_rejected": 0,
            "downloads": 0,
            "downloads_refused": 0,
            "bytes_uploaded": 0,
            "blobs_reaped": 0,
            "records_reaped": 0,
            "orphans_reaped": 0,
            "sweeps": 0,
        }

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_rejected_upload(self) -> None:
        with self._lock:
            self._counters["uploads_rejected"] += 1

    def record_download(self) -> None:
        with self._lock:
            self._counters["downloads"] += 1

    def record_refused_download(self) -> None:
        with self._lock:
            self._counters["downloads_refused"] += 1

    def record_sweep(self, blobs: int, records: int, orphans: int = 0) -> None:
        with self._lock:
            self._counters["sweeps"] += 1
            self._counters["blobs_reaped"] += max(blobs, 0)
            self._counters["records_reaped"] += max(records, 0)
            self._counters["orphans_reaped"] += max(orphans, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
