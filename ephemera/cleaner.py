from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from ephemera.core.exceptions import BlobNotFound, ShareError
from ephemera.core.metrics import MetricsStore
from ephemera.core.rate_limit import RateLimiter
from ephemera.models import FileRecord, utcnow
from ephemera.repository.base import FileRepository
from ephemera.storage import LocalBlobStore

logger = logging.getLogger("ephemera.cleaner")


@dataclass
class SweepReport:
    scanned: int = 0
    blobs_deleted: int = 0
    records_deleted: int = 0
    retained_exhausted: int = 0
    orphans_deleted: int = 0


class Reaper:
    """Removes expired and exhausted files, blob first, then metadata.

    Every deletion is idempotent, so overlapping sweeps (a manual trigger
    racing the timer) may process the same candidate twice without harm.
    """

    def __init__(
        self,
        repository: FileRepository,
        blob_store: LocalBlobStore,
        *,
        batch_limit: int = 5000,
        retain_exhausted: bool = False,
        reconcile_orphans: bool = True,
        orphan_grace_seconds: float = 3600,
        metrics: Optional[MetricsStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.blob_store = blob_store
        self.batch_limit = batch_limit
        self.retain_exhausted = retain_exhausted
        self.reconcile_orphans = reconcile_orphans
        self.orphan_grace_seconds = orphan_grace_seconds
        self.metrics = metrics
        self._clock = clock

    def delete_file(self, record: FileRecord, *, keep_record: bool = False) -> tuple[bool, bool]:
        """Delete one file's blob and (unless ``keep_record``) its metadata.

        A kept record is flagged once its blob is gone so later sweeps skip
        it. Failures are logged and reported as ``False``; a missing blob or
        record is not a failure.
        """
        blob_deleted = False
        try:
            blob_deleted = self.blob_store.delete(record.stored_name)
        except OSError as exc:
            logger.error(
                "event=reaper_blob_delete_failed file_id=%s stored_name=%s error=%s",
                record.id,
                record.stored_name,
                exc,
            )
            if keep_record:
                return False, False

        if keep_record:
            try:
                self.repository.mark_blob_reaped(record.id)
            except ShareError as exc:
                logger.error("event=reaper_mark_failed file_id=%s error=%s", record.id, exc)
            return blob_deleted, False

        try:
            self.repository.delete(record.id)
        except ShareError as exc:
            logger.error("event=reaper_record_delete_failed file_id=%s error=%s", record.id, exc)
            return blob_deleted, False
        return blob_deleted, True

    def sweep(self) -> SweepReport:
        started = utcnow()
        now = self._clock()
        report = SweepReport()
        candidates = self.repository.find_expired_or_exhausted(self.batch_limit, now=now)
        report.scanned = len(candidates)

        for record in candidates:
            keep_record = (
                self.retain_exhausted and record.is_exhausted and not record.is_expired(now)
            )
            blob_deleted, record_deleted = self.delete_file(record, keep_record=keep_record)
            report.blobs_deleted += int(blob_deleted)
            report.records_deleted += int(record_deleted)
            report.retained_exhausted += int(keep_record)

        if self.reconcile_orphans:
            try:
                report.orphans_deleted = self.reap_orphans(self.orphan_grace_seconds)
            except ShareError as exc:
                logger.error("event=orphan_reconcile_failed error=%s", exc)

        if self.metrics is not None:
            self.metrics.record_sweep(
                report.blobs_deleted, report.records_deleted, report.orphans_deleted
            )
        elapsed_ms = int((utcnow() - started).total_seconds() * 1000)
        logger.info(
            "event=cleanup_complete scanned=%d blobs_deleted=%d records_deleted=%d retained=%d orphans_deleted=%d ms=%d",
            report.scanned,
            report.blobs_deleted,
            report.records_deleted,
            report.retained_exhausted,
            report.orphans_deleted,
            elapsed_ms,
        )
        return report

    def reap_orphans(self, grace_seconds: float, keep: Iterable[str] = ()) -> int:
        """Delete blobs no record references, skipping ones younger than ``grace_seconds``."""
        referenced = self.repository.list_stored_names()
        keep = set(keep)
        removed = 0
        for name in self.blob_store.list_names():
            if name in referenced or name in keep:
                continue
            try:
                if self.blob_store.age_seconds(name) < grace_seconds:
                    continue  # may be an upload still being written
            except BlobNotFound:
                continue
            try:
                if self.blob_store.delete(name):
                    removed += 1
                    logger.info("event=orphan_blob_deleted stored_name=%s", name)
            except OSError as exc:
                logger.error("event=orphan_delete_failed stored_name=%s error=%s", name, exc)
        return removed


_scheduler: Optional[BackgroundScheduler] = None
_scheduler_lock = threading.Lock()


def start_cleaner(
    reaper: Optional[Reaper],
    interval_seconds: int,
    limiters: Iterable[RateLimiter] = (),
    limiter_sweep_seconds: int = 60,
) -> BackgroundScheduler:
    """Start the process-wide background scheduler; a second call returns the running one."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is not None and _scheduler.running:
            return _scheduler

        scheduler = BackgroundScheduler(daemon=True)

        def _job():
            try:
                reaper.sweep()
            except ShareError as e:
                logger.error("Store error in cleanup job: %s", e)
            except Exception as e:
                # Keep the scheduler alive; the next tick retries.
                logger.exception("Unexpected error in cleanup job: %s", e)

        if reaper is not None:
            scheduler.add_job(
                _job,
                "interval",
                seconds=interval_seconds,
                id="reaper",
                max_instances=1,
                coalesce=True,
            )

        limiters = list(limiters)
        if limiters:
            def _sweep_limiters():
                dropped = sum(limiter.sweep() for limiter in limiters)
                if dropped:
                    logger.debug("event=rate_limit_sweep dropped=%d", dropped)

            scheduler.add_job(
                _sweep_limiters,
                "interval",
                seconds=limiter_sweep_seconds,
                id="rate_limit_sweep",
                coalesce=True,
            )

        scheduler.start()
        _scheduler = scheduler
        logger.info(
            "event=cleaner_started reaper=%s interval_seconds=%s limiters=%d",
            reaper is not None,
            interval_seconds,
            len(limiters),
        )
        return scheduler


def stop_cleaner() -> None:
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            return
        if _scheduler.running:
            _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("event=cleaner_stopped")
