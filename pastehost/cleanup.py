import threading
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .logs import get_logger
from .pastes import PasteManager
from .shortlinks import ShortlinkManager


logger = get_logger("cleanup")

IDLE = "idle"
RUNNING = "running"
JOB_ID = "cleanup_expired_content"


@dataclass
class CleanupResult:
    pastes_removed: int = 0
    shortlinks_removed: int = 0
    failures: int = 0
    skipped: bool = False

    @property
    def removed(self) -> int:
        return self.pastes_removed + self.shortlinks_removed


class CleanupScheduler:
    """Periodic sweep of expired pastes and shortlinks.

    Sweeps go through the same ``purge`` calls as manual deletes. A tick that
    fires while a sweep is still running is skipped rather than queued.
    """

    def __init__(
        self,
        pastes: PasteManager,
        shortlinks: ShortlinkManager,
        interval_seconds: int = 60,
    ) -> None:
        self.pastes = pastes
        self.shortlinks = shortlinks
        self.interval_seconds = max(1, int(interval_seconds))
        self._run_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self.last_result: Optional[CleanupResult] = None

    @property
    def state(self) -> str:
        return RUNNING if self._run_lock.locked() else IDLE

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_once(self) -> CleanupResult:
        if not self._run_lock.acquire(blocking=False):
            logger.info("cleanup_skipped reason=already_running")
            return CleanupResult(skipped=True)
        try:
            result = self._sweep()
        finally:
            self._run_lock.release()
        self.last_result = result
        if result.removed or result.failures:
            logger.info(
                "cleanup_completed pastes_removed=%d shortlinks_removed=%d failures=%d",
                result.pastes_removed,
                result.shortlinks_removed,
                result.failures,
            )
        return result

    def _sweep(self) -> CleanupResult:
        result = CleanupResult()

        try:
            expired_pastes = self.pastes.expired()
        except Exception:
            logger.exception("cleanup_select_failed kind=paste")
            expired_pastes = []
            result.failures += 1
        for paste in expired_pastes:
            try:
                self.pastes.purge(paste)
                result.pastes_removed += 1
            except Exception as error:
                result.failures += 1
                logger.warning(
                    "cleanup_paste_failed paste_id=%s handle=%s error=%s",
                    paste.id,
                    paste.storage,
                    error,
                )

        try:
            expired_links = self.shortlinks.expired()
        except Exception:
            logger.exception("cleanup_select_failed kind=shortlink")
            expired_links = []
            result.failures += 1
        for link in expired_links:
            try:
                self.shortlinks.purge(link)
                result.shortlinks_removed += 1
            except Exception as error:
                result.failures += 1
                logger.warning(
                    "cleanup_shortlink_failed shortlink_id=%s error=%s", link.id, error
                )

        return result

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            func=self.run_once,
            trigger="interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            name="Clean up expired pastes and shortlinks",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("cleanup_scheduler_started interval_seconds=%d", self.interval_seconds)

    def next_run_time(self):
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
