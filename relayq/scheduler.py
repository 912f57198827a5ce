import logging
import threading
from typing import Iterable, List, Optional

from .errors import StoreError
from .utils import utcnow

logger = logging.getLogger("relayq.scheduler")


class Scheduler:
    """
    Periodically hands due jobs to their queues.

    Holds no job state of its own: a skipped or repeated tick is harmless
    because JobQueue ignores ids that are no longer pending.
    """

    def __init__(self, queues: Iterable):
        self.queues: List = list(queues)
        self._interval = 30
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> int:
        now = utcnow()
        total = 0
        for q in self.queues:
            try:
                due = q.store.query_due(now)
            except StoreError as e:
                logger.error("Error checking for due %s jobs: %s", q.name, e)
                continue

            if due:
                logger.info("Found %d due %s job(s)", len(due), q.name)
            for job in due:
                q.process(job.id)
            total += len(due)
        return total

    def start(self, interval_seconds: float = 30):
        if self.is_active():
            logger.info("Scheduler already running")
            return

        self._interval = interval_seconds
        self._stop.clear()
        logger.info("Starting scheduler (checking every %ss)", interval_seconds)
        self._thread = threading.Thread(target=self._loop, name="relayq-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Scheduler stopped")

    def is_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def interval(self) -> float:
        return self._interval

    def _loop(self):
        # first check runs immediately, then every interval
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error during scheduled check")
            if self._stop.wait(self._interval):
                break
