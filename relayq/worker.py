import logging
import queue
import signal
import threading
from dataclasses import replace
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from .clients import HomeAssistantClient, SlackClient
from .errors import NotFoundError, StateConflictError
from .executors import ChatNotifier, DeliveryExecutor, LogNotifier, TriggerExecutor
from .models import (
    DELIVERY_KIND, DONE, FAILED, PENDING, PROCESSING, TRIGGER_KIND, Job, JobInput, QueueStats,
)
from .repository import JobStore
from .scheduler import Scheduler
from .utils import backoff_delay, resolve_time, to_iso, utcnow

_STOP = object()


class JobQueue:
    """
    Sequential executor for one job flavor.

    A single daemon thread drains a FIFO of job ids, so at most one executor
    call is in flight per instance. Failed attempts are retried on a
    threading.Timer with exponential backoff until max_retries is reached.

    Usage:
        q = JobQueue(store, DeliveryExecutor(chat), notifier=ChatNotifier(chat))
        job_id = q.enqueue(JobInput(DeliveryPayload(source="ci", message="deployed")))
        ...
        q.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        executor,
        notifier=None,
        base_delay: float = 60,
        timeout: Optional[float] = 10,
        timer_factory: Callable = threading.Timer,
    ):
        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.base_delay = base_delay
        self.timeout = timeout
        self.timer_factory = timer_factory
        self.name = store.kind.name
        self.log = logging.getLogger(f"relayq.queue.{self.name}")

        self._ids: "queue.Queue" = queue.Queue()
        self._timers: Dict[int, tuple] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition()
        self._queued = 0
        self._shutting_down = threading.Event()
        self._worker = threading.Thread(target=self._run, name=f"relayq-{self.name}", daemon=True)
        self._worker.start()

    # ---------- producer API ----------
    def enqueue(self, job_input: JobInput) -> int:
        """Persist a job; start it right away when it is already due."""
        scheduled_for = resolve_time(job_input.scheduled_for)
        job_id = self.store.create(replace(job_input, scheduled_for=scheduled_for))
        self.log.info("Job %s enqueued - scheduled for %s", job_id, to_iso(scheduled_for))

        if scheduled_for <= utcnow():
            self.process(job_id)
        return job_id

    def process(self, job_id: int, honor_schedule: bool = True):
        """Queue a job id for the worker thread. Returns immediately."""
        with self._idle:
            if self._shutting_down.is_set():
                self.log.info("Skipping job %s due to shutdown", job_id)
                return
            self._queued += 1
            self._ids.put((job_id, honor_schedule))

    def cancel(self, job_id: int, strict: bool = False) -> bool:
        cancelled = self.store.cancel(job_id)
        if cancelled:
            self._drop_timer(job_id)
            self.log.info("Job %s cancelled", job_id)
        elif strict:
            self._raise_for(job_id, "cancel")
        return cancelled

    def retry(self, job_id: int, strict: bool = False) -> bool:
        retried = self.store.retry_now(job_id)
        if retried:
            self.log.info("Retrying job %s", job_id)
            self.process(job_id, honor_schedule=False)
        elif strict:
            self._raise_for(job_id, "retry")
        return retried

    def get(self, job_id: int) -> Optional[Job]:
        return self.store.get(job_id)

    def stats(self) -> QueueStats:
        return self.store.stats()

    def list_due(self) -> List[Job]:
        return self.store.query_due(utcnow())

    def list_failed(self, limit: Optional[int] = 50) -> List[Job]:
        return self.store.query_by_status(FAILED, limit)

    # ---------- lifecycle ----------
    def wait_idle(self, timeout: Optional[float] = None, include_retries: bool = False) -> bool:
        """Block until queued ids (and optionally armed retries) are drained."""
        def idle():
            if include_retries:
                with self._lock:
                    if self._timers:
                        return False
            return self._queued == 0

        with self._idle:
            return self._idle.wait_for(idle, timeout)

    def shutdown(self, timeout: Optional[float] = None):
        """
        Stop accepting work, cancel armed retries and let the worker drain.

        Jobs still pending stay pending and are picked up again after restart.
        """
        self.log.info("Shutting down queue gracefully...")
        # process() checks the flag under _idle
        with self._idle:
            self._shutting_down.set()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for _, timer in timers:
            timer.cancel()
        self._ids.put(_STOP)
        self._worker.join(timeout)
        with self._idle:
            self._idle.notify_all()
        self.log.info("Queue shutdown complete")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down.is_set()

    @property
    def queue_size(self) -> int:
        return self._queued

    @property
    def pending_retries(self) -> int:
        with self._lock:
            return len(self._timers)

    # ---------- worker ----------
    def _run(self):
        while True:
            item = self._ids.get()
            if item is _STOP:
                break
            job_id, honor_schedule = item
            try:
                self._process_one(job_id, honor_schedule)
            except Exception:
                # store failures end this attempt; the row is recovered on restart
                self.log.exception("Error while processing job %s", job_id)
            finally:
                with self._idle:
                    self._queued -= 1
                    self._idle.notify_all()

    def _process_one(self, job_id: int, honor_schedule: bool):
        if self._shutting_down.is_set():
            self.log.info("Skipping job %s due to shutdown", job_id)
            return

        job = self.store.get(job_id)
        if job is None:
            self.log.error("Job %s not found in database", job_id)
            return
        if job.status != PENDING:
            self.log.debug("Job %s has status %r, skipping", job_id, job.status)
            return
        if honor_schedule and job.scheduled_for > utcnow():
            self.log.debug("Job %s is scheduled for %s, skipping for now", job_id, to_iso(job.scheduled_for))
            return

        if not self.store.set_status(job_id, PROCESSING, job.last_error, expected=PENDING):
            self.log.debug("Job %s was claimed elsewhere, skipping", job_id)
            return
        self._drop_timer(job_id)

        self.log.info(
            "Processing job %s (%s) (retry %d/%d)",
            job_id, job.label, job.retry_count, job.max_retries,
        )
        try:
            receipt = self.executor.execute(job.payload, timeout=self.timeout)
        except Exception as e:
            self.log.warning("Job %s failed: %s", job_id, e)
            self._handle_failure(job, str(e) or type(e).__name__)
            return
        self._handle_success(job, receipt)

    def _handle_success(self, job: Job, receipt: Optional[str]):
        if not self.store.set_status(job.id, DONE, expected=PROCESSING):
            self.log.warning("Job %s left %s while in flight, not marking done", job.id, PROCESSING)
            return
        if receipt:
            self.store.set_receipt(job.id, receipt)
        self.log.info("Job %s completed successfully", job.id)

        if job.notify_on_complete:
            self._emit(f"{job.label} ran (job #{job.id})", True)

    def _handle_failure(self, job: Job, error: str):
        # job.retry_count is the count before this attempt
        delay = backoff_delay(job.retry_count, self.base_delay)
        updated = self.store.record_failure(job.id, error, utcnow() + timedelta(seconds=delay))
        if updated is None:
            self.log.warning("Job %s left %s while in flight, not retrying", job.id, PROCESSING)
            return

        if updated.status == FAILED:
            self.log.error(
                "Job %s permanently failed after %d retries: %s",
                job.id, updated.retry_count, error,
            )
            if updated.notify_on_complete:
                self._emit(
                    f"{updated.label} failed after {updated.retry_count}/{updated.max_retries} "
                    f"attempts (job #{job.id}): {error}",
                    False,
                )
            return

        self.log.info(
            "Job %s will be retried in %ss (attempt %d/%d)",
            job.id, delay, updated.retry_count + 1, updated.max_retries,
        )
        self._arm_timer(job.id, delay)

    def _arm_timer(self, job_id: int, delay: float):
        token = object()
        with self._lock:
            if self._shutting_down.is_set():
                return
            stale = self._timers.pop(job_id, None)
            timer = self.timer_factory(delay, self._fire_retry, args=(job_id, token))
            timer.daemon = True
            self._timers[job_id] = (token, timer)
        if stale is not None:
            stale[1].cancel()
        timer.start()

    def _fire_retry(self, job_id: int, token: object):
        with self._lock:
            current = self._timers.get(job_id)
            if current is None or current[0] is not token:
                self.log.debug("Ignoring superseded retry timer for job %s", job_id)
                return
        # queue first so wait_idle(include_retries=True) never sees a gap
        self.process(job_id, honor_schedule=False)
        with self._lock:
            current = self._timers.get(job_id)
            if current is not None and current[0] is token:
                del self._timers[job_id]
        with self._idle:
            self._idle.notify_all()

    def _drop_timer(self, job_id: int):
        with self._lock:
            entry = self._timers.pop(job_id, None)
        if entry is not None:
            entry[1].cancel()
            with self._idle:
                self._idle.notify_all()

    def _emit(self, summary: str, success: bool):
        if self.notifier is None:
            return
        try:
            self.notifier.emit(summary, success)
        except Exception:
            self.log.exception("Completion notifier failed")

    def _raise_for(self, job_id: int, action: str):
        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError(self.name, job_id)
        raise StateConflictError(job_id, job.status, action)


def recover(store: JobStore) -> int:
    """Reset jobs left in 'processing' by an unclean stop back to 'pending'."""
    log = logging.getLogger(f"relayq.queue.{store.kind.name}")
    stuck = store.query_by_status(PROCESSING, limit=None)
    if stuck:
        log.info("Found %d job(s) in processing state, resetting to pending...", len(stuck))
    for job in stuck:
        store.set_status(job.id, PENDING, job.last_error, expected=PROCESSING)
    return len(stuck)


def setup_signal_handlers(stop: threading.Event):
    def _handler(signum, frame):
        logging.getLogger("relayq").info("Received signal %s. Stopping", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def build_queues(settings, tunables: Dict[str, int]) -> List[JobQueue]:
    """Create a queue for every backend that is configured and reachable."""
    log = logging.getLogger("relayq")
    timeout = tunables["timeout_seconds"]
    base_delay = tunables["backoff_base_delay"]
    max_retries = tunables["max_retries_default"]

    queues = []
    notifier = LogNotifier()
    if settings.chat_configured:
        chat = SlackClient(
            bot_token=settings.slack_bot_token,
            channel_id=settings.slack_channel_id,
            webhook_url=settings.slack_webhook_url,
        )
        notifier = ChatNotifier(chat, timeout=timeout)
        queues.append(JobQueue(
            JobStore(settings.db_path, DELIVERY_KIND, max_retries),
            DeliveryExecutor(chat, timeout),
            notifier=notifier,
            base_delay=base_delay,
            timeout=timeout,
        ))
    else:
        log.warning("Slack is not configured - delivery jobs will stay pending")

    if settings.home_assistant_configured:
        home_assistant = HomeAssistantClient(settings.ha_url, settings.ha_token)
        if home_assistant.validate_connection(timeout):
            log.info("Home Assistant connection validated")
            queues.append(JobQueue(
                JobStore(settings.db_path, TRIGGER_KIND, max_retries),
                TriggerExecutor(home_assistant, timeout),
                notifier=notifier,
                base_delay=base_delay,
                timeout=timeout,
            ))
        else:
            log.warning("Failed to connect to Home Assistant - trigger jobs will stay pending")
    return queues


def run_service(queues: List[JobQueue], interval: float, stop: threading.Event):
    """Recover, start the scheduler, block until `stop` is set, then drain."""
    for q in queues:
        recover(q.store)

    scheduler = Scheduler(queues)
    scheduler.start(interval)
    try:
        while not stop.wait(0.5):
            pass
    finally:
        scheduler.stop()
        for q in queues:
            q.shutdown()
