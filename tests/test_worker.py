import threading
import time
from datetime import timedelta

import pytest

from conftest import FakeExecutor, RecordingNotifier
from relayq.errors import NotFoundError, StateConflictError, ValidationError
from relayq.models import (
    CANCELLED, DONE, FAILED, PENDING, PROCESSING, DeliveryPayload, JobInput, TriggerPayload,
)
from relayq.db import open_db
from relayq.scheduler import Scheduler
from relayq.utils import to_iso, utcnow
from relayq.worker import JobQueue, recover


def note(message="hi", **kw):
    return JobInput(DeliveryPayload(source="test", message=message), **kw)


def porch(notify=True, **kw):
    return JobInput(
        TriggerPayload(
            automation_id="automation.porch_lights",
            requested_by="u42",
            automation_name="Porch lights",
            notify_on_complete=notify,
        ),
        **kw,
    )


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def make_queue():
    created = []

    def factory(store, executor, **kw):
        kw.setdefault("base_delay", 0)
        q = JobQueue(store, executor, **kw)
        created.append(q)
        return q

    yield factory
    for q in created:
        q.shutdown(timeout=5)


class TestEnqueue:
    def test_immediate_job_is_done_without_a_tick(self, delivery_store, make_queue):
        executor = FakeExecutor(receipt="1700000000.000100")
        q = make_queue(delivery_store, executor)

        job_id = q.enqueue(note())
        assert job_id == 1
        assert q.wait_idle(timeout=5)

        job = q.get(job_id)
        assert job.status == DONE
        assert job.executed_at is not None
        assert job.receipt == "1700000000.000100"
        assert executor.calls == [DeliveryPayload(source="test", message="hi")]

    def test_past_schedule_runs_immediately(self, delivery_store, make_queue):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)
        job_id = q.enqueue(note(scheduled_for=utcnow() - timedelta(hours=1)))
        assert q.wait_idle(timeout=5)
        assert q.get(job_id).status == DONE

    def test_future_job_waits_for_scheduler(self, delivery_store, make_queue):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)

        job_id = q.enqueue(note(scheduled_for="5m"))
        assert q.wait_idle(timeout=5)

        assert q.get(job_id).status == PENDING
        assert q.stats().scheduled_future == 1
        assert executor.calls == []

    def test_future_job_is_not_run_by_early_process(self, delivery_store, make_queue):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)
        job_id = q.enqueue(note(scheduled_for="1h"))
        q.process(job_id)
        assert q.wait_idle(timeout=5)
        assert executor.calls == []
        assert q.get(job_id).status == PENDING

    def test_validation_error_reaches_the_caller(self, delivery_store, make_queue):
        q = make_queue(delivery_store, FakeExecutor())
        with pytest.raises(ValidationError):
            q.enqueue(JobInput(DeliveryPayload(source="test", message="")))
        assert q.stats().pending == 0

    def test_executor_gets_the_timeout(self, delivery_store, make_queue):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor, timeout=3.5)
        q.enqueue(note())
        assert q.wait_idle(timeout=5)
        assert executor.timeouts == [3.5]


class TestIdempotence:
    @pytest.mark.parametrize("status", [PROCESSING, DONE, FAILED, CANCELLED])
    def test_process_ignores_non_pending_jobs(self, delivery_store, make_queue, status):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)
        job_id = delivery_store.create(note())
        delivery_store.set_status(job_id, status)

        q.process(job_id)
        q.process(job_id)
        assert q.wait_idle(timeout=5)

        assert executor.calls == []
        assert q.get(job_id).status == status

    def test_duplicate_enqueue_runs_once(self, delivery_store, make_queue):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)
        job_id = delivery_store.create(note())
        for _ in range(5):
            q.process(job_id)
        assert q.wait_idle(timeout=5)
        assert len(executor.calls) == 1

    def test_missing_job_is_ignored(self, delivery_store, make_queue):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)
        q.process(404)
        assert q.wait_idle(timeout=5)
        assert executor.calls == []


class TestRetries:
    def test_retry_count_climbs_to_max_then_fails(self, delivery_store, make_queue):
        executor = FakeExecutor(failures=-1)
        q = make_queue(delivery_store, executor)

        job_id = q.enqueue(note(max_retries=3))
        assert q.wait_idle(timeout=10, include_retries=True)

        job = q.get(job_id)
        assert job.status == FAILED
        assert job.retry_count == 3
        assert job.last_error == "backend unavailable (call 3)"
        assert job.executed_at is None
        assert len(executor.calls) == 3
        assert q.pending_retries == 0

    def test_recovers_after_transient_failure(self, delivery_store, make_queue):
        executor = FakeExecutor(failures=2)
        q = make_queue(delivery_store, executor)

        job_id = q.enqueue(note())
        assert q.wait_idle(timeout=10, include_retries=True)

        job = q.get(job_id)
        assert job.status == DONE
        assert job.retry_count == 2
        assert job.executed_at is not None
        # the error of the last failed attempt stays inspectable
        assert job.last_error == "backend unavailable (call 2)"

    def test_backoff_doubles_per_attempt(self, delivery_store, make_queue, fake_timers):
        executor = FakeExecutor(failures=-1)
        q = make_queue(delivery_store, executor, base_delay=60, timer_factory=fake_timers)

        job_id = q.enqueue(note(max_retries=4))
        for _ in range(3):
            assert q.wait_idle(timeout=5)
            job = q.get(job_id)
            assert job.status == PENDING
            assert job.last_error is not None
            fake_timers.created[-1].fire()
        assert q.wait_idle(timeout=5)

        assert [t.interval for t in fake_timers.created] == [60, 120, 240]
        assert all(t.daemon and t.started for t in fake_timers.created)
        job = q.get(job_id)
        assert job.status == FAILED
        assert job.retry_count == 4

    def test_waiting_retry_is_not_due_early(self, delivery_store, make_queue, fake_timers):
        q = make_queue(delivery_store, FakeExecutor(failures=-1), base_delay=60, timer_factory=fake_timers)
        job_id = q.enqueue(note())
        assert q.wait_idle(timeout=5)

        job = q.get(job_id)
        assert job.status == PENDING
        assert job.retry_count == 1
        assert timedelta(seconds=55) < job.scheduled_for - utcnow() <= timedelta(seconds=60)
        assert delivery_store.query_due() == []

    def test_scheduler_run_supersedes_the_armed_timer(self, delivery_store, make_queue, fake_timers):
        executor = FakeExecutor(failures=-1)
        q = make_queue(delivery_store, executor, base_delay=60, timer_factory=fake_timers)
        job_id = q.enqueue(note(max_retries=5))
        assert q.wait_idle(timeout=5)
        first = fake_timers.created[0]

        # the row comes due before its own timer fires, so a tick runs it
        with open_db(delivery_store.db_path) as conn, conn:
            conn.execute(
                "UPDATE deliveries SET scheduled_for=? WHERE id=?",
                (to_iso(utcnow() - timedelta(seconds=1)), job_id),
            )
        assert Scheduler([q]).tick() == 1
        assert q.wait_idle(timeout=5)
        assert len(executor.calls) == 2

        second = fake_timers.created[1]
        assert first.cancelled
        assert second.interval == 120
        assert not second.cancelled
        assert q.pending_retries == 1

        # a timer thread that was already running when cancel() landed
        first.function(*first.args)
        assert q.wait_idle(timeout=5)
        assert len(executor.calls) == 2
        assert q.pending_retries == 1
        assert q.get(job_id).scheduled_for - utcnow() > timedelta(seconds=100)

        assert q.cancel(job_id) is True
        assert second.cancelled
        assert q.pending_retries == 0

    def test_non_execution_errors_count_as_failures(self, delivery_store, make_queue):
        class Exploding:
            def execute(self, payload, timeout=None):
                raise RuntimeError("socket closed")

        q = make_queue(delivery_store, Exploding())
        job_id = q.enqueue(note(max_retries=0))
        assert q.wait_idle(timeout=5, include_retries=True)
        job = q.get(job_id)
        assert job.status == FAILED
        assert job.last_error == "socket closed"


class TestManagement:
    def test_manual_retry_reprocesses_failed_job(self, delivery_store, make_queue):
        executor = FakeExecutor(failures=1)
        q = make_queue(delivery_store, executor)
        job_id = q.enqueue(note(max_retries=0))
        assert q.wait_idle(timeout=5, include_retries=True)
        assert q.get(job_id).status == FAILED
        assert [j.id for j in q.list_failed()] == [job_id]

        assert q.retry(job_id) is True
        assert q.wait_idle(timeout=5, include_retries=True)
        job = q.get(job_id)
        assert job.status == DONE
        assert job.retry_count == 0
        assert q.list_failed() == []

    def test_retry_requires_failed(self, delivery_store, make_queue):
        q = make_queue(delivery_store, FakeExecutor())
        job_id = q.enqueue(note())
        assert q.wait_idle(timeout=5)
        assert q.retry(job_id) is False
        with pytest.raises(StateConflictError) as exc:
            q.retry(job_id, strict=True)
        assert exc.value.status == DONE
        with pytest.raises(NotFoundError):
            q.retry(999, strict=True)

    def test_cancel_pending_and_terminal(self, delivery_store, make_queue):
        q = make_queue(delivery_store, FakeExecutor())
        later = q.enqueue(note(scheduled_for="1h"))
        assert q.cancel(later) is True
        assert q.get(later).status == CANCELLED
        assert q.cancel(later) is False
        with pytest.raises(StateConflictError) as exc:
            q.cancel(later, strict=True)
        assert exc.value.status == CANCELLED
        assert q.cancel(999) is False
        with pytest.raises(NotFoundError):
            q.cancel(999, strict=True)

    def test_cancel_during_backoff_disarms_timer(self, delivery_store, make_queue, fake_timers):
        executor = FakeExecutor(failures=-1)
        q = make_queue(delivery_store, executor, base_delay=60, timer_factory=fake_timers)
        job_id = q.enqueue(note())
        assert q.wait_idle(timeout=5)
        assert q.pending_retries == 1

        assert q.cancel(job_id) is True
        assert fake_timers.created[0].cancelled
        assert q.pending_retries == 0

        fake_timers.created[0].fire()
        assert q.wait_idle(timeout=5)
        assert len(executor.calls) == 1
        assert q.get(job_id).status == CANCELLED

    def test_cancel_while_in_flight_wins(self, delivery_store, make_queue, gate):
        executor = FakeExecutor()
        executor.gate = gate
        q = make_queue(delivery_store, executor)
        job_id = q.enqueue(note())
        assert wait_for(lambda: executor.calls)
        assert q.get(job_id).status == PROCESSING

        assert q.cancel(job_id) is True
        gate.set()
        assert q.wait_idle(timeout=5)

        job = q.get(job_id)
        assert job.status == CANCELLED
        assert job.executed_at is None

    @pytest.mark.parametrize("max_retries", [0, 3])
    def test_cancel_while_in_flight_failure_is_not_retried(self, delivery_store, make_queue, gate, max_retries):
        executor = FakeExecutor(failures=-1)
        executor.gate = gate
        q = make_queue(delivery_store, executor)
        job_id = q.enqueue(note(max_retries=max_retries))
        assert wait_for(lambda: executor.calls)

        q.cancel(job_id)
        gate.set()
        assert q.wait_idle(timeout=5, include_retries=True)
        job = q.get(job_id)
        assert job.status == CANCELLED
        assert job.retry_count == 0
        assert len(executor.calls) == 1


class TestCompletionNotice:
    def test_success_notice(self, trigger_store, make_queue):
        notifier = RecordingNotifier()
        q = make_queue(trigger_store, FakeExecutor(), notifier=notifier)
        job_id = q.enqueue(porch())
        assert q.wait_idle(timeout=5)
        assert q.get(job_id).status == DONE
        assert len(notifier.messages) == 1
        summary, success = notifier.messages[0]
        assert success is True
        assert "Porch lights" in summary

    def test_failure_notice_only_when_exhausted(self, trigger_store, make_queue):
        notifier = RecordingNotifier()
        q = make_queue(trigger_store, FakeExecutor(failures=-1, error="HTTP 500"), notifier=notifier)
        q.enqueue(porch(max_retries=2))
        assert q.wait_idle(timeout=10, include_retries=True)
        assert len(notifier.messages) == 1
        summary, success = notifier.messages[0]
        assert success is False
        assert "2/2" in summary
        assert "HTTP 500" in summary

    def test_no_notice_unless_requested(self, trigger_store, make_queue):
        notifier = RecordingNotifier()
        q = make_queue(trigger_store, FakeExecutor(), notifier=notifier)
        q.enqueue(porch(notify=False))
        assert q.wait_idle(timeout=5)
        assert notifier.messages == []

    def test_broken_notifier_does_not_change_status(self, trigger_store, make_queue):
        class Broken:
            def emit(self, summary, success):
                raise RuntimeError("chat is down")

        q = make_queue(trigger_store, FakeExecutor(), notifier=Broken())
        job_id = q.enqueue(porch())
        assert q.wait_idle(timeout=5)
        assert q.get(job_id).status == DONE


class TestShutdownAndRecovery:
    def test_shutdown_drains_in_flight_and_leaves_rest_pending(self, delivery_store, make_queue, gate):
        executor = FakeExecutor()
        executor.gate = gate
        q = make_queue(delivery_store, executor)
        first = q.enqueue(note("first"))
        second = q.enqueue(note("second"))
        assert wait_for(lambda: executor.calls)

        stopper = threading.Thread(target=q.shutdown)
        stopper.start()
        assert wait_for(lambda: q.is_shutting_down)
        gate.set()
        stopper.join(5)

        assert not stopper.is_alive()
        assert q.get(first).status == DONE
        assert q.get(second).status == PENDING
        assert len(executor.calls) == 1

    def test_shutdown_cancels_retry_timers(self, delivery_store, make_queue, fake_timers):
        q = make_queue(delivery_store, FakeExecutor(failures=-1), base_delay=60, timer_factory=fake_timers)
        job_id = q.enqueue(note())
        assert q.wait_idle(timeout=5)
        q.shutdown(timeout=5)

        assert fake_timers.created[0].cancelled
        assert q.pending_retries == 0
        assert q.get(job_id).status == PENDING

    def test_process_racing_shutdown_leaves_nothing_queued(self, delivery_store, make_queue):
        q = make_queue(delivery_store, FakeExecutor())
        go = threading.Event()

        def hammer(offset):
            go.wait()
            for i in range(50):
                q.process(offset + i)

        producers = [threading.Thread(target=hammer, args=(1000 * n,)) for n in range(1, 5)]
        for t in producers:
            t.start()
        go.set()
        q.shutdown(timeout=5)
        for t in producers:
            t.join(5)

        assert q.wait_idle(timeout=2)
        assert q.queue_size == 0
        q.process(1)
        assert q.queue_size == 0

    def test_enqueue_after_shutdown_only_persists(self, delivery_store, make_queue):
        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)
        q.shutdown(timeout=5)
        job_id = q.enqueue(note())
        assert q.get(job_id).status == PENDING
        assert executor.calls == []

    def test_recover_resets_processing_jobs(self, delivery_store, make_queue):
        stuck = delivery_store.create(note("stuck"))
        delivery_store.set_status(stuck, PROCESSING)
        untouched = delivery_store.create(note("done"))
        delivery_store.set_status(untouched, DONE)

        assert recover(delivery_store) == 1
        assert delivery_store.get(stuck).status == PENDING
        assert delivery_store.get(untouched).status == DONE

        executor = FakeExecutor()
        q = make_queue(delivery_store, executor)
        q.process(stuck)
        assert q.wait_idle(timeout=5)
        assert q.get(stuck).status == DONE

    def test_recover_with_nothing_stuck(self, delivery_store):
        delivery_store.create(note())
        assert recover(delivery_store) == 0


def test_queues_run_independently(delivery_store, trigger_store, make_queue, gate):
    slow = FakeExecutor()
    slow.gate = gate
    deliveries = make_queue(delivery_store, slow)
    triggers = make_queue(trigger_store, FakeExecutor())

    deliveries.enqueue(note())
    assert wait_for(lambda: slow.calls)
    trigger_id = triggers.enqueue(porch(notify=False))
    assert triggers.wait_idle(timeout=5)
    assert triggers.get(trigger_id).status == DONE

    gate.set()
    assert deliveries.wait_idle(timeout=5)
