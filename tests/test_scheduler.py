import asyncio
from typing import Dict, List

import pytest

from conftest import make_config, make_report
from dmarc_sender.accountant import ErrorAccountant
from dmarc_sender.context import DeliveryContext
from dmarc_sender.models import DeliveryOutcome, FailureKind
from dmarc_sender.planner import DeliveryPlanner
from dmarc_sender.scheduler import BatchScheduler, Disposition, RunSummary


class DummyQueue:
    def __init__(self, reports=(), errors: Dict[str, int] | None = None):
        self.reports = {r.report_id: r for r in reports}
        self.errors: Dict[str, List[str]] = {
            rid: ["earlier"] * count for rid, count in (errors or {}).items()
        }
        self.deleted: List[str] = []
        self.fail_retrieve = False
        self.fail_record = False
        self.initialized = False

    async def init_db(self):
        self.initialized = True

    async def retrieve_todo(self):
        if self.fail_retrieve:
            raise RuntimeError("database is locked")
        return list(self.reports.values())

    async def count_reports(self):
        return len(self.reports)

    async def record_error(self, report_id, message):
        if self.fail_record:
            raise RuntimeError("database is locked")
        self.errors.setdefault(report_id, []).append(message)
        return len(self.errors[report_id])

    async def delete_report(self, report_id):
        self.deleted.append(report_id)
        return self.reports.pop(report_id, None) is not None


class DummyDispatcher:
    """Returns scripted outcomes keyed by endpoint address; success by default."""

    def __init__(self, events: List[tuple], script: Dict[str, object] | None = None):
        self.events = events
        self.script = script or {}
        self.hang_notices = False
        self.attempts: List[tuple] = []
        self.notices: List[tuple] = []

    async def dispatch(self, endpoint, body, state):
        self.attempts.append((state.report_id, endpoint.scheme.value, endpoint.address))
        self.events.append(("dispatch", state.report_id))
        action = self.script.get(endpoint.address)
        if action == "hang":
            await asyncio.sleep(10)
        if action == "boom":
            raise RuntimeError("unexpected")
        if isinstance(action, FailureKind):
            outcome = DeliveryOutcome.failed(endpoint, action, "scripted", smtp_code=550)
        else:
            outcome = DeliveryOutcome.ok(endpoint, "250 ok")
        state.add(outcome)
        return outcome

    async def send_notice(self, endpoint, state, byte_length):
        self.notices.append((state.report_id, endpoint.address, byte_length))
        if self.hang_notices:
            await asyncio.sleep(10)
        return DeliveryOutcome.failed(endpoint, FailureKind.CONNECT_FAILURE, "notice refused")


class DummyMetrics:
    def __init__(self):
        self.pending = None
        self.errors: List[str] = []
        self.deleted: List[str] = []

    def set_pending(self, value):
        self.pending = value

    def inc_error(self, kind):
        self.errors.append(kind)

    def inc_deleted(self, reason):
        self.deleted.append(reason)


def _scheduler(queue, script=None, metrics=None):
    events: List[tuple] = []

    async def fake_sleep(seconds):
        events.append(("sleep", seconds))

    context = DeliveryContext(config=make_config(), queue=queue, metrics=metrics)
    dispatcher = DummyDispatcher(events, script)
    scheduler = BatchScheduler(
        context,
        DeliveryPlanner(),
        dispatcher,
        ErrorAccountant(queue, metrics=metrics),
        sleep=fake_sleep,
    )
    return scheduler, dispatcher, events


@pytest.mark.asyncio
async def test_delivered_report_is_deleted():
    report = make_report("A", rua="mailto:a@example.com!1000")
    queue = DummyQueue([report])
    scheduler, dispatcher, _ = _scheduler(queue)

    summary = await scheduler.run([report], batch_size=1, inter_batch_delay=0)

    assert dispatcher.attempts == [("A", "mail", "a@example.com")]
    assert queue.deleted == ["A"]
    assert summary.delivered == 1


@pytest.mark.asyncio
async def test_too_big_report_gets_notice_then_deleted():
    report = make_report("B", rua="mailto:b@example.com!10,https://r.example.net/in!10")
    queue = DummyQueue([report])
    scheduler, dispatcher, _ = _scheduler(queue)

    summary = await scheduler.run([report], inter_batch_delay=0)

    assert dispatcher.attempts == []
    assert [n[:2] for n in dispatcher.notices] == [("B", "b@example.com")]
    assert dispatcher.notices[0][2] > 10
    assert queue.deleted == ["B"]
    assert summary.deleted == 1


@pytest.mark.asyncio
async def test_unroutable_report_deleted_without_transport():
    report = make_report("U", rua="ftp://example.com/dmarc")
    queue = DummyQueue([report])
    scheduler, dispatcher, _ = _scheduler(queue)

    await scheduler.run([report], inter_batch_delay=0)

    assert dispatcher.attempts == []
    assert dispatcher.notices == []
    assert queue.deleted == ["U"]


@pytest.mark.asyncio
async def test_only_fitting_endpoints_are_attempted():
    report = make_report("M", rua="mailto:small@example.com!10,https://r.example.net/in")
    queue = DummyQueue([report])
    scheduler, dispatcher, _ = _scheduler(queue)

    await scheduler.run([report], inter_batch_delay=0)

    assert dispatcher.attempts == [("M", "web", "https://r.example.net/in")]
    assert dispatcher.notices == []
    assert queue.deleted == ["M"]


@pytest.mark.asyncio
async def test_permanent_rejection_deletes_and_stops():
    report = make_report("P", rua="mailto:gone@example.com,mailto:b@example.com")
    queue = DummyQueue([report], errors={"P": 3})
    scheduler, dispatcher, _ = _scheduler(
        queue, script={"gone@example.com": FailureKind.PERMANENT_REJECTION}
    )

    summary = await scheduler.run([report], inter_batch_delay=0)

    assert dispatcher.attempts == [("P", "mail", "gone@example.com")]
    assert queue.deleted == ["P"]
    assert queue.errors["P"] == ["earlier"] * 3
    assert summary.deleted == 1


@pytest.mark.asyncio
async def test_partial_success_deletes_report():
    report = make_report("S", rua="mailto:down@example.com,mailto:up@example.com")
    queue = DummyQueue([report])
    scheduler, _, _ = _scheduler(queue, script={"down@example.com": FailureKind.CONNECT_FAILURE})

    summary = await scheduler.run([report], inter_batch_delay=0)

    assert queue.deleted == ["S"]
    assert "S" not in queue.errors
    assert summary.delivered == 1


@pytest.mark.asyncio
async def test_total_failure_records_each_error_and_defers():
    report = make_report("F", rua="mailto:a@example.com,https://r.example.net/in")
    queue = DummyQueue([report])
    scheduler, _, _ = _scheduler(
        queue,
        script={
            "a@example.com": FailureKind.TRANSIENT_REJECTION,
            "https://r.example.net/in": FailureKind.CONNECT_FAILURE,
        },
    )

    summary = await scheduler.run([report], inter_batch_delay=0)

    assert len(queue.errors["F"]) == 2
    assert queue.errors["F"][0].startswith("transient_rejection: mailto:a@example.com")
    assert queue.deleted == []
    assert summary.deferred == 1


@pytest.mark.asyncio
async def test_signing_failure_is_not_recorded():
    report = make_report("K", rua="mailto:a@example.com")
    queue = DummyQueue([report])
    scheduler, _, _ = _scheduler(queue, script={"a@example.com": FailureKind.SIGNING_FAILURE})

    summary = await scheduler.run([report], inter_batch_delay=0)

    assert "K" not in queue.errors
    assert queue.deleted == []
    assert summary.deferred == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("previous, deleted", [(10, False), (11, True)])
async def test_threshold_reached_on_twelfth_error(previous, deleted):
    report = make_report("T", rua="mailto:a@example.com")
    queue = DummyQueue([report], errors={"T": previous})
    metrics = DummyMetrics()
    scheduler, _, _ = _scheduler(queue, script={"a@example.com": FailureKind.CONNECT_FAILURE}, metrics=metrics)

    summary = await scheduler.run([report], inter_batch_delay=0)

    assert len(queue.errors["T"]) == previous + 1
    assert (queue.deleted == ["T"]) is deleted
    assert (summary.deleted == 1) is deleted
    assert (metrics.deleted == ["threshold"]) is deleted


@pytest.mark.asyncio
async def test_threshold_stops_recording_further_errors():
    report = make_report("T", rua="mailto:a@example.com,mailto:b@example.com")
    queue = DummyQueue([report], errors={"T": 11})
    scheduler, _, _ = _scheduler(
        queue,
        script={
            "a@example.com": FailureKind.CONNECT_FAILURE,
            "b@example.com": FailureKind.CONNECT_FAILURE,
        },
    )

    await scheduler.run([report], inter_batch_delay=0)

    assert len(queue.errors["T"]) == 12
    assert queue.deleted == ["T"]


@pytest.mark.asyncio
async def test_pause_after_every_report_never_before_first():
    reports = [make_report(rid) for rid in ("r1", "r2", "r3")]
    queue = DummyQueue(reports)
    scheduler, _, events = _scheduler(queue)

    summary = await scheduler.run(reports, batch_size=1, inter_batch_delay=5)

    assert events == [
        ("dispatch", "r1"), ("sleep", 5),
        ("dispatch", "r2"), ("sleep", 5),
        ("dispatch", "r3"), ("sleep", 5),
    ]
    assert summary.pauses == 3


@pytest.mark.asyncio
async def test_pause_between_batches():
    reports = [make_report(f"r{i}") for i in range(5)]
    queue = DummyQueue(reports)
    scheduler, _, events = _scheduler(queue)

    summary = await scheduler.run(reports, batch_size=2, inter_batch_delay=1.5)

    assert [e[0] for e in events] == [
        "dispatch", "dispatch", "sleep", "dispatch", "dispatch", "sleep", "dispatch",
    ]
    assert summary.pauses == 2


@pytest.mark.asyncio
async def test_invalid_batch_size():
    scheduler, _, _ = _scheduler(DummyQueue())
    with pytest.raises(ValueError):
        await scheduler.run([], batch_size=0)


@pytest.mark.asyncio
async def test_timeout_records_error_and_continues():
    slow = make_report("slow", rua="mailto:hang@example.com")
    fast = make_report("fast", rua="mailto:a@example.com")
    queue = DummyQueue([slow, fast])
    metrics = DummyMetrics()
    scheduler, dispatcher, _ = _scheduler(queue, script={"hang@example.com": "hang"}, metrics=metrics)

    summary = await scheduler.run([slow, fast], inter_batch_delay=0, per_report_timeout=0.05)

    assert queue.errors["slow"][0].startswith("timeout")
    assert "slow" in queue.reports
    assert queue.deleted == ["fast"]
    assert metrics.errors == ["timeout"]
    assert summary == RunSummary(delivered=1, deferred=1)


@pytest.mark.asyncio
async def test_timeout_after_delivery_deletes_report():
    report = make_report("D", rua="mailto:a@example.com,mailto:hang@example.com")
    queue = DummyQueue([report])
    scheduler, _, _ = _scheduler(queue, script={"hang@example.com": "hang"})

    summary = await scheduler.run([report], inter_batch_delay=0, per_report_timeout=0.05)

    assert queue.deleted == ["D"]
    assert "D" not in queue.errors
    assert summary.delivered == 1


@pytest.mark.asyncio
async def test_unexpected_error_is_isolated():
    bad = make_report("bad", rua="mailto:boom@example.com")
    good = make_report("good", rua="mailto:a@example.com")
    queue = DummyQueue([bad, good])
    scheduler, _, _ = _scheduler(queue, script={"boom@example.com": "boom"})

    summary = await scheduler.run([bad, good], inter_batch_delay=0)

    assert summary.failed == 1
    assert summary.delivered == 1
    assert "bad" in queue.reports


@pytest.mark.asyncio
async def test_process_report_dispositions():
    from dmarc_sender.context import ReportState

    report = make_report("X", rua="mailto:a@example.com")
    scheduler, _, _ = _scheduler(DummyQueue([report]))

    state = ReportState(report=report)
    assert await scheduler.process_report(state) is Disposition.DELIVERED
    assert state.deleted is True


@pytest.mark.asyncio
async def test_run_once_uses_config_and_updates_pending():
    delivered = make_report("ok", rua="mailto:a@example.com")
    deferred = make_report("later", rua="mailto:down@example.com")
    queue = DummyQueue([delivered, deferred])
    metrics = DummyMetrics()
    scheduler, _, events = _scheduler(
        queue, script={"down@example.com": FailureKind.CONNECT_FAILURE}, metrics=metrics
    )
    scheduler.context.config.sending.delay = 2

    summary = await scheduler.run_once()

    assert queue.initialized
    assert summary.processed == 2
    assert events.count(("sleep", 2)) == 2
    assert metrics.pending == 1


@pytest.mark.asyncio
async def test_run_once_queue_failure_is_fatal():
    queue = DummyQueue()
    queue.fail_retrieve = True
    scheduler, _, _ = _scheduler(queue)

    with pytest.raises(RuntimeError, match="locked"):
        await scheduler.run_once()


@pytest.mark.asyncio
async def test_timeout_during_notice_still_deletes_too_big_report():
    report = make_report("B", rua="mailto:b@example.com!10")
    queue = DummyQueue([report])
    metrics = DummyMetrics()
    scheduler, dispatcher, _ = _scheduler(queue, metrics=metrics)
    dispatcher.hang_notices = True

    summary = await scheduler.run([report], inter_batch_delay=0, per_report_timeout=0.05)

    assert [n[:2] for n in dispatcher.notices] == [("B", "b@example.com")]
    assert queue.deleted == ["B"]
    assert "B" not in queue.errors
    assert metrics.errors == []
    assert metrics.deleted == ["oversized"]
    assert summary == RunSummary(deleted=1)


@pytest.mark.asyncio
async def test_timeout_reaching_threshold_deletes_report():
    report = make_report("X", rua="mailto:hang@example.com")
    queue = DummyQueue([report], errors={"X": 11})
    metrics = DummyMetrics()
    scheduler, _, _ = _scheduler(queue, script={"hang@example.com": "hang"}, metrics=metrics)

    summary = await scheduler.run([report], inter_batch_delay=0, per_report_timeout=0.05)

    assert len(queue.errors["X"]) == 12
    assert queue.errors["X"][-1].startswith("timeout")
    assert queue.deleted == ["X"]
    assert metrics.deleted == ["threshold"]
    assert summary == RunSummary(deleted=1)


@pytest.mark.asyncio
async def test_error_while_handling_timeout_is_isolated():
    slow = make_report("slow", rua="mailto:hang@example.com")
    fast = make_report("fast", rua="mailto:a@example.com")
    queue = DummyQueue([slow, fast])
    queue.fail_record = True
    scheduler, _, _ = _scheduler(queue, script={"hang@example.com": "hang"})

    summary = await scheduler.run([slow, fast], inter_batch_delay=0, per_report_timeout=0.05)

    assert summary == RunSummary(delivered=1, failed=1)
    assert queue.deleted == ["fast"]
    assert "slow" in queue.reports
