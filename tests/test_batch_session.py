import asyncio
import time

import pytest

from conftest import FakeClient, FakeStorage, make_files, metadata_reply
from metagen.batch_session import BatchSession
from metagen.credit_gate import StaticCreditLedger
from metagen.errors import InsufficientCreditsError, QueueLockedError, ValidationError
from metagen.models import ItemStatus, SourceFile
from metagen.resilience import DispatchThrottle, ThrottleConfig
from metagen.session_api import SessionRegistry


class _RecordingHistory:
    def __init__(self):
        self.batches = []
        self.saved = []

    def create_batch(self, batch):
        self.batches.append(batch)
        return batch.to_dict()

    def save_item(self, item, tool, snapshot, batch_id):
        self.saved.append((item.id, tool, snapshot, batch_id))


def _session(replies=None, balance=100, selectors=("Adobe Stock",), history=None, tool='metadata'):
    replies = replies or [metadata_reply(marketplaces=selectors)]
    return BatchSession(
        tool,
        selectors=list(selectors),
        client=FakeClient(replies),
        storage=FakeStorage(),
        ledger=StaticCreditLedger(balance=balance),
        history=history,
        throttle=DispatchThrottle(ThrottleConfig(0, 0)),
    )


def test_insufficient_credits_blocks_start_without_touching_items():
    session = _session(balance=3)
    session.add(make_files(5))
    events = []
    session.subscribe('item_changed', events.append)

    with pytest.raises(InsufficientCreditsError) as info:
        asyncio.run(session.start())

    assert str(info.value) == "Not enough credits. Need 5, have 3"
    assert info.value.shortfall == 2
    assert events == []
    assert session.counts()['pending'] == 5
    assert session.running is False


def test_cost_scales_with_marketplaces():
    session = _session(balance=3, selectors=("Adobe Stock", "Shutterstock"))
    session.add(make_files(2))

    auth = asyncio.run(session.authorize())

    assert session.item_cost == 2
    assert auth.ok is False
    assert auth.required == 4
    assert auth.shortfall == 1


def test_unlimited_ledger_ignores_balance():
    session = _session(balance=0)
    session.ledger = StaticCreditLedger(balance=0, unlimited=True)
    session.dispatcher.ledger = session.ledger
    session.add(make_files(2))

    summary = asyncio.run(session.start())

    assert summary.message == "Processed 2 image(s)!"


def test_queueing_requires_a_selection():
    session = _session(selectors=())
    session.selectors = []
    with pytest.raises(ValidationError):
        session.add(make_files(1))
    assert len(session.queue) == 0


def test_unsupported_files_are_rejected_with_reason():
    session = _session()
    result = session.add([
        SourceFile('ok.jpg', 'image/jpeg', b'1'),
        SourceFile('vector.eps', 'application/postscript', b'2'),
    ])
    assert [i.source.filename for i in result.queued] == ['ok.jpg']
    assert "EPS files cannot be analyzed directly" in result.rejection_messages()[0]
    assert len(session.queue) == 1


def test_batch_record_only_for_multiple_items():
    history = _RecordingHistory()
    session = _session(history=history)
    session.add(make_files(1))
    asyncio.run(session.start())
    assert history.batches == []
    assert history.saved[0][3] is None

    session.add(make_files(3))
    asyncio.run(session.start())
    assert len(history.batches) == 1
    batch = history.batches[0]
    assert batch.name.startswith("Batch ")
    assert len(batch.item_ids) == 3
    assert [s[3] for s in history.saved[1:]] == [batch.id] * 3
    assert history.saved[1][2] == {'tool': 'metadata', 'selectors': ['Adobe Stock']}


def test_batch_completed_event_carries_summary():
    session = _session()
    summaries = []
    unsubscribe = session.subscribe('batch_completed', summaries.append)
    session.add(make_files(2))

    asyncio.run(session.start())
    unsubscribe()
    session.add(make_files(1))
    asyncio.run(session.start())

    assert len(summaries) == 1
    assert summaries[0].succeeded == 2
    assert session.last_summary.succeeded == 1


def test_unknown_event_rejected():
    with pytest.raises(ValueError):
        _session().subscribe('item_deleted', print)


def test_commands_rejected_while_running():
    holder = {}
    errors = []

    def mutate(index):
        session = holder['session']
        for command in (lambda: session.remove(session.queue.items()[0].id),
                        session.clear, session.retry_all,
                        lambda: session.configure(selectors=["Freepik"])):
            try:
                command()
            except QueueLockedError as e:
                errors.append(e)
        return metadata_reply()

    session = _session(replies=[mutate])
    holder['session'] = session
    session.add(make_files(1))
    asyncio.run(session.start())

    assert len(errors) == 4
    assert session.counts()['completed'] == 1


def test_retry_all_then_start_processes_only_failed_items():
    session = _session(replies=[metadata_reply(), "garbage", metadata_reply()])
    session.add(make_files(3))
    first = asyncio.run(session.start())
    assert first.message == "2 succeeded, 1 failed"

    assert session.retry_all() == 1
    assert session.retry_all() == 0
    second = asyncio.run(session.start())

    assert second.total == 1
    assert session.counts()['completed'] == 3
    assert len(session.dispatcher.client.calls) == 4


def test_start_with_empty_queue_reports_nothing_to_do():
    summary = asyncio.run(_session().start())
    assert summary.message == "No pending items to process"


def test_background_start_runs_on_worker_thread():
    session = _session()
    session.add(make_files(2))
    thread = session.start_in_background()
    thread.join(timeout=10)
    assert not thread.is_alive()
    assert session.running is False
    assert session.counts()['completed'] == 2


def test_background_start_raises_gate_rejection_synchronously():
    session = _session(balance=0)
    session.add(make_files(1))
    with pytest.raises(InsufficientCreditsError):
        session.start_in_background()
    assert session.running is False


def test_review_session_projection_by_verdict():
    replies = [
        '{"verdict": "pass", "overallScore": 90}',
        '{"verdict": "fail", "overallScore": 20}',
    ]
    session = _session(replies=replies, tool='review', selectors=("review",))
    session.add(make_files(2))
    asyncio.run(session.start())

    approvable = session.project(verdict_filter='approvable')
    assert [i.source.filename for i in approvable.items] == ['photo_1.jpg']
    assert approvable.counts['rejectable'] == 1
    assert session.queue.items()[1].status == ItemStatus.COMPLETED


def test_session_archive_uses_completed_items():
    session = _session(replies=[metadata_reply(), "garbage"])
    session.add(make_files(2))
    asyncio.run(session.start())

    result = asyncio.run(session.build_archive())

    assert result.added == 1
    assert result.requested == 1


def test_completed_run_spends_credits_for_next_batch():
    session = _session(balance=3)
    session.add(make_files(3))
    asyncio.run(session.start())

    assert session.counts()['completed'] == 3
    assert session.ledger.balance == 0

    session.add(make_files(3))
    auth = asyncio.run(session.authorize())
    assert auth.ok is False
    assert auth.reason == "Not enough credits. Need 3, have 0"


class _SlowHistory(_RecordingHistory):
    def create_batch(self, batch):
        time.sleep(0.3)
        return super().create_batch(batch)


def test_stop_during_background_start_keeps_items_pending():
    session = _session(history=_SlowHistory())
    session.add(make_files(5))

    thread = session.start_in_background()
    session.stop()
    thread.join(timeout=10)

    assert session.counts()['pending'] == 5
    assert session.last_summary.stopped is True
    assert session.ledger.balance == 100


def test_stop_while_idle_does_not_affect_next_run():
    session = _session()
    session.add(make_files(2))
    session.stop()
    summary = asyncio.run(session.start())
    assert summary.stopped is False
    assert session.counts()['completed'] == 2


def test_join_waits_for_background_worker():
    session = _session(history=_SlowHistory())
    assert session.join(0) is True
    session.add(make_files(2))
    session.start_in_background()
    assert session.join(timeout=10) is True
    assert session.counts()['completed'] == 2


def test_registry_shutdown_stops_and_joins_workers():
    registry = SessionRegistry(
        factory=lambda tool, selectors, params: _session(history=_SlowHistory()))
    session = registry.create('metadata')
    session.add(make_files(3))
    session.start_in_background()

    registry.shutdown(timeout=10)

    assert session.join(0) is True
    assert session.running is False
    assert session.counts()['pending'] == 3
