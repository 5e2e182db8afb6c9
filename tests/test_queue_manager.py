import pytest

from conftest import make_files
from metagen.errors import InvalidTransitionError, QueueLockedError
from metagen.models import ItemStatus, ResultPayload, Verdict
from metagen.queue_manager import QueueManager, RetryController, project_queue


@pytest.fixture
def queue():
    q = QueueManager()
    q.add(make_files(4))
    return q


def test_add_preserves_order_and_starts_pending(queue):
    assert [i.source.filename for i in queue.items()] == [
        "photo_1.jpg", "photo_2.jpg", "photo_3.jpg", "photo_4.jpg"]
    assert all(i.status == ItemStatus.PENDING for i in queue)
    assert len({i.id for i in queue}) == 4


def test_duplicate_files_are_separate_items():
    q = QueueManager()
    same = make_files(1)
    q.add(same + same)
    assert len(q) == 2


def test_remove_and_clear(queue):
    first = queue.items()[0]
    queue.remove(first.id)
    assert first not in queue.items()
    with pytest.raises(KeyError):
        queue.get(first.id)
    assert queue.clear() == 3
    assert len(queue) == 0


def test_locked_queue_rejects_mutation(queue):
    queue.lock()
    with pytest.raises(QueueLockedError):
        queue.remove(queue.items()[0].id)
    with pytest.raises(QueueLockedError):
        queue.clear()
    # adding is allowed while locked
    queue.add(make_files(1))
    assert len(queue) == 5
    queue.unlock()
    assert queue.clear() == 5


def test_counts_include_total(queue):
    queue.items()[0].transition(ItemStatus.PROCESSING)
    counts = queue.counts()
    assert counts['pending'] == 3
    assert counts['processing'] == 1
    assert counts['total'] == 4


def test_illegal_transitions_raise(queue):
    item = queue.items()[0]
    with pytest.raises(InvalidTransitionError):
        item.transition(ItemStatus.COMPLETED)
    item.transition(ItemStatus.PROCESSING)
    item.transition(ItemStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        item.transition(ItemStatus.PENDING)


def _fail(item, retryable=False):
    item.transition(ItemStatus.PROCESSING)
    item.error = "boom"
    item.retryable = retryable
    item.transition(ItemStatus.ERROR)


def _complete(item, verdict=None):
    item.transition(ItemStatus.PROCESSING)
    item.result = ResultPayload(variants=[], verdict=verdict)
    item.transition(ItemStatus.COMPLETED)


def test_retry_resets_failed_item(queue):
    item = queue.items()[1]
    _fail(item, retryable=True)
    RetryController(queue).retry(item.id)
    assert item.status == ItemStatus.PENDING
    assert item.error is None
    assert item.retryable is False


def test_retry_rejects_non_failed_item(queue):
    with pytest.raises(InvalidTransitionError):
        RetryController(queue).retry(queue.items()[0].id)


def test_retry_all_leaves_completed_items(queue):
    items = queue.items()
    _complete(items[0])
    _fail(items[1])
    _fail(items[2])
    controller = RetryController(queue)

    assert controller.retry_all() == 2
    assert items[0].status == ItemStatus.COMPLETED
    assert [i.status for i in items[1:3]] == [ItemStatus.PENDING, ItemStatus.PENDING]
    assert controller.retry_all() == 0


def test_retry_rejected_while_locked(queue):
    _fail(queue.items()[0])
    queue.lock()
    with pytest.raises(QueueLockedError):
        RetryController(queue).retry_all()


def test_projection_filters_by_verdict_and_paginates(queue):
    items = queue.items()
    _complete(items[0], Verdict.PASS)
    _complete(items[1], Verdict.FAIL)
    _complete(items[2], Verdict.PASS)

    page = project_queue(queue.items(), verdict_filter='approvable', page=1, page_size=1)
    assert [i.id for i in page.items] == [items[0].id]
    assert page.total_matching == 2
    assert page.total_pages == 2
    assert page.counts['approvable'] == 2
    assert page.counts['rejectable'] == 1
    assert page.counts['pending'] == 1

    second = project_queue(queue.items(), verdict_filter='approvable', page=2, page_size=1)
    assert [i.id for i in second.items] == [items[2].id]


def test_projection_by_status_does_not_mutate(queue):
    _fail(queue.items()[3])
    before = queue.items()
    projection = project_queue(queue.items(), status='error')
    assert [i.id for i in projection.items] == [before[3].id]
    assert queue.items() == before


def test_projection_rejects_unknown_verdict(queue):
    with pytest.raises(ValueError):
        project_queue(queue.items(), verdict_filter='maybe')
