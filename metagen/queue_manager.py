"""
Queue management: the ordered item collection, retry handling and read-only
projections used for filtered and paginated views.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import InvalidTransitionError, QueueLockedError
from .models import ItemStatus, QueueItem, SourceFile, Verdict

logger = logging.getLogger(__name__)

# Review verdict filters
VERDICT_FILTERS = {
    'approvable': Verdict.PASS,
    'improvable': Verdict.WARNING,
    'rejectable': Verdict.FAIL,
}


class QueueManager:
    """Owns the ordered collection of queued items"""

    def __init__(self):
        self._items: List[QueueItem] = []
        self._locked = False

    @property
    def locked(self) -> bool:
        """True while a dispatch run holds exclusive write access"""
        return self._locked

    def lock(self):
        self._locked = True

    def unlock(self):
        self._locked = False

    def ensure_unlocked(self, operation: str):
        if self._locked:
            logger.warning("Rejected %s while dispatch is running", operation)
            raise QueueLockedError(
                f"Cannot {operation} while processing is running")

    def add(self, files: Iterable[SourceFile]) -> List[QueueItem]:
        """Append one item per file in input order; duplicates are allowed"""
        added = [QueueItem(source=f) for f in files]
        self._items.extend(added)
        logger.debug("Queued %d item(s), queue size %d",
                     len(added), len(self._items))
        return added

    def remove(self, item_id: str) -> QueueItem:
        self.ensure_unlocked('remove items')
        item = self.get(item_id)
        self._items.remove(item)
        return item

    def clear(self) -> int:
        self.ensure_unlocked('clear the queue')
        count = len(self._items)
        self._items = []
        return count

    def get(self, item_id: str) -> QueueItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise KeyError(f"Item {item_id} not found")

    def items(self) -> Tuple[QueueItem, ...]:
        return tuple(self._items)

    def filter(self, predicate: Callable[[QueueItem], bool]) -> Tuple[QueueItem, ...]:
        """Read-only view of matching items in insertion order"""
        return tuple(item for item in self._items if predicate(item))

    def pending(self) -> Tuple[QueueItem, ...]:
        return self.filter(lambda item: item.status == ItemStatus.PENDING)

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ItemStatus}
        for item in self._items:
            counts[item.status.value] += 1
        counts['total'] = len(self._items)
        return counts

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(tuple(self._items))


class RetryController:
    """Resets failed items back to pending"""

    def __init__(self, queue: QueueManager):
        self.queue = queue

    @staticmethod
    def _reset(item: QueueItem):
        item.transition(ItemStatus.PENDING)
        item.error = None
        item.retryable = False

    def retry(self, item_id: str) -> QueueItem:
        self.queue.ensure_unlocked('retry items')
        item = self.queue.get(item_id)
        if item.status != ItemStatus.ERROR:
            raise InvalidTransitionError(
                f"Only failed items can be retried (item is {item.status.value})")
        self._reset(item)
        logger.info("Item %s reset to pending", item_id)
        return item

    def retry_all(self) -> int:
        """Reset every failed item; completed items are left alone"""
        self.queue.ensure_unlocked('retry items')
        failed = self.queue.filter(lambda item: item.status == ItemStatus.ERROR)
        for item in failed:
            self._reset(item)
        if failed:
            logger.info("Reset %d failed item(s) to pending", len(failed))
        return len(failed)


@dataclass
class QueueProjection:
    """A page of items plus the counts it was computed from"""
    items: Tuple[QueueItem, ...]
    total_matching: int
    page: int
    page_size: int
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 1
        return max(1, -(-self.total_matching // self.page_size))

    def to_dict(self) -> dict:
        return {
            'items': [item.to_dict() for item in self.items],
            'total_matching': self.total_matching,
            'page': self.page,
            'page_size': self.page_size,
            'total_pages': self.total_pages,
            'counts': dict(self.counts),
        }


def project_queue(items: Iterable[QueueItem], status: Optional[str] = None,
                  verdict_filter: Optional[str] = None, page: int = 1,
                  page_size: int = 0) -> QueueProjection:
    """
    Filter and paginate a snapshot of the queue without touching it.

    ``status`` is an ItemStatus value, ``verdict_filter`` one of
    approvable/improvable/rejectable. ``page_size`` of 0 returns everything.
    """
    snapshot = tuple(items)
    counts = {s.value: 0 for s in ItemStatus}
    for name in VERDICT_FILTERS:
        counts[name] = 0
    for item in snapshot:
        counts[item.status.value] += 1
        for name, verdict in VERDICT_FILTERS.items():
            if item.verdict == verdict:
                counts[name] += 1

    matching = snapshot
    if status:
        wanted = ItemStatus(status)
        matching = tuple(i for i in matching if i.status == wanted)
    if verdict_filter:
        if verdict_filter not in VERDICT_FILTERS:
            raise ValueError(f"Unknown verdict filter: {verdict_filter}")
        wanted_verdict = VERDICT_FILTERS[verdict_filter]
        matching = tuple(i for i in matching if i.verdict == wanted_verdict)

    page = max(1, page)
    if page_size > 0:
        start = (page - 1) * page_size
        page_items = matching[start:start + page_size]
    else:
        page_items = matching

    return QueueProjection(
        items=page_items,
        total_matching=len(matching),
        page=page,
        page_size=page_size,
        counts=counts,
    )
