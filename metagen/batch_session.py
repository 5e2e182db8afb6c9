"""
BatchSession: the command surface over one tool's queue.

UI and API layers call the command methods and subscribe to events
(``item_changed``, ``batch_completed``); they never mutate items directly.
"""
import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .archive_builder import ArchiveBuilder, ArchiveResult
from .asset_storage import AssetStorage, LocalAssetStorage
from .credit_gate import AuthorizationResult, CreditGate, CreditLedger, create_ledger
from .dispatcher import Dispatcher
from .errors import InsufficientCreditsError, QueueLockedError
from .file_processor import PartitionResult, partition_supported
from .history_store import HistoryStore
from .inference_client import InferenceClient
from .models import Batch, DispatchSummary, ItemStatus, QueueItem, SourceFile
from .queue_manager import QueueManager, QueueProjection, RetryController, project_queue
from .resilience import DispatchThrottle
from .tools import Tool, get_tool

logger = logging.getLogger(__name__)

EVENTS = ('item_changed', 'batch_completed')


class BatchSession:
    """One user's queue for one tool plus the dispatcher that drains it"""

    def __init__(self, tool, selectors: Optional[Sequence[str]] = None,
                 params: Optional[Dict[str, Any]] = None,
                 client: Optional[InferenceClient] = None,
                 storage: Optional[AssetStorage] = None,
                 ledger: Optional[CreditLedger] = None,
                 history: Optional[HistoryStore] = None,
                 throttle: Optional[DispatchThrottle] = None):
        self.id = str(uuid.uuid4())
        self.tool: Tool = get_tool(tool) if isinstance(tool, str) else tool
        self.selectors: List[str] = list(selectors or self.tool.default_selectors)
        self.params: Dict[str, Any] = dict(params or {})
        self.storage = storage or LocalAssetStorage()
        self.ledger = ledger or create_ledger()
        self.history = history
        self.gate = CreditGate()

        self.queue = QueueManager()
        self.retry_controller = RetryController(self.queue)
        self.dispatcher = Dispatcher(
            queue=self.queue,
            tool=self.tool,
            client=client or InferenceClient(),
            storage=self.storage,
            throttle=throttle,
            history=history,
            ledger=self.ledger,
            on_item_changed=lambda item: self._publish('item_changed', item),
        )

        self.current_batch: Optional[Batch] = None
        self.last_summary: Optional[DispatchSummary] = None
        self._subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self._starting = False
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event: str, callback: Callable) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it"""
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._subscribers[event].append(callback)
        return lambda: self._subscribers[event].remove(callback)

    def _publish(self, event: str, payload):
        for callback in list(self._subscribers[event]):
            try:
                callback(payload)
            except Exception as e:
                logger.error("Subscriber for %s failed: %r", event, e)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._starting or self.dispatcher.running

    def _ensure_idle(self, operation: str):
        if self.running:
            raise QueueLockedError(f"Cannot {operation} while processing is running")

    def configure(self, selectors: Optional[Sequence[str]] = None,
                  params: Optional[Dict[str, Any]] = None):
        self._ensure_idle('change settings')
        if selectors is not None:
            self.selectors = self.tool.validate_selectors(selectors)
        if params is not None:
            self.params = dict(params)

    @property
    def item_cost(self) -> int:
        return self.tool.item_cost(self.selectors)

    def add(self, files: Iterable[SourceFile]) -> PartitionResult:
        """Queue supported files; unsupported ones are returned as rejected"""
        self.selectors = self.tool.validate_selectors(self.selectors)
        partition = partition_supported(files, self.tool.name)
        partition.queued = self.queue.add(partition.accepted)
        for item in partition.queued:
            self._publish('item_changed', item)
        return partition

    def remove(self, item_id: str) -> QueueItem:
        self._ensure_idle('remove items')
        return self.queue.remove(item_id)

    def clear(self) -> int:
        self._ensure_idle('clear the queue')
        return self.queue.clear()

    def retry(self, item_id: str) -> QueueItem:
        self._ensure_idle('retry items')
        item = self.retry_controller.retry(item_id)
        self._publish('item_changed', item)
        return item

    def retry_all(self) -> int:
        self._ensure_idle('retry items')
        count = self.retry_controller.retry_all()
        for item in self.queue.filter(lambda i: i.status == ItemStatus.PENDING):
            self._publish('item_changed', item)
        return count

    def stop(self):
        """Ask the run to end before its next item; a no-op when idle"""
        with self._lock:
            if self.running:
                self.dispatcher.stop()

    async def authorize(self) -> AuthorizationResult:
        """Read the balance once and check it against the pending work"""
        account = await self.ledger.get_account()
        self.dispatcher.account = account
        return self.gate.authorize(len(self.queue.pending()), self.item_cost, account)

    def _claim_start(self):
        with self._lock:
            if self.running:
                raise QueueLockedError("Processing is already running")
            self.dispatcher.clear_stop()
            self._starting = True

    def _open_batch(self, pending: Sequence[QueueItem]) -> Optional[str]:
        self.current_batch = None
        if len(pending) <= 1:
            return None
        batch = Batch(
            name=Batch.default_name(),
            item_ids=[i.id for i in pending],
            item_cost=self.item_cost,
            tool=self.tool.name,
        )
        self.current_batch = batch
        if self.history is not None:
            try:
                self.history.create_batch(batch)
            except Exception as e:
                logger.error("Failed to record batch %s: %r", batch.name, e)
                return None
        return batch.id

    async def _authorize_or_raise(self) -> AuthorizationResult:
        auth = await self.authorize()
        if not auth.ok:
            logger.info("Batch rejected by credit gate: %s", auth.reason)
            raise InsufficientCreditsError(auth.reason, shortfall=auth.shortfall)
        return auth

    async def _dispatch(self) -> DispatchSummary:
        try:
            pending = self.queue.pending()
            batch_id = self._open_batch(pending)
            summary = await self.dispatcher.run(self.selectors, self.params, batch_id)
        finally:
            self._starting = False
        self.last_summary = summary
        self._publish('batch_completed', summary)
        return summary

    async def start(self) -> DispatchSummary:
        """Authorize and process every pending item"""
        self._claim_start()
        try:
            self.selectors = self.tool.validate_selectors(self.selectors)
            await self._authorize_or_raise()
        except Exception:
            self._starting = False
            raise
        return await self._dispatch()

    def start_in_background(self) -> threading.Thread:
        """Authorize synchronously, then dispatch on a worker thread"""
        self._claim_start()
        try:
            self.selectors = self.tool.validate_selectors(self.selectors)
            asyncio.run(self._authorize_or_raise())
        except Exception:
            self._starting = False
            raise

        def _worker():
            try:
                asyncio.run(self._dispatch())
            except Exception as e:
                logger.error("Background dispatch for session %s failed: %r", self.id, e)

        thread = threading.Thread(target=_worker, name=f"dispatch-{self.id[:8]}", daemon=True)
        self._thread = thread
        thread.start()
        return thread

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background worker; True once no worker is alive"""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return thread is None or not thread.is_alive()

    # ------------------------------------------------------------------
    # Views and downloads
    # ------------------------------------------------------------------

    def counts(self) -> Dict[str, int]:
        return self.queue.counts()

    def project(self, status: Optional[str] = None, verdict_filter: Optional[str] = None,
                page: int = 1, page_size: int = 0) -> QueueProjection:
        return project_queue(self.queue.items(), status=status,
                             verdict_filter=verdict_filter, page=page, page_size=page_size)

    async def build_archive(self, variant: Optional[str] = None,
                            verdict_filter: Optional[str] = None) -> ArchiveResult:
        items = self.project(status=ItemStatus.COMPLETED.value,
                             verdict_filter=verdict_filter).items
        label = verdict_filter or variant or 'all'
        return await ArchiveBuilder(self.storage).build(items, variant=variant, label=label)

    async def download_single(self, item_id: str, variant: str) -> Dict[str, Any]:
        return await ArchiveBuilder(self.storage).build_single_download(
            self.queue.get(item_id), variant)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tool': self.tool.name,
            'selectors': list(self.selectors),
            'params': dict(self.params),
            'item_cost': self.item_cost,
            'running': self.running,
            'counts': self.counts(),
            'batch': self.current_batch.to_dict() if self.current_batch else None,
            'last_summary': self.last_summary.to_dict() if self.last_summary else None,
        }
