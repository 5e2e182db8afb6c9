"""
Sequential, throttled dispatch loop.

One pass over the queue in order: every pending item is uploaded, sent to the
inference gateway and moved to completed or error. Only one item is ever
processing. Stopping is cooperative; the in-flight item always finishes.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from .asset_storage import AssetStorage
from .credit_gate import CreditLedger
from .errors import Err, ErrorKind, InferenceError, Ok, Result, capture
from .file_processor import prepare_for_analysis
from .inference_client import InferenceClient, image_reference
from .models import CreditAccount, DispatchSummary, ItemStatus, QueueItem, ResultPayload
from .pipeline_config import config
from .queue_manager import QueueManager
from .resilience import DispatchThrottle
from .tools import Tool

logger = logging.getLogger(__name__)

ItemCallback = Callable[[QueueItem], None]


class Dispatcher:
    """Drives pending items through upload and inference"""

    def __init__(self, queue: QueueManager, tool: Tool, client: InferenceClient,
                 storage: AssetStorage, throttle: Optional[DispatchThrottle] = None,
                 history=None, ledger: Optional[CreditLedger] = None,
                 on_item_changed: Optional[ItemCallback] = None):
        self.queue = queue
        self.tool = tool
        self.client = client
        self.storage = storage
        self.throttle = throttle or DispatchThrottle()
        self.history = history
        self.ledger = ledger
        self.on_item_changed = on_item_changed
        self.account: Optional[CreditAccount] = None
        self._stop_requested = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def stop(self):
        """Request a cooperative stop; checked before each new item"""
        if self._running:
            logger.info("Stop requested; finishing the in-flight item")
        self._stop_requested = True

    def clear_stop(self):
        """Forget an earlier stop request before a new run is claimed"""
        self._stop_requested = False

    def _emit(self, item: QueueItem):
        if self.on_item_changed is None:
            return
        try:
            self.on_item_changed(item)
        except Exception as e:
            logger.error("item_changed subscriber failed for %s: %r", item.id, e)

    async def _upload(self, item: QueueItem) -> str:
        source = item.source
        return await self.storage.upload(source.data, source.content_type, source.filename)

    async def _infer(self, item: QueueItem, selectors: Sequence[str],
                     params: Dict[str, Any]) -> ResultPayload:
        url = item.uploaded_asset_url
        inline_data = None
        content_type = item.source.content_type or ''
        if not url.startswith(('http://', 'https://')):
            # the gateway only accepts images as data URLs
            if not content_type.startswith('image/'):
                raise InferenceError(
                    f"{item.source.filename} ({content_type or 'unknown type'}) cannot be "
                    f"sent inline; set PUBLIC_BASE_URL so the model can fetch it")
            inline_data = await asyncio.to_thread(prepare_for_analysis, item.source.data)
            if inline_data is not item.source.data:
                content_type = 'image/jpeg'
            if len(inline_data) > config.max_inline_size:
                raise InferenceError(
                    f"{item.source.filename} is too large to send inline "
                    f"({len(inline_data)} bytes); set PUBLIC_BASE_URL so the model can fetch it")
        messages = self.tool.build_messages(
            image_reference(url, inline_data, content_type), selectors, params)
        text = await self.client.complete(messages)
        return self.tool.parse_response(text, selectors)

    async def _process(self, item: QueueItem, selectors: Sequence[str],
                       params: Dict[str, Any]) -> Result:
        if not item.uploaded_asset_url:
            uploaded = await capture(self._upload(item), ErrorKind.UPLOAD)
            if not uploaded.ok:
                return uploaded
            item.uploaded_asset_url = uploaded.value
        return await capture(self._infer(item, selectors, params), ErrorKind.INFERENCE)

    async def _persist(self, item: QueueItem, snapshot: Dict[str, Any],
                       batch_id: Optional[str]):
        if self.history is None:
            return
        try:
            await asyncio.to_thread(
                self.history.save_item, item, self.tool.name, snapshot, batch_id)
        except Exception as e:
            # the item stays completed; only the durable copy is missing
            logger.error("Failed to save history for %s: %r", item.id, e)

    async def _charge(self, amount: int):
        if self.ledger is None or amount <= 0:
            return
        try:
            self.account = await self.ledger.charge(amount)
        except Exception as e:
            logger.error("Failed to charge %d credit(s): %r", amount, e)

    async def _refresh_account(self):
        if self.ledger is None:
            return
        try:
            self.account = await self.ledger.get_account()
        except Exception as e:
            logger.error("Failed to refresh credit balance: %r", e)

    async def run(self, selectors: Sequence[str], params: Optional[Dict[str, Any]] = None,
                  batch_id: Optional[str] = None) -> DispatchSummary:
        """Process every pending item once, in queue order"""
        if self._running:
            raise RuntimeError("Dispatcher is already running")

        params = dict(params or {})
        snapshot = {'tool': self.tool.name, 'selectors': list(selectors), **params}
        item_cost = self.tool.item_cost(selectors)
        items: List[QueueItem] = list(self.queue.items())
        summary = DispatchSummary(
            total=sum(1 for i in items if i.status == ItemStatus.PENDING))

        self._running = True
        self.queue.lock()
        dispatched = 0
        try:
            for item in items:
                if item.status != ItemStatus.PENDING:
                    continue

                if dispatched > 0:
                    await self.throttle.wait_between_requests()

                if self._stop_requested:
                    summary.stopped = True
                    logger.info("Dispatch stopped; %d item(s) left pending",
                                summary.total - summary.attempted)
                    break

                item.transition(ItemStatus.PROCESSING)
                self._emit(item)
                dispatched += 1
                self.throttle.mark_request()

                outcome = await self._process(item, selectors, params)

                if isinstance(outcome, Ok):
                    item.result = outcome.value
                    item.error = None
                    item.retryable = False
                    item.transition(ItemStatus.COMPLETED)
                    summary.succeeded += 1
                    logger.info("Item %s (%s) completed", item.id, item.source.filename)
                    self._emit(item)
                    await self._persist(item, snapshot, batch_id)
                    await self._charge(item_cost)
                    await self._refresh_account()
                    continue

                self._fail(item, outcome)
                summary.failed += 1
                self._emit(item)

                if outcome.kind == ErrorKind.RATE_LIMITED:
                    await self.throttle.backoff_after_rate_limit()
                elif outcome.kind == ErrorKind.CREDITS_EXHAUSTED:
                    summary.halted_reason = outcome.message
                    logger.error("Credits exhausted mid-run; halting dispatch")
                    break
        finally:
            self.queue.unlock()
            self._running = False
            self._stop_requested = False

        logger.info("Dispatch finished: %s", summary.message)
        return summary

    @staticmethod
    def _fail(item: QueueItem, outcome: Err):
        item.error = outcome.message
        item.retryable = outcome.retryable
        item.transition(ItemStatus.ERROR)
        logger.warning("Item %s (%s) failed [%s]: %s",
                       item.id, item.source.filename, outcome.kind.value, outcome.message)
