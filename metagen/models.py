"""
In-memory domain model for queued items, results and batches
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidTransitionError


class ItemStatus(Enum):
    """Queue item processing status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# Legal status transitions; error -> pending is the retry path
ALLOWED_TRANSITIONS = {
    ItemStatus.PENDING: {ItemStatus.PROCESSING},
    ItemStatus.PROCESSING: {ItemStatus.COMPLETED, ItemStatus.ERROR},
    ItemStatus.ERROR: {ItemStatus.PENDING},
    ItemStatus.COMPLETED: set(),
}


class Verdict(Enum):
    """File review verdict"""
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SourceFile:
    """A user-supplied file before upload"""
    filename: str
    content_type: str
    data: bytes = b''

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        if '.' not in self.filename:
            return ''
        return self.filename.rsplit('.', 1)[-1].lower()


@dataclass
class Variant:
    """One named slice of an item's result (a marketplace or a prompt focus)"""
    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'title': self.title,
            'description': self.description,
            'keywords': list(self.keywords),
            'prompt': self.prompt,
            'negative_prompt': self.negative_prompt,
            'extra': dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Variant':
        return cls(
            name=data.get('name', ''),
            title=data.get('title'),
            description=data.get('description'),
            keywords=list(data.get('keywords') or []),
            prompt=data.get('prompt'),
            negative_prompt=data.get('negative_prompt'),
            extra=dict(data.get('extra') or {}),
        )


@dataclass
class ResultPayload:
    """Result of one successful dispatch"""
    variants: List[Variant] = field(default_factory=list)
    verdict: Optional[Verdict] = None
    overall_score: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def variant(self, name: str) -> Optional[Variant]:
        for v in self.variants:
            if v.name == name:
                return v
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'variants': [v.to_dict() for v in self.variants],
            'verdict': self.verdict.value if self.verdict else None,
            'overall_score': self.overall_score,
            'details': dict(self.details),
        }


@dataclass
class QueueItem:
    """One file plus its processing status and eventual result"""
    source: SourceFile
    id: str = field(default_factory=_new_id)
    status: ItemStatus = ItemStatus.PENDING
    result: Optional[ResultPayload] = None
    error: Optional[str] = None
    retryable: bool = False
    uploaded_asset_url: Optional[str] = None

    @property
    def verdict(self) -> Optional[Verdict]:
        return self.result.verdict if self.result else None

    def transition(self, new_status: ItemStatus):
        """Move to new_status, rejecting anything off the legal path"""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Item {self.id}: cannot move from {self.status.value} to {new_status.value}")
        self.status = new_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'filename': self.source.filename,
            'content_type': self.source.content_type,
            'size': self.source.size,
            'status': self.status.value,
            'error': self.error,
            'retryable': self.retryable,
            'uploaded_asset_url': self.uploaded_asset_url,
            'result': self.result.to_dict() if self.result else None,
        }


@dataclass
class Batch:
    """Items submitted together in one dispatch request"""
    name: str
    item_ids: List[str]
    item_cost: int
    tool: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)

    @staticmethod
    def default_name(now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        return f"Batch {now.strftime('%Y-%m-%d')} {now.strftime('%H:%M:%S')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'tool': self.tool,
            'item_count': len(self.item_ids),
            'item_cost': self.item_cost,
            'created_at': self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class CreditAccount:
    balance: int
    unlimited: bool = False


@dataclass
class DispatchSummary:
    """Outcome of one dispatch run"""
    succeeded: int = 0
    failed: int = 0
    total: int = 0
    stopped: bool = False
    halted_reason: Optional[str] = None

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def message(self) -> str:
        if self.halted_reason:
            return f"{self.halted_reason} Processed {self.attempted} of {self.total}"
        if self.stopped:
            return f"Stopped. Processed {self.attempted} of {self.total}"
        if self.attempted == 0:
            return "No pending items to process"
        if self.failed == 0:
            return f"Processed {self.succeeded} image(s)!"
        if self.succeeded == 0:
            return "All files failed to process"
        return f"{self.succeeded} succeeded, {self.failed} failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'succeeded': self.succeeded,
            'failed': self.failed,
            'total': self.total,
            'stopped': self.stopped,
            'halted_reason': self.halted_reason,
            'message': self.message,
        }
