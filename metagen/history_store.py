"""
Result/history persistence on top of the SQLAlchemy models
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_

from .database_models import GenerationBatch, HistoryRecord, DatabaseManager, db_manager
from .models import Batch, QueueItem
from .pipeline_config import config
from .seo_filename import get_file_extension, make_filename

logger = logging.getLogger(__name__)


@dataclass
class HistoryFilter:
    tool: Optional[str] = None
    verdict: Optional[str] = None
    batch_id: Optional[str] = None
    search: Optional[str] = None
    limit: int = 50
    offset: int = 0


class HistoryStore:
    """Writes completed items and serves the history views"""

    def __init__(self, database: Optional[DatabaseManager] = None):
        self.db = database or db_manager

    @staticmethod
    def _utc_now():
        return datetime.now(timezone.utc)

    @staticmethod
    def display_name_for(item: QueueItem) -> str:
        """SEO filename of the first titled variant, else the original filename"""
        result = item.result
        if result:
            for variant in result.variants:
                if variant.title:
                    return make_filename(variant.title, variant.keywords, variant.name,
                                         get_file_extension(item.source.filename))
        return item.source.filename

    def build_record(self, item: QueueItem, tool: str,
                     config_snapshot: Optional[Dict[str, Any]] = None,
                     batch_id: Optional[str] = None) -> HistoryRecord:
        if item.result is None or not item.uploaded_asset_url:
            raise ValueError(f"Item {item.id} has no result to persist")
        result = item.result
        return HistoryRecord(
            batch_id=batch_id,
            tool=tool,
            original_filename=item.source.filename,
            asset_url=item.uploaded_asset_url,
            display_name=self.display_name_for(item),
            variants=[v.to_dict() for v in result.variants],
            config_snapshot=dict(config_snapshot or {}),
            verdict=result.verdict.value if result.verdict else None,
            overall_score=result.overall_score,
            details=dict(result.details),
            created_at=self._utc_now(),
        )

    def insert(self, record: HistoryRecord) -> Dict[str, Any]:
        """Persist a new record; every successful dispatch gets its own row"""
        with self.db.get_session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            logger.debug("Stored history record %s (%s)",
                         record.id, record.display_name)
            return record.to_dict()

    def save_item(self, item: QueueItem, tool: str,
                  config_snapshot: Optional[Dict[str, Any]] = None,
                  batch_id: Optional[str] = None) -> Dict[str, Any]:
        return self.insert(self.build_record(item, tool, config_snapshot, batch_id))

    def get(self, record_id: str) -> Dict[str, Any]:
        with self.db.get_session() as session:
            record = session.get(HistoryRecord, record_id)
            if not record:
                raise ValueError(f"History record {record_id} not found")
            return record.to_dict()

    def list(self, filters: Optional[HistoryFilter] = None) -> List[Dict[str, Any]]:
        """Newest first, optionally filtered"""
        filters = filters or HistoryFilter()
        with self.db.get_session() as session:
            query = session.query(HistoryRecord)
            if filters.tool:
                query = query.filter(HistoryRecord.tool == filters.tool)
            if filters.verdict:
                query = query.filter(HistoryRecord.verdict == filters.verdict)
            if filters.batch_id:
                query = query.filter(HistoryRecord.batch_id == filters.batch_id)
            if filters.search:
                pattern = f"%{filters.search}%"
                query = query.filter(or_(
                    HistoryRecord.display_name.ilike(pattern),
                    HistoryRecord.original_filename.ilike(pattern),
                ))
            query = query.order_by(HistoryRecord.created_at.desc())
            if filters.offset:
                query = query.offset(filters.offset)
            if filters.limit:
                query = query.limit(filters.limit)
            return [record.to_dict() for record in query.all()]

    def delete(self, record_id: str) -> bool:
        with self.db.get_session() as session:
            record = session.get(HistoryRecord, record_id)
            if not record:
                return False
            session.delete(record)
            session.commit()
            logger.info("Deleted history record %s", record_id)
            return True

    def create_batch(self, batch: Batch) -> Dict[str, Any]:
        with self.db.get_session() as session:
            row = GenerationBatch(
                id=batch.id,
                name=batch.name,
                tool=batch.tool,
                item_count=len(batch.item_ids),
                item_cost=batch.item_cost,
                created_at=batch.created_at,
            )
            session.add(row)
            session.commit()
            return row.to_dict()

    def list_batches(self, tool: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.get_session() as session:
            query = session.query(GenerationBatch)
            if tool:
                query = query.filter(GenerationBatch.tool == tool)
            rows = query.order_by(GenerationBatch.created_at.desc()).limit(limit).all()
            return [row.to_dict() for row in rows]

    def delete_batch(self, batch_id: str) -> int:
        """Delete a batch and its history records; returns records removed"""
        with self.db.get_session() as session:
            batch = session.get(GenerationBatch, batch_id)
            if not batch:
                raise ValueError(f"Batch {batch_id} not found")
            removed = len(batch.records)
            session.delete(batch)
            session.commit()
            logger.info("Deleted batch %s with %d record(s)", batch_id, removed)
            return removed

    def cleanup_older_than(self, days: Optional[int] = None) -> int:
        """Delete records (and emptied batches) older than the retention window"""
        days = config.history_retention_days if days is None else days
        cutoff = self._utc_now() - timedelta(days=days)
        with self.db.get_session() as session:
            removed = session.query(HistoryRecord).filter(
                HistoryRecord.created_at < cutoff
            ).delete(synchronize_session=False)
            emptied = session.query(GenerationBatch).filter(
                GenerationBatch.created_at < cutoff,
                ~GenerationBatch.records.any()
            ).delete(synchronize_session=False)
            session.commit()
        logger.info("History cleanup removed %d record(s) and %d batch(es) older than %d day(s)",
                    removed, emptied, days)
        return removed


# Global history store instance
history_store = HistoryStore()
