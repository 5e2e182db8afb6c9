"""
Database models for generation batches and history records
"""
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import uuid

from sqlalchemy import (
    create_engine, Column, String, Integer, DateTime, Text, JSON,
    ForeignKey, Index
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship, Session

from .pipeline_config import config

Base = declarative_base()


def _uuid_str() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class GenerationBatch(Base):
    """A multi-file dispatch request"""
    __tablename__ = 'generation_batches'

    id = Column(String(36), primary_key=True, default=_uuid_str)
    name = Column(String(255), nullable=False)
    tool = Column(String(32), nullable=False)
    item_count = Column(Integer, nullable=False, default=0)
    item_cost = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utc_now)

    records = relationship(
        "HistoryRecord", back_populates="batch", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_batch_created', 'created_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'tool': self.tool,
            'item_count': self.item_count,
            'item_cost': self.item_cost,
            'created_at': _iso(self.created_at),
        }


class HistoryRecord(Base):
    """Durable copy of one successful dispatch"""
    __tablename__ = 'history_records'

    id = Column(String(36), primary_key=True, default=_uuid_str)
    batch_id = Column(String(36), ForeignKey(
        'generation_batches.id', ondelete='CASCADE'), nullable=True)
    tool = Column(String(32), nullable=False)
    original_filename = Column(String(512), nullable=True)
    asset_url = Column(Text, nullable=False)
    display_name = Column(String(512), nullable=True)

    # List of variant dicts (see models.Variant.to_dict)
    variants = Column(JSON, nullable=False, default=list)
    # Style, detail level, training context, selectors used for the run
    config_snapshot = Column(JSON, nullable=True)

    # Review tool only
    verdict = Column(String(16), nullable=True)
    overall_score = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utc_now)

    batch = relationship("GenerationBatch", back_populates="records")

    __table_args__ = (
        Index('idx_history_tool_created', 'tool', 'created_at'),
        Index('idx_history_batch', 'batch_id'),
        Index('idx_history_verdict', 'verdict'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'batch_id': self.batch_id,
            'tool': self.tool,
            'original_filename': self.original_filename,
            'asset_url': self.asset_url,
            'display_name': self.display_name,
            'variants': self.variants or [],
            'config_snapshot': self.config_snapshot or {},
            'verdict': self.verdict,
            'overall_score': self.overall_score,
            'details': self.details or {},
            'created_at': _iso(self.created_at),
        }


class DatabaseManager:
    """Database connection and session management"""

    def __init__(self, url: Optional[str] = None):
        self.engine = None
        self.SessionLocal = None
        self._initialize_database(url)

    def _initialize_database(self, url: Optional[str]):
        """Initialize database connection"""
        db_config = config.get_database_config()
        if url:
            db_config = {'url': url, 'echo': config.database_echo}
            if url.startswith('sqlite'):
                db_config['connect_args'] = {'check_same_thread': False}
                if ':memory:' in url:
                    from sqlalchemy.pool import StaticPool
                    db_config['poolclass'] = StaticPool
        self.engine = create_engine(**db_config)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False,
            bind=self.engine)

    def create_tables(self):
        """Create all database tables"""
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self):
        """Drop all database tables (use with caution)"""
        Base.metadata.drop_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session"""
        return self.SessionLocal()

    def close(self):
        """Close database connections"""
        if self.engine:
            self.engine.dispose()


# Global database manager instance
db_manager = DatabaseManager()


def init_database():
    """Initialize database tables"""
    db_manager.create_tables()
