"""
Database models and operations for DockSteward
Uses SQLite for a local history of provisioning, update and restore runs
"""

import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, Index
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class RunRecord(Base):
    """One DockSteward command execution against a service"""
    __tablename__ = "run_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service = Column(String, nullable=False)
    action = Column(String, nullable=False)  # run | update | backup | restore | prune | start | stop | ...
    outcome = Column(String, nullable=False, default='running')  # running | updated | already_current | restored | installed | ok | failed | interrupted
    container_name = Column(String, nullable=True)
    previous_digest = Column(String, nullable=True)
    new_digest = Column(String, nullable=True)
    version = Column(String, nullable=True)
    backup_path = Column(String, nullable=True)
    rolled_back = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_run_records_service_started', 'service', 'started_at'),
    )

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None or self.started_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class DatabaseManager:
    """Owns the SQLite engine and hands out sessions"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ':memory:':
            directory = os.path.dirname(db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={'check_same_thread': False},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        if db_path != ':memory:':
            try:
                os.chmod(db_path, 0o600)
            except OSError:
                pass

    @contextmanager
    def get_session(self):
        """Session that commits on success and rolls back on error"""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def start_run(self, service: str, action: str, container_name: Optional[str] = None) -> int:
        """Insert a run in state 'running' and return its id"""
        with self.get_session() as session:
            record = RunRecord(
                service=service,
                action=action,
                outcome='running',
                container_name=container_name,
                started_at=utcnow(),
            )
            session.add(record)
            session.flush()
            return record.id

    def finish_run(
        self,
        run_id: int,
        outcome: str,
        previous_digest: Optional[str] = None,
        new_digest: Optional[str] = None,
        version: Optional[str] = None,
        backup_path: Optional[str] = None,
        rolled_back: bool = False,
        error: Optional[str] = None,
    ) -> None:
        """Record the final state of a run"""
        with self.get_session() as session:
            record = session.get(RunRecord, run_id)
            if record is None:
                logger.warning(f"Run record {run_id} disappeared before it could be finished")
                return
            record.outcome = outcome
            record.previous_digest = previous_digest or record.previous_digest
            record.new_digest = new_digest or record.new_digest
            record.version = version or record.version
            record.backup_path = backup_path or record.backup_path
            record.rolled_back = 1 if rolled_back else 0
            record.error = error
            record.finished_at = utcnow()

    def recent_runs(self, service: Optional[str] = None, limit: int = 20) -> List[RunRecord]:
        """Most recent runs first"""
        with self.get_session() as session:
            query = session.query(RunRecord)
            if service:
                query = query.filter(RunRecord.service == service)
            return query.order_by(RunRecord.started_at.desc(), RunRecord.id.desc()).limit(limit).all()

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        with self.get_session() as session:
            return session.get(RunRecord, run_id)
