"""SQLAlchemy setup: engine, tables and session factory."""

import datetime
import logging
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

import config

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; every DateTime column stores UTC."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class AuditJobRecord(Base):
    """
    Table 'seo_audit_jobs': one row per audit job.

    `active_owner` holds the requester id while the job is pending or running
    and NULL afterwards. Its unique constraint is the one-active-job-per-user
    gate: a second concurrent insert for the same requester fails atomically.
    """

    __tablename__ = "seo_audit_jobs"

    id = Column(String(64), primary_key=True)
    requester_id = Column(String(128), nullable=False, index=True)
    active_owner = Column(String(128), nullable=True, unique=True)

    urls = Column(JSON, nullable=False)
    language = Column(String(16), nullable=False, default="en")

    # pending, running, completed, failed
    status = Column(String(16), nullable=False, default="pending", index=True)
    progress = Column(JSON, nullable=True)
    results = Column(JSON, nullable=False, default=list)
    summary = Column(JSON, nullable=True)
    report_path = Column(String(512), nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)


class AuditLogEntry(Base):
    """Table 'audit_logs': who did what to which entity."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    action = Column(String(32), nullable=True)
    module = Column(String(64), nullable=False)
    entity_id = Column(String(128), nullable=True)
    entity_type = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


def make_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or config.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine) -> None:
    """Create the tables if they do not exist yet."""
    logger.info("Creating tables (if missing)...")
    Base.metadata.create_all(bind=engine)
