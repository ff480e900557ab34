from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from timeboxer.config.settings import get_settings

settings = get_settings()


def _utcnow():
    return datetime.now(timezone.utc)


def make_engine(url: str):
    """Create an engine; in-memory SQLite is pinned to one shared connection."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, pool_pre_ping=True, echo=False)


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


class WorkItemModel(Base):
    __tablename__ = "work_items"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    estimated_hours = Column(Float, nullable=False)
    priority = Column(Integer, nullable=False, default=999, index=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AvailabilityRuleModel(Base):
    __tablename__ = "availability_rules"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    weekdays = Column(JSON, nullable=False)  # List[int], 0 = Sunday
    start_time = Column(String(8), nullable=False)  # "HH:MM"
    end_time = Column(String(8), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    min_duration_minutes = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class AssignmentModel(Base):
    __tablename__ = "assignments"

    id = Column(String, primary_key=True)
    work_item_id = Column(String, ForeignKey("work_items.id", ondelete="CASCADE"), nullable=False, index=True)
    work_item_name = Column(String, nullable=False)
    start = Column(DateTime(timezone=True), nullable=False)
    end = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Float, nullable=False)  # hours
    status = Column(String, nullable=False, default="scheduled")
    priority = Column(Integer, nullable=False)
    color = Column(String, nullable=True)
    external_event_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
