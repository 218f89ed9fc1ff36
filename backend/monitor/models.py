"""SQLAlchemy models for events, sessions, recommendations and snapshots."""
from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Column, Date, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

from .database import utcnow

Base = declarative_base()


class MonitorEvent(Base):
    __tablename__ = "monitor_events"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    session_id = Column(String(64), index=True)
    user_id = Column(String(64))
    page = Column(String(500))
    category = Column(String(50), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    viewport_width = Column(Integer)
    viewport_height = Column(Integer)
    device_class = Column(String(20))
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class MonitorSession(Base):
    __tablename__ = "monitor_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), unique=True, nullable=False)
    user_id = Column(String(64))
    user_agent = Column(Text)
    screen_resolution = Column(String(20))
    language = Column(String(35))
    referrer = Column(Text)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    last_activity = Column(DateTime, default=utcnow, nullable=False)
    page_views = Column(Integer, default=0, nullable=False)
    total_events = Column(Integer, default=0, nullable=False)


class Recommendation(Base):
    __tablename__ = "monitor_recommendations"

    id = Column(Integer, primary_key=True, index=True)
    generated_at = Column(DateTime, default=utcnow, nullable=False)
    category = Column(String(50), nullable=False)
    priority = Column(String(20), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    evidence = Column(Text)
    impact = Column(String(20))
    effort = Column(String(20))
    status = Column(String(20), default="new", nullable=False, index=True)
    source_model = Column(String(50))


class Snapshot(Base):
    __tablename__ = "monitor_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_date = Column(Date, unique=True, nullable=False, index=True)
    metrics = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
