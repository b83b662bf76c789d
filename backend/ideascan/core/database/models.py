# backend/ideascan/core/database/models.py
"""
SQLAlchemy ORM models for the scan pipeline.

Models:
    - Topic: A tracked forum/subreddit
    - Scan: One run of the pipeline over one topic and date window
    - Item: One fetched post (global, de-duplicated by source_id)
    - Reply: One comment on an item
    - Classification: Dual-model consensus verdict for an item (at most one)
    - Idea: Business idea extracted from a kept/borderline item

Items and their Classifications/Ideas outlive any single Scan; a rescan
re-associates existing items instead of duplicating them.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from .base import Base


# Scan statuses
SCAN_PENDING = "pending"
SCAN_FETCHING = "fetching"
SCAN_CLASSIFYING = "classifying"
SCAN_EXTRACTING = "extracting"
SCAN_COMPLETED = "completed"
SCAN_FAILED = "failed"

TERMINAL_SCAN_STATUSES = (SCAN_COMPLETED, SCAN_FAILED)
ACTIVE_SCAN_STATUSES = (SCAN_PENDING, SCAN_FETCHING, SCAN_CLASSIFYING, SCAN_EXTRACTING)

SCAN_TYPE_INITIAL = "initial"
SCAN_TYPE_RESCAN = "rescan"

# Classification final decisions
DECISION_KEEP = "keep"
DECISION_DISCARD = "discard"
DECISION_BORDERLINE = "borderline"
DECISION_PENDING = "pending"

TERMINAL_DECISIONS = (DECISION_KEEP, DECISION_DISCARD, DECISION_BORDERLINE)
EXTRACTABLE_DECISIONS = (DECISION_KEEP, DECISION_BORDERLINE)


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Topic(Base):
    """
    A tracked forum/subreddit.

    Attributes:
        id: Unique topic identifier
        name: Forum name as used by the content source (unique, e.g. "SaaS")
        is_active: Whether scans may be started
        last_scanned_at: Set when a scan of this topic completes

    Relationships:
        scans: Scans run over this topic
        items: Items fetched for this topic
    """

    __tablename__ = "topics"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_scanned_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    scans = relationship("Scan", back_populates="topic", cascade="all, delete-orphan")
    items = relationship("Item", back_populates="topic", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Topic(id={self.id}, name={self.name})>"


class Scan(Base):
    """
    One attempt to process one topic over a date window.

    Status follows a strict forward state machine:
        pending -> fetching -> classifying -> extracting -> completed
    with failed reachable from any non-terminal status. Only guarded
    transitions in ScanStateService mutate status and counters.

    Attributes:
        scan_type: initial | rescan
        status: see SCAN_* constants
        date_from / date_to: fetch window
        items_fetched / items_classified / items_extracted / ideas_found:
            progress counters (incremented atomically, reconciled by finalizers)
        checkpoint: opaque continuation cursor for resumable fetch
        child_jobs_total / child_jobs_done: reply-fetch completion tracking;
            total stays NULL until reply jobs are dispatched
        error_message: human-readable failure reason
    """

    __tablename__ = "scans"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    topic_id = Column(
        UUID(), ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scan_type = Column(String(20), nullable=False, default=SCAN_TYPE_INITIAL)
    status = Column(String(20), nullable=False, default=SCAN_PENDING, index=True)

    date_from = Column(DateTime, nullable=True)
    date_to = Column(DateTime, nullable=True)

    items_fetched = Column(Integer, nullable=False, default=0)
    items_classified = Column(Integer, nullable=False, default=0)
    items_extracted = Column(Integer, nullable=False, default=0)
    ideas_found = Column(Integer, nullable=False, default=0)

    checkpoint = Column(String(255), nullable=True)
    child_jobs_total = Column(Integer, nullable=True)
    child_jobs_done = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    topic = relationship("Topic", back_populates="scans")

    __table_args__ = (
        Index("ix_scans_topic_status", "topic_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Scan(id={self.id}, topic_id={self.topic_id}, status={self.status})>"


class Item(Base):
    """
    One fetched post.

    source_id is the content source's global identifier; fetch jobs upsert
    on it, refreshing engagement metrics and re-pointing scan_id at the
    scan that touched the item last.

    extracted_at is set exactly once by the extraction worker (with or
    without ideas) and marks the item as processed by extraction.
    """

    __tablename__ = "items"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    source_id = Column(String(64), nullable=False, unique=True, index=True)
    topic_id = Column(
        UUID(), ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scan_id = Column(
        UUID(), ForeignKey("scans.id", ondelete="SET NULL"), nullable=True, index=True
    )

    title = Column(Text, nullable=False)
    body = Column(Text, nullable=True)
    author = Column(String(255), nullable=True)
    permalink = Column(String(1024), nullable=True)
    url = Column(String(2048), nullable=True)

    upvotes = Column(Integer, nullable=False, default=0)
    downvotes = Column(Integer, nullable=False, default=0)
    num_comments = Column(Integer, nullable=False, default=0)
    upvote_ratio = Column(Float, nullable=True)

    source_created_at = Column(DateTime, nullable=True)
    fetched_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    extracted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    topic = relationship("Topic", back_populates="items")
    replies = relationship("Reply", back_populates="item", cascade="all, delete-orphan")
    classification = relationship(
        "Classification", back_populates="item", uselist=False, cascade="all, delete-orphan"
    )
    ideas = relationship("Idea", back_populates="item", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Item(id={self.id}, source_id={self.source_id})>"


class Reply(Base):
    """A comment on an item, unique per (item_id, source_id)."""

    __tablename__ = "replies"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(
        UUID(), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_id = Column(String(64), nullable=False)
    parent_source_id = Column(String(64), nullable=True)
    author = Column(String(255), nullable=True)
    body = Column(Text, nullable=False, default="")
    upvotes = Column(Integer, nullable=False, default=0)
    depth = Column(Integer, nullable=False, default=0)
    source_created_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    item = relationship("Item", back_populates="replies")

    __table_args__ = (
        UniqueConstraint("item_id", "source_id", name="uq_replies_item_source"),
    )

    @property
    def display_author(self) -> str:
        return self.author or "[deleted]"


class Classification(Base):
    """
    Dual-model consensus classification, at most one per item.

    The primary_* and secondary_* columns hold the per-model verdict for
    the first and second configured classification providers. A row with
    final_decision = "pending" is a leftover from a crashed attempt and
    is deleted and recreated by the next classify chunk that reaches it.
    """

    __tablename__ = "classifications"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(
        UUID(), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    scan_id = Column(
        UUID(), ForeignKey("scans.id", ondelete="SET NULL"), nullable=True, index=True
    )

    primary_provider = Column(String(50), nullable=True)
    primary_verdict = Column(String(10), nullable=True)
    primary_confidence = Column(Float, nullable=True)
    primary_category = Column(String(50), nullable=True)
    primary_reasoning = Column(Text, nullable=True)
    primary_completed = Column(Boolean, nullable=False, default=False)

    secondary_provider = Column(String(50), nullable=True)
    secondary_verdict = Column(String(10), nullable=True)
    secondary_confidence = Column(Float, nullable=True)
    secondary_category = Column(String(50), nullable=True)
    secondary_reasoning = Column(Text, nullable=True)
    secondary_completed = Column(Boolean, nullable=False, default=False)

    combined_score = Column(Float, nullable=True)
    final_decision = Column(String(20), nullable=False, default=DECISION_PENDING, index=True)
    classified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    item = relationship("Item", back_populates="classification")

    @property
    def is_terminal(self) -> bool:
        return self.final_decision in TERMINAL_DECISIONS

    def __repr__(self) -> str:
        return f"<Classification(item_id={self.item_id}, decision={self.final_decision})>"


class Idea(Base):
    """
    A business idea extracted from one item.

    Immutable after creation except for the star flag.
    """

    __tablename__ = "ideas"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(
        UUID(), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scan_id = Column(
        UUID(), ForeignKey("scans.id", ondelete="SET NULL"), nullable=True, index=True
    )

    idea_title = Column(String(500), nullable=False)
    problem_statement = Column(Text, nullable=False)
    proposed_solution = Column(Text, nullable=False, default="")
    target_audience = Column(Text, nullable=False, default="")
    why_small_team_viable = Column(Text, nullable=False, default="")
    demand_evidence = Column(Text, nullable=False, default="")
    monetization_model = Column(Text, nullable=False, default="")

    branding_suggestions = Column(JSON, nullable=False, default=dict)
    marketing_channels = Column(JSON, nullable=False, default=list)
    existing_competitors = Column(JSON, nullable=False, default=list)
    scores = Column(JSON, nullable=False, default=dict)

    score_monetization = Column(Integer, nullable=False, default=0)
    score_saturation = Column(Integer, nullable=False, default=0)
    score_complexity = Column(Integer, nullable=False, default=0)
    score_demand = Column(Integer, nullable=False, default=0)
    score_overall = Column(Integer, nullable=False, default=0, index=True)

    source_quote = Column(Text, nullable=False, default="")
    classification_status = Column(String(20), nullable=False, default=DECISION_KEEP)

    is_starred = Column(Boolean, nullable=False, default=False)
    starred_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    item = relationship("Item", back_populates="ideas")

    __table_args__ = (
        Index("ix_ideas_scan_score", "scan_id", "score_overall"),
    )

    def __repr__(self) -> str:
        return f"<Idea(id={self.id}, title={self.idea_title!r})>"
