# noteladder/models.py
from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint, Index
)


class ReviewTier(IntEnum):
    DAILY = 0
    WEEKLY = 1
    MONTHLY = 2
    YEARLY = 3

    @property
    def title(self) -> str:
        return self.name.capitalize()

    def promoted(self) -> "ReviewTier":
        """One tier up, capped at YEARLY."""
        return ReviewTier(min(self + 1, ReviewTier.YEARLY))


class ReviewType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def source_tier(self) -> ReviewTier:
        """The tier whose notes this review decides on."""
        return _SOURCE_TIERS[self]

    @property
    def title(self) -> str:
        return self.value.capitalize()


_SOURCE_TIERS = {
    ReviewType.WEEKLY: ReviewTier.DAILY,
    ReviewType.MONTHLY: ReviewTier.WEEKLY,
    ReviewType.YEARLY: ReviewTier.MONTHLY,
}


class ReviewStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Decision(str, Enum):
    KEPT = "kept"
    ARCHIVED = "archived"


class Base(DeclarativeBase):
    pass


class Category(Base):
    __tablename__ = "categories"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    color: Mapped[str | None] = mapped_column(String, nullable=True)  # "#137fec"
    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class SourceType(Base):
    __tablename__ = "source_types"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    icon: Mapped[str | None] = mapped_column(String, nullable=True)
    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Note(Base):
    __tablename__ = "notes"
    __table_args__ = (
        Index("ix_notes_created_at", "created_at"),
        Index("ix_notes_tier_archived", "review_tier", "archived"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    category_id: Mapped[str | None] = mapped_column(String, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_type_id: Mapped[str | None] = mapped_column(String, ForeignKey("source_types.id", ondelete="SET NULL"), nullable=True)
    review_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=ReviewTier.DAILY)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def tier(self) -> ReviewTier:
        return ReviewTier(self.review_tier)


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        Index("ix_tags_tag", "tag"),
    )

    note_id: Mapped[str] = mapped_column(String, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True)
    tag: Mapped[str] = mapped_column(String, primary_key=True)


class ReviewSession(Base):
    __tablename__ = "review_sessions"
    __table_args__ = (
        UniqueConstraint("review_type", "period_key", name="uq_review_sessions_type_period"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    review_type: Mapped[str] = mapped_column(String, nullable=False)  # weekly | monthly | yearly
    period_key: Mapped[str] = mapped_column(String, nullable=False)   # 2024-W48 | 2024-11 | 2024
    status: Mapped[str] = mapped_column(String, nullable=False, default=ReviewStatus.IN_PROGRESS.value)
    total_notes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes_reviewed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes_kept: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes_archived: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_completed(self) -> bool:
        return self.status == ReviewStatus.COMPLETED.value

    def complete_if_done(self, now: datetime) -> bool:
        """Move to completed once every counted note is decided; True on the transition."""
        if self.is_completed or self.total_notes <= 0 or self.notes_reviewed < self.total_notes:
            return False
        self.status = ReviewStatus.COMPLETED.value
        self.completed_at = now
        return True

    def reopen(self) -> None:
        self.status = ReviewStatus.IN_PROGRESS.value
        self.completed_at = None


class ReviewAction(Base):
    __tablename__ = "review_actions"
    __table_args__ = (
        UniqueConstraint("session_id", "note_id", name="uq_review_actions_session_note"),
        Index("ix_review_actions_note_id", "note_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id: Mapped[str] = mapped_column(String, ForeignKey("review_sessions.id", ondelete="CASCADE"), nullable=False)
    note_id: Mapped[str] = mapped_column(String, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False)
    decision: Mapped[str] = mapped_column(String, nullable=False)  # kept | archived
    decided_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # Note state before its first decision in this session
    prior_tier: Mapped[int] = mapped_column(Integer, nullable=False)
    prior_archived: Mapped[bool] = mapped_column(Boolean, nullable=False)
    prior_last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
