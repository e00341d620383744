"""SQLAlchemy ORM models for the Concord transaction journal."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ElementRow(Base):
    """Element model - latest committed snapshot of one element."""

    __tablename__ = "elements"
    __table_args__ = (Index("ix_elements_document", "document_id"),)

    element_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(255), nullable=False)
    element_class: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"ElementRow(id={self.element_id}, version={self.current_version})"


class EditRow(Base):
    """Edit model - one submitted edit and its current status."""

    __tablename__ = "edits"
    __table_args__ = (
        Index("ix_edits_element_status", "element_id", "status"),
    )

    edit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    element_id: Mapped[str] = mapped_column(
        ForeignKey("elements.element_id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[str] = mapped_column(String(255), nullable=False)
    base_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False)
    committed_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"EditRow(id={self.edit_id}, element={self.element_id}, status={self.status})"


class ConflictRow(Base):
    """Conflict model - detected conflict with its classification and status."""

    __tablename__ = "conflicts"
    __table_args__ = (
        Index("ix_conflicts_element_status", "element_id", "status"),
    )

    conflict_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    element_id: Mapped[str] = mapped_column(
        ForeignKey("elements.element_id", ondelete="CASCADE"),
        nullable=False,
    )
    classification: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"ConflictRow(id={self.conflict_id}, status={self.status})"


class ResolutionRow(Base):
    """Resolution model - the single decision record of a conflict."""

    __tablename__ = "resolutions"

    resolution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conflict_id: Mapped[str] = mapped_column(
        ForeignKey("conflicts.conflict_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    strategy_used: Mapped[str] = mapped_column(String(64), nullable=False)
    decided_by: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"ResolutionRow(id={self.resolution_id}, conflict={self.conflict_id})"
