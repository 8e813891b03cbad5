"""
ChartRecall SQLAlchemy Models

Structured store for the longitudinal patient record: patients, encounters,
documents, semantic-index chunks and tiered summary records.
All models use SQLAlchemy 2.0 patterns with async support.
"""

import os
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# ============================================
# Configuration
# ============================================

# nomic-embed-text-v1.5 produces 768-dim vectors
EMBEDDING_DIMENSION = int(os.environ.get("EMBEDDING_DIMENSION", "768"))


# ============================================
# Base Model
# ============================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


class TimestampMixin:
    """Mixin adding created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# ============================================
# Patient Model
# ============================================


class Patient(Base, TimestampMixin):
    """Patient identity. The MRN is unique and never updated."""

    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    mrn: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    sex: Mapped[str | None] = mapped_column(String(16), nullable=True)

    encounters: Mapped[list["Encounter"]] = relationship(
        "Encounter",
        back_populates="patient",
        cascade="all, delete-orphan",
    )
    summaries: Mapped[list["SummaryRecordRow"]] = relationship(
        "SummaryRecordRow",
        back_populates="patient",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, mrn='{self.mrn}')>"


# ============================================
# Encounter Model
# ============================================


class Encounter(Base, TimestampMixin):
    """A visit or admission belonging to exactly one patient."""

    __tablename__ = "encounters"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
    )
    encounter_type: Mapped[str] = mapped_column(String(32), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    patient: Mapped["Patient"] = relationship("Patient", back_populates="encounters")
    documents: Mapped[list["Document"]] = relationship(
        "Document",
        back_populates="encounter",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="encounter_dates_ordered"
        ),
        CheckConstraint(
            "status IN ('active', 'closed', 'cancelled')", name="encounter_status_valid"
        ),
        Index("idx_encounters_patient_start", "patient_id", "start_date"),
    )

    def __repr__(self) -> str:
        return f"<Encounter(id={self.id}, type='{self.encounter_type}', status='{self.status}')>"


# ============================================
# Document Model
# ============================================


class Document(Base, TimestampMixin):
    """Clinical document metadata; content lives in the object store."""

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    encounter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("encounters.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Denormalized from the encounter so scoping predicates stay single-table
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    document_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    doc_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )

    encounter: Mapped["Encounter"] = relationship("Encounter", back_populates="documents")
    chunks: Mapped[list["DocumentChunk"]] = relationship(
        "DocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_documents_encounter_id", "encounter_id"),
        Index("idx_documents_patient_id", "patient_id"),
        Index("idx_documents_document_type", "document_type"),
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, type='{self.document_type}')>"


# ============================================
# Document Chunk Model (semantic index)
# ============================================


class DocumentChunk(Base):
    """Embedded document chunk carrying its exact-match scoping columns."""

    __tablename__ = "document_chunks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
    )
    encounter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("encounters.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    section_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(EMBEDDING_DIMENSION),
        nullable=False,
    )

    document: Mapped["Document"] = relationship("Document", back_populates="chunks")

    # IVFFlat index on embedding is created via migration
    __table_args__ = (
        Index("idx_chunks_patient_id", "patient_id"),
        Index("idx_chunks_encounter_id", "encounter_id"),
        Index("idx_chunks_document_id", "document_id"),
    )

    def __repr__(self) -> str:
        return f"<DocumentChunk(id={self.id}, document_id={self.document_id})>"


# ============================================
# Summary Record Model
# ============================================


class SummaryRecordRow(Base):
    """Precomputed summary for one (patient, tier, period). Immutable."""

    __tablename__ = "summary_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
    )
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    encounter_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("encounters.id", ondelete="CASCADE"),
        nullable=True,
    )
    encounter_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    summary_text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    patient: Mapped[Optional["Patient"]] = relationship(
        "Patient", back_populates="summaries"
    )

    __table_args__ = (
        Index(
            "uq_summary_period",
            "patient_id",
            "tier",
            "period_start",
            "period_end",
            unique=True,
            postgresql_where=text("tier <> 'encounter'"),
        ),
        Index(
            "uq_summary_encounter",
            "encounter_id",
            unique=True,
            postgresql_where=text("tier = 'encounter'"),
        ),
        CheckConstraint("period_end >= period_start", name="summary_period_ordered"),
        CheckConstraint(
            "(tier = 'encounter') = (encounter_id IS NOT NULL)",
            name="summary_encounter_reference",
        ),
        Index("idx_summaries_patient_tier", "patient_id", "tier", "period_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<SummaryRecordRow(tier='{self.tier}', "
            f"period={self.period_start}..{self.period_end})>"
        )
