"""Initial schema for the patient record and summary tiers

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Creates patients, encounters, documents, the document_chunks semantic index
and the immutable summary_records table.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSION = 768


def upgrade() -> None:
    """Create all tables and indexes."""

    # Enable extensions
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ========================================
    # Patients table
    # ========================================
    op.create_table(
        "patients",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("mrn", sa.String(32), unique=True, nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("sex", sa.String(16), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
    )

    # ========================================
    # Encounters table
    # ========================================
    op.create_table(
        "encounters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("encounter_type", sa.String(32), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
        sa.CheckConstraint("end_date IS NULL OR end_date >= start_date",
                           name="encounter_dates_ordered"),
        sa.CheckConstraint("status IN ('active', 'closed', 'cancelled')",
                           name="encounter_status_valid"),
    )

    op.create_index("idx_encounters_patient_start", "encounters", ["patient_id", "start_date"])

    # ========================================
    # Documents table
    # ========================================
    op.create_table(
        "documents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("encounter_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("encounters.id", ondelete="CASCADE"), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("document_type", sa.String(50), nullable=False),
        sa.Column("document_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
    )

    op.create_index("idx_documents_encounter_id", "documents", ["encounter_id"])
    op.create_index("idx_documents_patient_id", "documents", ["patient_id"])
    op.create_index("idx_documents_document_type", "documents", ["document_type"])

    # ========================================
    # Document chunks table (semantic index)
    # ========================================
    op.create_table(
        "document_chunks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("encounter_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("encounters.id", ondelete="CASCADE"), nullable=False),
        sa.Column("document_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("section_type", sa.String(64), nullable=True),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSION), nullable=False),
    )

    op.create_index("idx_chunks_patient_id", "document_chunks", ["patient_id"])
    op.create_index("idx_chunks_encounter_id", "document_chunks", ["encounter_id"])
    op.create_index("idx_chunks_document_id", "document_chunks", ["document_id"])

    # IVFFlat vector index for similarity search
    op.execute("""
        CREATE INDEX idx_chunks_embedding ON document_chunks
        USING ivfflat (embedding vector_cosine_ops)
        WITH (lists = 100)
    """)

    # ========================================
    # Summary records table
    # ========================================
    op.create_table(
        "summary_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tier", sa.String(16), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("encounter_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("encounters.id", ondelete="CASCADE"), nullable=True),
        sa.Column("encounter_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary_text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("NOW()"), nullable=False),
        sa.CheckConstraint("period_end >= period_start", name="summary_period_ordered"),
        sa.CheckConstraint("(tier = 'encounter') = (encounter_id IS NOT NULL)",
                           name="summary_encounter_reference"),
    )

    # Aggregate tiers are unique per period, encounter summaries per encounter
    op.create_index("uq_summary_period", "summary_records",
                    ["patient_id", "tier", "period_start", "period_end"],
                    unique=True, postgresql_where=sa.text("tier <> 'encounter'"))
    op.create_index("uq_summary_encounter", "summary_records", ["encounter_id"],
                    unique=True, postgresql_where=sa.text("tier = 'encounter'"))
    op.create_index("idx_summaries_patient_tier", "summary_records",
                    ["patient_id", "tier", "period_start"])

    # ========================================
    # Updated_at trigger function
    # ========================================
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ language 'plpgsql'
    """)

    for table in ("patients", "encounters", "documents"):
        op.execute(f"""
            CREATE TRIGGER update_{table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()
        """)

    # Summary records are written once and never updated
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_summary_update()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'summary_records rows are immutable';
        END;
        $$ language 'plpgsql'
    """)
    op.execute("""
        CREATE TRIGGER summary_records_immutable
        BEFORE UPDATE ON summary_records
        FOR EACH ROW EXECUTE FUNCTION reject_summary_update()
    """)


def downgrade() -> None:
    """Drop all tables and trigger functions."""

    # Drop triggers
    op.execute("DROP TRIGGER IF EXISTS summary_records_immutable ON summary_records")
    for table in ("documents", "encounters", "patients"):
        op.execute(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_summary_update()")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    # Drop tables (reverse order due to foreign keys)
    op.drop_table("summary_records")
    op.drop_table("document_chunks")
    op.drop_table("documents")
    op.drop_table("encounters")
    op.drop_table("patients")

    # Note: Extensions are not dropped to avoid affecting other databases
