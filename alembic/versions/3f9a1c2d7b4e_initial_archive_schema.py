"""initial_archive_schema

Revision ID: 3f9a1c2d7b4e
Revises:
Create Date: 2025-11-02 10:14:52.318406

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b4e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ARCHIVE_STATUSES = ("pending", "downloading", "uploading", "completed", "failed")

ARCHIVING_SUMMARY_VIEW = """
CREATE VIEW archiving_summary AS
SELECT
    e.id AS ecocert_id,
    e.title,
    e.chain_id,
    COUNT(DISTINCT a.uid) AS attestation_count,
    COUNT(DISTINCT r.id) AS total_archived_count,
    COUNT(DISTINCT CASE WHEN r.status = 'completed' THEN r.id END) AS completed_count,
    COUNT(DISTINCT CASE WHEN r.status = 'failed' THEN r.id END) AS failed_count,
    COUNT(DISTINCT CASE WHEN r.status IN ('pending', 'downloading', 'uploading')
        THEN r.id END) AS pending_count,
    e.processed_at
FROM ecocerts e
LEFT JOIN attestations a ON a.ecocert_id = e.id
LEFT JOIN archive_records r ON r.ecocert_id = e.id
GROUP BY e.id, e.title, e.chain_id, e.processed_at
"""


def upgrade() -> None:
    """Create ecocerts, attestations, archive_records and the archiving_summary view."""
    op.create_table(
        "ecocerts",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("chain_id", sa.String(length=10), nullable=False),
        sa.Column("contract_address", sa.String(length=42), nullable=False),
        sa.Column("token_id", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("attestation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_content_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ecocerts_created_at", "ecocerts", ["created_at"])
    op.create_index("ix_ecocerts_processed_at", "ecocerts", ["processed_at"])

    op.create_table(
        "attestations",
        sa.Column("uid", sa.String(length=66), nullable=False),
        sa.Column("ecocert_id", sa.String(), nullable=False),
        sa.Column("schema_uid", sa.String(length=66), nullable=False),
        sa.Column("attester", sa.String(length=42), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("creation_block_timestamp", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sources_count", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["ecocert_id"], ["ecocerts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("uid"),
    )
    op.create_index("ix_attestations_ecocert_id", "attestations", ["ecocert_id"])
    op.create_index("ix_attestations_schema_uid", "attestations", ["schema_uid"])
    op.create_index("ix_attestations_attester", "attestations", ["attester"])

    op.create_table(
        "archive_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ecocert_id", sa.String(), nullable=False),
        sa.Column("attestation_uid", sa.String(), nullable=False),
        sa.Column("original_url", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(length=100), nullable=False),
        sa.Column("file_extension", sa.String(length=10), nullable=True),
        sa.Column("content_identifier", sa.String(length=100), nullable=True),
        sa.Column("gateway_url", sa.String(length=300), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*ARCHIVE_STATUSES, name="archive_status", native_enum=False, length=20),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(), nullable=True),
        sa.Column("archived_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["ecocert_id"], ["ecocerts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["attestation_uid"], ["attestations.uid"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_archive_records_ecocert_id", "archive_records", ["ecocert_id"])
    op.create_index("ix_archive_records_attestation_uid", "archive_records", ["attestation_uid"])
    op.create_index("ix_archive_records_original_url", "archive_records", ["original_url"])
    op.create_index(
        "ix_archive_records_content_identifier", "archive_records", ["content_identifier"]
    )
    op.create_index("ix_archive_records_status", "archive_records", ["status"])
    op.create_index("ix_archive_records_last_retry_at", "archive_records", ["last_retry_at"])
    op.create_index("ix_archive_records_archived_at", "archive_records", ["archived_at"])

    op.execute(ARCHIVING_SUMMARY_VIEW)


def downgrade() -> None:
    """Drop the archiving_summary view and all archive tables."""
    op.execute("DROP VIEW IF EXISTS archiving_summary")
    op.drop_table("archive_records")
    op.drop_table("attestations")
    op.drop_table("ecocerts")
