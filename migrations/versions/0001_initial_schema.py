"""Initial schema: scan_result, scan_job_status

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- scan_result ---
    op.create_table(
        "scan_result",
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("file_id", sa.Text(), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("file_hash", sa.Text(), nullable=False),
        sa.Column("tier", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("threat_level", sa.String(16), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column(
            "scan_engines",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("result", postgresql.JSONB(), nullable=False),
        sa.Column("scan_time_ms", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "status IN ('clean', 'suspicious', 'infected', 'error')",
            name="ck_scan_result_status",
        ),
    )
    op.create_index(
        "ix_scan_result_file_id_created_at", "scan_result", ["file_id", "created_at"]
    )
    op.create_index("ix_scan_result_file_hash", "scan_result", ["file_hash"])

    # --- scan_job_status ---
    op.create_table(
        "scan_job_status",
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("file_id", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'scanning', 'completed', 'error', 'cancelled')",
            name="ck_scan_job_status_status",
        ),
    )
    op.create_index("ix_scan_job_status_file_id", "scan_job_status", ["file_id"])


def downgrade() -> None:
    op.drop_index("ix_scan_job_status_file_id", table_name="scan_job_status")
    op.drop_table("scan_job_status")

    op.drop_index("ix_scan_result_file_hash", table_name="scan_result")
    op.drop_index("ix_scan_result_file_id_created_at", table_name="scan_result")
    op.drop_table("scan_result")
