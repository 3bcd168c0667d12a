"""vision_analysis_and_face_identity

Persisted pipeline results and registered face identities.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "vision_analysis",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("image_sha256", sa.String(), nullable=True),
        sa.Column("image_format", sa.String(), nullable=True),
        sa.Column("file_name", sa.String(), nullable=True),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("processing_time_ms", sa.Float(), nullable=False, server_default="0"),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("image_meta", JSON_TYPE, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_vision_analysis_user_created", "vision_analysis", ["user_id", "created_at"])
    op.create_index("ix_vision_analysis_session", "vision_analysis", ["session_id"])

    op.create_table(
        "face_identity",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("embedding", JSON_TYPE, nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_face_identity_user", "face_identity", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_face_identity_user", table_name="face_identity")
    op.drop_table("face_identity")
    op.drop_index("ix_vision_analysis_session", table_name="vision_analysis")
    op.drop_index("ix_vision_analysis_user_created", table_name="vision_analysis")
    op.drop_table("vision_analysis")
