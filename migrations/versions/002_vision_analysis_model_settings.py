"""vision_analysis_model_settings

Record the pipeline options each persisted result was produced with.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.add_column("vision_analysis", sa.Column("model_settings", JSON_TYPE, nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("vision_analysis") as batch_op:
        batch_op.drop_column("model_settings")
