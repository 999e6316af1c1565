"""Create the scraped_data table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "202510010000"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scraped_data",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("job_id", sa.String(length=512), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_unique_constraint("uq_scraped_data_job_id", "scraped_data", ["job_id"])
    op.create_index("idx_scraped_data_user_created", "scraped_data", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_scraped_data_user_created", table_name="scraped_data")
    op.drop_constraint("uq_scraped_data_job_id", "scraped_data", type_="unique")
    op.drop_table("scraped_data")
