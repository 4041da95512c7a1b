"""create upload pipeline tables

Revision ID: 0001_upload_pipeline
Revises:
Create Date: 2026-10-19 00:00:00.000001

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "0001_upload_pipeline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_JOB_CONDITION = "status IN ('PENDING', 'PROCESSING')"

json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
uuid_type = postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("username", sa.Text(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "sites",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("user_id", uuid_type, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("base_url", sa.Text(), nullable=False, unique=True),
        sa.Column("woo_consumer_key", sa.Text(), nullable=True),
        sa.Column("woo_consumer_secret", sa.Text(), nullable=True),
        sa.Column("wp_username", sa.Text(), nullable=True),
        sa.Column("wp_application_password", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "products",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("user_id", uuid_type, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("source_shop", sa.Text(), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Integer(), nullable=True),
        sa.Column("images", json_type, nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("category_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="DRAFT"),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "destination_categories",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("site_id", uuid_type, sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("remote_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=True),
        sa.Column("parent_remote_id", sa.Text(), nullable=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("site_id", "remote_id", name="uq_destination_categories_site_remote"),
    )

    op.create_table(
        "category_mappings",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("site_id", uuid_type, sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("source_name", sa.Text(), nullable=False),
        sa.Column("target_id", sa.Text(), nullable=True),
        sa.Column("destination_category_id", uuid_type, sa.ForeignKey("destination_categories.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("site_id", "source_name", name="uq_category_mappings_site_source"),
    )

    op.create_table(
        "upload_jobs",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("product_id", uuid_type, sa.ForeignKey("products.id"), nullable=False),
        sa.Column("site_id", uuid_type, sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("target_category", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", json_type, nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", uuid_type, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "uq_upload_jobs_active_pair",
        "upload_jobs",
        ["product_id", "site_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_JOB_CONDITION),
        sqlite_where=sa.text(ACTIVE_JOB_CONDITION),
    )
    op.create_index("ix_upload_jobs_status_available", "upload_jobs", ["status", "available_at"])

    op.create_table(
        "transactions",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("user_id", uuid_type, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("reference", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_transactions_user_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_upload_jobs_status_available", table_name="upload_jobs")
    op.drop_index("uq_upload_jobs_active_pair", table_name="upload_jobs")
    op.drop_table("upload_jobs")
    op.drop_table("category_mappings")
    op.drop_table("destination_categories")
    op.drop_table("products")
    op.drop_table("sites")
    op.drop_table("users")
