"""Edition numbering and provenance ledger schema

Revision ID: 20261001_edition_provenance
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_edition_provenance"
down_revision = None
branch_labels = None
depends_on = None


EVENT_TYPES = (
    "edition_assigned",
    "nfc_authenticated",
    "ownership_transfer",
    "status_changed",
    "certificate_generated",
    "edition_revoked",
)


def upgrade():
    op.create_table(
        "line_items",
        sa.Column("line_item_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="inactive"),
        sa.Column("fulfillment_status", sa.String(32), nullable=True),
        sa.Column("removed_reason", sa.String(32), nullable=True),
        sa.Column("edition_number", sa.Integer(), nullable=True),
        sa.Column("edition_total", sa.Integer(), nullable=True),
        sa.Column("owner_id", sa.String(64), nullable=True),
        sa.Column("owner_name", sa.String(255), nullable=True),
        sa.Column("owner_email", sa.String(255), nullable=True),
        sa.Column("nfc_tag_id", sa.String(128), nullable=True),
        sa.Column("nfc_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("certificate_url", sa.String(512), nullable=True),
        sa.Column("certificate_token", sa.String(64), nullable=True),
        sa.Column("certificate_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("line_item_id"),
    )

    with op.batch_alter_table("line_items", schema=None) as batch_op:
        batch_op.create_index("ix_line_items_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_line_items_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_line_items_status", ["status"], unique=False)
        batch_op.create_index("ix_line_items_owner_id", ["owner_id"], unique=False)
        batch_op.create_index("ix_line_items_owner_email", ["owner_email"], unique=False)
        batch_op.create_index(
            "ix_line_items_product_status_created", ["product_id", "status", "created_at"], unique=False
        )

    op.create_table(
        "nfc_tags",
        sa.Column("tag_id", sa.String(128), nullable=False),
        sa.Column("line_item_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["line_item_id"], ["line_items.line_item_id"]),
        sa.PrimaryKeyConstraint("tag_id"),
        sa.UniqueConstraint("line_item_id", name="uq_nfc_tags_line_item"),
    )

    op.create_table(
        "product_edition_locks",
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("generation", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("active_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("product_id"),
    )

    op.create_table(
        "edition_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("line_item_id", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("edition_number", sa.Integer(), nullable=True),
        sa.Column(
            "event_type",
            sa.Enum(*EVENT_TYPES, name="editioneventtype", native_enum=False, length=32, create_constraint=True),
            nullable=False,
        ),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=True),
        sa.Column("owner_name", sa.String(255), nullable=True),
        sa.Column("owner_email", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.ForeignKeyConstraint(["line_item_id"], ["line_items.line_item_id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("edition_events", schema=None) as batch_op:
        batch_op.create_index("ix_edition_events_event_type", ["event_type"], unique=False)
        batch_op.create_index(
            "ix_edition_events_line_item_created", ["line_item_id", "created_at", "id"], unique=False
        )
        batch_op.create_index("ix_edition_events_product_type", ["product_id", "event_type"], unique=False)


def downgrade():
    op.drop_table("edition_events")
    op.drop_table("product_edition_locks")
    op.drop_table("nfc_tags")
    op.drop_table("line_items")
