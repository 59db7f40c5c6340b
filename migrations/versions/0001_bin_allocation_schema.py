"""create bin allocation schema

Revision ID: 0001_bin_allocation_schema
Revises: 
Create Date: 2026-10-18

"""

from alembic import op
import sqlalchemy as sa


revision = "0001_bin_allocation_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "bin",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("description", sa.String()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("row_count >= 1", name="ck_bin_row_count_positive"),
    )

    op.create_table(
        "stock_item",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("blueprint_id", sa.Integer()),
        sa.Column("game", sa.String()),
        sa.Column("set_code", sa.String()),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("image_url", sa.String()),
        sa.Column("condition", sa.String()),
        sa.Column("is_foil", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("price", sa.Numeric(12, 2)),
        sa.Column("total_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("total_quantity >= 0", name="ck_stock_item_total_nonnegative"),
    )
    op.create_index("ix_stock_item_set_code", "stock_item", ["set_code"])

    op.create_table(
        "stock_location",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "stock_item_id",
            sa.Integer(),
            sa.ForeignKey("stock_item.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("bin_id", sa.Integer(), sa.ForeignKey("bin.id"), nullable=False),
        sa.Column("bin_row", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("stock_item_id", "bin_id", "bin_row", name="uq_stock_location_slot"),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_location_quantity_nonnegative"),
        sa.CheckConstraint("bin_row >= 1", name="ck_stock_location_row_positive"),
    )

    op.create_table(
        "allocation_record",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("order_code", sa.String()),
        sa.Column("stock_item_external_id", sa.Integer(), nullable=False),
        sa.Column("item_name", sa.String()),
        sa.Column("requested_quantity", sa.Integer(), nullable=False),
        sa.Column("fulfilled_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unfilled_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("picked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("picked_at", sa.DateTime()),
        sa.Column("picked_by", sa.String()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", "stock_item_external_id", name="uq_allocation_order_item"),
        sa.CheckConstraint("requested_quantity >= 0", name="ck_allocation_requested"),
        sa.CheckConstraint("fulfilled_quantity >= 0", name="ck_allocation_fulfilled"),
        sa.CheckConstraint("unfilled_quantity >= 0", name="ck_allocation_unfilled"),
    )
    op.create_index("ix_allocation_record_order_id", "allocation_record", ["order_id"])
    op.create_index("ix_allocation_record_order_code", "allocation_record", ["order_code"])

    op.create_table(
        "allocation_pick",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "allocation_id",
            sa.Integer(),
            sa.ForeignKey("allocation_record.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("bin_id", sa.Integer(), nullable=False),
        sa.Column("bin_label", sa.String()),
        sa.Column("bin_row", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("quantity > 0", name="ck_allocation_pick_quantity_positive"),
    )

    op.create_table(
        "change_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("change_type", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False, server_default="system"),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("order_id", sa.String()),
        sa.Column("external_id", sa.Integer()),
        sa.Column("delta_quantity", sa.Integer()),
        sa.Column("bin_id", sa.Integer()),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_change_log_change_type", "change_log", ["change_type"])
    op.create_index("ix_change_log_order_id", "change_log", ["order_id"])


def downgrade():
    op.drop_index("ix_change_log_order_id", table_name="change_log")
    op.drop_index("ix_change_log_change_type", table_name="change_log")
    op.drop_table("change_log")
    op.drop_table("allocation_pick")
    op.drop_index("ix_allocation_record_order_code", table_name="allocation_record")
    op.drop_index("ix_allocation_record_order_id", table_name="allocation_record")
    op.drop_table("allocation_record")
    op.drop_table("stock_location")
    op.drop_index("ix_stock_item_set_code", table_name="stock_item")
    op.drop_table("stock_item")
    op.drop_table("bin")
