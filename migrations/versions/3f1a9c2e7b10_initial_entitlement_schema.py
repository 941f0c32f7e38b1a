"""initial entitlement schema

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2e7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "customer",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("customer_key", sa.String(length=191), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=False),
        sa.Column("customer_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_customer_customer_key", "customer", ["customer_key"], unique=True)
    op.create_index("ix_customer_created_at", "customer", ["created_at"], unique=False)

    op.create_table(
        "device",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("device_code", sa.String(length=191), nullable=False),
        sa.Column("device_model", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_device_device_code", "device", ["device_code"], unique=True)
    op.create_index("ix_device_created_at", "device", ["created_at"], unique=False)

    op.create_table(
        "customerdevice",
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("device_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("customer_id", "device_id"),
        sa.ForeignKeyConstraint(["customer_id"], ["customer.id"],
                                name="fk_customerdevice_customer_id", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["device_id"], ["device.id"],
                                name="fk_customerdevice_device_id", ondelete="CASCADE"),
    )
    op.create_index("ix_customerdevice_device_id", "customerdevice", ["device_id"], unique=False)

    # tokens reference customers by natural key
    op.create_table(
        "token",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("token_value", sa.String(length=64), nullable=False),
        sa.Column("customer_key", sa.String(length=191), nullable=False),
        sa.Column("token_init_date", sa.DateTime(), nullable=False),
        sa.Column("token_expiry", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["customer_key"], ["customer.customer_key"],
                                name="fk_token_customer_key", ondelete="CASCADE"),
        sa.CheckConstraint("token_expiry IS NULL OR token_expiry >= token_init_date",
                           name="ck_token_expiry_after_init"),
    )
    op.create_index("ix_token_token_value", "token", ["token_value"], unique=True)
    op.create_index("ix_token_customer_key", "token", ["customer_key"], unique=False)

    op.create_table(
        "apkinfo",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("apk_name", sa.String(length=128), nullable=False),
        sa.Column("apk_path", sa.Text(), nullable=False),
        sa.Column("apk_ver_number", sa.String(length=64), nullable=False),
        sa.Column("device_code", sa.String(length=191), nullable=False),
        sa.Column("token_value", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["device_code"], ["device.device_code"],
                                name="fk_apkinfo_device_code", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["token_value"], ["token.token_value"],
                                name="fk_apkinfo_token_value", ondelete="CASCADE"),
        sa.UniqueConstraint("device_code", "token_value", "apk_name", "apk_ver_number",
                            name="uq_apkinfo_grant"),
    )
    op.create_index("ix_apkinfo_device_code", "apkinfo", ["device_code"], unique=False)
    op.create_index("ix_apkinfo_token_value", "apkinfo", ["token_value"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_apkinfo_token_value", table_name="apkinfo")
    op.drop_index("ix_apkinfo_device_code", table_name="apkinfo")
    op.drop_table("apkinfo")
    op.drop_index("ix_token_customer_key", table_name="token")
    op.drop_index("ix_token_token_value", table_name="token")
    op.drop_table("token")
    op.drop_index("ix_customerdevice_device_id", table_name="customerdevice")
    op.drop_table("customerdevice")
    op.drop_index("ix_device_created_at", table_name="device")
    op.drop_index("ix_device_device_code", table_name="device")
    op.drop_table("device")
    op.drop_index("ix_customer_created_at", table_name="customer")
    op.drop_index("ix_customer_customer_key", table_name="customer")
    op.drop_table("customer")
