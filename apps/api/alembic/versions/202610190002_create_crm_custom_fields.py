"""create crm custom field tables

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_field_definition",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_system_field", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("section_key", sa.String(length=64), nullable=True),
        sa.Column("placeholder", sa.Text(), nullable=True),
        sa.Column("help_text", sa.Text(), nullable=True),
        sa.Column("default_value", sa.Text(), nullable=True),
        sa.Column("validation_rules", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "name", name="uq_crm_field_definition_entity_name"),
    )
    op.create_index(
        "ix_crm_field_definition_entity_order",
        "crm_field_definition",
        ["entity_type", "sort_order", "id"],
        unique=False,
    )

    op.create_table(
        "crm_field_option",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("field_id", sa.BigInteger(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["field_id"], ["crm_field_definition.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_field_option_field", "crm_field_option", ["field_id", "sort_order"], unique=False)

    op.create_table(
        "crm_field_value",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("record_id", sa.BigInteger(), nullable=False),
        sa.Column("field_id", sa.BigInteger(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["field_id"], ["crm_field_definition.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "record_id", "field_id", name="uq_crm_field_value_record_field"),
    )
    op.create_index("ix_crm_field_value_record", "crm_field_value", ["entity_type", "record_id"], unique=False)
    op.create_index("ix_crm_field_value_field", "crm_field_value", ["field_id"], unique=False)

    op.create_table(
        "crm_form_section",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("section_key", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("icon", sa.String(length=64), nullable=True),
        sa.Column("gradient", sa.Text(), nullable=True),
        sa.Column("is_visible", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_default_open", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "section_key", name="uq_crm_form_section_entity_key"),
    )
    op.create_index(
        "ix_crm_form_section_entity_order",
        "crm_form_section",
        ["entity_type", "sort_order"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_form_section_entity_order", table_name="crm_form_section")
    op.drop_table("crm_form_section")
    op.drop_index("ix_crm_field_value_field", table_name="crm_field_value")
    op.drop_index("ix_crm_field_value_record", table_name="crm_field_value")
    op.drop_table("crm_field_value")
    op.drop_index("ix_crm_field_option_field", table_name="crm_field_option")
    op.drop_table("crm_field_option")
    op.drop_index("ix_crm_field_definition_entity_order", table_name="crm_field_definition")
    op.drop_table("crm_field_definition")
