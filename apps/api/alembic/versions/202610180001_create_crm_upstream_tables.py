"""create crm upstream tables read by principal activity

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_organization",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=True),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("size", sa.String(length=32), nullable=True),
        sa.Column("lead_score", sa.Integer(), nullable=True),
        sa.Column("is_principal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_distributor", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("distributor_id", sa.Uuid(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("state_province", sa.Text(), nullable=True),
        sa.Column("country", sa.Text(), nullable=True),
        sa.Column("last_contact_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["distributor_id"], ["crm_organization.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_organization_is_principal", "crm_organization", ["is_principal", "deleted_at"], unique=False)
    op.create_index("ix_crm_organization_distributor_id", "crm_organization", ["distributor_id"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["organization_id"], ["crm_organization.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_organization_updated", "crm_contact", ["organization_id", "updated_at"], unique=False)

    op.create_table(
        "crm_product",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_product_principal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("principal_id", sa.Uuid(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_primary_principal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("exclusive_rights", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("contract_start_date", sa.Date(), nullable=True),
        sa.Column("contract_end_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["crm_product.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["principal_id"], ["crm_organization.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_product_principal_principal_id",
        "crm_product_principal",
        ["principal_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("principal_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("product_id", sa.Uuid(), nullable=True),
        sa.Column("stage", sa.String(length=64), nullable=False, server_default="New Lead"),
        sa.Column("is_won", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("probability_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["principal_id"], ["crm_organization.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["organization_id"], ["crm_organization.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["product_id"], ["crm_product.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_opportunity_principal_updated", "crm_opportunity", ["principal_id", "updated_at"], unique=False)
    op.create_index("ix_crm_opportunity_principal_product", "crm_opportunity", ["principal_id", "product_id"], unique=False)

    op.create_table(
        "crm_interaction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("interaction_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("follow_up_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("follow_up_date", sa.Date(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_interaction_opportunity_date",
        "crm_interaction",
        ["opportunity_id", "interaction_date"],
        unique=False,
    )
    op.create_index("ix_crm_interaction_contact_date", "crm_interaction", ["contact_id", "interaction_date"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_interaction_contact_date", table_name="crm_interaction")
    op.drop_index("ix_crm_interaction_opportunity_date", table_name="crm_interaction")
    op.drop_table("crm_interaction")
    op.drop_index("ix_crm_opportunity_principal_product", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_principal_updated", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
    op.drop_index("ix_crm_product_principal_principal_id", table_name="crm_product_principal")
    op.drop_table("crm_product_principal")
    op.drop_table("crm_product")
    op.drop_index("ix_crm_contact_organization_updated", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("ix_crm_organization_distributor_id", table_name="crm_organization")
    op.drop_index("ix_crm_organization_is_principal", table_name="crm_organization")
    op.drop_table("crm_organization")
