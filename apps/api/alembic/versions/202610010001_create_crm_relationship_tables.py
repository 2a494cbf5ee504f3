"""create crm relationship tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
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
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.String(length=50), nullable=False),
        sa.Column("middle_name", sa.String(length=50), nullable=True),
        sa.Column("last_name", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("mobile_phone", sa.Text(), nullable=True),
        sa.Column("office_phone", sa.Text(), nullable=True),
        sa.Column("private_phone", sa.Text(), nullable=True),
        sa.Column("linkedin", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("last_contacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_follow_up_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_name", "crm_contact", ["first_name", "last_name"], unique=False)

    op.create_table(
        "crm_contact_email",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("email_address", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False, server_default="work"),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contact_id", "email_address", name="uq_crm_contact_email_address"),
    )
    op.create_index(
        "uq_crm_contact_email_primary",
        "crm_contact_email",
        ["contact_id"],
        unique=True,
        postgresql_where=sa.text("is_primary = true"),
        sqlite_where=sa.text("is_primary = 1"),
    )

    op.create_table(
        "crm_company",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("email", sa.String(length=100), nullable=True),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("industry", sa.String(length=100), nullable=True),
        sa.Column("full_address", sa.Text(), nullable=True),
        sa.Column("country", sa.String(length=50), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("parent_company_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["parent_company_id"], ["crm_company.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_branch",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("region", sa.String(length=100), nullable=True),
        sa.Column("postal_code", sa.String(length=20), nullable=True),
        sa.Column("country", sa.String(length=50), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("is_headquarters", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_branch_company_id", "crm_branch", ["company_id"], unique=False)

    op.create_table(
        "crm_pipeline_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("position", name="uq_crm_pipeline_stage_position"),
    )

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("value", sa.Numeric(15, 2), nullable=True),
        sa.Column("stage_id", sa.Uuid(), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["branch_id"], ["crm_branch.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_contact_id", "crm_deal", ["contact_id"], unique=False)
    op.create_index("ix_crm_deal_company_id", "crm_deal", ["company_id"], unique=False)
    op.create_index("ix_crm_deal_stage_id", "crm_deal", ["stage_id"], unique=False)

    op.create_table(
        "crm_area_of_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("company_name", sa.String(length=100), nullable=True),
        sa.Column("branch_id", sa.Uuid(), nullable=True),
        sa.Column("role", sa.String(length=100), nullable=True),
        sa.Column("job_description", sa.Text(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["crm_branch.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_area_of_activity_contact_id", "crm_area_of_activity", ["contact_id"], unique=False)
    op.create_index("ix_crm_area_of_activity_company_id", "crm_area_of_activity", ["company_id"], unique=False)
    op.create_index(
        "uq_crm_area_of_activity_primary",
        "crm_area_of_activity",
        ["contact_id"],
        unique=True,
        postgresql_where=sa.text("is_primary = true"),
        sqlite_where=sa.text("is_primary = 1"),
    )

    op.create_table(
        "crm_synergy",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Active"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_synergy_contact_id", "crm_synergy", ["contact_id"], unique=False)
    op.create_index("ix_crm_synergy_company_id", "crm_synergy", ["company_id"], unique=False)
    op.create_index("ix_crm_synergy_deal_id", "crm_synergy", ["deal_id"], unique=False)
    op.create_index(
        "uq_crm_synergy_active_triple",
        "crm_synergy",
        ["contact_id", "company_id", "deal_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'archived'"),
        sqlite_where=sa.text("status <> 'archived'"),
    )


def downgrade() -> None:
    op.drop_index("uq_crm_synergy_active_triple", table_name="crm_synergy")
    op.drop_index("ix_crm_synergy_deal_id", table_name="crm_synergy")
    op.drop_index("ix_crm_synergy_company_id", table_name="crm_synergy")
    op.drop_index("ix_crm_synergy_contact_id", table_name="crm_synergy")
    op.drop_table("crm_synergy")
    op.drop_index("uq_crm_area_of_activity_primary", table_name="crm_area_of_activity")
    op.drop_index("ix_crm_area_of_activity_company_id", table_name="crm_area_of_activity")
    op.drop_index("ix_crm_area_of_activity_contact_id", table_name="crm_area_of_activity")
    op.drop_table("crm_area_of_activity")
    op.drop_index("ix_crm_deal_stage_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_company_id", table_name="crm_deal")
    op.drop_index("ix_crm_deal_contact_id", table_name="crm_deal")
    op.drop_table("crm_deal")
    op.drop_table("crm_pipeline_stage")
    op.drop_index("ix_crm_branch_company_id", table_name="crm_branch")
    op.drop_table("crm_branch")
    op.drop_table("crm_company")
    op.drop_index("uq_crm_contact_email_primary", table_name="crm_contact_email")
    op.drop_table("crm_contact_email")
    op.drop_index("ix_crm_contact_name", table_name="crm_contact")
    op.drop_table("crm_contact")
