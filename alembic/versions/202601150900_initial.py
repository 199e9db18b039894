"""initial clinic schema

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _currency():
    return sa.Column(
        "currency",
        sa.Enum("USD", "SSP", name="currencycode"),
        nullable=False,
        server_default="USD",
    )


def upgrade():
    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False, unique=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "insurance_providers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False, unique=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        _currency(),
        sa.Column("department_id", sa.Integer(), sa.ForeignKey("departments.id")),
        sa.Column(
            "insurance_provider_id",
            sa.Integer(),
            sa.ForeignKey("insurance_providers.id"),
        ),
        sa.Column(
            "expense_category",
            sa.Enum(
                "clinic_operations",
                "doctor_payments",
                "lab_tech_payments",
                "radiographer_payments",
                "insurance_payments",
                "general",
                name="expensecategory",
            ),
        ),
        sa.Column(
            "staff_type",
            sa.Enum("doctor", "lab_tech", "radiographer", name="stafftype"),
        ),
        sa.Column("description", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index("ix_transactions_type_date", "transactions", ["type", "date"])
    op.create_index(
        "ix_transactions_department_date", "transactions", ["department_id", "date"]
    )
    op.create_index(
        "ix_transactions_provider_date",
        "transactions",
        ["insurance_provider_id", "date"],
    )

    op.create_table(
        "patient_volume",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("department_id", sa.Integer(), sa.ForeignKey("departments.id")),
        sa.Column("patient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("date", "department_id", name="uq_patient_volume_day_dept"),
        sa.CheckConstraint("patient_count >= 0", name="ck_patient_volume_positive"),
    )

    op.create_table(
        "insurance_claims",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "provider_id",
            sa.Integer(),
            sa.ForeignKey("insurance_providers.id"),
            nullable=False,
        ),
        sa.Column("period_year", sa.Integer(), nullable=False),
        sa.Column("period_month", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        _currency(),
        sa.Column("claimed_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "submitted",
                "partially_paid",
                "paid",
                "rejected",
                "written_off",
                name="claimstatus",
            ),
            nullable=False,
            server_default="submitted",
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "claimed_amount_cents >= 0", name="ck_claims_amount_positive"
        ),
        sa.CheckConstraint(
            "period_month >= 1 AND period_month <= 12", name="ck_claims_period_month"
        ),
    )
    op.create_index(
        "ix_claims_provider_period",
        "insurance_claims",
        ["provider_id", "period_year", "period_month"],
    )

    op.create_table(
        "insurance_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "provider_id",
            sa.Integer(),
            sa.ForeignKey("insurance_providers.id"),
            nullable=False,
        ),
        sa.Column("claim_id", sa.Integer(), sa.ForeignKey("insurance_claims.id")),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        _currency(),
        sa.Column("reference", sa.String(length=120)),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_payments_amount_positive"),
    )
    op.create_index(
        "ix_payments_provider_date",
        "insurance_payments",
        ["provider_id", "payment_date"],
    )

    op.create_table(
        "claim_recon_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "provider_id",
            sa.Integer(),
            sa.ForeignKey("insurance_providers.id"),
            nullable=False,
        ),
        sa.Column("period_year", sa.Integer(), nullable=False),
        sa.Column("period_month", sa.Integer(), nullable=False),
        sa.Column("total_claim_rows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_remittance_rows", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("auto_matched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("partial_matched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("manual_review", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unmatched_claims", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "orphan_remittances", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
    )

    op.create_table(
        "monthly_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        _currency(),
        sa.Column("total_income_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_expense_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("net_income_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("patient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("department_breakdown", sa.JSON(), nullable=False),
        sa.Column("insurance_breakdown", sa.JSON(), nullable=False),
        sa.Column("expense_breakdown", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("draft", "approved", "locked", name="reportstatus"),
            nullable=False,
            server_default="draft",
        ),
        *_timestamps(),
        sa.UniqueConstraint("year", "month", "currency", name="uq_report_month_currency"),
    )


def downgrade():
    op.drop_table("monthly_reports")
    op.drop_table("claim_recon_runs")
    op.drop_index("ix_payments_provider_date", table_name="insurance_payments")
    op.drop_table("insurance_payments")
    op.drop_index("ix_claims_provider_period", table_name="insurance_claims")
    op.drop_table("insurance_claims")
    op.drop_table("patient_volume")
    op.drop_index("ix_transactions_provider_date", table_name="transactions")
    op.drop_index("ix_transactions_department_date", table_name="transactions")
    op.drop_index("ix_transactions_type_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("insurance_providers")
    op.drop_table("departments")
