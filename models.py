from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class CurrencyCode(str, Enum):
    usd = "USD"
    ssp = "SSP"


CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode,
    name="currencycode",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class ExpenseCategory(str, Enum):
    clinic_operations = "clinic_operations"
    doctor_payments = "doctor_payments"
    lab_tech_payments = "lab_tech_payments"
    radiographer_payments = "radiographer_payments"
    insurance_payments = "insurance_payments"
    general = "general"


class StaffType(str, Enum):
    doctor = "doctor"
    lab_tech = "lab_tech"
    radiographer = "radiographer"


class ClaimStatus(str, Enum):
    submitted = "submitted"
    partially_paid = "partially_paid"
    paid = "paid"
    rejected = "rejected"
    written_off = "written_off"


class ReportStatus(str, Enum):
    draft = "draft"
    approved = "approved"
    locked = "locked"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Department(Base, TimestampMixin):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="department"
    )


class InsuranceProvider(Base, TimestampMixin):
    __tablename__ = "insurance_providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="insurance_provider"
    )
    claims: Mapped[list["InsuranceClaim"]] = relationship(
        "InsuranceClaim", back_populates="provider"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    department_id: Mapped[Optional[int]] = mapped_column(ForeignKey("departments.id"))
    insurance_provider_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("insurance_providers.id")
    )
    expense_category: Mapped[Optional[ExpenseCategory]] = mapped_column(
        SAEnum(ExpenseCategory)
    )
    staff_type: Mapped[Optional[StaffType]] = mapped_column(SAEnum(StaffType))
    description: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    department: Mapped[Optional["Department"]] = relationship(
        "Department", back_populates="transactions"
    )
    insurance_provider: Mapped[Optional["InsuranceProvider"]] = relationship(
        "InsuranceProvider", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_type_date", "type", "date"),
        Index("ix_transactions_department_date", "department_id", "date"),
        Index("ix_transactions_provider_date", "insurance_provider_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class PatientVolume(Base, TimestampMixin):
    __tablename__ = "patient_volume"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    department_id: Mapped[Optional[int]] = mapped_column(ForeignKey("departments.id"))
    patient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    department: Mapped[Optional["Department"]] = relationship("Department")

    __table_args__ = (
        UniqueConstraint("date", "department_id", name="uq_patient_volume_day_dept"),
        CheckConstraint("patient_count >= 0", name="ck_patient_volume_positive"),
    )


class InsuranceClaim(Base, TimestampMixin):
    __tablename__ = "insurance_claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_id: Mapped[int] = mapped_column(
        ForeignKey("insurance_providers.id"), nullable=False
    )
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    claimed_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ClaimStatus] = mapped_column(
        SAEnum(ClaimStatus), nullable=False, default=ClaimStatus.submitted
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    provider: Mapped["InsuranceProvider"] = relationship(
        "InsuranceProvider", back_populates="claims"
    )
    payments: Mapped[list["InsurancePayment"]] = relationship(
        "InsurancePayment", back_populates="claim"
    )

    __table_args__ = (
        Index("ix_claims_provider_period", "provider_id", "period_year", "period_month"),
        CheckConstraint("claimed_amount_cents >= 0", name="ck_claims_amount_positive"),
        CheckConstraint(
            "period_month >= 1 AND period_month <= 12", name="ck_claims_period_month"
        ),
    )


class InsurancePayment(Base, TimestampMixin):
    __tablename__ = "insurance_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_id: Mapped[int] = mapped_column(
        ForeignKey("insurance_providers.id"), nullable=False
    )
    claim_id: Mapped[Optional[int]] = mapped_column(ForeignKey("insurance_claims.id"))
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    reference: Mapped[Optional[str]] = mapped_column(String(120))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    provider: Mapped["InsuranceProvider"] = relationship("InsuranceProvider")
    claim: Mapped[Optional["InsuranceClaim"]] = relationship(
        "InsuranceClaim", back_populates="payments"
    )

    __table_args__ = (
        Index("ix_payments_provider_date", "provider_id", "payment_date"),
        CheckConstraint("amount_cents >= 0", name="ck_payments_amount_positive"),
    )


class ClaimReconRun(Base, TimestampMixin):
    __tablename__ = "claim_recon_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_id: Mapped[int] = mapped_column(
        ForeignKey("insurance_providers.id"), nullable=False
    )
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_claim_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_remittance_rows: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    auto_matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    partial_matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    manual_review: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_claims: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    orphan_remittances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    provider: Mapped["InsuranceProvider"] = relationship("InsuranceProvider")


class MonthlyReport(Base, TimestampMixin):
    __tablename__ = "monthly_reports"
    __table_args__ = (
        UniqueConstraint("year", "month", "currency", name="uq_report_month_currency"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    total_income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_expense_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    net_income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    patient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    department_breakdown: Mapped[list] = mapped_column(JSON, nullable=False)
    insurance_breakdown: Mapped[list] = mapped_column(JSON, nullable=False)
    expense_breakdown: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[ReportStatus] = mapped_column(
        SAEnum(ReportStatus), nullable=False, default=ReportStatus.draft
    )
