from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    ClaimStatus,
    CurrencyCode,
    ExpenseCategory,
    ReportStatus,
    StaffType,
    TransactionType,
)


class DepartmentIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., min_length=1, max_length=100)


class InsuranceProviderIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., min_length=1, max_length=100)


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    currency: CurrencyCode = CurrencyCode.usd
    department_id: Optional[int] = None
    insurance_provider_id: Optional[int] = None
    expense_category: Optional[ExpenseCategory] = None
    staff_type: Optional[StaffType] = None
    description: Optional[str] = Field(default=None, max_length=500)


class PatientVolumeIn(BaseModel):
    date: date
    department_id: Optional[int] = None
    patient_count: int = Field(..., ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)


class InsuranceClaimIn(BaseModel):
    provider_id: int
    period_year: int = Field(..., ge=1970, le=3000)
    period_month: int = Field(..., ge=1, le=12)
    currency: CurrencyCode = CurrencyCode.usd
    claimed_amount_cents: int = Field(..., ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)


class ClaimStatusIn(BaseModel):
    status: ClaimStatus


class InsurancePaymentIn(BaseModel):
    provider_id: int
    claim_id: Optional[int] = None
    payment_date: date
    amount_cents: int = Field(..., ge=0)
    currency: CurrencyCode = CurrencyCode.usd
    reference: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = Field(default=None, max_length=500)


class ReportGenerateIn(BaseModel):
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    currency: CurrencyCode = CurrencyCode.usd
    overwrite: bool = False


class ReportStatusIn(BaseModel):
    status: ReportStatus


class ClaimRowIn(BaseModel):
    member_number: str = Field(..., min_length=1, max_length=64)
    patient_name: Optional[str] = None
    service_date: Optional[date] = None
    invoice_number: Optional[str] = None
    billed_amount_cents: int = Field(..., ge=0)


class RemittanceRowIn(BaseModel):
    member_number: str = Field(..., min_length=1, max_length=64)
    patient_name: Optional[str] = None
    service_date: Optional[date] = None
    bill_no: Optional[str] = None
    claim_amount_cents: int = Field(..., ge=0)
    paid_amount_cents: int = Field(..., ge=0)


class ReconciliationIn(BaseModel):
    provider_id: int
    period_year: int = Field(..., ge=1970, le=3000)
    period_month: int = Field(..., ge=1, le=12)
    claims: list[ClaimRowIn] = Field(default_factory=list)
    remittances: list[RemittanceRowIn] = Field(default_factory=list)


class CSVRow(BaseModel):
    row_number: int
    date: date
    type: TransactionType
    amount_cents: int
    currency: CurrencyCode
    department: Optional[str]
    expense_category: Optional[ExpenseCategory]
    description: Optional[str]
