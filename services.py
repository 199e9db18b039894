from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from csv_utils import export_transactions, parse_csv
from date_ranges import (
    DateRangeResult,
    MonthBucket,
    previous_range,
    short_month_label,
    single_month_range,
)
from models import (
    ClaimReconRun,
    ClaimStatus,
    CurrencyCode,
    Department,
    ExpenseCategory,
    InsuranceClaim,
    InsurancePayment,
    InsuranceProvider,
    MonthlyReport,
    PatientVolume,
    ReportStatus,
    Transaction,
    TransactionType,
)
from reconciliation import ClaimRow, ReconciliationOutcome, RemittanceRow, match_claims
from schemas import (
    CSVRow,
    DepartmentIn,
    InsuranceClaimIn,
    InsurancePaymentIn,
    InsuranceProviderIn,
    PatientVolumeIn,
    TransactionIn,
)

logger = logging.getLogger(__name__)

DEFAULT_DEPARTMENTS = [
    ("CON", "Consultation"),
    ("LAB", "Laboratory"),
    ("ULTRASOUND", "Ultrasound"),
    ("XRAY", "X-Ray"),
    ("PHARMACY", "Pharmacy"),
]

DEFAULT_PROVIDERS = [
    ("CIC", "CIC Insurance"),
    ("UAP", "UAP Insurance"),
    ("CIGNA", "Cigna"),
]

UNASSIGNED = "Unassigned"


class NotFoundError(ValueError):
    pass


class ReportLockedError(ValueError):
    pass


class DepartmentNotFound(ValueError):
    pass


class DepartmentAmbiguous(ValueError):
    pass


def percent_change(current: int, previous: int) -> float:
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 2)


def share_percent(amount: int, total: int) -> float:
    return round(amount / total * 100, 2) if total else 0.0


def in_window(column, window: DateRangeResult) -> list:
    return [column >= window.start_day, column < window.end_day]


def month_columns(column):
    year = func.strftime("%Y", column).label("year")
    month = func.strftime("%m", column).label("month")
    return year, month


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "currency": txn.currency.value,
        "department_id": txn.department_id,
        "department": txn.department.name if txn.department else None,
        "insurance_provider_id": txn.insurance_provider_id,
        "insurance_provider": (
            txn.insurance_provider.name if txn.insurance_provider else None
        ),
        "expense_category": (
            txn.expense_category.value if txn.expense_category else None
        ),
        "staff_type": txn.staff_type.value if txn.staff_type else None,
        "description": txn.description,
    }


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    department_id: Optional[int] = None
    insurance_provider_id: Optional[int] = None
    currency: Optional[CurrencyCode] = None
    expense_category: Optional[ExpenseCategory] = None
    query: Optional[str] = None


class DepartmentService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, include_inactive: bool = False) -> list[Department]:
        stmt = select(Department).order_by(Department.name)
        if not include_inactive:
            stmt = stmt.where(Department.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, department_id: int) -> Department:
        department = self.session.get(Department, department_id)
        if not department:
            raise NotFoundError("Department not found")
        return department

    def create(self, data: DepartmentIn) -> Department:
        code = data.code.strip().upper()
        existing = self.session.scalar(
            select(Department).where(func.upper(Department.code) == code)
        )
        if existing:
            raise ValueError("Department with this code already exists")
        department = Department(code=code, name=data.name.strip())
        self.session.add(department)
        self.session.commit()
        self.session.refresh(department)
        return department

    def set_active(self, department_id: int, is_active: bool) -> Department:
        department = self.get(department_id)
        department.is_active = is_active
        self.session.commit()
        return department

    def deactivate(self, department_id: int) -> Department:
        return self.set_active(department_id, False)

    def activate(self, department_id: int) -> Department:
        return self.set_active(department_id, True)

    def seed_defaults(self) -> int:
        existing = {
            code.upper() for code in self.session.scalars(select(Department.code))
        }
        created = 0
        for code, name in DEFAULT_DEPARTMENTS:
            if code not in existing:
                self.session.add(Department(code=code, name=name))
                created += 1
        self.session.commit()
        return created

    def resolve_name(self, raw: str) -> Department:
        """Find an active department by code or name, tolerating one typo."""
        needle = raw.strip().lower()
        departments = self.list_all()
        for department in departments:
            if needle in (department.code.lower(), department.name.lower()):
                return department

        best_distance: Optional[int] = None
        best: list[Department] = []
        for department in departments:
            dist = min(
                int(Levenshtein.distance(needle, department.name.lower())),
                int(Levenshtein.distance(needle, department.code.lower())),
            )
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [department]
            elif dist == best_distance:
                best.append(department)

        if best_distance is None or best_distance > 1:
            raise DepartmentNotFound(f"Department '{raw}' not found")
        if len(best) > 1:
            options = ", ".join(sorted(d.name for d in best))
            raise DepartmentAmbiguous(
                f"Department '{raw}' is ambiguous; matches: {options}"
            )
        return best[0]


class InsuranceProviderService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, include_inactive: bool = False) -> list[InsuranceProvider]:
        stmt = select(InsuranceProvider).order_by(InsuranceProvider.name)
        if not include_inactive:
            stmt = stmt.where(InsuranceProvider.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, provider_id: int) -> InsuranceProvider:
        provider = self.session.get(InsuranceProvider, provider_id)
        if not provider:
            raise NotFoundError("Insurance provider not found")
        return provider

    def create(self, data: InsuranceProviderIn) -> InsuranceProvider:
        code = data.code.strip().upper()
        existing = self.session.scalar(
            select(InsuranceProvider).where(func.upper(InsuranceProvider.code) == code)
        )
        if existing:
            raise ValueError("Insurance provider with this code already exists")
        provider = InsuranceProvider(code=code, name=data.name.strip())
        self.session.add(provider)
        self.session.commit()
        self.session.refresh(provider)
        return provider

    def set_active(self, provider_id: int, is_active: bool) -> InsuranceProvider:
        provider = self.get(provider_id)
        provider.is_active = is_active
        self.session.commit()
        return provider

    def deactivate(self, provider_id: int) -> InsuranceProvider:
        return self.set_active(provider_id, False)

    def activate(self, provider_id: int) -> InsuranceProvider:
        return self.set_active(provider_id, True)

    def seed_defaults(self) -> int:
        existing = {
            code.upper()
            for code in self.session.scalars(select(InsuranceProvider.code))
        }
        created = 0
        for code, name in DEFAULT_PROVIDERS:
            if code not in existing:
                self.session.add(InsuranceProvider(code=code, name=name))
                created += 1
        self.session.commit()
        return created


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _validate(self, data: TransactionIn) -> None:
        if data.type == TransactionType.income:
            if data.expense_category or data.staff_type:
                raise ValueError(
                    "Expense category and staff type only apply to expenses"
                )
        elif data.insurance_provider_id is not None:
            raise ValueError("Insurance provider only applies to income")
        if data.department_id is not None:
            department = self.session.get(Department, data.department_id)
            if not department or not department.is_active:
                raise ValueError("Department not found")
        if data.insurance_provider_id is not None:
            provider = self.session.get(InsuranceProvider, data.insurance_provider_id)
            if not provider or not provider.is_active:
                raise ValueError("Insurance provider not found")

    def has_any(self) -> bool:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.deleted_at.is_(None)
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def create(self, data: TransactionIn, *, commit: bool = True) -> Transaction:
        self._validate(data)
        txn = Transaction(
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            currency=data.currency,
            department_id=data.department_id,
            insurance_provider_id=data.insurance_provider_id,
            expense_category=data.expense_category,
            staff_type=data.staff_type,
            description=data.description,
        )
        self.session.add(txn)
        if commit:
            self.session.commit()
            self.session.refresh(txn)
        else:
            self.session.flush()
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.department),
                joinedload(Transaction.insurance_provider),
            )
            .where(Transaction.id == transaction_id)
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._validate(data)
        txn.date = data.date
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.currency = data.currency
        txn.department_id = data.department_id
        txn.insurance_provider_id = data.insurance_provider_id
        txn.expense_category = data.expense_category
        txn.staff_type = data.staff_type
        txn.description = data.description
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def _filtered(self, window: DateRangeResult, filters: TransactionFilters):
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.department),
                joinedload(Transaction.insurance_provider),
            )
            .where(
                Transaction.deleted_at.is_(None),
                *in_window(Transaction.date, window),
            )
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.department_id:
            stmt = stmt.where(Transaction.department_id == filters.department_id)
        if filters.insurance_provider_id:
            stmt = stmt.where(
                Transaction.insurance_provider_id == filters.insurance_provider_id
            )
        if filters.currency:
            stmt = stmt.where(Transaction.currency == filters.currency)
        if filters.expense_category:
            stmt = stmt.where(Transaction.expense_category == filters.expense_category)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                func.lower(func.coalesce(Transaction.description, "")).like(like)
            )
        return stmt

    def list(
        self,
        window: DateRangeResult,
        filters: TransactionFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            self._filtered(window, filters)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def all_for_range(
        self, window: DateRangeResult, filters: Optional[TransactionFilters] = None
    ) -> list[Transaction]:
        stmt = self._filtered(window, filters or TransactionFilters()).order_by(
            Transaction.date.asc(), Transaction.id.asc()
        )
        return self.session.scalars(stmt).all()

    def recent(
        self, limit: int = 10, window: Optional[DateRangeResult] = None
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.department),
                joinedload(Transaction.insurance_provider),
            )
            .where(Transaction.deleted_at.is_(None))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        if window is not None:
            stmt = stmt.where(*in_window(Transaction.date, window))
        return self.session.scalars(stmt).all()

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        if txn.deleted_at is not None:
            return
        txn.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        if txn.deleted_at is None:
            return
        txn.deleted_at = None
        self.session.commit()

    def deleted(self, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.deleted_at.isnot(None))
            .order_by(Transaction.deleted_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


class PatientVolumeService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record(self, data: PatientVolumeIn) -> PatientVolume:
        if data.department_id is not None:
            DepartmentService(self.session).get(data.department_id)
        stmt = select(PatientVolume).where(PatientVolume.date == data.date)
        if data.department_id is None:
            stmt = stmt.where(PatientVolume.department_id.is_(None))
        else:
            stmt = stmt.where(PatientVolume.department_id == data.department_id)
        entry = self.session.scalar(stmt)
        if entry is None:
            entry = PatientVolume(date=data.date, department_id=data.department_id)
            self.session.add(entry)
        entry.patient_count = data.patient_count
        entry.notes = data.notes
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def list(
        self, window: DateRangeResult, department_id: Optional[int] = None
    ) -> list[PatientVolume]:
        stmt = (
            select(PatientVolume)
            .where(*in_window(PatientVolume.date, window))
            .order_by(PatientVolume.date.asc(), PatientVolume.id.asc())
        )
        if department_id is not None:
            stmt = stmt.where(PatientVolume.department_id == department_id)
        return self.session.scalars(stmt).all()

    def delete(self, entry_id: int) -> None:
        entry = self.session.get(PatientVolume, entry_id)
        if not entry:
            raise NotFoundError("Patient volume entry not found")
        self.session.delete(entry)
        self.session.commit()


class AnalyticsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _conditions(self, window: DateRangeResult, currency: CurrencyCode) -> list:
        return [
            Transaction.deleted_at.is_(None),
            Transaction.currency == currency,
            *in_window(Transaction.date, window),
        ]

    def kpis(
        self, window: DateRangeResult, currency: CurrencyCode = CurrencyCode.usd
    ) -> dict[str, int]:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
            func.count(Transaction.id).label("txn_count"),
        ).where(*self._conditions(window, currency))
        row = self.session.execute(stmt).one()
        income = int(row.income or 0)
        expenses = int(row.expenses or 0)
        return {
            "income_cents": income,
            "expense_cents": expenses,
            "net_cents": income - expenses,
            "transaction_count": int(row.txn_count or 0),
        }

    def _monthly_totals(
        self,
        window: DateRangeResult,
        currency: CurrencyCode,
        transaction_type: TransactionType,
        group_column,
    ) -> dict[tuple[object, int, int], int]:
        year, month = month_columns(Transaction.date)
        stmt = (
            select(group_column.label("key"), year, month, func.sum(Transaction.amount_cents).label("total"))
            .where(
                *self._conditions(window, currency),
                Transaction.type == transaction_type,
            )
            .group_by(group_column, year, month)
        )
        totals: dict[tuple[object, int, int], int] = {}
        for row in self.session.execute(stmt):
            totals[(row.key, int(row.year), int(row.month))] = int(row.total or 0)
        return totals

    def monthly_series(
        self, window: DateRangeResult, currency: CurrencyCode = CurrencyCode.usd
    ) -> list[dict[str, object]]:
        year, month = month_columns(Transaction.date)
        stmt = (
            select(
                Transaction.type.label("type"),
                year,
                month,
                func.sum(Transaction.amount_cents).label("total"),
            )
            .where(*self._conditions(window, currency))
            .group_by(Transaction.type, year, month)
        )
        totals: dict[tuple[TransactionType, int, int], int] = {}
        for row in self.session.execute(stmt):
            totals[(row.type, int(row.year), int(row.month))] = int(row.total or 0)

        out: list[dict[str, object]] = []
        for bucket in window.buckets:
            income = totals.get((TransactionType.income, bucket.year, bucket.month), 0)
            expense = totals.get(
                (TransactionType.expense, bucket.year, bucket.month), 0
            )
            out.append(
                {
                    "year": bucket.year,
                    "month": bucket.month,
                    "label": short_month_label(bucket),
                    "income_cents": income,
                    "expense_cents": expense,
                    "net_cents": income - expense,
                }
            )
        return out

    @staticmethod
    def _series(
        totals: dict[tuple[object, int, int], int],
        key: object,
        buckets: Sequence[MonthBucket],
    ) -> list[dict[str, object]]:
        return [
            {
                "year": bucket.year,
                "month": bucket.month,
                "amount_cents": totals.get((key, bucket.year, bucket.month), 0),
            }
            for bucket in buckets
        ]

    def department_breakdown(
        self, window: DateRangeResult, currency: CurrencyCode = CurrencyCode.usd
    ) -> dict[str, object]:
        totals = self._monthly_totals(
            window, currency, TransactionType.income, Transaction.department_id
        )
        by_key: dict[Optional[int], int] = {}
        for (key, _year, _month), amount in totals.items():
            by_key[key] = by_key.get(key, 0) + amount
        names = {
            d.id: d for d in DepartmentService(self.session).list_all(True)
        }
        total = sum(by_key.values())
        departments = []
        for key, amount in by_key.items():
            department = names.get(key)
            departments.append(
                {
                    "id": key,
                    "code": department.code if department else None,
                    "name": department.name if department else UNASSIGNED,
                    "amount_cents": amount,
                    "percent": share_percent(amount, total),
                    "months": self._series(totals, key, window.buckets),
                }
            )
        departments.sort(key=lambda d: int(d["amount_cents"]), reverse=True)
        return {"total_cents": total, "departments": departments}

    def expense_breakdown(
        self, window: DateRangeResult, currency: CurrencyCode = CurrencyCode.usd
    ) -> dict[str, object]:
        totals = self._monthly_totals(
            window, currency, TransactionType.expense, Transaction.expense_category
        )
        by_key: dict[Optional[ExpenseCategory], int] = {}
        for (key, _year, _month), amount in totals.items():
            by_key[key] = by_key.get(key, 0) + amount
        total = sum(by_key.values())
        categories = []
        for key, amount in by_key.items():
            categories.append(
                {
                    "category": key.value if key else ExpenseCategory.general.value,
                    "amount_cents": amount,
                    "percent": share_percent(amount, total),
                    "months": self._series(totals, key, window.buckets),
                }
            )
        categories.sort(key=lambda c: int(c["amount_cents"]), reverse=True)
        monthly = [
            {
                "year": bucket.year,
                "month": bucket.month,
                "label": short_month_label(bucket),
                "amount_cents": sum(
                    amount
                    for (_key, y, m), amount in totals.items()
                    if (y, m) == (bucket.year, bucket.month)
                ),
            }
            for bucket in window.buckets
        ]
        return {"total_cents": total, "categories": categories, "monthly": monthly}

    def _provider_totals(
        self, window: DateRangeResult, currency: CurrencyCode
    ) -> dict[int, int]:
        stmt = (
            select(
                Transaction.insurance_provider_id.label("provider_id"),
                func.sum(Transaction.amount_cents).label("total"),
            )
            .where(
                *self._conditions(window, currency),
                Transaction.type == TransactionType.income,
                Transaction.insurance_provider_id.isnot(None),
            )
            .group_by(Transaction.insurance_provider_id)
        )
        return {
            row.provider_id: int(row.total or 0) for row in self.session.execute(stmt)
        }

    def insurance_overview(
        self, window: DateRangeResult, currency: CurrencyCode = CurrencyCode.usd
    ) -> dict[str, object]:
        current = self._provider_totals(window, currency)
        previous = self._provider_totals(previous_range(window), currency)
        providers = {
            p.id: p for p in InsuranceProviderService(self.session).list_all(True)
        }
        total = sum(current.values())
        previous_total = sum(previous.values())
        rows = []
        for provider_id, amount in current.items():
            if amount <= 0:
                continue
            provider = providers.get(provider_id)
            prior = previous.get(provider_id, 0)
            rows.append(
                {
                    "id": provider_id,
                    "code": provider.code if provider else None,
                    "name": provider.name if provider else UNASSIGNED,
                    "amount_cents": amount,
                    "share": share_percent(amount, total),
                    "previous_cents": prior,
                    "change_percent": percent_change(amount, prior),
                }
            )
        rows.sort(key=lambda r: int(r["amount_cents"]), reverse=True)
        for rank, row in enumerate(rows, start=1):
            row["rank"] = rank
        return {
            "total_cents": total,
            "previous_total_cents": previous_total,
            "change_percent": percent_change(total, previous_total),
            "active_providers": len(rows),
            "providers": rows,
        }

    def patient_volume(
        self, window: DateRangeResult, department_id: Optional[int] = None
    ) -> dict[str, object]:
        year, month = month_columns(PatientVolume.date)
        stmt = (
            select(year, month, func.sum(PatientVolume.patient_count).label("total"))
            .where(*in_window(PatientVolume.date, window))
            .group_by(year, month)
        )
        if department_id is not None:
            stmt = stmt.where(PatientVolume.department_id == department_id)
        totals = {
            (int(row.year), int(row.month)): int(row.total or 0)
            for row in self.session.execute(stmt)
        }
        total = sum(totals.values())
        days = max(1, (window.end_day - window.start_day).days)
        return {
            "total_patients": total,
            "daily_average": round(total / days, 2),
            "months": [
                {
                    "year": bucket.year,
                    "month": bucket.month,
                    "label": short_month_label(bucket),
                    "patients": totals.get((bucket.year, bucket.month), 0),
                }
                for bucket in window.buckets
            ],
        }

    def dashboard(
        self,
        window: DateRangeResult,
        currency: CurrencyCode = CurrencyCode.usd,
        recent_limit: int = 10,
    ) -> dict[str, object]:
        kpis = self.kpis(window, currency)
        previous = self.kpis(previous_range(window), currency)
        recent = TransactionService(self.session).recent(recent_limit, window)
        return {
            "currency": currency.value,
            "kpis": kpis,
            "previous": previous,
            "changes": {
                "income": percent_change(kpis["income_cents"], previous["income_cents"]),
                "expenses": percent_change(
                    kpis["expense_cents"], previous["expense_cents"]
                ),
                "net": percent_change(kpis["net_cents"], previous["net_cents"]),
            },
            "departments": self.department_breakdown(window, currency)["departments"],
            "insurance": self.insurance_overview(window, currency)["providers"],
            "recent_transactions": [serialize_transaction(t) for t in recent],
        }


class InsuranceService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_claim(self, data: InsuranceClaimIn) -> InsuranceClaim:
        InsuranceProviderService(self.session).get(data.provider_id)
        bucket = MonthBucket(data.period_year, data.period_month)
        claim = InsuranceClaim(
            provider_id=data.provider_id,
            period_year=bucket.year,
            period_month=bucket.month,
            period_start=bucket.start.date(),
            period_end=bucket.end.date(),
            currency=data.currency,
            claimed_amount_cents=data.claimed_amount_cents,
            notes=data.notes,
        )
        self.session.add(claim)
        self.session.commit()
        self.session.refresh(claim)
        return claim

    def get_claim(self, claim_id: int) -> InsuranceClaim:
        claim = self.session.get(InsuranceClaim, claim_id)
        if not claim:
            raise NotFoundError("Claim not found")
        return claim

    def list_claims(
        self,
        *,
        provider_id: Optional[int] = None,
        status: Optional[ClaimStatus] = None,
        window: Optional[DateRangeResult] = None,
    ) -> list[InsuranceClaim]:
        stmt = select(InsuranceClaim).order_by(
            InsuranceClaim.period_year.desc(),
            InsuranceClaim.period_month.desc(),
            InsuranceClaim.id.desc(),
        )
        if provider_id is not None:
            stmt = stmt.where(InsuranceClaim.provider_id == provider_id)
        if status is not None:
            stmt = stmt.where(InsuranceClaim.status == status)
        if window is not None:
            stmt = stmt.where(*self._period_in_window(window))
        return self.session.scalars(stmt).all()

    @staticmethod
    def _period_in_window(window: DateRangeResult) -> list:
        month_index = InsuranceClaim.period_year * 12 + InsuranceClaim.period_month - 1
        return [
            month_index >= window.buckets[0].index,
            month_index <= window.buckets[-1].index,
        ]

    def update_claim_status(self, claim_id: int, status: ClaimStatus) -> InsuranceClaim:
        claim = self.get_claim(claim_id)
        claim.status = status
        self.session.commit()
        return claim

    def delete_claim(self, claim_id: int) -> None:
        claim = self.get_claim(claim_id)
        if claim.payments:
            raise ValueError("Claim has linked payments and cannot be deleted")
        self.session.delete(claim)
        self.session.commit()

    def paid_for_claim(self, claim_id: int) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(InsurancePayment.amount_cents), 0)).where(
                    InsurancePayment.claim_id == claim_id
                )
            ).scalar_one()
            or 0
        )

    def claim_balance(self, claim: InsuranceClaim) -> dict[str, int]:
        paid = self.paid_for_claim(claim.id)
        return {
            "claimed_cents": claim.claimed_amount_cents,
            "paid_cents": paid,
            "outstanding_cents": max(0, claim.claimed_amount_cents - paid),
        }

    def _refresh_claim_status(self, claim: InsuranceClaim) -> None:
        if claim.status in (ClaimStatus.rejected, ClaimStatus.written_off):
            return
        paid = self.paid_for_claim(claim.id)
        if paid >= claim.claimed_amount_cents and paid > 0:
            claim.status = ClaimStatus.paid
        elif paid > 0:
            claim.status = ClaimStatus.partially_paid
        else:
            claim.status = ClaimStatus.submitted

    def record_payment(self, data: InsurancePaymentIn) -> InsurancePayment:
        InsuranceProviderService(self.session).get(data.provider_id)
        claim: Optional[InsuranceClaim] = None
        if data.claim_id is not None:
            claim = self.get_claim(data.claim_id)
            if claim.provider_id != data.provider_id:
                raise ValueError("Claim belongs to a different provider")
            if claim.currency != data.currency:
                raise ValueError("Payment currency does not match the claim")
        payment = InsurancePayment(
            provider_id=data.provider_id,
            claim_id=data.claim_id,
            payment_date=data.payment_date,
            amount_cents=data.amount_cents,
            currency=data.currency,
            reference=data.reference,
            notes=data.notes,
        )
        self.session.add(payment)
        self.session.flush()
        if claim is not None:
            self._refresh_claim_status(claim)
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def list_payments(
        self,
        window: Optional[DateRangeResult] = None,
        provider_id: Optional[int] = None,
    ) -> list[InsurancePayment]:
        stmt = select(InsurancePayment).order_by(
            InsurancePayment.payment_date.desc(), InsurancePayment.id.desc()
        )
        if window is not None:
            stmt = stmt.where(*in_window(InsurancePayment.payment_date, window))
        if provider_id is not None:
            stmt = stmt.where(InsurancePayment.provider_id == provider_id)
        return self.session.scalars(stmt).all()

    def provider_balances(
        self, window: DateRangeResult, currency: CurrencyCode = CurrencyCode.usd
    ) -> list[dict[str, object]]:
        claimed_stmt = (
            select(
                InsuranceClaim.provider_id.label("provider_id"),
                func.sum(InsuranceClaim.claimed_amount_cents).label("claimed"),
            )
            .where(
                InsuranceClaim.currency == currency,
                *self._period_in_window(window),
            )
            .group_by(InsuranceClaim.provider_id)
        )
        paid_stmt = (
            select(
                InsuranceClaim.provider_id.label("provider_id"),
                func.sum(InsurancePayment.amount_cents).label("paid"),
            )
            .select_from(InsurancePayment)
            .join(InsuranceClaim, InsurancePayment.claim_id == InsuranceClaim.id)
            .where(
                InsuranceClaim.currency == currency,
                *self._period_in_window(window),
            )
            .group_by(InsuranceClaim.provider_id)
        )
        claimed = {
            row.provider_id: int(row.claimed or 0)
            for row in self.session.execute(claimed_stmt)
        }
        paid = {
            row.provider_id: int(row.paid or 0)
            for row in self.session.execute(paid_stmt)
        }
        providers = {
            p.id: p for p in InsuranceProviderService(self.session).list_all(True)
        }
        out = []
        for provider_id in sorted(claimed, key=lambda pid: providers[pid].name):
            claimed_cents = claimed[provider_id]
            paid_cents = paid.get(provider_id, 0)
            out.append(
                {
                    "provider_id": provider_id,
                    "provider": providers[provider_id].name,
                    "claimed_cents": claimed_cents,
                    "paid_cents": paid_cents,
                    "outstanding_cents": max(0, claimed_cents - paid_cents),
                }
            )
        return out


class ReconciliationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def run(
        self,
        provider_id: int,
        year: int,
        month: int,
        claims: Sequence[ClaimRow],
        remittances: Sequence[RemittanceRow],
    ) -> tuple[ClaimReconRun, ReconciliationOutcome]:
        InsuranceProviderService(self.session).get(provider_id)
        bucket = MonthBucket(year, month)
        outcome = match_claims(claims, remittances)
        summary = outcome.summary()
        run = ClaimReconRun(
            provider_id=provider_id,
            period_year=bucket.year,
            period_month=bucket.month,
            total_claim_rows=len(claims),
            total_remittance_rows=len(remittances),
            auto_matched=summary["auto_matched"],
            partial_matched=summary["partial_matched"],
            manual_review=summary["manual_review"],
            unmatched_claims=summary["unmatched_claims"],
            orphan_remittances=summary["orphan_remittances"],
        )
        self.session.add(run)
        self.session.commit()
        self.session.refresh(run)
        logger.info(
            f"reconciliation_run: provider={provider_id} period={year}-{month:02d} "
            f"claims={len(claims)} remittances={len(remittances)} "
            f"auto={summary['auto_matched']} review={summary['manual_review']}"
        )
        return run, outcome

    def list_runs(self, provider_id: Optional[int] = None) -> list[ClaimReconRun]:
        stmt = select(ClaimReconRun).order_by(ClaimReconRun.id.desc())
        if provider_id is not None:
            stmt = stmt.where(ClaimReconRun.provider_id == provider_id)
        return self.session.scalars(stmt).all()


REPORT_TRANSITIONS = {
    ReportStatus.draft: {ReportStatus.approved},
    ReportStatus.approved: {ReportStatus.draft, ReportStatus.locked},
    ReportStatus.locked: set(),
}


class ReportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(
        self, year: int, month: int, currency: CurrencyCode = CurrencyCode.usd
    ) -> MonthlyReport:
        report = self._find(year, month, currency)
        if not report:
            raise NotFoundError("Report not found")
        return report

    def _find(
        self, year: int, month: int, currency: CurrencyCode
    ) -> Optional[MonthlyReport]:
        return self.session.scalar(
            select(MonthlyReport).where(
                MonthlyReport.year == year,
                MonthlyReport.month == month,
                MonthlyReport.currency == currency,
            )
        )

    def list(self, limit: Optional[int] = None) -> list[MonthlyReport]:
        stmt = select(MonthlyReport).order_by(
            MonthlyReport.year.desc(), MonthlyReport.month.desc(), MonthlyReport.id
        )
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def exists(self, year: int, month: int, currency: CurrencyCode) -> bool:
        return self._find(year, month, currency) is not None

    def generate(
        self,
        year: int,
        month: int,
        currency: CurrencyCode = CurrencyCode.usd,
        *,
        overwrite: bool = False,
    ) -> MonthlyReport:
        report = self._find(year, month, currency)
        if report is not None:
            if report.status == ReportStatus.locked:
                raise ReportLockedError(
                    f"Report for {year}-{month:02d} is locked and cannot be regenerated"
                )
            if not overwrite:
                return report

        window = single_month_range(year, month)
        analytics = AnalyticsService(self.session)
        kpis = analytics.kpis(window, currency)
        departments = analytics.department_breakdown(window, currency)["departments"]
        providers = analytics.insurance_overview(window, currency)["providers"]
        expenses = analytics.expense_breakdown(window, currency)["categories"]
        patients = analytics.patient_volume(window)["total_patients"]

        if report is None:
            report = MonthlyReport(year=year, month=month, currency=currency)
            self.session.add(report)
        report.total_income_cents = kpis["income_cents"]
        report.total_expense_cents = kpis["expense_cents"]
        report.net_income_cents = kpis["net_cents"]
        report.patient_count = int(patients)
        report.department_breakdown = [
            {k: d[k] for k in ("code", "name", "amount_cents", "percent")}
            for d in departments
        ]
        report.insurance_breakdown = [
            {k: p[k] for k in ("code", "name", "amount_cents", "share")}
            for p in providers
        ]
        report.expense_breakdown = [
            {k: c[k] for k in ("category", "amount_cents", "percent")}
            for c in expenses
        ]
        report.status = ReportStatus.draft
        self.session.commit()
        self.session.refresh(report)
        logger.info(
            f"report_generated: year={year} month={month} currency={currency.value} "
            f"income={report.total_income_cents} expenses={report.total_expense_cents}"
        )
        return report

    def set_status(
        self,
        year: int,
        month: int,
        status: ReportStatus,
        currency: CurrencyCode = CurrencyCode.usd,
    ) -> MonthlyReport:
        report = self.get(year, month, currency)
        if report.status == status:
            return report
        if report.status == ReportStatus.locked:
            raise ReportLockedError("Locked reports cannot change status")
        if status not in REPORT_TRANSITIONS[report.status]:
            raise ValueError(
                f"Cannot move report from {report.status.value} to {status.value}"
            )
        report.status = status
        self.session.commit()
        return report

    def delete(
        self, year: int, month: int, currency: CurrencyCode = CurrencyCode.usd
    ) -> None:
        report = self.get(year, month, currency)
        if report.status == ReportStatus.locked:
            raise ReportLockedError("Locked reports cannot be deleted")
        self.session.delete(report)
        self.session.commit()


class CSVService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _to_transaction_in(self, row: CSVRow) -> TransactionIn:
        department_id = None
        if row.department:
            department_id = DepartmentService(self.session).resolve_name(
                row.department
            ).id
        return TransactionIn(
            date=row.date,
            type=row.type,
            amount_cents=row.amount_cents,
            currency=row.currency,
            department_id=department_id,
            expense_category=row.expense_category,
            description=row.description,
        )

    def preview(self, content: str) -> tuple[list[dict[str, object]], list[str]]:
        rows, errors = parse_csv(content)
        preview_rows: list[dict[str, object]] = []
        for row in rows:
            try:
                payload = self._to_transaction_in(row)
            except ValueError as exc:
                errors.append(f"Row {row.row_number}: {exc}")
                continue
            preview_rows.append(
                {
                    "date": row.date.isoformat(),
                    "type": row.type.value,
                    "amount_cents": row.amount_cents,
                    "currency": row.currency.value,
                    "department_id": payload.department_id,
                    "expense_category": (
                        row.expense_category.value if row.expense_category else None
                    ),
                    "description": row.description,
                }
            )
        return preview_rows, errors

    def commit(self, content: str) -> int:
        rows, errors = parse_csv(content)
        if errors:
            raise ValueError("; ".join(errors))
        txn_service = TransactionService(self.session)
        try:
            for row in rows:
                try:
                    payload = self._to_transaction_in(row)
                    txn_service.create(payload, commit=False)
                except ValueError as exc:
                    raise ValueError(f"Row {row.row_number}: {exc}") from exc
        except ValueError:
            self.session.rollback()
            raise
        self.session.commit()
        logger.info(f"csv_import: rows={len(rows)}")
        return len(rows)

    def export(self, transactions: Sequence[Transaction]) -> str:
        return export_transactions(transactions)
