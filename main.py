import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, create_schema
from date_ranges import PRESET_OPTIONS, DateRangeResult, range_from_params
from models import (
    ClaimStatus,
    CurrencyCode,
    Department,
    ExpenseCategory,
    InsuranceClaim,
    InsurancePayment,
    InsuranceProvider,
    MonthlyReport,
    PatientVolume,
    TransactionType,
)
from reconciliation import ClaimRow, RemittanceRow
from scheduler import SchedulerManager
from schemas import (
    ClaimStatusIn,
    DepartmentIn,
    InsuranceClaimIn,
    InsurancePaymentIn,
    InsuranceProviderIn,
    PatientVolumeIn,
    ReconciliationIn,
    ReportGenerateIn,
    ReportStatusIn,
    TransactionIn,
)
from services import (
    AnalyticsService,
    CSVService,
    DepartmentService,
    InsuranceProviderService,
    InsuranceService,
    NotFoundError,
    PatientVolumeService,
    ReconciliationService,
    ReportService,
    TransactionFilters,
    TransactionService,
    serialize_transaction,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Finance")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    create_schema()
    with SessionLocal() as session:
        DepartmentService(session).seed_defaults()
        InsuranceProviderService(session).seed_defaults()
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def window_from_request(request: Request) -> DateRangeResult:
    params = request.query_params
    preset = params.get("preset") or params.get("range")
    try:
        return range_from_params(
            preset,
            params.get("startDate"),
            params.get("endDate"),
            now=datetime.now(timezone.utc),
            default_preset=get_settings().default_preset,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def currency_from_request(request: Request) -> CurrencyCode:
    raw = (request.query_params.get("currency") or CurrencyCode.usd.value).upper()
    try:
        return CurrencyCode(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown currency {raw}") from exc


def _optional_int(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        txn_type = TransactionType(params["type"]) if params.get("type") else None
        category = (
            ExpenseCategory(params["category"]) if params.get("category") else None
        )
        currency = (
            CurrencyCode(params["currency"].upper()) if params.get("currency") else None
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionFilters(
        type=txn_type,
        department_id=_optional_int(request, "department_id"),
        insurance_provider_id=_optional_int(request, "insurance_provider_id"),
        currency=currency,
        expense_category=category,
        query=params.get("q"),
    )


def raise_for(exc: ValueError) -> None:
    status = 404 if isinstance(exc, NotFoundError) else 400
    raise HTTPException(status_code=status, detail=str(exc)) from exc


def department_to_dict(department: Department) -> dict[str, object]:
    return {
        "id": department.id,
        "code": department.code,
        "name": department.name,
        "is_active": department.is_active,
    }


def provider_to_dict(provider: InsuranceProvider) -> dict[str, object]:
    return {
        "id": provider.id,
        "code": provider.code,
        "name": provider.name,
        "is_active": provider.is_active,
    }


def claim_to_dict(claim: InsuranceClaim, service: InsuranceService) -> dict[str, object]:
    return {
        "id": claim.id,
        "provider_id": claim.provider_id,
        "period_year": claim.period_year,
        "period_month": claim.period_month,
        "period_start": claim.period_start.isoformat(),
        "period_end": claim.period_end.isoformat(),
        "currency": claim.currency.value,
        "status": claim.status.value,
        "notes": claim.notes,
        **service.claim_balance(claim),
    }


def payment_to_dict(payment: InsurancePayment) -> dict[str, object]:
    return {
        "id": payment.id,
        "provider_id": payment.provider_id,
        "claim_id": payment.claim_id,
        "payment_date": payment.payment_date.isoformat(),
        "amount_cents": payment.amount_cents,
        "currency": payment.currency.value,
        "reference": payment.reference,
        "notes": payment.notes,
    }


def volume_to_dict(entry: PatientVolume) -> dict[str, object]:
    return {
        "id": entry.id,
        "date": entry.date.isoformat(),
        "department_id": entry.department_id,
        "patient_count": entry.patient_count,
        "notes": entry.notes,
    }


def report_to_dict(report: MonthlyReport) -> dict[str, object]:
    return {
        "year": report.year,
        "month": report.month,
        "currency": report.currency.value,
        "status": report.status.value,
        "total_income_cents": report.total_income_cents,
        "total_expense_cents": report.total_expense_cents,
        "net_income_cents": report.net_income_cents,
        "patient_count": report.patient_count,
        "department_breakdown": report.department_breakdown,
        "insurance_breakdown": report.insurance_breakdown,
        "expense_breakdown": report.expense_breakdown,
    }


@app.get("/api/date-range")
def api_date_range(request: Request):
    return window_from_request(request).as_dict()


@app.get("/api/date-range/presets")
def api_date_range_presets():
    return {"presets": PRESET_OPTIONS, "default": get_settings().default_preset}


@app.get("/api/departments")
def api_departments(request: Request, db: Session = Depends(get_db)):
    include_inactive = request.query_params.get("include_inactive") == "1"
    return [department_to_dict(d) for d in DepartmentService(db).list_all(include_inactive)]


@app.post("/api/departments", status_code=201)
def api_create_department(payload: DepartmentIn, db: Session = Depends(get_db)):
    try:
        department = DepartmentService(db).create(payload)
    except ValueError as exc:
        raise_for(exc)
    return department_to_dict(department)


@app.post("/api/departments/{department_id}/deactivate")
def api_deactivate_department(department_id: int, db: Session = Depends(get_db)):
    try:
        department = DepartmentService(db).deactivate(department_id)
    except ValueError as exc:
        raise_for(exc)
    return department_to_dict(department)


@app.post("/api/departments/{department_id}/activate")
def api_activate_department(department_id: int, db: Session = Depends(get_db)):
    try:
        department = DepartmentService(db).activate(department_id)
    except ValueError as exc:
        raise_for(exc)
    return department_to_dict(department)


@app.get("/api/insurance-providers")
def api_providers(request: Request, db: Session = Depends(get_db)):
    include_inactive = request.query_params.get("include_inactive") == "1"
    providers = InsuranceProviderService(db).list_all(include_inactive)
    return [provider_to_dict(p) for p in providers]


@app.post("/api/insurance-providers", status_code=201)
def api_create_provider(payload: InsuranceProviderIn, db: Session = Depends(get_db)):
    try:
        provider = InsuranceProviderService(db).create(payload)
    except ValueError as exc:
        raise_for(exc)
    return provider_to_dict(provider)


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    filters = filters_from_request(request)
    page = max(_optional_int(request, "page") or 1, 1)
    limit = min(max(_optional_int(request, "limit") or 50, 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db).list(window, filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "window": window.as_dict(),
        "items": [serialize_transaction(txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    service = TransactionService(db)
    try:
        txn = service.create(payload)
    except ValueError as exc:
        raise_for(exc)
    return serialize_transaction(service.get(txn.id))


@app.get("/api/transactions/export.csv")
def api_export_transactions(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    filters = filters_from_request(request)
    transactions = TransactionService(db).all_for_range(window, filters)
    csv_text = CSVService(db).export(transactions)
    params = window.to_query_params()
    filename = f"transactions_{params['startDate']}_{params['endDate']}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/transactions/import/preview")
async def api_import_preview(
    file: UploadFile = File(...), db: Session = Depends(get_db)
):
    content = (await file.read()).decode("utf-8")
    rows, errors = CSVService(db).preview(content)
    return {"rows": rows, "errors": errors}


@app.post("/api/transactions/import/commit")
async def api_import_commit(
    file: UploadFile = File(...), db: Session = Depends(get_db)
):
    content = (await file.read()).decode("utf-8")
    try:
        count = CSVService(db).commit(content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"imported": count}


@app.get("/api/transactions/{transaction_id}")
def api_get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise_for(exc)
    return serialize_transaction(txn)


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    service = TransactionService(db)
    try:
        service.update(transaction_id, payload)
    except ValueError as exc:
        raise_for(exc)
    return serialize_transaction(service.get(transaction_id))


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).soft_delete(transaction_id)
    except ValueError as exc:
        raise_for(exc)
    return Response(status_code=204)


@app.post("/api/transactions/{transaction_id}/restore")
def api_restore_transaction(transaction_id: int, db: Session = Depends(get_db)):
    service = TransactionService(db)
    try:
        service.restore(transaction_id)
    except ValueError as exc:
        raise_for(exc)
    return serialize_transaction(service.get(transaction_id))


@app.get("/api/dashboard")
def api_dashboard(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    currency = currency_from_request(request)
    data = AnalyticsService(db).dashboard(
        window, currency, recent_limit=get_settings().recent_transactions
    )
    return {"window": window.as_dict(), **data}


@app.get("/api/analytics/trends")
def api_trends(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    currency = currency_from_request(request)
    return {
        "window": window.as_dict(),
        "currency": currency.value,
        "months": AnalyticsService(db).monthly_series(window, currency),
    }


@app.get("/api/analytics/departments")
def api_department_analytics(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    currency = currency_from_request(request)
    data = AnalyticsService(db).department_breakdown(window, currency)
    return {"window": window.as_dict(), "currency": currency.value, **data}


@app.get("/api/analytics/expenses")
def api_expense_analytics(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    currency = currency_from_request(request)
    data = AnalyticsService(db).expense_breakdown(window, currency)
    return {"window": window.as_dict(), "currency": currency.value, **data}


@app.get("/api/insurance-overview/analytics")
def api_insurance_overview(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    currency = currency_from_request(request)
    data = AnalyticsService(db).insurance_overview(window, currency)
    return {"window": window.as_dict(), "currency": currency.value, **data}


@app.get("/api/patient-volume")
def api_patient_volume(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    department_id = _optional_int(request, "department_id")
    summary = AnalyticsService(db).patient_volume(window, department_id)
    entries = PatientVolumeService(db).list(window, department_id)
    return {
        "window": window.as_dict(),
        **summary,
        "entries": [volume_to_dict(e) for e in entries],
    }


@app.post("/api/patient-volume", status_code=201)
def api_record_patient_volume(payload: PatientVolumeIn, db: Session = Depends(get_db)):
    try:
        entry = PatientVolumeService(db).record(payload)
    except ValueError as exc:
        raise_for(exc)
    return volume_to_dict(entry)


@app.get("/api/insurance/claims")
def api_claims(request: Request, db: Session = Depends(get_db)):
    params = request.query_params
    window = None
    if any(params.get(k) for k in ("preset", "range", "startDate", "endDate")):
        window = window_from_request(request)
    try:
        status = ClaimStatus(params["status"]) if params.get("status") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = InsuranceService(db)
    claims = service.list_claims(
        provider_id=_optional_int(request, "provider_id"),
        status=status,
        window=window,
    )
    return {
        "window": window.as_dict() if window else None,
        "items": [claim_to_dict(c, service) for c in claims],
    }


@app.post("/api/insurance/claims", status_code=201)
def api_create_claim(payload: InsuranceClaimIn, db: Session = Depends(get_db)):
    service = InsuranceService(db)
    try:
        claim = service.create_claim(payload)
    except ValueError as exc:
        raise_for(exc)
    return claim_to_dict(claim, service)


@app.patch("/api/insurance/claims/{claim_id}")
def api_update_claim(
    claim_id: int, payload: ClaimStatusIn, db: Session = Depends(get_db)
):
    service = InsuranceService(db)
    try:
        claim = service.update_claim_status(claim_id, payload.status)
    except ValueError as exc:
        raise_for(exc)
    return claim_to_dict(claim, service)


@app.delete("/api/insurance/claims/{claim_id}")
def api_delete_claim(claim_id: int, db: Session = Depends(get_db)):
    try:
        InsuranceService(db).delete_claim(claim_id)
    except ValueError as exc:
        raise_for(exc)
    return Response(status_code=204)


@app.get("/api/insurance/payments")
def api_payments(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    payments = InsuranceService(db).list_payments(
        window, provider_id=_optional_int(request, "provider_id")
    )
    return {"window": window.as_dict(), "items": [payment_to_dict(p) for p in payments]}


@app.post("/api/insurance/payments", status_code=201)
def api_record_payment(payload: InsurancePaymentIn, db: Session = Depends(get_db)):
    try:
        payment = InsuranceService(db).record_payment(payload)
    except ValueError as exc:
        raise_for(exc)
    return payment_to_dict(payment)


@app.get("/api/insurance/balances")
def api_balances(request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    currency = currency_from_request(request)
    return {
        "window": window.as_dict(),
        "currency": currency.value,
        "providers": InsuranceService(db).provider_balances(window, currency),
    }


@app.post("/api/insurance/reconciliation")
def api_reconciliation(payload: ReconciliationIn, db: Session = Depends(get_db)):
    claims = [ClaimRow(**row.model_dump()) for row in payload.claims]
    remittances = [RemittanceRow(**row.model_dump()) for row in payload.remittances]
    try:
        run, outcome = ReconciliationService(db).run(
            payload.provider_id,
            payload.period_year,
            payload.period_month,
            claims,
            remittances,
        )
    except ValueError as exc:
        raise_for(exc)
    return {
        "run_id": run.id,
        "summary": outcome.summary(),
        "results": [
            {
                "claim_index": r.claim_index,
                "remittance_index": r.remittance_index,
                "match_type": r.match_type.value,
                "status": r.status.value,
                "amount_paid_cents": r.amount_paid_cents,
                "match_method": r.match_method.value if r.match_method else None,
            }
            for r in outcome.results
        ],
        "orphan_remittances": outcome.orphan_remittances,
    }


@app.get("/api/reports")
def api_reports(request: Request, db: Session = Depends(get_db)):
    limit = _optional_int(request, "limit")
    return [report_to_dict(r) for r in ReportService(db).list(limit)]


@app.post("/api/reports/generate", status_code=201)
def api_generate_report(payload: ReportGenerateIn, db: Session = Depends(get_db)):
    try:
        report = ReportService(db).generate(
            payload.year, payload.month, payload.currency, overwrite=payload.overwrite
        )
    except ValueError as exc:
        raise_for(exc)
    except Exception as exc:
        logger.exception(f"report_generate_failed: year={payload.year} month={payload.month}")
        raise HTTPException(status_code=500, detail="Report generation failed") from exc
    return report_to_dict(report)


@app.get("/api/reports/{year}/{month}")
def api_get_report(
    year: int, month: int, request: Request, db: Session = Depends(get_db)
):
    currency = currency_from_request(request)
    try:
        report = ReportService(db).get(year, month, currency)
    except ValueError as exc:
        raise_for(exc)
    return report_to_dict(report)


@app.patch("/api/reports/{year}/{month}")
def api_update_report(
    year: int,
    month: int,
    payload: ReportStatusIn,
    request: Request,
    db: Session = Depends(get_db),
):
    currency = currency_from_request(request)
    try:
        report = ReportService(db).set_status(year, month, payload.status, currency)
    except ValueError as exc:
        raise_for(exc)
    return report_to_dict(report)


@app.delete("/api/reports/{year}/{month}")
def api_delete_report(
    year: int, month: int, request: Request, db: Session = Depends(get_db)
):
    currency = currency_from_request(request)
    try:
        ReportService(db).delete(year, month, currency)
    except ValueError as exc:
        raise_for(exc)
    return Response(status_code=204)
