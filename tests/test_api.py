from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from database import build_engine, create_schema, make_sessionmaker
from main import app, get_db
from services import DepartmentService, InsuranceProviderService


@pytest.fixture()
def client():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    create_schema(engine)
    TestingSession = make_sessionmaker(engine)
    with TestingSession() as session:
        DepartmentService(session).seed_defaults()
        InsuranceProviderService(session).seed_defaults()

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _ids(client: TestClient, path: str) -> dict[str, int]:
    return {row["code"]: row["id"] for row in client.get(path).json()}


JUNE = {"startDate": "2025-06-01", "endDate": "2025-07-01"}


def test_date_range_endpoint_resolves_presets(client: TestClient) -> None:
    resp = client.get("/api/date-range", params={"preset": "last-year"})
    assert resp.status_code == 200
    body = resp.json()
    year = datetime.now(timezone.utc).year - 1
    assert body["startDate"] == f"{year}-01-01"
    assert body["endDate"] == f"{year + 1}-01-01"
    assert body["monthsCount"] == 12
    assert body["preset"] == "last-year"


def test_date_range_endpoint_accepts_range_alias_and_custom(client: TestClient) -> None:
    resp = client.get("/api/date-range", params={"range": "last-3-months"})
    assert resp.json()["preset"] == "last-quarter"

    resp = client.get(
        "/api/date-range", params={"startDate": "2025-03-10", "endDate": "2025-03-20"}
    )
    body = resp.json()
    assert body["preset"] == "custom"
    assert body["startDate"] == "2025-03-10"
    assert body["endDate"] == "2025-03-20"
    assert body["months"] == [{"year": 2025, "month": 3}]


def test_date_range_endpoint_echoes_preset_sent_with_dates(client: TestClient) -> None:
    window = client.get("/api/date-range", params={"preset": "last-year"}).json()
    resp = client.get(
        "/api/date-range",
        params={
            "preset": "last-year",
            "startDate": window["startDate"],
            "endDate": window["endDate"],
        },
    )
    assert resp.status_code == 200
    assert resp.json()["preset"] == "last-year"


@pytest.mark.parametrize(
    "params",
    [
        {"preset": "last-month", "startDate": "2025-03-10", "endDate": "2025-03-20"},
        {"preset": "fortnight"},
        {"startDate": "2025-03-10"},
        {"startDate": "2025-03-20", "endDate": "2025-03-10"},
        {"startDate": "2025-02-30", "endDate": "2025-03-10"},
    ],
)
def test_date_range_endpoint_rejects_bad_input(client: TestClient, params) -> None:
    assert client.get("/api/date-range", params=params).status_code == 400


def test_presets_listing(client: TestClient) -> None:
    body = client.get("/api/date-range/presets").json()
    assert body["default"] == "last-month"
    assert [p["value"] for p in body["presets"]][:2] == ["last-month", "last-quarter"]


def test_transaction_crud_flow(client: TestClient) -> None:
    departments = _ids(client, "/api/departments")
    resp = client.post(
        "/api/transactions",
        json={
            "date": "2025-06-30",
            "type": "income",
            "amount_cents": 12500,
            "department_id": departments["CON"],
            "description": "Consultations",
        },
    )
    assert resp.status_code == 201
    txn = resp.json()
    assert txn["department"] == "Consultation"

    listing = client.get("/api/transactions", params=JUNE).json()
    assert [item["id"] for item in listing["items"]] == [txn["id"]]
    assert listing["window"]["startDate"] == "2025-06-01"
    july = client.get(
        "/api/transactions", params={"startDate": "2025-07-01", "endDate": "2025-08-01"}
    ).json()
    assert july["items"] == []

    resp = client.put(
        f"/api/transactions/{txn['id']}",
        json={"date": "2025-06-29", "type": "income", "amount_cents": 13000},
    )
    assert resp.status_code == 200
    assert resp.json()["amount_cents"] == 13000

    assert client.delete(f"/api/transactions/{txn['id']}").status_code == 204
    assert client.get(f"/api/transactions/{txn['id']}").status_code == 404
    restored = client.post(f"/api/transactions/{txn['id']}/restore")
    assert restored.status_code == 200
    assert restored.json()["date"] == "2025-06-29"


def test_transaction_validation_errors(client: TestClient) -> None:
    resp = client.post(
        "/api/transactions",
        json={
            "date": "2025-06-30",
            "type": "income",
            "amount_cents": 100,
            "expense_category": "general",
        },
    )
    assert resp.status_code == 400
    resp = client.post(
        "/api/transactions",
        json={"date": "2025-06-30", "type": "income", "amount_cents": 100, "note": "x"},
    )
    assert resp.status_code == 422
    assert client.get("/api/transactions/999").status_code == 404


def test_dashboard_and_analytics_echo_window(client: TestClient) -> None:
    providers = _ids(client, "/api/insurance-providers")
    client.post(
        "/api/transactions",
        json={
            "date": "2025-06-10",
            "type": "income",
            "amount_cents": 8000,
            "insurance_provider_id": providers["UAP"],
        },
    )
    client.post(
        "/api/transactions",
        json={
            "date": "2025-06-11",
            "type": "expense",
            "amount_cents": 2000,
            "expense_category": "radiographer_payments",
            "staff_type": "radiographer",
        },
    )

    dashboard = client.get("/api/dashboard", params=JUNE).json()
    assert dashboard["window"]["months"] == [{"year": 2025, "month": 6}]
    assert dashboard["kpis"]["net_cents"] == 6000
    assert dashboard["insurance"][0]["code"] == "UAP"

    trends = client.get(
        "/api/analytics/trends", params={"startDate": "2025-04-01", "endDate": "2025-07-01"}
    ).json()
    assert [m["income_cents"] for m in trends["months"]] == [0, 0, 8000]

    expenses = client.get("/api/analytics/expenses", params=JUNE).json()
    assert expenses["categories"][0]["category"] == "radiographer_payments"

    overview = client.get("/api/insurance-overview/analytics", params=JUNE).json()
    assert overview["active_providers"] == 1

    departments = client.get("/api/analytics/departments", params=JUNE).json()
    assert departments["departments"][0]["name"] == "Unassigned"

    ssp = client.get("/api/dashboard", params={**JUNE, "currency": "ssp"}).json()
    assert ssp["kpis"]["income_cents"] == 0
    assert client.get("/api/dashboard", params={**JUNE, "currency": "EUR"}).status_code == 400


def test_patient_volume_endpoints(client: TestClient) -> None:
    resp = client.post("/api/patient-volume", json={"date": "2025-06-03", "patient_count": 30})
    assert resp.status_code == 201
    body = client.get("/api/patient-volume", params=JUNE).json()
    assert body["total_patients"] == 30
    assert body["daily_average"] == 1.0
    assert len(body["entries"]) == 1


def test_department_lifecycle(client: TestClient) -> None:
    resp = client.post("/api/departments", json={"code": "dent", "name": "Dental"})
    assert resp.status_code == 201
    dept_id = resp.json()["id"]
    assert client.post("/api/departments", json={"code": "DENT", "name": "x"}).status_code == 400
    assert client.post(f"/api/departments/{dept_id}/deactivate").json()["is_active"] is False
    assert "DENT" not in _ids(client, "/api/departments")
    assert client.post(f"/api/departments/{dept_id}/activate").json()["is_active"] is True
    assert client.post("/api/departments/999/activate").status_code == 404


def test_insurance_claim_payment_and_reconciliation(client: TestClient) -> None:
    providers = _ids(client, "/api/insurance-providers")
    cic = providers["CIC"]
    resp = client.post(
        "/api/insurance/claims",
        json={"provider_id": cic, "period_year": 2025, "period_month": 6, "claimed_amount_cents": 9000},
    )
    assert resp.status_code == 201
    claim = resp.json()
    assert claim["period_start"] == "2025-06-01"
    assert claim["period_end"] == "2025-07-01"

    resp = client.post(
        "/api/insurance/payments",
        json={
            "provider_id": cic,
            "claim_id": claim["id"],
            "payment_date": "2025-07-15",
            "amount_cents": 3000,
        },
    )
    assert resp.status_code == 201

    claims = client.get("/api/insurance/claims", params=JUNE).json()["items"]
    assert claims[0]["status"] == "partially_paid"
    assert claims[0]["outstanding_cents"] == 6000

    balances = client.get("/api/insurance/balances", params=JUNE).json()
    assert balances["providers"][0]["paid_cents"] == 3000

    payments = client.get(
        "/api/insurance/payments", params={"startDate": "2025-07-01", "endDate": "2025-08-01"}
    ).json()
    assert len(payments["items"]) == 1

    resp = client.patch(f"/api/insurance/claims/{claim['id']}", json={"status": "written_off"})
    assert resp.json()["status"] == "written_off"
    assert client.delete(f"/api/insurance/claims/{claim['id']}").status_code == 400

    recon = client.post(
        "/api/insurance/reconciliation",
        json={
            "provider_id": cic,
            "period_year": 2025,
            "period_month": 6,
            "claims": [
                {"member_number": "A1", "service_date": "2025-06-02", "billed_amount_cents": 500}
            ],
            "remittances": [
                {
                    "member_number": "a1",
                    "service_date": "2025-06-02",
                    "claim_amount_cents": 500,
                    "paid_amount_cents": 500,
                }
            ],
        },
    ).json()
    assert recon["summary"]["auto_matched"] == 1
    assert recon["results"][0]["match_method"] == "date_amount"


def test_report_endpoints(client: TestClient) -> None:
    client.post(
        "/api/transactions",
        json={"date": "2025-05-05", "type": "income", "amount_cents": 4200},
    )
    resp = client.post("/api/reports/generate", json={"year": 2025, "month": 5})
    assert resp.status_code == 201
    assert resp.json()["total_income_cents"] == 4200

    assert client.patch("/api/reports/2025/5", json={"status": "approved"}).status_code == 200
    assert client.patch("/api/reports/2025/5", json={"status": "locked"}).status_code == 200
    assert client.delete("/api/reports/2025/5").status_code == 400
    assert (
        client.post(
            "/api/reports/generate", json={"year": 2025, "month": 5, "overwrite": True}
        ).status_code
        == 400
    )
    assert client.get("/api/reports/2025/5").json()["status"] == "locked"
    assert client.get("/api/reports/2025/4").status_code == 404
    assert len(client.get("/api/reports").json()) == 1


def test_csv_import_and_export(client: TestClient) -> None:
    content = (
        "Date,Type,Amount,Currency,Department,ExpenseCategory,Description\n"
        "2025-06-01,income,150.00,USD,Pharmacy,,Dispensary\n"
    )
    preview = client.post(
        "/api/transactions/import/preview",
        files={"file": ("rows.csv", content.encode("utf-8"), "text/csv")},
    ).json()
    assert preview["errors"] == []
    assert preview["rows"][0]["amount_cents"] == 15000

    resp = client.post(
        "/api/transactions/import/commit",
        files={"file": ("rows.csv", content.encode("utf-8"), "text/csv")},
    )
    assert resp.json() == {"imported": 1}

    export = client.get("/api/transactions/export.csv", params=JUNE)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "transactions_2025-06-01_2025-07-01.csv" in export.headers["content-disposition"]
    assert "Pharmacy" in export.text
