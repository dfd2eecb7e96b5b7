"""
Integration tests for the Microfinance Lending API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import date
from fastapi.testclient import TestClient

from microfinance.api import create_app
from microfinance.api.deps import get_lending_service

from conftest import ORG


@pytest.fixture
def client(service):
    """Test client wired to the in-memory lending service"""
    app = create_app()
    app.dependency_overrides[get_lending_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def money(amount, currency="RWF"):
    return {"amount": str(amount), "currency": currency}


def create_disbursed_loan(client, principal=1200000, organization_id=ORG):
    r = client.post("/loans", json={
        "organization_id": organization_id,
        "borrower_id": "borrower-1",
        "principal": money(principal),
        "annual_interest_rate": "12",
        "term_months": 12,
        "interest_method": "flat",
        "repayment_frequency": "monthly"
    })
    assert r.status_code == 201
    loan_id = r.json()["loan_id"]

    r = client.post(f"/loans/{loan_id}/approve", json={"approved_by": "officer-1"})
    assert r.status_code == 200
    r = client.post(f"/loans/{loan_id}/disburse", json={"disbursement_date": "2024-01-15"})
    assert r.status_code == 200
    return loan_id


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestLoanFlow:
    """Loan lifecycle over HTTP"""

    def test_create_and_disburse(self, client):
        r = client.post("/loans", json={
            "organization_id": ORG,
            "borrower_id": "borrower-1",
            "principal": money(1200000),
            "annual_interest_rate": "12",
            "term_months": 12
        })
        assert r.status_code == 201
        data = r.json()
        assert data["status"] == "pending"
        loan_id = data["loan_id"]

        client.post(f"/loans/{loan_id}/approve", json={})
        r = client.post(f"/loans/{loan_id}/disburse", json={"disbursement_date": "2024-01-15"})
        assert r.status_code == 200
        schedule = r.json()["schedule"]
        assert len(schedule["installments"]) == 12
        assert schedule["total_interest"] == money("144000.00")
        assert schedule["installments"][0]["due_date"] == "2024-02-15"

        r = client.get(f"/loans/{loan_id}")
        assert r.status_code == 200
        assert r.json()["status"] == "disbursed"
        assert r.json()["outstanding_principal"] == money("1200000.00")

        r = client.get(f"/loans/{loan_id}/schedule")
        assert len(r.json()["installments"]) == 12

    def test_invalid_money(self, client):
        r = client.post("/loans", json={
            "organization_id": ORG,
            "borrower_id": "borrower-1",
            "principal": money("abc"),
            "annual_interest_rate": "12",
            "term_months": 12
        })
        assert r.status_code == 400
        assert r.json()["detail"]["error_code"] == "validation_error"

    def test_unknown_loan(self, client):
        r = client.get("/loans/does-not-exist")
        assert r.status_code == 404
        assert r.json()["detail"]["error_code"] == "not_found"

    def test_other_tenant_is_not_found(self, client):
        loan_id = create_disbursed_loan(client)
        r = client.get(f"/loans/{loan_id}", params={"organization_id": "org-2"})
        assert r.status_code == 404

    def test_list_loans(self, client):
        create_disbursed_loan(client)
        r = client.get("/loans", params={"organization_id": ORG, "status": "disbursed"})
        assert r.status_code == 200
        assert len(r.json()["loans"]) == 1

        r = client.get("/loans", params={"organization_id": ORG, "status": "bogus"})
        assert r.status_code == 400

    def test_collateral_and_write_off(self, client):
        loan_id = create_disbursed_loan(client)
        r = client.post(f"/loans/{loan_id}/collateral", json={
            "collateral_type": "immovable",
            "collateral_value": money(500000),
            "haircut_rate": "0.20"
        })
        assert r.status_code == 201
        assert r.json()["collateral_type"] == "immovable"

        r = client.post(f"/loans/{loan_id}/write-off", json={"reason": "Absconded"})
        assert r.status_code == 200
        assert r.json()["status"] == "written_off"


class TestRepaymentFlow:
    """Payments, reversals and summaries over HTTP"""

    def test_payment_duplicate_and_reversal(self, client, clock):
        loan_id = create_disbursed_loan(client)
        clock.set_date(date(2024, 3, 31))

        r = client.post(f"/loans/{loan_id}/payments", json={"amount": money(112000)})
        assert r.status_code == 201
        data = r.json()
        assert data["penalty_paid"] == money("690.41")
        assert data["loan_status"] == "watch"
        assert data["receipt"]["receipt_number"].startswith("RCP-TXN-")
        transaction_id = data["transaction_id"]

        r = client.post(f"/loans/{loan_id}/payments", json={"amount": money(112000)})
        assert r.status_code == 409
        assert r.json()["detail"]["error_code"] == "duplicate_payment"

        r = client.get(f"/loans/{loan_id}/transactions")
        assert len(r.json()["transactions"]) == 1

        r = client.post(f"/transactions/{transaction_id}/reverse", json={"reason": "Bounced"})
        assert r.status_code == 200
        assert r.json()["amount"] == money("-112000.00")

        r = client.post(f"/transactions/{transaction_id}/reverse", json={"reason": "Again"})
        assert r.status_code == 400

        r = client.get(f"/loans/{loan_id}/transactions", params={"include_reversed": "true"})
        assert len(r.json()["transactions"]) == 2

    def test_amount_limit(self, client, clock):
        loan_id = create_disbursed_loan(client)
        clock.set_date(date(2024, 2, 15))
        r = client.post(f"/loans/{loan_id}/payments", json={"amount": money(500000)})
        assert r.status_code == 400
        assert r.json()["detail"]["error_code"] == "invalid_amount"

    def test_unknown_payment_method(self, client):
        loan_id = create_disbursed_loan(client)
        r = client.post(f"/loans/{loan_id}/payments", json={"amount": money(1000), "payment_method": "barter"})
        assert r.status_code == 400

    def test_payment_summary(self, client, clock):
        loan_id = create_disbursed_loan(client)
        clock.set_date(date(2024, 2, 15))
        client.post(f"/loans/{loan_id}/payments", json={"amount": money(112000), "payment_method": "mobile_money"})

        r = client.get(f"/loans/{loan_id}/payment-summary")
        assert r.status_code == 200
        data = r.json()
        assert data["installments_paid"] == 1
        assert data["outstanding_principal"] == money("1100000.00")
        assert data["next_payment_date"] == "2024-03-15"


class TestReportingFlow:
    """Classification and portfolio endpoints"""

    def test_classify_and_snapshot(self, client, clock):
        loan_id = create_disbursed_loan(client)
        clock.set_date(date(2024, 3, 31))

        r = client.post(f"/loans/{loan_id}/classify")
        assert r.status_code == 200
        assert r.json()["loan_class"] == "watch"
        assert r.json()["provision_status"] == "SHORTFALL"

        r = client.get(f"/loans/{loan_id}/classifications")
        assert len(r.json()["classifications"]) == 1

        r = client.post(f"/organizations/{ORG}/snapshots")
        assert r.status_code == 200
        data = r.json()
        assert data["total_par_ratio"] == "100.00"
        assert data["risk_profile"]["risk_level"] == "HIGH"

        r = client.get(f"/organizations/{ORG}/portfolio-at-risk")
        assert r.json()["buckets"]["31_90"]["count"] == 1

    def test_trends_date_order(self, client):
        r = client.get(f"/organizations/{ORG}/trends", params={"start_date": "2024-04-01", "end_date": "2024-03-01"})
        assert r.status_code == 400

        r = client.get(f"/organizations/{ORG}/classification-movements",
                       params={"start_date": "2024-03-01", "end_date": "2024-04-01"})
        assert r.status_code == 200
        assert r.json()["entered"]["watch"] == 0

    def test_batch_endpoints(self, client, clock):
        create_disbursed_loan(client)
        clock.set_date(date(2024, 2, 20))

        r = client.post(f"/organizations/{ORG}/delayed-days")
        assert r.status_code == 200
        assert r.json()["total_delayed_days_added"] == 1

        r = client.post(f"/organizations/{ORG}/classify")
        assert r.json()["total_loans"] == 1

        r = client.post(f"/organizations/{ORG}/daily-update")
        assert r.status_code == 200
        assert r.json()["succeeded"]
