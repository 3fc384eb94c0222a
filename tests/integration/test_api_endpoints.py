from fastapi.testclient import TestClient
import pytest

from xerosync.api.http_app import build_app
from xerosync.clients.stub import StubXeroClient
from xerosync.domain.errors import XeroApiError
from xerosync.domain.sync_policy import BatchPolicy, SyncPolicy
from xerosync.repositories.stub import InMemoryStagingRepository
from xerosync.roles import validate_role
from xerosync.services.bootstrap import RuntimeContainer, build_runtime_container
from xerosync.services.settings import AppSettings
from tests.staging_seed import make_tenant, make_user

CRON = {"Authorization": "Bearer cron-secret"}
ADMIN = {"Authorization": "Bearer admin-token"}

PURCHASE = {
    "user_id": "user-1",
    "total_amount": 15000,
    "discount_amount": 2500,
    "final_amount": 12500,
    "payment_items": [
        {"item_type": "membership", "amount": 15000, "description": "Adult membership", "accounting_code": "400"},
        {"item_type": "discount", "amount": -2500, "description": "Scholarship", "accounting_code": "DISC"},
    ],
    "discount_codes_used": [{"code": "SPRING25", "amount_saved": 2500, "category_name": "Scholarship"}],
    "payment_id": "payment-1",
    "stripe_payment_intent_id": "pi_checkout",
}


def _container() -> RuntimeContainer:
    container = build_runtime_container(
        validate_role("api"),
        settings=AppSettings(cron_secret="cron-secret", admin_api_token="admin-token"),
        policy=SyncPolicy(batch=BatchPolicy(min_delay_between_syncs_ms=0)),
    )
    assert isinstance(container.repository, InMemoryStagingRepository)
    container.repository.add_user(make_user())
    container.repository.add_tenant(make_tenant())
    return container


def _client(container: RuntimeContainer) -> TestClient:
    app = build_app(role="api", run_id="integration-api", worker_loop=None, api_deps=container.api_deps)
    return TestClient(app)


def _stage_and_complete(client: TestClient, container: RuntimeContainer) -> str:
    created = client.post("/staging/purchases", json=PURCHASE, headers=ADMIN)
    assert created.status_code == 201
    repository = container.repository
    assert isinstance(repository, InMemoryStagingRepository)
    repository.add_payment_record(payment_id="payment-1", user_id="user-1", amount=12500)
    completed = client.post(
        "/staging/purchases/payment-1/complete",
        json={"stripe_payment_intent_id": "pi_checkout", "stripe_charge_id": "ch_1"},
        headers=ADMIN,
    )
    assert completed.json() == {"payment_id": "payment-1", "promoted": 2}
    return created.json()["invoice_id"]


@pytest.mark.integration
def test_health_and_ready_endpoints() -> None:
    with _client(_container()) as client:
        assert client.get("/health").json() == {"status": "ok", "role": "api"}
        ready = client.get("/ready").json()
        assert ready["status"] == "ready"
        assert ready["worker_loop_enabled"] is False
        assert ready["worker_loop_ready"] is True


@pytest.mark.integration
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "cron-secret"}])
def test_cron_requires_secret(headers: dict[str, str]) -> None:
    with _client(_container()) as client:
        assert client.post("/cron/xero-sync", headers=headers).status_code == 401
        assert client.post("/cron/payment-plans", headers=headers).status_code == 401


@pytest.mark.integration
def test_cron_rejects_everything_when_secret_is_unset() -> None:
    container = build_runtime_container(validate_role("api"), settings=AppSettings())
    with _client(container) as client:
        assert client.post("/cron/xero-sync", headers={"Authorization": "Bearer "}).status_code == 401
        assert client.post("/cron/xero-sync", headers=CRON).status_code == 401


@pytest.mark.integration
def test_cron_sync_with_empty_queue() -> None:
    with _client(_container()) as client:
        response = client.post("/cron/xero-sync", headers=CRON)

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["message"] == "No pending records to sync"
    assert body["pending_count"] == 0
    assert body["results"] is None


@pytest.mark.integration
def test_admin_routes_require_configured_token() -> None:
    with _client(_container()) as client:
        assert client.get("/xero/status").status_code == 401
        assert client.post("/xero/manual-sync", headers={"Authorization": "Bearer nope"}).status_code == 401
        assert client.get("/xero/status", headers=ADMIN).status_code == 200


@pytest.mark.integration
def test_purchase_staging_flow_syncs_through_cron() -> None:
    container = _container()
    with _client(container) as client:
        lookup = client.get("/staging/purchases/payment-1", headers=ADMIN)
        assert lookup.json() == {"payment_id": "payment-1", "invoice_id": None, "sync_status": None}

        invoice_id = _stage_and_complete(client, container)

        lookup = client.get("/staging/purchases/payment-1", headers=ADMIN)
        assert lookup.json() == {"payment_id": "payment-1", "invoice_id": invoice_id, "sync_status": "pending"}

        response = client.post("/cron/xero-sync", headers=CRON)
        body = response.json()
        assert response.status_code == 200
        assert body["pending_count"] == 2
        assert body["results"] == {
            "invoices": {"synced": 1, "failed": 0},
            "payments": {"synced": 1, "failed": 0},
            "total_synced": 2,
            "total_failed": 0,
        }

        status = client.get("/xero/status", headers=ADMIN).json()
        assert status["invoices"]["pending"] == 0
        assert status["tenant"] == {"tenant_id": "tenant-1", "tenant_name": "Hockey Association"}
        assert status["sync_manager"]["is_running"] is False
        assert status["sync_manager"]["last_run_time"] is not None


@pytest.mark.integration
def test_abandoned_purchase_is_never_synced() -> None:
    container = _container()
    with _client(container) as client:
        client.post("/staging/purchases", json=PURCHASE, headers=ADMIN)
        abandoned = client.post("/staging/purchases/payment-1/abandon", headers=ADMIN)
        assert abandoned.json() == {"payment_id": "payment-1", "abandoned": 2}

        assert client.post("/cron/xero-sync", headers=CRON).json()["pending_count"] == 0


@pytest.mark.integration
def test_inconsistent_purchase_is_rejected() -> None:
    with _client(_container()) as client:
        response = client.post("/staging/purchases", json={**PURCHASE, "final_amount": 15000}, headers=ADMIN)
        assert response.status_code == 422
        assert "final_amount" in response.json()["detail"]


@pytest.mark.integration
def test_retry_and_ignore_failed_records() -> None:
    container = _container()
    assert isinstance(container.xero, StubXeroClient)
    container.xero.fail_next("create_invoices", XeroApiError("A validation exception occurred", status_code=400))
    with _client(container) as client:
        invoice_id = _stage_and_complete(client, container)
        first = client.post("/xero/manual-sync", headers=ADMIN).json()
        assert first["results"]["total_failed"] == 2

        status = client.get("/xero/status", headers=ADMIN).json()
        assert status["invoices"]["failed"] == 1
        assert status["payments"]["failed"] == 1

        retried = client.post(
            "/xero/retry-failed",
            json={"type": "selected", "item_ids": [invoice_id]},
            headers=ADMIN,
        ).json()
        assert retried["reset_counts"] == {"invoices": 1, "payments": 0, "total": 1}
        assert retried["sync_results"]["invoices"] == {"synced": 1, "failed": 0}

        ignored = client.post("/xero/ignore-failed", json={"type": "all"}, headers=ADMIN).json()
        assert ignored["ignored_counts"] == {"invoices": 0, "payments": 1, "total": 1}
        assert ignored["message"] == "Ignored 1 failed records"


@pytest.mark.integration
@pytest.mark.parametrize(
    "payload",
    [
        {"type": "selected"},
        {"type": "selected", "item_ids": ["not-a-staging-id"]},
        {"type": "selected", "item_ids": ["crn_01ARZ3NDEKTSV4RRFFQ69G5FAV"]},
        {"type": "everything"},
    ],
)
def test_failed_item_requests_are_validated(payload: dict[str, object]) -> None:
    with _client(_container()) as client:
        assert client.post("/xero/retry-failed", json=payload, headers=ADMIN).status_code == 422
        assert client.post("/xero/ignore-failed", json=payload, headers=ADMIN).status_code == 422


@pytest.mark.integration
def test_refund_endpoints_stage_and_release_credit_note() -> None:
    container = _container()
    with _client(container) as client:
        _stage_and_complete(client, container)
        client.post("/cron/xero-sync", headers=CRON)

        refund = {"refund_type": "proportional", "amount": 5000}
        preview = client.post(
            "/staging/refunds/preview",
            json={"payment_id": "payment-1", "refund": refund},
            headers=ADMIN,
        ).json()
        assert preview["total_amount"] == 5000
        assert [line["account_code"] for line in preview["line_items"]] == ["400", "DISC"]

        created = client.post(
            "/staging/refunds",
            json={"refund_id": "refund-1", "payment_id": "payment-1", "refund": refund},
            headers=ADMIN,
        )
        assert created.status_code == 201
        completed = client.post("/staging/refunds/refund-1/complete", headers=ADMIN).json()
        assert completed == {"refund_id": "refund-1", "promoted": True}

        synced = client.post("/cron/xero-sync", headers=CRON).json()
        assert synced["results"]["invoices"] == {"synced": 1, "failed": 0}

        missing = client.post(
            "/staging/refunds/preview",
            json={"payment_id": "unknown", "refund": refund},
            headers=ADMIN,
        )
        assert missing.status_code == 422


@pytest.mark.integration
def test_payment_plan_endpoint_and_installment_cron() -> None:
    container = _container()
    with _client(container) as client:
        created = client.post(
            "/staging/payment-plans",
            json={
                "purchase": PURCHASE,
                "installments": [
                    {"installment_number": 1, "amount": 6250, "planned_payment_date": "2020-01-01"},
                    {"installment_number": 2, "amount": 6250, "planned_payment_date": "2020-02-01"},
                ],
            },
            headers=ADMIN,
        )
        assert created.status_code == 201
        assert len(created.json()["payment_ids"]) == 2

        run = client.post("/cron/payment-plans", headers=CRON).json()
        assert run["success"] is True
        assert run["payments_found"] == 1
        assert run["payments_processed"] == 1
        assert run["errors"] == []

        bad_split = client.post(
            "/staging/payment-plans",
            json={
                "purchase": PURCHASE,
                "installments": [
                    {"installment_number": 1, "amount": 5000, "planned_payment_date": "2026-01-01"},
                    {"installment_number": 2, "amount": 5000, "planned_payment_date": "2026-02-01"},
                ],
            },
            headers=ADMIN,
        )
        assert bad_split.status_code == 422
