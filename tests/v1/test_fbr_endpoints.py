# mypy: ignore-errors
# tests/v1/test_fbr_endpoints.py
"""Tests for the per-sale FBR and queue endpoints."""

from fastapi import status
from fastapi.testclient import TestClient

from pos_fiscal.core.queue_state import Accepted, Rejected
from pos_fiscal.services.authority import AuthorityUnavailableError
from pos_fiscal.services.submission_queue import SubmissionQueue
from tests.factories import build_item


def _sale_url(sale, action: str) -> str:
    return f"/api/v1/tenants/{sale.tenant_id}/sales/{sale.id}/fbr/{action}"


def _dead_letter(db_session, policy, clock):
    queue = SubmissionQueue(db_session, policy=policy, clock=clock)
    [entry] = queue.claim_due(limit=1)
    return queue.mark_result(entry.id, entry.claim_token, Rejected(("Buyer NTN invalid",)))


def test_submit_queues_sale(client: TestClient, sale, credential) -> None:
    """Submitting a valid sale returns the pending queue entry."""
    r = client.post(_sale_url(sale, "submit"))
    assert r.status_code == status.HTTP_202_ACCEPTED
    data = r.json()
    assert data["sale_id"] == sale.id
    assert data["state"] == "pending"
    assert data["chain_seq"] == 1
    assert data["attempt_count"] == 0


def test_submit_twice_is_a_conflict(client: TestClient, sale, credential) -> None:
    assert client.post(_sale_url(sale, "submit")).status_code == status.HTTP_202_ACCEPTED

    r = client.post(_sale_url(sale, "submit"))
    assert r.status_code == status.HTTP_409_CONFLICT
    assert r.json()["category"] == "protocol"


def test_submit_after_sync_keeps_the_fiscal_number(
    client: TestClient, db_session, sale, credential, policy, clock
) -> None:
    assert client.post(_sale_url(sale, "submit")).status_code == status.HTTP_202_ACCEPTED
    queue = SubmissionQueue(db_session, policy=policy, clock=clock)
    [entry] = queue.claim_due(limit=1)
    queue.mark_result(entry.id, entry.claim_token, Accepted("1234567DI1760518800123"))

    r = client.post(_sale_url(sale, "submit"))
    assert r.status_code == status.HTTP_409_CONFLICT
    assert r.json()["message"] == (
        f"Sale {sale.id} was already accepted by FBR as invoice 1234567DI1760518800123"
    )

    body = client.get(_sale_url(sale, "status")).json()
    assert body["fbr_status"] == "synced"
    assert body["fbr_invoice_number"] == "1234567DI1760518800123"


def test_submit_invalid_sale_lists_every_violation(client: TestClient, make_sale, credential) -> None:
    sale = make_sale(
        items=[
            build_item(product_name="Mystery Box", hs_code=None),
            build_item(product_name="Cooking Oil", unit_of_measure="Barrel"),
        ]
    )

    r = client.post(_sale_url(sale, "submit"))
    assert r.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    body = r.json()
    assert body["category"] == "validation"
    assert body["errors"] == [
        "Mystery Box: HS code is missing",
        "Cooking Oil: unit of measure 'Barrel' is not in the FBR reference data",
    ]

    r = client.get(_sale_url(sale, "status"))
    assert r.json()["fbr_status"] == "failed"
    assert r.json()["latest_entry"]["dead_letter_reason"] == "validation"


def test_submit_without_credential(client: TestClient, sale) -> None:
    r = client.post(_sale_url(sale, "submit"))
    assert r.status_code == status.HTTP_424_FAILED_DEPENDENCY
    assert r.json() == {
        "category": "configuration",
        "message": "FBR not configured for this tenant",
        "errors": [],
    }


def test_unknown_sale_is_not_found(client: TestClient, tenant, credential) -> None:
    r = client.post(f"/api/v1/tenants/{tenant.id}/sales/999/fbr/submit")
    assert r.status_code == status.HTTP_404_NOT_FOUND

    r = client.get(f"/api/v1/tenants/{tenant.id}/sales/999/fbr/status")
    assert r.status_code == status.HTTP_404_NOT_FOUND


def test_validate_reports_violations_without_queueing(client: TestClient, make_sale) -> None:
    sale = make_sale(items=[build_item(hs_code="9999.9999")])

    r = client.post(_sale_url(sale, "validate"))
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["valid"] is False
    assert [violation["code"] for violation in data["violations"]] == ["unknown_hs_code"]
    assert data["violations"][0]["field"].startswith("items[0]")

    r = client.get(_sale_url(sale, "status"))
    assert r.json()["fbr_status"] == "not_queued"
    assert r.json()["latest_entry"] is None


def test_validate_valid_sale(client: TestClient, sale) -> None:
    r = client.post(_sale_url(sale, "validate"))
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"sale_id": sale.id, "valid": True, "violations": [], "remote_errors": []}


def test_remote_validation_when_fbr_is_down(
    client: TestClient, sale, credential, authority_client
) -> None:
    authority_client.validate_invoice.side_effect = AuthorityUnavailableError("FBR returned 503")

    r = client.post(_sale_url(sale, "validate"), params={"remote": "true"})
    assert r.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert r.json()["category"] == "transient"


def test_status_after_submit(client: TestClient, sale, credential) -> None:
    client.post(_sale_url(sale, "submit"))

    r = client.get(_sale_url(sale, "status"))
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["fbr_status"] == "pending"
    assert data["fbr_invoice_number"] is None
    assert data["latest_entry"]["state"] == "pending"


def test_requeue_requires_dead_letter(client: TestClient, sale, credential) -> None:
    r = client.post(_sale_url(sale, "requeue"))
    assert r.status_code == status.HTTP_409_CONFLICT
    assert "dead_letter" in r.json()["message"]


def test_requeue_dead_letter(
    client: TestClient, sale, credential, db_session, policy, clock
) -> None:
    client.post(_sale_url(sale, "submit"))
    _dead_letter(db_session, policy, clock)

    r = client.post(_sale_url(sale, "requeue"))
    assert r.status_code == status.HTTP_202_ACCEPTED
    assert r.json()["chain_seq"] == 2
    assert r.json()["state"] == "pending"


def test_queue_stats_and_dead_letters(
    client: TestClient, tenant, make_sale, credential, db_session, policy, clock
) -> None:
    failed = make_sale()
    client.post(_sale_url(failed, "submit"))
    _dead_letter(db_session, policy, clock)
    client.post(_sale_url(make_sale(), "submit"))

    r = client.get(f"/api/v1/tenants/{tenant.id}/fbr/queue")
    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["counts"]["pending"] == 1
    assert data["counts"]["dead_letter"] == 1
    assert data["counts"]["synced"] == 0
    assert data["dead_letter_reasons"] == {"validation": 1}

    r = client.get(f"/api/v1/tenants/{tenant.id}/fbr/dead-letters", params={"limit": 10})
    assert r.status_code == status.HTTP_200_OK
    [entry] = r.json()
    assert entry["sale_id"] == failed.id
    assert entry["last_error"] == "Buyer NTN invalid"

    r = client.get(f"/api/v1/tenants/{tenant.id}/fbr/dead-letters", params={"limit": 0})
    assert r.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_tenants_cannot_see_each_others_sales(
    client: TestClient, sale, other_tenant, credential
) -> None:
    r = client.get(f"/api/v1/tenants/{other_tenant.id}/sales/{sale.id}/fbr/status")
    assert r.status_code == status.HTTP_404_NOT_FOUND

    client.post(_sale_url(sale, "submit"))
    r = client.get(f"/api/v1/tenants/{other_tenant.id}/fbr/queue")
    assert r.json()["counts"]["pending"] == 0
