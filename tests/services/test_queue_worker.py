# mypy: ignore-errors
# tests/services/test_queue_worker.py
"""Tests for the batch queue worker."""

import asyncio
import itertools
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from pos_fiscal.core.errors import ConfigurationError
from pos_fiscal.core.queue_state import RetryPolicy
from pos_fiscal.models import AuditEvent, QueueEntry, SaleItem, TenantCredential
from pos_fiscal.services.authority import (
    AuthorityAuthenticationError,
    AuthorityError,
    AuthorityRejectedError,
    AuthorityUnavailableError,
    SubmissionAccepted,
)
from pos_fiscal.services.queue_worker import QueueWorker
from pos_fiscal.services.reference_data import ReferenceDataCache
from pos_fiscal.services.submission_queue import SubmissionQueue
from pos_fiscal.services.transformer import transform
from tests.conftest import TEST_TOKEN

INVOICE_NUMBER = "1234567DI1760518800123"


@pytest.fixture
def enqueue(db_session, tenant, reference_data, policy, clock):
    def _enqueue(sale, seller=None, retry_policy=None):
        queue = SubmissionQueue(db_session, policy=retry_policy or policy, clock=clock)
        payload = transform(sale, seller or tenant, reference_data)
        return queue.enqueue(sale.tenant_id, sale.id, payload, sale.reference_number)

    return _enqueue


@pytest.fixture
def make_worker(db_session, authority_client, vault, reference_cache, policy, clock):
    def _make(**overrides):
        options = {
            "client": authority_client,
            "vault": vault,
            "reference_cache": reference_cache,
            "db_session": db_session,
            "policy": policy,
            "batch_size": 10,
            "request_timeout": 5.0,
            "run_deadline": 60.0,
            "clock": clock,
        }
        options.update(overrides)
        return QueueWorker(**options)

    return _make


def _accept(invoice_number=INVOICE_NUMBER):
    return SubmissionAccepted(invoice_number=invoice_number, dated="2026-10-15 09:00:00")


@pytest.mark.asyncio
async def test_successful_submission_syncs_sale(
    db_session, make_worker, enqueue, sale, credential, authority_client, clock
):
    entry = enqueue(sale)
    authority_client.submit_invoice.return_value = _accept()

    summary = await make_worker().run_once()

    assert summary.claimed == 1
    assert summary.synced == 1
    credential_arg, payload_arg = authority_client.submit_invoice.call_args.args
    assert credential_arg.token == credential
    assert payload_arg == entry.payload_bytes
    assert authority_client.submit_invoice.call_args.kwargs == {"idempotency_key": "INV-0001"}

    db_session.refresh(sale)
    assert sale.fbr_status == "synced"
    assert sale.fbr_invoice_number == INVOICE_NUMBER

    [event] = db_session.scalars(select(AuditEvent)).all()
    assert event.event == "synced"
    assert event.detail == f"FBR invoice {INVOICE_NUMBER}"
    assert db_session.get(TenantCredential, sale.tenant_id).last_sync_at == clock.now


@pytest.mark.asyncio
async def test_transient_failure_then_success(
    db_session, make_worker, enqueue, sale, credential, authority_client, clock
):
    entry = enqueue(sale)
    authority_client.submit_invoice.side_effect = [
        AuthorityUnavailableError("FBR returned 503"),
        _accept(),
    ]
    worker = make_worker()

    first = await worker.run_once()
    assert first.retrying == 1
    db_session.refresh(entry)
    assert entry.state == "retrying"
    assert entry.last_error == "FBR returned 503"

    assert (await worker.run_once()).claimed == 0

    clock.advance(60)
    second = await worker.run_once()

    assert second.synced == 1
    db_session.refresh(entry)
    assert entry.state == "synced"
    assert entry.attempt_count == 2
    assert authority_client.submit_invoice.await_count == 2


@pytest.mark.asyncio
async def test_retries_exhaust_into_dead_letter(
    db_session, make_worker, enqueue, sale, credential, authority_client, clock
):
    policy = RetryPolicy(base_seconds=60, max_seconds=3600, jitter_ratio=0.0, max_attempts=3)
    entry = enqueue(sale, retry_policy=policy)
    authority_client.submit_invoice.side_effect = AuthorityUnavailableError("FBR returned 502")
    worker = make_worker(policy=policy)

    for _ in range(3):
        await worker.run_once()
        clock.advance(3600)

    db_session.refresh(entry)
    assert entry.state == "dead_letter"
    assert entry.dead_letter_reason == "exhausted"
    assert entry.attempt_count == 3
    assert entry.last_error == "Retries exhausted after 3 attempts: FBR returned 502"
    db_session.refresh(sale)
    assert sale.fbr_status == "failed"
    assert (await worker.run_once()).claimed == 0


@pytest.mark.asyncio
async def test_rejection_is_dead_lettered_with_fbr_errors(
    db_session, make_worker, enqueue, sale, credential, authority_client
):
    entry = enqueue(sale)
    authority_client.submit_invoice.side_effect = AuthorityRejectedError(
        ["Item 1: FBR Error: The HS Code for a product is incorrect."], status_code=200
    )

    summary = await make_worker().run_once()

    assert summary.dead_letter == 1
    db_session.refresh(entry)
    assert entry.dead_letter_reason == "validation"
    db_session.refresh(sale)
    assert sale.fbr_error == "Item 1: FBR Error: The HS Code for a product is incorrect."
    [event] = db_session.scalars(select(AuditEvent)).all()
    assert event.outcome == "validation"


@pytest.mark.asyncio
async def test_missing_credential_is_a_configuration_dead_letter(
    db_session, make_worker, enqueue, sale, authority_client
):
    entry = enqueue(sale)

    summary = await make_worker().run_once()

    assert summary.config_errors == 1
    authority_client.submit_invoice.assert_not_awaited()
    db_session.refresh(entry)
    assert entry.dead_letter_reason == "configuration"
    assert entry.attempt_count == 0
    assert entry.last_error == "FBR not configured for this tenant"


@pytest.mark.asyncio
async def test_refused_token_is_a_configuration_dead_letter(
    db_session, make_worker, enqueue, sale, credential, authority_client
):
    entry = enqueue(sale)
    authority_client.submit_invoice.side_effect = AuthorityAuthenticationError(
        "FBR refused the credential (HTTP 401)"
    )

    summary = await make_worker().run_once()

    assert summary.config_errors == 1
    db_session.refresh(entry)
    assert entry.last_error == "FBR token rejected: FBR refused the credential (HTTP 401)"
    assert TEST_TOKEN not in entry.last_error


@pytest.mark.asyncio
async def test_slow_authority_counts_as_transient_timeout(
    db_session, make_worker, enqueue, sale, credential, authority_client
):
    entry = enqueue(sale)

    async def hang(*args, **kwargs):
        await asyncio.sleep(1)
        return _accept()

    authority_client.submit_invoice.side_effect = hang

    summary = await make_worker(request_timeout=0.01).run_once()

    assert summary.retrying == 1
    db_session.refresh(entry)
    assert entry.last_error == "FBR did not respond within 0.01s"
    assert entry.attempt_count == 1


@pytest.mark.asyncio
async def test_deadline_releases_unstarted_entries(
    db_session, make_worker, enqueue, make_sale, credential, authority_client
):
    entries = [enqueue(make_sale()) for _ in range(3)]
    authority_client.submit_invoice.return_value = _accept()
    ticks = itertools.chain([0.0, 1.0], itertools.repeat(20.0))

    summary = await make_worker(run_deadline=10.0, monotonic=lambda: next(ticks)).run_once()

    assert summary.claimed == 3
    assert summary.synced == 1
    assert summary.released == 2
    states = []
    for entry in entries:
        db_session.refresh(entry)
        states.append((entry.state, entry.attempt_count))
    assert states == [("synced", 1), ("pending", 0), ("pending", 0)]


@pytest.mark.asyncio
async def test_expired_lease_is_recovered_and_resubmitted(
    db_session, make_worker, enqueue, sale, credential, authority_client, policy, clock
):
    enqueue(sale)
    crashed = SubmissionQueue(db_session, policy=policy, clock=clock, lease_seconds=120)
    [abandoned] = crashed.claim_due(limit=1)
    authority_client.submit_invoice.return_value = _accept()

    clock.advance(121)
    summary = await make_worker().run_once()

    assert summary.recovered == 1
    assert summary.synced == 1
    db_session.refresh(abandoned)
    assert abandoned.attempt_count == 1


@pytest.fixture
def second_session(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.mark.asyncio
async def test_overlapping_runs_submit_each_entry_once(
    db_session, second_session, make_worker, enqueue, make_sale, credential, authority_client, clock
):
    entries = [enqueue(make_sale()) for _ in range(3)]
    overlapping = make_worker(db_session=second_session)
    calls = []
    overlap = {}

    async def slow_submit(credential_arg, payload, idempotency_key=None):
        calls.append(idempotency_key)
        clock.advance(70)
        await asyncio.sleep(0)
        # The next cron tick fires while the second entry is still with FBR.
        if idempotency_key == "INV-0002" and not overlap:
            overlap["summary"] = await overlapping.run_once()
        return _accept(f"FBR-{idempotency_key}")

    authority_client.submit_invoice.side_effect = slow_submit

    summary = await make_worker(lease_seconds=120).run_once()

    assert calls == ["INV-0001", "INV-0002", "INV-0003"]
    assert (summary.claimed, summary.synced, summary.lease_lost, summary.errors) == (3, 2, 1, 0)
    assert (overlap["summary"].recovered, overlap["summary"].synced) == (1, 1)
    for entry in entries:
        db_session.refresh(entry)
        assert entry.state == "synced"
        assert entry.attempt_count == 1
        assert entry.fbr_invoice_number == f"FBR-{entry.reference_number}"


@pytest.mark.asyncio
async def test_lease_is_renewed_before_each_submit(
    db_session, make_worker, enqueue, make_sale, credential, authority_client, clock
):
    first, second = (enqueue(make_sale()) for _ in range(2))
    leases = {}

    async def slow_submit(credential_arg, payload, idempotency_key=None):
        entry = second if idempotency_key == "INV-0002" else first
        db_session.refresh(entry)
        leases[idempotency_key] = entry.lease_expires_at - clock.now
        clock.advance(100)
        return _accept(f"FBR-{idempotency_key}")

    authority_client.submit_invoice.side_effect = slow_submit

    summary = await make_worker(lease_seconds=120).run_once()

    assert summary.synced == 2
    assert leases == {"INV-0001": timedelta(seconds=120), "INV-0002": timedelta(seconds=120)}


def test_timeout_longer_than_the_lease_is_refused(make_worker):
    with pytest.raises(ConfigurationError, match="must be shorter than the queue lease"):
        make_worker(request_timeout=120.0, lease_seconds=120)


@pytest.mark.asyncio
async def test_unexpected_error_is_isolated_and_rescheduled(
    db_session, make_worker, enqueue, make_sale, credential, authority_client
):
    first, second = (enqueue(make_sale()) for _ in range(2))
    authority_client.submit_invoice.side_effect = [RuntimeError("boom"), _accept()]

    summary = await make_worker().run_once()

    assert (summary.errors, summary.retrying, summary.synced) == (1, 1, 1)
    db_session.refresh(first)
    assert first.state == "retrying"
    assert first.attempt_count == 1
    assert first.last_error == "Unexpected RuntimeError: boom"
    assert first.claim_token is None
    db_session.refresh(second)
    assert second.state == "synced"


@pytest.mark.asyncio
async def test_bad_tenant_url_is_a_transient_failure(
    db_session, make_worker, enqueue, sale, credential, authority_client
):
    entry = enqueue(sale)
    authority_client.submit_invoice.side_effect = httpx.InvalidURL("Invalid URL 'gw.fbr'")

    summary = await make_worker().run_once()

    assert (summary.errors, summary.retrying) == (1, 1)
    db_session.refresh(entry)
    assert entry.state == "retrying"
    assert entry.last_error == "Unexpected InvalidURL: Invalid URL 'gw.fbr'"


@pytest.mark.asyncio
async def test_generic_authority_error_is_transient(
    db_session, make_worker, enqueue, sale, credential, authority_client
):
    entry = enqueue(sale)
    authority_client.submit_invoice.side_effect = AuthorityError("FBR sent an unreadable response")

    summary = await make_worker().run_once()

    assert (summary.errors, summary.retrying) == (0, 1)
    db_session.refresh(entry)
    assert entry.last_error == "FBR sent an unreadable response"


@pytest.mark.asyncio
async def test_notifier_failure_does_not_abort_the_batch(
    db_session, make_worker, enqueue, make_sale, credential, authority_client, mocker
):
    first, second = (enqueue(make_sale()) for _ in range(2))
    authority_client.submit_invoice.return_value = _accept()
    notifier = mocker.Mock()
    notifier.entry_finished.side_effect = [RuntimeError("mail relay down"), None]

    summary = await make_worker(notifier=notifier).run_once()

    assert summary.synced == 2
    assert notifier.entry_finished.call_count == 2


@pytest.mark.asyncio
async def test_one_failing_entry_does_not_abort_the_batch(
    db_session, make_worker, enqueue, make_sale, credential, authority_client
):
    first, second, third = (enqueue(make_sale()) for _ in range(3))
    authority_client.submit_invoice.side_effect = [
        _accept("INV-A"),
        AuthorityRejectedError(["bad"]),
        _accept("INV-C"),
    ]

    summary = await make_worker().run_once()

    assert (summary.synced, summary.dead_letter) == (2, 1)
    for entry, state in ((first, "synced"), (second, "dead_letter"), (third, "synced")):
        db_session.refresh(entry)
        assert entry.state == state


@pytest.mark.asyncio
async def test_missing_reference_data_is_a_configuration_failure(
    db_session, make_worker, enqueue, sale, credential, authority_client
):
    entry = enqueue(sale)

    def unavailable():
        raise OperationalError("SELECT 1", {}, Exception("down"))

    summary = await make_worker(
        reference_cache=ReferenceDataCache(unavailable, refresh_interval=60)
    ).run_once()

    assert summary.config_errors == 1
    authority_client.submit_invoice.assert_not_awaited()
    db_session.refresh(entry)
    assert entry.dead_letter_reason == "configuration"


@pytest.mark.asyncio
async def test_each_entry_uses_its_own_tenant_credential(
    db_session,
    make_worker,
    enqueue,
    make_sale,
    tenant,
    other_tenant,
    credential,
    vault,
    authority_client,
):
    vault.store(db_session, other_tenant.id, "lahore-token", sandbox=True)
    db_session.commit()
    karachi = enqueue(make_sale())
    lahore = enqueue(make_sale(tenant_id=other_tenant.id), seller=other_tenant)

    async def submit(credential_arg, payload, idempotency_key=None):
        return _accept(f"FBR-{credential_arg.token}")

    authority_client.submit_invoice.side_effect = submit

    await make_worker().run_once()

    db_session.refresh(karachi)
    db_session.refresh(lahore)
    assert karachi.fbr_invoice_number == f"FBR-{TEST_TOKEN}"
    assert lahore.fbr_invoice_number == "FBR-lahore-token"


@pytest.mark.asyncio
async def test_payload_is_frozen_at_enqueue_time(
    db_session, make_worker, enqueue, sale, credential, authority_client
):
    entry = enqueue(sale)
    frozen = entry.payload_bytes
    item = db_session.scalars(select(SaleItem).where(SaleItem.sale_id == sale.id)).first()
    item.unit_price = Decimal("9999.00")
    db_session.commit()
    authority_client.submit_invoice.return_value = _accept()

    await make_worker().run_once()

    assert authority_client.submit_invoice.call_args.args[1] == frozen
    db_session.refresh(entry)
    assert entry.payload_bytes == frozen
    assert db_session.scalars(select(QueueEntry)).one().state == "synced"


@pytest.mark.asyncio
async def test_two_timeouts_then_success_follow_backoff_schedule(
    db_session, make_worker, enqueue, sale, credential, authority_client, clock
):
    entry = enqueue(sale)
    calls = {"n": 0}

    async def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] < 3:
            await asyncio.sleep(1)
        return _accept()

    authority_client.submit_invoice.side_effect = flaky
    worker = make_worker(request_timeout=0.01)

    delays = []
    for _ in range(2):
        started = clock.now
        await worker.run_once()
        db_session.refresh(entry)
        assert entry.state == "retrying"
        delays.append((entry.next_attempt_at - started).total_seconds())
        clock.now = entry.next_attempt_at

    summary = await worker.run_once()

    assert delays == [60.0, 120.0]
    assert summary.synced == 1
    db_session.refresh(entry)
    assert entry.state == "synced"
    assert entry.attempt_count == 3
    assert entry.payload_bytes == authority_client.submit_invoice.call_args.args[1]
