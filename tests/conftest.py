# tests/conftest.py
from __future__ import annotations

import base64
import os
from collections.abc import Callable, Generator, Iterator
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

TEST_MASTER_KEY = bytes(range(32))

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["FBR_MASTER_KEY"] = base64.urlsafe_b64encode(TEST_MASTER_KEY).decode()

from pos_fiscal.api.v1 import dependencies as api_dependencies  # noqa: E402
from pos_fiscal.core.queue_state import RetryPolicy  # noqa: E402
from pos_fiscal.db.session import Base  # noqa: E402
from pos_fiscal.db.session import get_db as app_get_session  # noqa: E402
from pos_fiscal.main import app as fastapi_app  # noqa: E402
from pos_fiscal.models import Sale, SaleItem, Tenant  # noqa: E402
from pos_fiscal.services.authority import AuthorityClient  # noqa: E402
from pos_fiscal.services.reference_data import ReferenceDataCache, ReferenceDataSet  # noqa: E402
from pos_fiscal.services.submission import SubmissionService  # noqa: E402
from pos_fiscal.services.vault import CredentialVault  # noqa: E402
from tests.factories import FakeClock, build_item, build_sale  # noqa: E402

TEST_DB_URL = "sqlite://"
TEST_BASE_URL = "https://gw.fbr.test/di_data/v1/di"
TEST_TOKEN = "tenant-token-0001"

HS_CODES = ("0101.2100", "8471.3010", "2202.1010", "7214.2000")
UNITS = ("Numbers, pieces, units", "KG", "Liter")


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    # Services commit for real; every table is emptied afterwards instead of
    # rolling back an outer transaction.
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def policy() -> RetryPolicy:
    """Retry policy without jitter so backoff times are exact."""
    return RetryPolicy(base_seconds=60, max_seconds=3600, jitter_ratio=0.0, max_attempts=5)


@pytest.fixture()
def reference_data() -> ReferenceDataSet:
    return ReferenceDataSet.build(hs_codes=HS_CODES, units_of_measure=UNITS)


@pytest.fixture()
def reference_cache(reference_data: ReferenceDataSet) -> ReferenceDataCache:
    return ReferenceDataCache(lambda: reference_data, refresh_interval=3600)


@pytest.fixture()
def vault() -> CredentialVault:
    return CredentialVault(TEST_MASTER_KEY)


@pytest.fixture()
def authority_client() -> AsyncMock:
    client = AsyncMock(spec=AuthorityClient)
    client.get_metrics.return_value = {"request_count": 0, "success_count": 0, "error_count": 0}
    return client


@pytest.fixture()
def tenant(db_session: Session) -> Tenant:
    tenant = Tenant(
        business_name="Karachi Mart",
        ntn="1234567",
        province="Sindh",
        address="Shop 4, Saddar, Karachi",
    )
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture()
def other_tenant(db_session: Session) -> Tenant:
    tenant = Tenant(
        business_name="Lahore Traders",
        ntn="7654321",
        province="Punjab",
        address="Mall Road, Lahore",
    )
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture()
def credential(db_session: Session, tenant: Tenant, vault: CredentialVault) -> str:
    """Store a sandbox credential for ``tenant`` and return its plaintext token."""
    vault.store(db_session, tenant.id, TEST_TOKEN, base_url=TEST_BASE_URL, sandbox=True)
    db_session.commit()
    return TEST_TOKEN


@pytest.fixture()
def make_sale(db_session: Session, tenant: Tenant) -> Callable[..., Sale]:
    """Persist a sale for ``tenant`` (or another tenant via ``tenant_id``)."""
    counter = {"n": 0}

    def _make(items: list[SaleItem] | None = None, **overrides: Any) -> Sale:
        counter["n"] += 1
        overrides.setdefault("tenant_id", tenant.id)
        overrides.setdefault("reference_number", f"INV-{counter['n']:04d}")
        sale = build_sale(items=items, **overrides)
        db_session.add(sale)
        db_session.commit()
        return sale

    return _make


@pytest.fixture()
def sale(make_sale: Callable[..., Sale]) -> Sale:
    return make_sale(
        items=[
            build_item(),
            build_item(
                product_name="USB Keyboard",
                hs_code="8471.3010",
                unit_of_measure="Numbers, pieces, units",
                quantity=Decimal("1"),
                unit_price=Decimal("1000.00"),
                discount=Decimal("100.00"),
                tax_category="reduced_rate",
            ),
        ]
    )


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_dependencies(
    app: FastAPI,
    db_session: Session,
    reference_cache: ReferenceDataCache,
    vault: CredentialVault,
    authority_client: AsyncMock,
    policy: RetryPolicy,
    clock: FakeClock,
) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    def _submission_service_override() -> SubmissionService:
        # Requests enqueue on the same fake clock the tests claim with.
        return SubmissionService(
            db_session,
            reference_cache=reference_cache,
            vault=vault,
            client=authority_client,
            policy=policy,
            clock=clock,
        )

    app.dependency_overrides[app_get_session] = _get_session_override
    app.dependency_overrides[api_dependencies.get_reference_cache_dep] = lambda: reference_cache
    app.dependency_overrides[api_dependencies.get_vault_dep] = lambda: vault
    app.dependency_overrides[api_dependencies.get_authority_client_dep] = lambda: authority_client
    app.dependency_overrides[api_dependencies.get_submission_service] = _submission_service_override
    try:
        yield
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client
