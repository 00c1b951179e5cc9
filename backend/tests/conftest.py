from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

import pytest
from factories import TEST_CATALOG
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete, select

from storefront.api.deps import get_db
from storefront.core.config import settings
from storefront.enums import PricingMode
from storefront.main import app
from storefront.models import CheckoutAttempt, Product, ProductVersion
from storefront.services import catalog_service, checkout_service
from storefront.services.checkout_service import CheckoutRequest


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    # no Redis or real webhook secret in unit tests
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "PAYMENT_PROVIDER_MOCK", True)
    monkeypatch.setattr(settings, "EMAILS_ENABLED", False)


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        # Clean tables after each test (children first).
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.exec(delete(table))
        session.commit()


@pytest.fixture(scope="function")
def client(engine) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def catalog(db) -> dict[str, ProductVersion]:
    """Seed the test catalog; returns versions keyed "product/version"."""
    catalog_service.sync_catalog(db, TEST_CATALOG)
    rows = db.exec(
        select(Product, ProductVersion).join(
            ProductVersion, ProductVersion.product_id == Product.id
        )
    ).all()
    return {f"{p.slug}/{v.slug}": v for p, v in rows}


@pytest.fixture
def start_checkout(db, catalog) -> Callable[..., CheckoutAttempt]:
    def _start(
        attempt_id: str = "click-1",
        product: str = "app",
        version: str = "pro",
        pricing: PricingMode = PricingMode.fixed,
        **kwargs: Any,
    ) -> CheckoutAttempt:
        result = checkout_service.create_checkout_session(
            db,
            CheckoutRequest(
                product_slug=product,
                version_slug=version,
                pricing=pricing,
                checkout_attempt_id=attempt_id,
                customer_email=kwargs.pop("customer_email", "buyer@example.com"),
                **kwargs,
            ),
        )
        return db.get(CheckoutAttempt, result.attempt_pk)

    return _start


