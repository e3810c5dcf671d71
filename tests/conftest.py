# tests/conftest.py
import os

# Settings are read at import time; these must exist before any settlement import
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ADMIN_EMAILS", "admin@example.com")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "async+memory://")

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from settlement.core.config import settings
from settlement.core.rate_limit import RateLimiterGuard
from settlement.crud import order as crud_order
from settlement.db.session import Base
from settlement.dependencies import get_db
from settlement.main import app
# Every model, so create_all builds every table
from settlement.models import affiliate, order, promo, referral, user, vcash
from settlement.models.order import Order, TopUp
from settlement.models.promo import PromoCode
from settlement.models.user import User
from settlement.services.rates import RateStore

# In-memory SQLite for tests - fast and isolated. StaticPool keeps one
# connection, so threadpool endpoints see the same database as the test.
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    A clean database for every test.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def file_session_factory(tmp_path):
    """
    Session factory over a file-backed SQLite database for tests that hit the
    store from several threads. Every transaction starts with BEGIN IMMEDIATE,
    so writers queue on the database lock the way they queue on row locks in
    PostgreSQL.
    """
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(file_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(file_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=file_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=file_engine)
        file_engine.dispose()


# --- Domain fixtures ---

@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make_user(email: str | None = None) -> User:
        counter["n"] += 1
        user = User(
            external_id=f"idp|user-{counter['n']}",
            email=email or f"user{counter['n']}@example.com",
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def test_user(make_user) -> User:
    return make_user("buyer@example.com")


@pytest.fixture
def make_order(db_session):
    def _make_order(user: User, amount_cents: int, display_currency: str = "USD", plan_id: str = "eu-10gb-30d") -> Order:
        order = crud_order.create_order(
            db_session, user_id=user.id, plan_id=plan_id, amount_cents=amount_cents, display_currency=display_currency
        )
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make_order


@pytest.fixture
def make_topup(db_session):
    def _make_topup(user: User, amount_cents: int) -> TopUp:
        topup = crud_order.create_topup(db_session, user_id=user.id, plan_code="topup-5gb", amount_cents=amount_cents)
        db_session.commit()
        db_session.refresh(topup)
        return topup

    return _make_topup


@pytest.fixture
def make_promo(db_session):
    def _make_promo(code: str, percent: int, **kwargs) -> PromoCode:
        promo = PromoCode(code=code.upper(), discount_percent=percent, **kwargs)
        db_session.add(promo)
        db_session.commit()
        db_session.refresh(promo)
        return promo

    return _make_promo


@pytest.fixture
def rate_store() -> RateStore:
    """A loaded store with no provider; refresh() is a no-op."""
    store = RateStore(
        provider=None,
        base_currency="USD",
        supported_currencies=["USD", "EUR", "GBP", "JPY"],
    )
    store.load({"EUR": Decimal("0.92"), "GBP": Decimal("0.79"), "JPY": Decimal("151.37")})
    return store


# --- HTTP fixtures ---

def make_token(external_id: str, email: str) -> str:
    return jwt.encode({"sub": external_id, "email": email}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


@pytest.fixture
def headers_for():
    def _headers_for(user: User) -> dict:
        return {"Authorization": f"Bearer {make_token(user.external_id, user.email)}"}

    return _headers_for


@pytest.fixture
def auth_headers(test_user, headers_for) -> dict:
    return headers_for(test_user)


@pytest.fixture
def admin_auth_headers() -> dict:
    return {"Authorization": f"Bearer {make_token('idp|admin', 'admin@example.com')}"}


@pytest.fixture
async def client(db_session, rate_store):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.rate_store = rate_store
    app.state.rate_limiter = RateLimiterGuard("async+memory://")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
