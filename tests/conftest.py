"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from phx.auth.jwt import create_access_token, reset_keys
from phx.config import EconomyRules, get_settings
from phx.database import create_session_factory
from phx.db.base import Base
from phx.db.models import Account, Contribution, LeaderboardSnapshot
from phx.governance.contributions import ContributionLedger
from phx.governance.engine import GovernanceEngine
from phx.governance.leaderboard import LeaderboardService
from phx.ledger.referrals import ReferralPropagator
from phx.ledger.service import LedgerService
from phx.services import Services, build_services
from phx.withdrawals.pipeline import WithdrawalPipeline

_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"


def _stellar_address(n: int) -> str:
    """Deterministic, well-formed Stellar public key for index ``n``."""
    suffix = ""
    while True:
        suffix = _ALPHABET[n % 32] + suffix
        n //= 32
        if n == 0:
            break
    return "G" + suffix.rjust(55, "A")


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeOracle:
    """In-memory balance oracle."""

    def __init__(self) -> None:
        self.balances: dict[str, Decimal] = {}
        self.total_supply = Decimal("0")
        self.failing = False
        self.calls: list[str] = []

    async def get_balance(self, address: str) -> Decimal:
        self.calls.append(address)
        if self.failing:
            msg = "oracle unreachable"
            raise httpx.ConnectError(msg)
        return self.balances.get(address, Decimal("0"))

    async def get_total_supply(self) -> Decimal:
        if self.failing:
            msg = "oracle unreachable"
            raise httpx.ConnectError(msg)
        return self.total_supply


class FakeQueue:
    """Records published jobs; publishes listed in ``fail_on`` raise."""

    def __init__(self) -> None:
        self.jobs: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_on: set[int] = set()
        self._calls = 0

    async def enqueue_job(self, function: str, *args: Any, **kwargs: Any) -> Any:
        index = self._calls
        self._calls += 1
        if index in self.fail_on:
            msg = "redis connection lost"
            raise ConnectionError(msg)
        self.jobs.append((function, args))
        return object()


class FakePayments:
    """Serves pages of Horizon payment records keyed by cursor."""

    def __init__(self) -> None:
        self.pages: dict[str, list[dict[str, Any]]] = {}
        self.requests: list[str] = []

    async def list_payments(self, account: str, cursor: str, limit: int) -> list[dict[str, Any]]:
        self.requests.append(cursor)
        return self.pages.get(cursor, [])[:limit]


# ---------------------------------------------------------------------------
# Database and services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database with the full schema for each test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def rules() -> EconomyRules:
    return EconomyRules()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture
def referrals(session_factory, rules) -> ReferralPropagator:
    return ReferralPropagator(session_factory, rules)


@pytest.fixture
def ledger(session_factory, rules, referrals) -> LedgerService:
    return LedgerService(session_factory, rules, referrals)


@pytest.fixture
def pipeline(session_factory, ledger, queue) -> WithdrawalPipeline:
    return WithdrawalPipeline(session_factory, ledger, queue, batch_size=2)


@pytest.fixture
def leaderboard(session_factory, oracle) -> LeaderboardService:
    return LeaderboardService(session_factory, oracle, size=100)


@pytest.fixture
def contributions(session_factory, payments) -> ContributionLedger:
    return ContributionLedger(session_factory, payments, _stellar_address(999_999), page_size=200)


@pytest.fixture
def governance(session_factory, rules, oracle) -> GovernanceEngine:
    return GovernanceEngine(session_factory, rules, oracle)


@pytest.fixture
def address() -> Callable[[int], str]:
    """Factory for valid payout addresses."""
    return _stellar_address


@pytest.fixture
def make_account(session_factory) -> Callable[..., Awaitable[Account]]:
    """Insert an account directly with the given field values."""

    async def _make(account_id: str, **fields: Any) -> Account:
        values: dict[str, Any] = {
            "mined_balance": Decimal("0"),
            "referral_bonus_pending": Decimal("0"),
            "referral_bonus_verified": Decimal("0"),
            "governance_rewards": Decimal("0"),
            "withdrawable_balance": Decimal("0"),
            "session_count": 0,
            "kyc_state": "not_submitted",
            "has_pending_withdrawal": False,
        }
        values.update(fields)
        account = Account(id=account_id, **values)
        async with session_factory() as db, db.begin():
            db.add(account)
        return account

    return _make


@pytest.fixture
def make_voter(make_account, address) -> Callable[..., Awaitable[Account]]:
    """Insert a KYC-verified account with a payout address."""

    async def _make(index: int, **fields: Any) -> Account:
        values: dict[str, Any] = {"kyc_state": "verified", "payout_address": address(index)}
        values.update(fields)
        return await make_account(f"voter-{index}", **values)

    return _make


@pytest.fixture
def seed_snapshot(session_factory) -> Callable[..., Awaitable[None]]:
    """Write the leaderboard snapshot row directly."""

    async def _seed(addresses: list[str], total_power: Decimal = Decimal("0")) -> None:
        async with session_factory() as db, db.begin():
            db.add(LeaderboardSnapshot(
                id=1,
                entries=[{"address": a, "amount": "1"} for a in addresses],
                total_power=total_power,
                updated_at=datetime.now(timezone.utc),
            ))

    return _seed


@pytest.fixture
def seed_contributions(session_factory) -> Callable[[dict[str, Decimal]], Awaitable[None]]:
    async def _seed(totals: dict[str, Decimal]) -> None:
        async with session_factory() as db, db.begin():
            for addr, amount in totals.items():
                db.add(Contribution(address=addr, total_amount=amount))

    return _seed


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def jwt_keys(tmp_path_factory: pytest.TempPathFactory) -> tuple[str, str]:
    """Generate an RSA key pair and point the settings at it."""
    keydir = tmp_path_factory.mktemp("phx_test_keys")
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = keydir / "jwt_private.pem"
    public_path = keydir / "jwt_public.pem"
    private_path.write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    public_path.write_bytes(key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ))

    os.environ["PHX_JWT_PRIVATE_KEY_PATH"] = str(private_path)
    os.environ["PHX_JWT_PUBLIC_KEY_PATH"] = str(public_path)
    get_settings.cache_clear()
    reset_keys()
    return str(private_path), str(public_path)


@pytest.fixture
def services(session_factory, queue, oracle, payments, jwt_keys) -> Services:
    return build_services(get_settings(), session_factory, queue=queue, oracle=oracle, payments=payments)


@pytest.fixture
def auth_headers(jwt_keys) -> Callable[..., dict[str, str]]:
    def _headers(account_id: str, *, admin: bool = False, email: str | None = None) -> dict[str, str]:
        token = create_access_token(account_id, email=email, admin=admin)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def app(services) -> FastAPI:
    """ASGI app with the test service container attached and no Redis."""
    from phx.main import create_app

    application = create_app(get_settings())
    application.state.services = services
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the ASGI app (lifespan is not run)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
