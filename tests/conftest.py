"""Test configuration and fixtures.

Each test gets its own in-memory SQLite database (aiosqlite + StaticPool, so
every session in the test shares the one connection). Tables are created from
the ORM metadata; migrations are exercised separately against Postgres.
"""

import json
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.config import settings
from marketplace.database import Base, get_db
from marketplace.main import app
from marketplace.models.order import Order, OrderStatus, PaymentStatus
from marketplace.models.user import Professional, User, UserRole
from marketplace.repositories.escrow import EscrowRepository
from marketplace.schemas.escrow import EscrowCreate, TermSpec
from marketplace.services.escrow import EscrowService
from marketplace.utils.crypto import generate_keypair, signed_headers


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        settings.test_database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client sharing the test's database session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def service(db_session: AsyncSession) -> EscrowService:
    return EscrowService(EscrowRepository(db_session))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@dataclass
class Party:
    """Plain ids only: a rolled-back session expires ORM instances."""
    user_id: uuid.UUID
    private_key: str
    role: UserRole
    professional_id: uuid.UUID | None = None


async def make_user(
    db: AsyncSession,
    role: UserRole = UserRole.CLIENT,
    business_name: str | None = None,
) -> Party:
    """Insert a user (and a professional profile for professionals)."""
    priv, pub = generate_keypair()
    user = User(
        user_id=uuid.uuid4(),
        email=f"{uuid.uuid4().hex[:12]}@example.com",
        display_name=f"Test {role.value}",
        public_key=pub,
        role=role,
    )
    db.add(user)
    professional = None
    if role == UserRole.PROFESSIONAL:
        professional = Professional(
            professional_id=uuid.uuid4(),
            user_id=user.user_id,
            business_name=business_name or "Studio Arsitek",
            balance=0,
        )
        db.add(professional)
    await db.commit()
    return Party(
        user_id=user.user_id,
        private_key=priv,
        role=role,
        professional_id=professional.professional_id if professional else None,
    )


async def make_order(
    db: AsyncSession, client: Party, professional: Party, total_amount: int = 10_000_000
) -> Order:
    order = Order(
        order_id=uuid.uuid4(),
        client_user_id=client.user_id,
        professional_id=professional.professional_id,
        title="Two-storey house design",
        total_amount=total_amount,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
    )
    db.add(order)
    await db.commit()
    return order


def term_specs(*percentages: str, approval_required: bool = True) -> list[TermSpec]:
    return [
        TermSpec(
            name=f"Milestone {i}",
            description=f"Deliverables for milestone {i}",
            percentage=pct,
            approval_required=approval_required,
        )
        for i, pct in enumerate(percentages, start=1)
    ]


def escrow_request(order: Order, *percentages: str, total_amount: int | None = None) -> EscrowCreate:
    return EscrowCreate(
        order_id=order.order_id,
        total_amount=order.total_amount if total_amount is None else total_amount,
        terms=term_specs(*(percentages or ("30", "40", "30"))),
    )


@pytest_asyncio.fixture
async def parties(db_session: AsyncSession) -> tuple[Party, Party]:
    """(client, professional)."""
    client = await make_user(db_session, UserRole.CLIENT)
    professional = await make_user(db_session, UserRole.PROFESSIONAL)
    return client, professional


def make_auth_headers(party: Party, method: str, path: str, body: bytes = b"") -> dict[str, str]:
    return signed_headers(party.user_id, party.private_key, method, path, body)


async def signed_call(
    client: AsyncClient,
    party: Party,
    method: str,
    path: str,
    payload: Any = None,
) -> Response:
    """Send a signed request. The body is serialized here so the signed bytes
    are exactly the bytes on the wire."""
    body = b"" if payload is None else json.dumps(payload, default=str).encode()
    headers = make_auth_headers(party, method, path, body)
    if payload is not None:
        headers["Content-Type"] = "application/json"
    return await client.request(method, path, content=body, headers=headers)
