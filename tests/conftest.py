"""
Shared fixtures.

Each test gets its own SQLite file database; the app's session factory and
LLM collaborator are swapped through dependency overrides.
"""

from decimal import Decimal

import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from school_ops.db.models import Base, Batch, Invoice, Lead
from school_ops.db.session import get_session_factory
from school_ops.deps import get_insights_generator
from school_ops.main import app
from school_ops.schemas.analytics import InsightsPayload
from school_ops.services.auth import issue_token
from school_ops.services.cache import InMemoryInsightsCache
from school_ops.services.ratelimit import build_rate_limiters


class FakeInsightsGenerator:
    def __init__(self):
        self.calls = []

    async def generate(self, insight_type: str, snapshot: dict) -> InsightsPayload:
        self.calls.append((insight_type, snapshot))
        return InsightsPayload(
            summary=f"{insight_type} summary",
            insights=[f"Revenue EUR {snapshot['revenue_eur']}"],
            recommendations=["Chase partial payers"],
        )


@pytest.fixture
async def engine(tmp_path, request):
    # Tests marked serialized_writes take the write lock up front, like row locks on PostgreSQL
    begin = "BEGIN IMMEDIATE" if request.node.get_closest_marker("serialized_writes") else "BEGIN"
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    # Let SQLAlchemy own BEGIN so SAVEPOINT/ROLLBACK behave as on PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql(begin)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
def insights_generator():
    return FakeInsightsGenerator()


@pytest.fixture
async def client(session_factory, insights_generator):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_insights_generator] = lambda: insights_generator
    app.state.redis = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    app.state.rate_limiters = build_rate_limiters(app.state.redis)
    app.state.insights_cache = InMemoryInsightsCache(ttl_seconds=3600)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await app.state.redis.aclose()


def _auth(role: str) -> dict[str, str]:
    token = issue_token(f"user-{role.lower()}", role, email=f"{role.lower()}@school.test")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def founder():
    return _auth("FOUNDER")


@pytest.fixture
def marketing():
    return _auth("MARKETING")


@pytest.fixture
def teacher():
    return _auth("TEACHER")


@pytest.fixture
def seed(session_factory):
    """Create a batch, a lead and a PENDING invoice; returns their ids."""

    async def _seed(
        total: str = "500.00",
        currency: str = "EUR",
        with_batch: bool = True,
        with_lead: bool = True,
        total_seats: int = 10,
    ) -> dict:
        async with session_factory() as session:
            batch = None
            if with_batch:
                batch = Batch(batch_code=f"A1-{total}-{currency}", level="A1", total_seats=total_seats)
                session.add(batch)
                await session.flush()
            lead = None
            if with_lead:
                lead = Lead(
                    name="Anna Schmidt",
                    whatsapp="+491701234567",
                    email="anna@example.com",
                    source="INSTAGRAM",
                    status="TRIAL_ATTENDED",
                    interested_level="A1",
                    interested_type="A1_TO_B1",
                    batch_id=batch.id if batch else None,
                )
                session.add(lead)
                await session.flush()
            invoice = Invoice(
                invoice_number="INV-20261018-0900",
                lead_id=lead.id if lead else None,
                currency=currency,
                status="PENDING",
                total_amount=Decimal(total),
                paid_amount=Decimal("0"),
                remaining_amount=Decimal(total),
            )
            session.add(invoice)
            await session.commit()
            return {
                "invoice_id": invoice.id,
                "lead_id": lead.id if lead else None,
                "batch_id": batch.id if batch else None,
            }

    return _seed


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *where) -> int:
        async with session_factory() as session:
            stmt = select(func.count()).select_from(model)
            for clause in where:
                stmt = stmt.where(clause)
            return (await session.execute(stmt)).scalar_one()

    return _count


@pytest.fixture
def fetch(session_factory):
    async def _fetch(model, row_id):
        async with session_factory() as session:
            return await session.get(model, row_id)

    return _fetch
