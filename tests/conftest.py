import sys
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import clubsync_api.models  # noqa: E402,F401 (registers tables)
from clubsync_api.app import create_app  # noqa: E402
from clubsync_api.db.base import Base  # noqa: E402
from clubsync_api.db.session import get_session  # noqa: E402
from clubsync_api.models.membership import ClubProgram  # noqa: E402
from clubsync_api.observability.crm_sync import get_crm_sync_store  # noqa: E402
from clubsync_api.observability.provisioning import get_provisioning_store  # noqa: E402
from clubsync_api.schemas.crm import CreatePromotionSpec  # noqa: E402
from clubsync_api.schemas.membership import LoyaltySpec, TierProvisionSpec  # noqa: E402
from clubsync_api.services.crm import InMemoryCrmClient  # noqa: E402
from clubsync_api.services.membership import SqlAlchemyStateStore, TierProvisioningSaga  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, crm_client):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.state.crm_client = crm_client

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def crm_client() -> InMemoryCrmClient:
    return InMemoryCrmClient()


@pytest.fixture(autouse=True)
def reset_observability():
    get_crm_sync_store().reset()
    get_provisioning_store().reset()
    yield


def build_tier_spec(program_id, name: str = "Gold", *, promotions: int = 1, loyalty: bool = False) -> TierProvisionSpec:
    return TierProvisionSpec(
        program_id=program_id,
        name=name,
        description=f"{name} members",
        duration_months=12,
        min_purchase_amount=Decimal("100.00"),
        tier_order=1,
        promotions=[
            CreatePromotionSpec(
                title=f"{name} discount {index + 1}",
                product_discount_type="percentage",
                product_discount=10 + index,
            )
            for index in range(promotions)
        ],
        loyalty=LoyaltySpec(earn_rate=0.02, initial_points_bonus=50) if loyalty else None,
    )


async def create_program(session_factory, name: str = "Wine Club") -> ClubProgram:
    async with session_factory() as session:
        program = ClubProgram(name=name, description="Members program", is_active=True)
        session.add(program)
        await session.commit()
        return program


async def provision_tier(session_factory, crm_client, program_id, name: str = "Gold", **kwargs):
    async with session_factory() as session:
        saga = TierProvisioningSaga(crm_client, SqlAlchemyStateStore(session))
        return await saga.provision_tier(build_tier_spec(program_id, name, **kwargs))
