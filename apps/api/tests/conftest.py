import sys
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from rac_rewards_api.app import create_app  # noqa: E402
from rac_rewards_api.db.base import Base  # noqa: E402
from rac_rewards_api.db.session import get_session  # noqa: E402
from rac_rewards_api.models.membership import CustodyMode, MembershipRarity  # noqa: E402
from rac_rewards_api.observability.membership import get_membership_telemetry  # noqa: E402
from rac_rewards_api.services.membership import TypeCatalog, clear_cache  # noqa: E402


class StubLedger:
    """Ownership ledger double answering from a fixed set of (wallet, owner) pairs."""

    def __init__(self, owned: set[tuple[str, str]] | None = None) -> None:
        self.owned = owned or set()
        self.calls: list[tuple[str, str]] = []
        self.signatures: list[str | None] = []

    async def check_ownership(self, wallet_ref: str, owner_id: str, signature: str | None = None) -> bool:
        self.calls.append((wallet_ref, owner_id))
        self.signatures.append(signature)
        return (wallet_ref, owner_id) in self.owned


@pytest.fixture(autouse=True)
def _reset_membership_state():
    clear_cache()
    get_membership_telemetry().reset()
    yield
    clear_cache()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions use separate connections."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'memberships.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def stub_ledger() -> StubLedger:
    return StubLedger()


@pytest.fixture
def publish_type():
    """Publish a membership type through the catalog with Gold-like defaults."""

    async def _publish(factory, **overrides):
        params = {
            "slug": "gold",
            "name": "Gold",
            "custody_mode": CustodyMode.CUSTODIAL,
            "rarity": MembershipRarity.RARE,
            "mint_cap": 2,
            "base_earn_ratio": Decimal("0.0130"),
            "upgrade_bonus_ratio": Decimal("0.0020"),
            "evolution_min_investment": Decimal("1500"),
            "evolution_bonus_ratio": Decimal("0.0100"),
            "base_price_usdt": Decimal("300"),
            "is_upgradeable": True,
            "is_evolvable": True,
            "is_fraction_eligible": True,
        }
        params.update(overrides)
        async with factory() as session:
            return await TypeCatalog(session).publish(**params)

    return _publish
