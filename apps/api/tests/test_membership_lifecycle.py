from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from rac_rewards_api.core.settings import settings
from rac_rewards_api.models.membership import (
    CustodyMode,
    CustodyModeFrozenError,
    LifecycleEventType,
    MembershipInstance,
    UpgradeState,
)
from rac_rewards_api.observability.membership import get_membership_telemetry
from rac_rewards_api.services.membership import (
    InstanceMutation,
    LifecycleEventPublisher,
    MembershipErrorKind,
    MembershipStore,
    OwnershipLifecycle,
    effective_earn_ratio,
)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


class NoticeCollector:
    def __init__(self) -> None:
        self.notices = []

    async def __call__(self, notice) -> None:
        self.notices.append(notice)


@pytest.fixture
def publisher():
    return LifecycleEventPublisher()


@pytest.mark.asyncio
async def test_gold_scenario(session_factory, publish_type, stub_ledger, publisher) -> None:
    gold = await publish_type(session_factory, mint_cap=2)
    collector = NoticeCollector()
    publisher.subscribe(collector)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, ledger=stub_ledger, publisher=publisher)
        first = await lifecycle.create(gold.id, uuid4(), payment_ref="pay_1")
        second = await lifecycle.create(gold.id, uuid4(), payment_ref="pay_2")
        assert first.ok and second.ok

        instance = first.value
        assert instance.custody_mode == CustodyMode.CUSTODIAL
        assert instance.is_verified is True
        assert effective_earn_ratio(instance, gold) == Decimal("0.0130")

        upgraded = await lifecycle.upgrade(instance.id)
        assert upgraded.ok
        assert effective_earn_ratio(upgraded.value, gold) == Decimal("0.0150")

        third = await lifecycle.create(gold.id, uuid4(), payment_ref="pay_3")
        assert not third.ok
        assert third.failure.kind == MembershipErrorKind.CAPACITY_EXCEEDED

        events = await lifecycle.list_events(instance.id)

    await publisher.drain()

    assert [event.event_type for event in events.value] == [
        LifecycleEventType.CREATED,
        LifecycleEventType.UPGRADED,
    ]
    created_metadata = events.value[0].metadata_json
    assert created_metadata["serialNumber"] == 1
    assert created_metadata["paymentRef"] == "pay_1"
    assert events.value[1].metadata_json == {
        "originalRatio": "0.0130",
        "newRatio": "0.0150",
        "bonusRatio": "0.0020",
    }
    assert [notice.event_type for notice in collector.notices] == [
        LifecycleEventType.CREATED,
        LifecycleEventType.CREATED,
        LifecycleEventType.UPGRADED,
    ]
    assert collector.notices[-1].membership_name == "Gold"

    telemetry = get_membership_telemetry().snapshot()
    assert telemetry.transitions == {"created": 2, "upgraded": 1}
    assert telemetry.failures == {"capacity_exceeded": 1}


@pytest.mark.asyncio
async def test_second_upgrade_is_rejected_and_keeps_timestamp(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(gold.id, uuid4())
        first = await lifecycle.upgrade(created.value.id)
        upgraded_at = _naive(first.value.upgraded_at)

        second = await lifecycle.upgrade(created.value.id)
        reloaded = await lifecycle.store.get_instance(created.value.id, refresh=True)
        events = await lifecycle.list_events(created.value.id)

    assert second.failure.kind == MembershipErrorKind.ALREADY_UPGRADED
    assert reloaded.upgrade_state == UpgradeState.UPGRADED
    assert _naive(reloaded.upgraded_at) == upgraded_at
    assert [event.event_type for event in events.value].count(LifecycleEventType.UPGRADED) == 1


@pytest.mark.asyncio
async def test_upgrade_requires_upgradeable_type(session_factory, publish_type, publisher) -> None:
    silver = await publish_type(session_factory, slug="silver", name="Silver", is_upgradeable=False)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(silver.id, uuid4())
        result = await lifecycle.upgrade(created.value.id)

    assert result.failure.kind == MembershipErrorKind.NOT_UPGRADEABLE


@pytest.mark.asyncio
async def test_non_custodial_upgrade_keeps_base_ratio(session_factory, publish_type, publisher) -> None:
    wallet_gold = await publish_type(
        session_factory,
        slug="gold-wallet",
        name="Gold",
        custody_mode=CustodyMode.NON_CUSTODIAL,
    )

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(wallet_gold.id, uuid4(), wallet_ref="0xabc")
        assert created.value.is_verified is False

        upgraded = await lifecycle.upgrade(created.value.id)

    assert upgraded.ok
    assert upgraded.value.is_upgraded is True
    assert effective_earn_ratio(upgraded.value, wallet_gold) == Decimal("0.0130")


@pytest.mark.asyncio
async def test_evolution_is_gated_on_accumulated_investment(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(gold.id, uuid4())
        instance_id = created.value.id

        recorded = await lifecycle.record_investment(instance_id, 1000)
        assert recorded.ok

        blocked = await lifecycle.evolve(instance_id, 0)
        assert blocked.failure.kind == MembershipErrorKind.INSUFFICIENT_INVESTMENT

        eligibility = await lifecycle.evolution_eligibility(instance_id)
        assert eligibility.value.eligible is False
        assert eligibility.value.reasons == (MembershipErrorKind.INSUFFICIENT_INVESTMENT,)

        await lifecycle.record_investment(instance_id, "500")
        eligibility = await lifecycle.evolution_eligibility(instance_id)
        assert eligibility.value.eligible is True

        evolved = await lifecycle.evolve(instance_id)
        assert evolved.ok
        assert evolved.value.is_evolved is True
        assert evolved.value.evolved_at is not None

        again = await lifecycle.evolve(instance_id)
        events = await lifecycle.list_events(instance_id)

    assert again.failure.kind == MembershipErrorKind.ALREADY_EVOLVED
    evolved_events = [event for event in events.value if event.event_type == LifecycleEventType.EVOLVED]
    assert len(evolved_events) == 1
    assert Decimal(evolved_events[0].metadata_json["totalInvestment"]) == Decimal("1500")


@pytest.mark.asyncio
async def test_evolve_keeps_investment_when_rejected(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(gold.id, uuid4())
        instance_id = created.value.id

        first = await lifecycle.evolve(instance_id, Decimal("1000"))
        second = await lifecycle.evolve(instance_id, Decimal("500"))
        reloaded = await lifecycle.store.get_instance(instance_id, refresh=True)

    assert first.failure.kind == MembershipErrorKind.INSUFFICIENT_INVESTMENT
    assert second.ok
    assert reloaded.is_evolved is True
    assert Decimal(reloaded.accumulated_investment) == Decimal("1500")


@pytest.mark.asyncio
async def test_evolve_rejects_invalid_amounts_and_unevolvable_types(session_factory, publish_type, publisher) -> None:
    bronze = await publish_type(session_factory, slug="bronze", name="Bronze", is_evolvable=False)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(bronze.id, uuid4())
        instance_id = created.value.id

        negative = await lifecycle.evolve(instance_id, "-5")
        garbage = await lifecycle.evolve(instance_id, "lots")
        zero_investment = await lifecycle.record_investment(instance_id, 0)
        not_evolvable = await lifecycle.evolve(instance_id, 2000)
        missing = await lifecycle.evolve(uuid4(), 10)

    assert negative.failure.kind == MembershipErrorKind.INVALID_AMOUNT
    assert garbage.failure.kind == MembershipErrorKind.INVALID_AMOUNT
    assert zero_investment.failure.kind == MembershipErrorKind.INVALID_AMOUNT
    assert not_evolvable.failure.kind == MembershipErrorKind.NOT_EVOLVABLE
    assert missing.failure.kind == MembershipErrorKind.INSTANCE_NOT_FOUND


@pytest.mark.asyncio
async def test_auto_staking_is_a_one_way_latch(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(gold.id, uuid4())
        instance_id = created.value.id

        with pytest.raises(ValueError):
            await lifecycle.enable_auto_staking(instance_id, "  ")

        enabled = await lifecycle.enable_auto_staking(instance_id, "RAC")
        again = await lifecycle.enable_auto_staking(instance_id, "USDT")
        reloaded = await lifecycle.store.get_instance(instance_id, refresh=True)

    assert enabled.ok
    assert again.failure.kind == MembershipErrorKind.ALREADY_AUTO_STAKING
    assert reloaded.auto_staking_enabled is True
    assert reloaded.auto_staking_asset_ref == "RAC"


@pytest.mark.asyncio
async def test_custody_mode_is_frozen_after_creation(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        created = await lifecycle.create(gold.id, uuid4())
        instance = await lifecycle.store.get_instance(created.value.id, refresh=True)

        with pytest.raises(CustodyModeFrozenError):
            instance.custody_mode = CustodyMode.NON_CUSTODIAL

        instance.custody_mode = CustodyMode.CUSTODIAL
        assert instance.custody_mode == CustodyMode.CUSTODIAL


@pytest.mark.asyncio
async def test_owner_listing_and_missing_instances(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory, mint_cap=5)
    ruby = await publish_type(session_factory, slug="ruby", name="Ruby", base_earn_ratio=Decimal("0.0050"))
    owner_id = uuid4()

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        await lifecycle.create(gold.id, owner_id)
        await lifecycle.create(ruby.id, owner_id)
        await lifecycle.create(gold.id, uuid4())

        owned = await lifecycle.list_owner_instances(owner_id)
        missing = await lifecycle.get_instance(uuid4())
        missing_events = await lifecycle.list_events(uuid4())

    assert len(owned) == 2
    assert all(instance.owner_id == owner_id for instance in owned)
    assert missing.failure.kind == MembershipErrorKind.INSTANCE_NOT_FOUND
    assert missing_events.failure.kind == MembershipErrorKind.INSTANCE_NOT_FOUND


@pytest.mark.asyncio
async def test_version_conflicts_surface_concurrent_modification(file_session_factory, publish_type, publisher) -> None:
    gold = await publish_type(file_session_factory)

    async with file_session_factory() as session:
        created = await OwnershipLifecycle(session, publisher=publisher).create(gold.id, uuid4())
    instance_id = created.value.id

    async def apply_with_interference(instance: MembershipInstance) -> InstanceMutation:
        async with file_session_factory() as other:
            await other.execute(
                update(MembershipInstance)
                .where(MembershipInstance.id == instance_id)
                .values(version=MembershipInstance.version + 1)
                .execution_options(synchronize_session=False)
            )
            await other.commit()
        instance.upgrade_state = UpgradeState.UPGRADED
        return InstanceMutation()

    async with file_session_factory() as session:
        store = MembershipStore(session, max_attempts=2)
        outcome = await store.mutate_instance(instance_id, apply_with_interference)

    assert outcome.failure.kind == MembershipErrorKind.CONCURRENT_MODIFICATION
    assert outcome.failure.retryable is True
    assert outcome.attempts == 2
    assert outcome.instance.upgrade_state == UpgradeState.BASE


@pytest.mark.asyncio
async def test_mutation_retries_after_a_single_conflict(file_session_factory, publish_type, publisher) -> None:
    gold = await publish_type(file_session_factory)

    async with file_session_factory() as session:
        created = await OwnershipLifecycle(session, publisher=publisher).create(gold.id, uuid4())
    instance_id = created.value.id
    calls = []

    async def apply_once_contended(instance: MembershipInstance) -> InstanceMutation:
        calls.append(instance.version)
        if len(calls) == 1:
            async with file_session_factory() as other:
                await other.execute(
                    update(MembershipInstance)
                    .where(MembershipInstance.id == instance_id)
                    .values(version=MembershipInstance.version + 1)
                    .execution_options(synchronize_session=False)
                )
                await other.commit()
        instance.upgrade_state = UpgradeState.UPGRADED
        return InstanceMutation()

    async with file_session_factory() as session:
        outcome = await MembershipStore(session, max_attempts=3).mutate_instance(instance_id, apply_once_contended)

    assert outcome.failure is None
    assert outcome.attempts == 2
    assert calls == [1, 2]
    assert outcome.instance.is_upgraded is True


@pytest.mark.asyncio
async def test_rejected_operations_leave_earlier_results_readable(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory, mint_cap=1)

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        first = await lifecycle.create(gold.id, uuid4())
        sold_out = await lifecycle.create(gold.id, uuid4())
        unknown = await lifecycle.create(uuid4(), uuid4())
        missing = await lifecycle.upgrade(uuid4())

        assert sold_out.failure.kind == MembershipErrorKind.CAPACITY_EXCEEDED
        assert unknown.failure.kind == MembershipErrorKind.CATALOG_NOT_FOUND
        assert missing.failure.kind == MembershipErrorKind.INSTANCE_NOT_FOUND
        assert first.value.is_upgraded is False
        assert first.value.custody_mode == CustodyMode.CUSTODIAL

        upgraded = await lifecycle.upgrade(first.value.id)
        status = await lifecycle.admission.status(gold.id)

    assert upgraded.ok
    assert upgraded.value.is_upgraded is True
    assert status.value.total_minted == 1


@pytest.mark.asyncio
async def test_owner_holds_one_instance_per_product_line(session_factory, publish_type, publisher) -> None:
    gold = await publish_type(session_factory, mint_cap=5)
    owner_id = uuid4()

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        first = await lifecycle.create(gold.id, owner_id)
        repeat = await lifecycle.create(gold.id, owner_id)
        revision = await lifecycle.catalog.publish_revision(gold.id, base_earn_ratio="0.0140")
        across_versions = await lifecycle.create(revision.id, owner_id)
        status = await lifecycle.admission.status(revision.id)
        owned = await lifecycle.list_owner_instances(owner_id)

    assert first.ok
    assert repeat.failure.kind == MembershipErrorKind.ALREADY_OWNED
    assert repeat.failure.retryable is False
    assert across_versions.failure.kind == MembershipErrorKind.ALREADY_OWNED
    assert status.value.total_minted == 1
    assert [instance.id for instance in owned] == [first.value.id]


async def _publish_free_card(factory, publish_type, **overrides):
    params = {
        "slug": settings.free_membership_slug,
        "name": "Pearl White",
        "mint_cap": 0,
        "is_unbounded": True,
        "base_price_usdt": Decimal("0"),
        "base_earn_ratio": Decimal("0.0050"),
        "is_upgradeable": False,
        "is_evolvable": False,
        "is_fraction_eligible": False,
    }
    params.update(overrides)
    return await publish_type(factory, **params)


@pytest.mark.asyncio
async def test_assign_free_membership_is_idempotent(session_factory, publish_type, publisher) -> None:
    pearl = await _publish_free_card(session_factory, publish_type)
    owner_id = uuid4()

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        first = await lifecycle.assign_free_membership(owner_id)
        second = await lifecycle.assign_free_membership(owner_id)
        owned = await lifecycle.list_owner_instances(owner_id)
        events = await lifecycle.list_events(first.value.id)

    assert first.ok and second.ok
    assert first.value.membership_type_id == pearl.id
    assert first.value.is_verified is True
    assert second.value.id == first.value.id
    assert len(owned) == 1
    assert [event.event_type for event in events.value] == [LifecycleEventType.CREATED]


@pytest.mark.asyncio
async def test_assign_free_membership_keeps_an_existing_card(session_factory, publish_type, publisher) -> None:
    await _publish_free_card(session_factory, publish_type)
    gold = await publish_type(session_factory)
    owner_id = uuid4()

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        bought = await lifecycle.create(gold.id, owner_id)
        assigned = await lifecycle.assign_free_membership(owner_id)
        owned = await lifecycle.list_owner_instances(owner_id)

    assert assigned.value.id == bought.value.id
    assert len(owned) == 1


@pytest.mark.asyncio
async def test_assign_free_membership_requires_a_free_custodial_card(session_factory, publish_type, publisher) -> None:
    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        unpublished = await lifecycle.assign_free_membership(uuid4())

    await _publish_free_card(session_factory, publish_type, base_price_usdt=Decimal("50"))

    async with session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        priced = await lifecycle.assign_free_membership(uuid4())

    assert unpublished.failure.kind == MembershipErrorKind.CATALOG_NOT_FOUND
    assert priced.failure.kind == MembershipErrorKind.NOT_APPLICABLE


@pytest.mark.asyncio
async def test_racing_create_for_the_same_owner_returns_the_unit(file_session_factory, publish_type, publisher) -> None:
    gold = await publish_type(file_session_factory, mint_cap=5)
    owner_id = uuid4()

    async with file_session_factory() as session:
        winner = await OwnershipLifecycle(session, publisher=publisher).create(gold.id, owner_id)

    async with file_session_factory() as session:
        lifecycle = OwnershipLifecycle(session, publisher=publisher)
        lookups = []
        find_owner_instance = lifecycle.store.find_owner_instance

        async def missed_first_lookup(owner, slug):
            lookups.append(slug)
            if len(lookups) == 1:
                return None
            return await find_owner_instance(owner, slug)

        lifecycle.store.find_owner_instance = missed_first_lookup
        loser = await lifecycle.create(gold.id, owner_id)
        status = await lifecycle.admission.status(gold.id)

    assert winner.ok
    assert loser.failure.kind == MembershipErrorKind.ALREADY_OWNED
    assert lookups == ["gold", "gold"]
    assert status.value.total_minted == 1
