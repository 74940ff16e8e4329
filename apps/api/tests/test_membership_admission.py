import asyncio
from uuid import uuid4

import pytest

from rac_rewards_api.observability.membership import get_membership_telemetry
from rac_rewards_api.services.membership import (
    Admitted,
    LifecycleEventPublisher,
    MembershipErrorKind,
    MembershipStore,
    MintingAdmissionControl,
    OwnershipLifecycle,
    Rejected,
    TypeCatalog,
)


def _admission(session) -> MintingAdmissionControl:
    return MintingAdmissionControl(MembershipStore(session), TypeCatalog(session))


@pytest.mark.asyncio
async def test_admission_stops_at_cap(session_factory, publish_type) -> None:
    definition = await publish_type(session_factory, mint_cap=2)

    async with session_factory() as session:
        admission = _admission(session)
        first = await admission.try_admit(definition.id)
        second = await admission.try_admit(definition.id)
        third = await admission.try_admit(definition.id)
        status = await admission.status(definition.id)

    assert isinstance(first, Admitted) and first.total_minted == 1
    assert isinstance(second, Admitted) and second.total_minted == 2 and second.cap == 2
    assert isinstance(third, Rejected)
    assert third.reason.kind == MembershipErrorKind.CAPACITY_EXCEEDED
    assert status.value.total_minted == 2
    assert status.value.sold_out is True
    assert status.value.remaining == 0

    admissions = get_membership_telemetry().snapshot().admissions
    assert admissions == {"admitted": 2, "capacity_exceeded": 1}


@pytest.mark.asyncio
async def test_unknown_type_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        decision = await _admission(session).try_admit(uuid4())

    assert isinstance(decision, Rejected)
    assert decision.reason.kind == MembershipErrorKind.CATALOG_NOT_FOUND


@pytest.mark.asyncio
async def test_paused_type_rejects_then_resumes(session_factory, publish_type) -> None:
    definition = await publish_type(session_factory, mint_cap=5)

    async with session_factory() as session:
        admission = _admission(session)
        paused = await admission.pause(definition.id, "supply audit")
        assert paused.ok
        assert paused.value.minting_enabled is False
        assert paused.value.pause_reason == "supply audit"

        rejected = await admission.try_admit(definition.id)
        assert isinstance(rejected, Rejected)
        assert rejected.reason.kind == MembershipErrorKind.MINTING_DISABLED
        assert "supply audit" in rejected.reason.detail

        resumed = await admission.resume(definition.id)
        assert resumed.ok
        assert resumed.value.pause_reason is None

        admitted = await admission.try_admit(definition.id)
        assert isinstance(admitted, Admitted)
        assert admitted.total_minted == 1


@pytest.mark.asyncio
async def test_unbounded_type_never_sells_out(session_factory, publish_type) -> None:
    definition = await publish_type(session_factory, slug="ruby", name="Ruby", mint_cap=0, is_unbounded=True)

    async with session_factory() as session:
        admission = _admission(session)
        decisions = [await admission.try_admit(definition.id) for _ in range(5)]
        status = await admission.status(definition.id)

    assert all(isinstance(decision, Admitted) for decision in decisions)
    assert decisions[-1].cap is None
    assert status.value.remaining is None
    assert status.value.sold_out is False


@pytest.mark.asyncio
async def test_pause_and_status_report_unknown_types(session_factory) -> None:
    async with session_factory() as session:
        admission = _admission(session)
        missing = uuid4()
        paused = await admission.pause(missing, "audit")
        resumed = await admission.resume(missing)
        status = await admission.status(missing)

    for result in (paused, resumed, status):
        assert not result.ok
        assert result.failure.kind == MembershipErrorKind.CATALOG_NOT_FOUND


@pytest.mark.asyncio
async def test_superseded_type_cannot_resume(session_factory, publish_type) -> None:
    definition = await publish_type(session_factory, mint_cap=5)

    async with session_factory() as session:
        revision = await TypeCatalog(session).publish_revision(definition.id, mint_cap=10)
        assert revision is not None

        admission = _admission(session)
        old = await admission.try_admit(definition.id)
        resumed = await admission.resume(definition.id)
        current = await admission.try_admit(revision.id)

    assert isinstance(old, Rejected)
    assert old.reason.kind == MembershipErrorKind.MINTING_DISABLED
    assert resumed.failure.kind == MembershipErrorKind.NOT_APPLICABLE
    assert isinstance(current, Admitted)


@pytest.mark.asyncio
async def test_concurrent_creates_never_exceed_cap(file_session_factory, publish_type) -> None:
    definition = await publish_type(file_session_factory, mint_cap=3)
    publisher = LifecycleEventPublisher()

    async def mint():
        async with file_session_factory() as session:
            lifecycle = OwnershipLifecycle(session, publisher=publisher)
            return await lifecycle.create(definition.id, uuid4())

    results = await asyncio.gather(*(mint() for _ in range(8)))

    succeeded = [result for result in results if result.ok]
    failed = [result for result in results if not result.ok]
    assert len(succeeded) == 3
    assert len(failed) == 5
    assert {result.failure.kind for result in failed} == {MembershipErrorKind.CAPACITY_EXCEEDED}

    async with file_session_factory() as session:
        status = await _admission(session).status(definition.id)
        instances = []
        for result in succeeded:
            instances.append(await MembershipStore(session).get_instance(result.value.id))

    assert status.value.total_minted == 3
    assert all(instance is not None for instance in instances)
