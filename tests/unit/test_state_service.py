"""Tests for the state transition guard."""
import pytest

from metalclaim.core.host_store import ConflictError
from metalclaim.core.models import (
    STATE_TRANSITIONED_CONDITION,
    ConsumerRef,
    HostState,
    PhysicalHost,
)
from metalclaim.core.state_machine import InvalidStateTransition, PhysicalHostStateMachine


def interfering_update(store, times: int):
    """Wrap store.update so a concurrent writer wins the first ``times`` writes."""
    original = store.update
    calls = {"count": 0}

    async def update(host, log=None):
        calls["count"] += 1
        if calls["count"] <= times:
            await original(await store.get(host.name, host.namespace))
        return await original(host, log)

    return update, calls


class TestGuardedTransition:
    """Test persisted transitions."""

    @pytest.mark.asyncio
    async def test_transition_persists_state_condition_and_log(self, store, guard, create_host):
        host = await create_host("host-1", state=HostState.NONE)

        stored = await guard.transition(
            host, HostState.ENROLLING, "enrollment started", triggered_by="provisioner"
        )

        assert stored.state == HostState.ENROLLING
        assert stored.version == host.version + 1
        condition = stored.get_condition(STATE_TRANSITIONED_CONDITION)
        assert condition.reason == "NoneToEnrolling"
        assert condition.message == "enrollment started"

        fetched = await store.get("host-1")
        assert fetched.state == HostState.ENROLLING
        history = await store.history("host-1")
        assert history[0].triggered_by == "provisioner"
        assert history[0].comment == "enrollment started"

    @pytest.mark.asyncio
    async def test_mutation_applies_before_validation(self, store, guard, create_host):
        """Field changes made by the mutation satisfy the rule's condition."""
        host = await create_host("host-1")

        def claim(latest: PhysicalHost) -> None:
            latest.consumer_ref = ConsumerRef(name="machine-1", uid="uid-1")

        stored = await guard.transition(host, HostState.CLAIMED, "claimed", mutate=claim)
        assert stored.state == HostState.CLAIMED
        assert (await store.get("host-1")).consumer_ref.uid == "uid-1"

    @pytest.mark.asyncio
    async def test_invalid_transition_writes_nothing(self, store, guard, create_host):
        host = await create_host("host-1")

        with pytest.raises(InvalidStateTransition):
            await guard.transition(host, HostState.CLAIMED, "no consumer")

        fetched = await store.get("host-1")
        assert fetched.state == HostState.AVAILABLE
        assert fetched.version == host.version
        assert await store.history("host-1") == []

    @pytest.mark.asyncio
    async def test_already_in_target_is_adopted(self, store, guard, create_host):
        """A host already in the target state is returned without a write."""
        host = await create_host("host-1")

        stored = await guard.transition(host, HostState.AVAILABLE, "noop")
        assert stored.version == host.version
        assert await store.history("host-1") == []

    @pytest.mark.asyncio
    async def test_refresh_rewrites_same_state(self, store, guard, create_host):
        host = await create_host("host-1", state=HostState.PROVISIONING)

        stored = await guard.transition(
            host, HostState.PROVISIONING, "retry", refresh=True, triggered_by="recovery"
        )
        assert stored.version == host.version + 1
        assert stored.get_condition(STATE_TRANSITIONED_CONDITION).reason == (
            "ProvisioningToProvisioning"
        )
        assert stored.last_transition_time() > host.created_at

    @pytest.mark.asyncio
    async def test_error_message_set_and_cleared(self, store, guard, create_host):
        host = await create_host("host-1")

        failed = await guard.transition(host, HostState.ERROR, "BMC unreachable")
        assert failed.error_message == "BMC unreachable"

        recovered = await guard.transition(failed, HostState.AVAILABLE, "fixed")
        assert recovered.error_message is None

    @pytest.mark.asyncio
    async def test_existing_error_message_is_kept(self, store, guard, create_host):
        host = await create_host("host-1")

        def set_error(latest: PhysicalHost) -> None:
            latest.error_message = "power on failed: 500"

        failed = await guard.transition(host, HostState.ERROR, "failed", mutate=set_error)
        assert failed.error_message == "power on failed: 500"

    @pytest.mark.asyncio
    async def test_inconsistent_fields_are_logged(self, store, guard, create_host, caplog):
        """A stale boot source on recovery is written but reported."""
        host = await create_host(
            "host-1", state=HostState.ERROR, boot_iso_source="http://images/os.iso"
        )

        with caplog.at_level("WARNING", logger="metalclaim.core.state_service"):
            stored = await guard.transition(host, HostState.AVAILABLE, "recovered")

        assert stored.state == HostState.AVAILABLE
        assert "cannot have BootISOSource set" in caplog.text

    @pytest.mark.asyncio
    async def test_consistent_transition_logs_nothing(self, guard, create_host, caplog):
        host = await create_host("host-1", state=HostState.NONE)

        with caplog.at_level("WARNING", logger="metalclaim.core.state_service"):
            await guard.transition(host, HostState.ENROLLING, "enrollment started")

        assert "inconsistent" not in caplog.text


class TestConflictRetry:
    """Test optimistic concurrency handling."""

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, store, guard, create_host, monkeypatch):
        host = await create_host("host-1")
        update, calls = interfering_update(store, times=1)
        monkeypatch.setattr(store, "update", update)

        stored = await guard.transition(host, HostState.ERROR, "failed")

        assert calls["count"] == 2
        assert stored.state == HostState.ERROR
        assert (await store.get("host-1")).version == 3

    @pytest.mark.asyncio
    async def test_conflict_budget_exhausted(self, store, guard, create_host, monkeypatch):
        host = await create_host("host-1")
        update, calls = interfering_update(store, times=10)
        monkeypatch.setattr(store, "update", update)

        with pytest.raises(ConflictError):
            await guard.transition(host, HostState.ERROR, "failed", max_attempts=2)

        assert calls["count"] == 2
        assert (await store.get("host-1")).state == HostState.AVAILABLE

    @pytest.mark.asyncio
    async def test_concurrent_winner_is_adopted(self, store, guard, create_host, monkeypatch):
        """If a concurrent writer already reached the target, its result is kept."""
        host = await create_host("host-1")
        original = store.update

        async def racing_update(latest, log=None):
            winner = await store.get(latest.name)
            winner.state = HostState.ERROR
            winner.error_message = "other writer"
            await original(winner)
            return await original(latest, log)

        monkeypatch.setattr(store, "update", racing_update)
        stored = await guard.transition(host, HostState.ERROR, "mine")

        assert stored.error_message == "other writer"


class TestGuardSoundness:
    """Persisted outcomes always agree with the state machine."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", list(HostState))
    async def test_from_available(self, store, guard, create_host, target):
        host = await create_host("host-1")
        expected = PhysicalHostStateMachine.can_transition(host, target)

        try:
            stored = await guard.transition(host, target, "soundness")
        except InvalidStateTransition:
            assert not expected
            assert (await store.get("host-1")).state == HostState.AVAILABLE
        else:
            assert expected
            assert stored.state == target
            assert (await store.get("host-1")).state == target
