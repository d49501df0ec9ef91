"""Tests for the optimistic host claim coordinator."""
import asyncio

import pytest

from metalclaim.coordination.host_claim import HostClaimCoordinator
from metalclaim.coordination.types import ClaimRequest, HostRequirements
from metalclaim.core.models import (
    CLAIMED_AT_ANNOTATION,
    CLAIMED_BY_ANNOTATION,
    RELEASED_AT_ANNOTATION,
    ConsumerRef,
    HardwareDetails,
    HostState,
    utcnow,
)

IMAGE = "http://images/os.iso"


@pytest.fixture
def coordinator(store, guard):
    return HostClaimCoordinator(store, guard, no_hosts_retry_after=60, exhausted_retry_after=5)


def request_for(machine, **requirements) -> ClaimRequest:
    return ClaimRequest(
        machine=machine,
        image_url=IMAGE,
        requirements=HostRequirements(**requirements),
    )


class TestHostRequirements:
    """Test candidate filtering and ranking inputs."""

    def test_simple_request(self):
        assert HostRequirements().is_simple is True
        assert HostRequirements(preferred_tags=["ssd"]).is_simple is False

    def test_required_tags(self, make_host):
        host = make_host(labels={"gpu": "a100", "rack": "r1"})
        assert HostRequirements(required_tags=["gpu"]).is_satisfied_by(host)
        assert HostRequirements(required_tags=["gpu=a100"]).is_satisfied_by(host)
        assert not HostRequirements(required_tags=["gpu=h100"]).is_satisfied_by(host)
        assert not HostRequirements(required_tags=["gpu", "nvme"]).is_satisfied_by(host)

    def test_minimum_hardware(self, make_host):
        host = make_host(hardware_details=HardwareDetails(cpu_cores=16, memory_gb=64))
        assert HostRequirements(min_cpu_cores=16, min_memory_gb=64).is_satisfied_by(host)
        assert not HostRequirements(min_cpu_cores=32).is_satisfied_by(host)
        assert not HostRequirements(min_memory_gb=128).is_satisfied_by(host)

    def test_unknown_hardware_fails_minimums(self, make_host):
        assert not HostRequirements(min_cpu_cores=1).is_satisfied_by(make_host())

    def test_preference_score(self, make_host):
        host = make_host(labels={"ssd": "true", "zone": "a"})
        requirements = HostRequirements(preferred_tags=["ssd", "zone=a", "zone=b"])
        assert requirements.preference_score(host) == 2


class TestClaimHost:
    """Test single claims."""

    @pytest.mark.asyncio
    async def test_claim_sets_consumer_and_annotations(
        self, coordinator, store, create_host, make_machine
    ):
        await create_host("host-1")
        machine = make_machine("worker-0")

        result = await coordinator.claim_host(request_for(machine))

        assert result.claim_success is True
        host = await store.get("host-1")
        assert host.state == HostState.CLAIMED
        assert host.consumer_ref.uid == machine.uid
        assert host.boot_iso_source == IMAGE
        assert CLAIMED_AT_ANNOTATION in host.annotations
        assert host.annotations[CLAIMED_BY_ANNOTATION] == "default/worker-0"
        assert result.host.version == host.version

    @pytest.mark.asyncio
    async def test_no_hosts_asks_for_retry(self, coordinator, make_machine):
        result = await coordinator.claim_host(request_for(make_machine()))

        assert result.claim_success is False
        assert result.retry is True
        assert result.retry_after == 60
        assert result.host is None

    @pytest.mark.asyncio
    async def test_existing_claim_is_returned(self, coordinator, store, create_host, make_machine):
        """Reconciling again returns the host the machine already owns."""
        await create_host("host-1")
        await create_host("host-2")
        machine = make_machine()

        first = await coordinator.claim_host(request_for(machine))
        second = await coordinator.claim_host(request_for(machine))

        assert second.claim_success is True
        assert second.host.name == first.host.name
        assert len(await store.list(state=HostState.CLAIMED)) == 1

    @pytest.mark.asyncio
    async def test_existing_claim_found_by_provider_id(
        self, coordinator, create_host, make_machine
    ):
        await create_host("host-1")
        machine = make_machine()
        result = await coordinator.claim_host(request_for(machine))
        machine.provider_id = result.host.provider_id

        found = await coordinator.find_associated_host(machine)
        assert found.name == "host-1"

    @pytest.mark.asyncio
    async def test_skips_ineligible_hosts(self, coordinator, store, create_host, make_machine):
        await create_host("host-a", deletion_timestamp=utcnow())
        await create_host("host-b", state=HostState.ERROR)
        await create_host("host-c", namespace="other")
        await create_host("host-d", labels={"gpu": "a100"})

        result = await coordinator.claim_host(request_for(make_machine(), required_tags=["gpu"]))
        assert result.host.name == "host-d"

        result = await coordinator.claim_host(request_for(make_machine("machine-2")))
        assert result.claim_success is False

    @pytest.mark.asyncio
    async def test_preferred_tags_rank_candidates(self, coordinator, create_host, make_machine):
        await create_host("host-a")
        await create_host("host-b", labels={"ssd": "true"})
        await create_host("host-c", labels={"ssd": "true", "zone": "a"})

        result = await coordinator.claim_host(
            request_for(make_machine(), preferred_tags=["ssd", "zone=a"])
        )
        assert result.host.name == "host-c"

    @pytest.mark.asyncio
    async def test_ties_break_by_name(self, coordinator, create_host, make_machine):
        await create_host("host-b")
        await create_host("host-a")

        result = await coordinator.claim_host(request_for(make_machine()))
        assert result.host.name == "host-a"

    @pytest.mark.asyncio
    async def test_lost_candidate_falls_through(
        self, coordinator, store, create_host, make_machine, monkeypatch
    ):
        """A candidate taken between listing and claiming is skipped."""
        await create_host("host-a")
        await create_host("host-b")
        rival = make_machine("rival")
        original = coordinator.get_candidates

        async def get_candidates(namespace, requirements):
            candidates = await original(namespace, requirements)
            taken = await store.get("host-a")
            taken.consumer_ref = ConsumerRef(name=rival.name, uid=rival.uid)
            taken.state = HostState.CLAIMED
            taken.boot_iso_source = IMAGE
            await store.update(taken)
            return candidates

        monkeypatch.setattr(coordinator, "get_candidates", get_candidates)
        machine = make_machine()
        result = await coordinator.claim_host(request_for(machine))

        assert result.host.name == "host-b"
        assert (await store.get("host-a")).consumer_ref.uid == rival.uid

    @pytest.mark.asyncio
    async def test_all_candidates_lost(
        self, coordinator, store, create_host, make_machine, monkeypatch
    ):
        await create_host("host-a")
        original = coordinator.get_candidates

        async def get_candidates(namespace, requirements):
            candidates = await original(namespace, requirements)
            taken = await store.get("host-a")
            taken.state = HostState.ERROR
            await store.update(taken)
            return candidates

        monkeypatch.setattr(coordinator, "get_candidates", get_candidates)
        result = await coordinator.claim_host(request_for(make_machine()))

        assert result.claim_success is False
        assert result.retry is True
        assert result.retry_after == 5
        assert "1 candidate hosts" in result.error


class TestConcurrentClaims:
    """At most one machine ever owns a host."""

    @pytest.mark.asyncio
    async def test_more_machines_than_hosts(self, coordinator, store, create_host, make_machine):
        for i in range(5):
            await create_host(f"host-{i}")
        machines = [make_machine(f"machine-{i}") for i in range(10)]

        results = await asyncio.gather(
            *(coordinator.claim_host(request_for(m)) for m in machines)
        )

        winners = [r for r in results if r.claim_success]
        losers = [r for r in results if not r.claim_success]
        assert len(winners) == 5
        assert len({r.host.name for r in winners}) == 5
        assert all(r.retry for r in losers)

        claimed = await store.list(state=HostState.CLAIMED)
        assert len(claimed) == 5
        owners = {h.consumer_ref.uid for h in claimed}
        assert len(owners) == 5
        for result in winners:
            stored = await store.get(result.host.name)
            assert stored.consumer_ref.uid == result.host.consumer_ref.uid


class TestReleaseHost:
    """Test releases."""

    @pytest.mark.asyncio
    async def test_release_round_trip(self, coordinator, store, create_host, make_machine):
        await create_host("host-1")
        machine = make_machine()
        await coordinator.claim_host(request_for(machine))

        await coordinator.release_host(machine)

        host = await store.get("host-1")
        assert host.state == HostState.AVAILABLE
        assert host.consumer_ref is None
        assert host.boot_iso_source is None
        assert CLAIMED_AT_ANNOTATION not in host.annotations
        assert RELEASED_AT_ANNOTATION in host.annotations

        again = await coordinator.claim_host(request_for(make_machine("machine-2")))
        assert again.host.name == "host-1"

    @pytest.mark.asyncio
    async def test_release_without_host_is_noop(self, coordinator, make_machine):
        await coordinator.release_host(make_machine())

    @pytest.mark.asyncio
    async def test_release_does_not_touch_other_owner(
        self, coordinator, store, create_host, make_machine
    ):
        await create_host("host-1")
        owner = make_machine("owner")
        await coordinator.claim_host(request_for(owner))

        impostor = make_machine("impostor", provider_id="metalclaim://default/host-1")
        await coordinator.release_host(impostor)

        assert (await store.get("host-1")).consumer_ref.uid == owner.uid
