"""Optimistic-locking host claim coordinator."""
import logging

from metalclaim.config import settings
from metalclaim.coordination.types import ClaimRequest, ClaimResult, HostRequirements
from metalclaim.core.host_store import ConflictError, HostNotFoundError, HostStore
from metalclaim.core.models import (
    CLAIMED_AT_ANNOTATION,
    CLAIMED_BY_ANNOTATION,
    RELEASED_AT_ANNOTATION,
    ConsumerRef,
    HostState,
    Machine,
    PhysicalHost,
    parse_provider_id,
    utcnow,
)
from metalclaim.core.state_machine import InvalidStateTransition
from metalclaim.core.state_service import StateTransitionGuard

logger = logging.getLogger(__name__)


class HostClaimCoordinator:
    """Assign Available hosts to machines without any cross-replica lock.

    Candidates are tried in rank order. Each claim is a guarded transition to
    Claimed, so the store's conditional update lets exactly one machine win a
    host; losers move on to the next candidate.
    """

    def __init__(
        self,
        store: HostStore,
        guard: StateTransitionGuard | None = None,
        no_hosts_retry_after: float | None = None,
        exhausted_retry_after: float | None = None,
    ):
        self.store = store
        self.guard = guard or StateTransitionGuard(store)
        self.no_hosts_retry_after = (
            settings.claims.no_hosts_retry_after_seconds
            if no_hosts_retry_after is None
            else no_hosts_retry_after
        )
        self.exhausted_retry_after = (
            settings.claims.exhausted_retry_after_seconds
            if exhausted_retry_after is None
            else exhausted_retry_after
        )

    async def claim_host(self, request: ClaimRequest) -> ClaimResult:
        """Claim a host for the requesting machine.

        Returns:
            ClaimResult; "no host" outcomes set ``retry`` rather than raising
        """
        machine = request.machine

        existing = await self.find_associated_host(machine)
        if existing is not None:
            logger.debug(f"Machine {machine.name} already owns host {existing.key}")
            return ClaimResult(claim_success=True, host=existing)

        candidates = await self.get_candidates(machine.namespace, request.requirements)
        if not candidates:
            logger.info(
                f"No available hosts for machine {machine.namespace}/{machine.name}, "
                f"retry in {self.no_hosts_retry_after}s"
            )
            return ClaimResult(
                claim_success=False,
                retry=True,
                retry_after=self.no_hosts_retry_after,
                error="no available hosts match the requirements",
            )

        for candidate in candidates:
            claimed = await self._attempt_claim(candidate, request)
            if claimed is not None:
                logger.info(f"Machine {machine.name} claimed host {claimed.key}")
                return ClaimResult(claim_success=True, host=claimed)

        logger.info(
            f"All {len(candidates)} candidate host(s) for machine {machine.name} "
            f"were taken concurrently, retry in {self.exhausted_retry_after}s"
        )
        return ClaimResult(
            claim_success=False,
            retry=True,
            retry_after=self.exhausted_retry_after,
            error=f"all {len(candidates)} candidate hosts were claimed by other machines",
        )

    async def release_host(self, machine: Machine) -> None:
        """Release the host owned by a machine (no-op if none)."""
        host = await self.find_associated_host(machine)
        if host is None:
            logger.debug(f"Machine {machine.name} owns no host, nothing to release")
            return

        def release(latest: PhysicalHost) -> None:
            if not latest.is_owned_by(machine):
                return
            latest.consumer_ref = None
            latest.boot_iso_source = None
            latest.annotations.pop(CLAIMED_AT_ANNOTATION, None)
            latest.annotations.pop(CLAIMED_BY_ANNOTATION, None)
            latest.annotations[RELEASED_AT_ANNOTATION] = utcnow().isoformat()

        try:
            await self.guard.transition(
                host,
                HostState.AVAILABLE,
                f"released by machine {machine.name}",
                mutate=release,
                triggered_by="release",
            )
        except InvalidStateTransition:
            latest = await self.store.get(host.name, host.namespace)
            if latest.is_owned_by(machine):
                raise
            logger.debug(f"Host {host.key} no longer owned by machine {machine.name}")
            return

        logger.info(f"Machine {machine.name} released host {host.key}")

    async def find_associated_host(self, machine: Machine) -> PhysicalHost | None:
        """Find the host a machine already owns, by provider ID or consumer UID."""
        parsed = parse_provider_id(machine.provider_id)
        if parsed is not None:
            namespace, name = parsed
            try:
                host = await self.store.get(name, namespace)
            except HostNotFoundError:
                logger.debug(f"Provider ID {machine.provider_id} names a missing host")
            else:
                if host.is_owned_by(machine):
                    return host

        host = await self.store.find_by_consumer(machine.uid)
        if host is not None and host.is_owned_by(machine):
            return host
        return None

    async def get_candidates(
        self, namespace: str, requirements: HostRequirements
    ) -> list[PhysicalHost]:
        """Available hosts meeting the requirements, best candidate first.

        Ranked by matched preferred tags (descending), then name.
        """
        hosts = await self.store.list(state=HostState.AVAILABLE, namespace=namespace)
        eligible = [
            host
            for host in hosts
            if host.consumer_ref is None
            and not host.is_marked_for_deletion
            and requirements.is_satisfied_by(host)
        ]
        return sorted(
            eligible,
            key=lambda host: (-requirements.preference_score(host), host.name),
        )

    async def _attempt_claim(
        self, host: PhysicalHost, request: ClaimRequest
    ) -> PhysicalHost | None:
        """Try to claim one candidate; None if another machine got it."""
        machine = request.machine

        def claim(latest: PhysicalHost) -> None:
            if latest.state != HostState.AVAILABLE or latest.consumer_ref is not None:
                return
            latest.consumer_ref = ConsumerRef(
                namespace=machine.namespace,
                name=machine.name,
                uid=machine.uid,
            )
            latest.boot_iso_source = request.image_url
            latest.annotations[CLAIMED_AT_ANNOTATION] = utcnow().isoformat()
            latest.annotations[CLAIMED_BY_ANNOTATION] = f"{machine.namespace}/{machine.name}"

        try:
            result = await self.guard.transition(
                host,
                HostState.CLAIMED,
                f"claimed by machine {machine.name}",
                mutate=claim,
                triggered_by="claim",
            )
        except (InvalidStateTransition, ConflictError, HostNotFoundError) as e:
            logger.debug(f"Lost claim on host {host.key} for machine {machine.name}: {e}")
            return None

        if not result.is_owned_by(machine):
            logger.debug(f"Host {host.key} was claimed by another machine")
            return None
        return result
