"""Conflict-tolerant persistence of host state transitions."""
import asyncio
import logging
from typing import Callable

from metalclaim.config import settings
from metalclaim.core.host_store import ConflictError, HostStore, StateLogEntry
from metalclaim.core.models import (
    STATE_TRANSITIONED_CONDITION,
    HostState,
    PhysicalHost,
)
from metalclaim.core.state_machine import PhysicalHostStateMachine

logger = logging.getLogger(__name__)

# Applied to the freshly read host before validation
HostMutation = Callable[[PhysicalHost], None]


class StateTransitionGuard:
    """Persist validated state transitions under optimistic concurrency.

    Every attempt re-reads the host, so validation always sees the freshest
    stored data. When the stored host already sits in the target state another
    writer won the race and its result is adopted. Only ``ConflictError`` is
    retried; every other error reaches the caller unchanged.
    """

    def __init__(
        self,
        store: HostStore,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ):
        self.store = store
        self.max_attempts = max_attempts or settings.claims.guard_max_attempts
        self.backoff_seconds = (
            settings.claims.guard_backoff_seconds
            if backoff_seconds is None
            else backoff_seconds
        )

    async def transition(
        self,
        host: PhysicalHost,
        target: HostState | str,
        reason: str,
        mutate: HostMutation | None = None,
        triggered_by: str = "system",
        max_attempts: int | None = None,
        refresh: bool = False,
    ) -> PhysicalHost:
        """Transition a host to ``target`` and persist it.

        Args:
            host: Host to transition (only its identity is used)
            target: Target state
            reason: Human-readable reason, recorded on the condition and log
            mutate: Field changes to apply together with the transition
            triggered_by: Actor recorded in the state log
            max_attempts: Override for the conflict retry budget
            refresh: Write even if the host is already in ``target``
                (re-stamps the transition time, used for retries)

        Returns:
            The host as stored after the transition

        Raises:
            InvalidStateTransition: If the transition is not valid for the
                latest stored host
            ConflictError: If every attempt lost a concurrent update
            HostNotFoundError: If the host no longer exists
        """
        target = HostState(target)
        attempts = max_attempts or self.max_attempts

        for attempt in range(1, attempts + 1):
            latest = await self.store.get(host.name, host.namespace)
            from_state = latest.state

            if from_state == target and not refresh:
                logger.debug(
                    f"Host {latest.key} already in state {target.label}, "
                    f"adopting stored version {latest.version}"
                )
                return latest

            if mutate is not None:
                mutate(latest)

            PhysicalHostStateMachine.validate_transition(latest, target)

            latest.state = target
            latest.set_condition(
                STATE_TRANSITIONED_CONDITION,
                "True",
                reason=f"{from_state.label}To{target.label}",
                message=reason,
            )
            if target == HostState.ERROR:
                latest.error_message = latest.error_message or reason
            else:
                latest.error_message = None

            try:
                PhysicalHostStateMachine.validate_state_consistency(latest)
            except ValueError as e:
                logger.warning(
                    f"Host {latest.key} entering {target.label} is inconsistent: {e}"
                )

            try:
                stored = await self.store.update(
                    latest,
                    StateLogEntry(
                        from_state=from_state,
                        to_state=target,
                        triggered_by=triggered_by,
                        comment=reason,
                    ),
                )
            except ConflictError:
                if attempt == attempts:
                    logger.info(
                        f"Giving up transition of host {latest.key} to "
                        f"{target.label} after {attempts} conflicting attempts"
                    )
                    raise
                logger.debug(
                    f"Conflict on host {latest.key} (attempt {attempt}/{attempts}), "
                    f"retrying"
                )
                await asyncio.sleep(attempt * self.backoff_seconds)
                continue

            logger.info(
                f"Host {stored.key} transitioned: {from_state.label} -> "
                f"{target.label} ({reason})"
            )
            return stored

        # Unreachable: the last attempt either returns or raises
        raise ConflictError(host.key, host.version)
