"""PhysicalHost state machine for lifecycle management."""
import logging
from dataclasses import dataclass
from typing import Callable, ClassVar

from metalclaim.core.models import HostState, PhysicalHost

logger = logging.getLogger(__name__)


class InvalidStateTransition(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        from_state: HostState | str,
        to_state: HostState | str,
        reason: str | None = None,
    ):
        self.from_state = HostState(from_state)
        self.to_state = HostState(to_state)
        self.reason = reason
        message = (
            f"Invalid state transition from '{self.from_state.label}' "
            f"to '{self.to_state.label}'"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# A transition condition returns the violated precondition, or None if it holds
TransitionCondition = Callable[[PhysicalHost], str | None]


def _enrollment_start(host: PhysicalHost) -> str | None:
    if not host.redfish_connection.address:
        return "missing Redfish address"
    if not host.redfish_connection.credentials_secret_ref:
        return "missing credentials secret reference"
    return None


def _enrollment_success(host: PhysicalHost) -> str | None:
    if host.consumer_ref is not None:
        return "host is already claimed"
    return None


def _claiming(host: PhysicalHost) -> str | None:
    if host.consumer_ref is None:
        return "no ConsumerRef set"
    return None


def _provisioning(host: PhysicalHost) -> str | None:
    if host.consumer_ref is None:
        return "no ConsumerRef set"
    if not host.boot_iso_source:
        return "no BootISOSource set"
    return None


def _release(host: PhysicalHost) -> str | None:
    if host.consumer_ref is not None:
        return "ConsumerRef still set"
    return None


def _deprovisioning(host: PhysicalHost) -> str | None:
    if not host.is_marked_for_deletion:
        return "host not marked for deletion"
    if host.consumer_ref is not None:
        return "host still has ConsumerRef"
    return None


def _deprovisioning_provisioned(host: PhysicalHost) -> str | None:
    # Provisioned hosts may still reference their consumer while tearing down
    if not host.is_marked_for_deletion:
        return "host not marked for deletion"
    return None


def _error(host: PhysicalHost) -> str | None:
    return None


def _direct_error_recovery(host: PhysicalHost) -> str | None:
    if host.consumer_ref is not None:
        return "host is claimed"
    return None


@dataclass(frozen=True)
class StateTransitionRule:
    """An allowed transition and the condition guarding it."""

    from_state: HostState
    to_state: HostState
    condition: TransitionCondition
    description: str


class PhysicalHostStateMachine:
    """State machine for PhysicalHost lifecycle management.

    States:
        None: Host record created, enrollment not started
        Enrolling: BMC inspection in progress
        Available: Enrolled and free to be claimed
        Claimed: Owned by a machine, waiting for provisioning
        Provisioning: Boot configuration and power-on in progress
        Provisioned: Booted for its consumer
        Deprovisioning: Tear-down before deletion
        Error: Needs operator attention or automated recovery
        Unknown: Lost track of the host; re-enrolls

    Validation is pure: nothing here touches the store or the hardware.
    """

    STATES: ClassVar[list[HostState]] = list(HostState)

    RULES: ClassVar[list[StateTransitionRule]] = [
        # Enrollment
        StateTransitionRule(HostState.NONE, HostState.ENROLLING, _enrollment_start,
                            "Start enrollment process"),
        StateTransitionRule(HostState.ENROLLING, HostState.AVAILABLE, _enrollment_success,
                            "Complete enrollment successfully"),
        StateTransitionRule(HostState.ENROLLING, HostState.ERROR, _error,
                            "Enrollment failed"),

        # Claiming and provisioning
        StateTransitionRule(HostState.AVAILABLE, HostState.CLAIMED, _claiming,
                            "Host claimed by consumer"),
        StateTransitionRule(HostState.CLAIMED, HostState.PROVISIONING, _provisioning,
                            "Start provisioning process"),
        StateTransitionRule(HostState.PROVISIONING, HostState.PROVISIONED, _provisioning,
                            "Provisioning completed successfully"),

        # Errors from active states
        StateTransitionRule(HostState.AVAILABLE, HostState.ERROR, _error,
                            "Available host encountered error"),
        StateTransitionRule(HostState.CLAIMED, HostState.ERROR, _error,
                            "Claimed host encountered error"),
        StateTransitionRule(HostState.PROVISIONING, HostState.ERROR, _error,
                            "Provisioning failed"),
        StateTransitionRule(HostState.PROVISIONED, HostState.ERROR, _error,
                            "Provisioned host encountered error"),
        StateTransitionRule(HostState.DEPROVISIONING, HostState.ERROR, _error,
                            "Deprovisioning failed"),

        # Recovery from error
        StateTransitionRule(HostState.ERROR, HostState.ENROLLING, _enrollment_start,
                            "Retry from error state"),
        StateTransitionRule(HostState.ERROR, HostState.AVAILABLE, _direct_error_recovery,
                            "Direct recovery to available state"),

        # Release
        StateTransitionRule(HostState.CLAIMED, HostState.AVAILABLE, _release,
                            "Release claimed host"),
        StateTransitionRule(HostState.PROVISIONING, HostState.AVAILABLE, _release,
                            "Release provisioning host"),
        StateTransitionRule(HostState.PROVISIONED, HostState.AVAILABLE, _release,
                            "Release provisioned host"),
        StateTransitionRule(HostState.DEPROVISIONING, HostState.AVAILABLE, _release,
                            "Deprovisioning completed"),

        # Deprovisioning (deletion)
        StateTransitionRule(HostState.AVAILABLE, HostState.DEPROVISIONING, _deprovisioning,
                            "Start deprovisioning available host"),
        StateTransitionRule(HostState.ERROR, HostState.DEPROVISIONING, _deprovisioning,
                            "Start deprovisioning error host"),
        StateTransitionRule(HostState.PROVISIONED, HostState.DEPROVISIONING,
                            _deprovisioning_provisioned,
                            "Start deprovisioning provisioned host"),

        # Unknown always routes back through enrollment
        StateTransitionRule(HostState.UNKNOWN, HostState.ENROLLING, _enrollment_start,
                            "Recover from unknown state"),
    ]

    @classmethod
    def rules_from(cls, from_state: HostState | str) -> list[StateTransitionRule]:
        """Get the transition rules leaving a state."""
        from_state = HostState(from_state)
        return [rule for rule in cls.RULES if rule.from_state == from_state]

    @classmethod
    def validate_transition(
        cls, host: PhysicalHost, to_state: HostState | str
    ) -> StateTransitionRule | None:
        """Validate a transition of ``host`` to ``to_state``.

        Args:
            host: Host in its current form
            to_state: Target state

        Returns:
            The matching rule, or None for a same-state transition

        Raises:
            InvalidStateTransition: If no rule exists or its condition fails
        """
        from_state = HostState(host.state)
        to_state = HostState(to_state)

        # Same state is always valid (idempotent reconciliation replay)
        if from_state == to_state:
            return None

        rules = cls.rules_from(from_state)
        if not rules:
            raise InvalidStateTransition(
                from_state, to_state, f"no transitions defined from state {from_state.label}"
            )

        for rule in rules:
            if rule.to_state != to_state:
                continue
            violation = rule.condition(host)
            if violation:
                raise InvalidStateTransition(from_state, to_state, violation)
            logger.debug(
                f"State transition validated for host {host.name}: "
                f"{from_state.label} -> {to_state.label} ({rule.description})"
            )
            return rule

        raise InvalidStateTransition(from_state, to_state)

    @classmethod
    def can_transition(cls, host: PhysicalHost, to_state: HostState | str) -> bool:
        """Check if a state transition is valid.

        Args:
            host: Host in its current form
            to_state: Target state

        Returns:
            True if transition is valid, False otherwise
        """
        try:
            cls.validate_transition(host, to_state)
        except InvalidStateTransition:
            return False
        return True

    @classmethod
    def transition(
        cls, host: PhysicalHost, to_state: HostState | str, reason: str | None = None
    ) -> PhysicalHost:
        """Apply a validated transition to an in-memory host.

        Returns:
            The same host with its state updated

        Raises:
            InvalidStateTransition: If the transition is not valid
        """
        previous = HostState(host.state)
        cls.validate_transition(host, to_state)
        host.state = HostState(to_state)
        logger.info(
            f"Host {host.name} transitioned: {previous.label} -> "
            f"{host.state.label} (reason={reason})"
        )
        return host

    @classmethod
    def get_valid_transitions(cls, from_state: HostState | str) -> list[HostState]:
        """Get list of target states reachable from a state.

        Args:
            from_state: Current state

        Returns:
            List of target states (conditions not evaluated)
        """
        return [rule.to_state for rule in cls.rules_from(from_state)]

    @classmethod
    def is_state_valid(cls, state: str) -> bool:
        """Check if a value names a PhysicalHost state."""
        return state in {s.value for s in cls.STATES}

    @classmethod
    def validate_state_consistency(cls, host: PhysicalHost) -> None:
        """Cross-check the host state against its desired-state fields.

        Raises:
            ValueError: If the host fields contradict its state
        """
        state = HostState(host.state)

        if state == HostState.AVAILABLE:
            if host.consumer_ref is not None:
                raise ValueError("host in Available state cannot have ConsumerRef set")
            if host.boot_iso_source:
                raise ValueError("host in Available state cannot have BootISOSource set")

        elif state == HostState.CLAIMED:
            # BootISOSource is optional while claimed
            if host.consumer_ref is None:
                raise ValueError("host in Claimed state must have ConsumerRef set")

        elif state in (HostState.PROVISIONING, HostState.PROVISIONED):
            if host.consumer_ref is None:
                raise ValueError(f"host in {state.label} state must have ConsumerRef set")
            if not host.boot_iso_source:
                raise ValueError(f"host in {state.label} state must have BootISOSource set")

        elif state == HostState.DEPROVISIONING:
            if host.consumer_ref is not None:
                raise ValueError("host in Deprovisioning state should not have ConsumerRef set")
