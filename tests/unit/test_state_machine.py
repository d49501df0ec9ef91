"""Tests for physical host state machine."""
import pytest

from metalclaim.core.models import ConsumerRef, HostState, PhysicalHost, RedfishConnection, utcnow
from metalclaim.core.state_machine import InvalidStateTransition, PhysicalHostStateMachine

SM = PhysicalHostStateMachine


def host(state: HostState, **kwargs) -> PhysicalHost:
    kwargs.setdefault(
        "redfish_connection",
        RedfishConnection(address="10.0.0.1", credentials_secret_ref="bmc-creds"),
    )
    return PhysicalHost(name="host-1", state=state, **kwargs)


def consumer() -> ConsumerRef:
    return ConsumerRef(name="machine-1", uid="uid-1")


class TestPhysicalHostStateMachine:
    """Test state machine transitions."""

    def test_none_to_enrolling_allowed(self):
        """Can start enrollment with a complete Redfish connection."""
        assert SM.can_transition(host(HostState.NONE), HostState.ENROLLING) is True

    def test_enrolling_requires_redfish_address(self):
        """Enrollment needs a BMC address."""
        h = host(
            HostState.NONE,
            redfish_connection=RedfishConnection(credentials_secret_ref="bmc-creds"),
        )
        with pytest.raises(InvalidStateTransition) as exc_info:
            SM.validate_transition(h, HostState.ENROLLING)
        assert "missing Redfish address" in str(exc_info.value)

    def test_enrolling_requires_credentials(self):
        """Enrollment needs a credentials reference."""
        h = host(HostState.NONE, redfish_connection=RedfishConnection(address="10.0.0.1"))
        with pytest.raises(InvalidStateTransition) as exc_info:
            SM.validate_transition(h, HostState.ENROLLING)
        assert "credentials" in str(exc_info.value)

    def test_enrolling_to_available_requires_no_consumer(self):
        """A host cannot finish enrollment while claimed."""
        assert SM.can_transition(host(HostState.ENROLLING), HostState.AVAILABLE) is True
        assert SM.can_transition(
            host(HostState.ENROLLING, consumer_ref=consumer()), HostState.AVAILABLE
        ) is False

    def test_available_to_claimed_requires_consumer(self):
        """Claiming needs a ConsumerRef."""
        with pytest.raises(InvalidStateTransition) as exc_info:
            SM.validate_transition(host(HostState.AVAILABLE), HostState.CLAIMED)
        assert "no ConsumerRef set" in str(exc_info.value)
        assert SM.can_transition(
            host(HostState.AVAILABLE, consumer_ref=consumer()), HostState.CLAIMED
        ) is True

    def test_claimed_to_provisioning_requires_boot_source(self):
        """Provisioning needs both a consumer and a boot image."""
        claimed = host(HostState.CLAIMED, consumer_ref=consumer())
        with pytest.raises(InvalidStateTransition) as exc_info:
            SM.validate_transition(claimed, HostState.PROVISIONING)
        assert "no BootISOSource set" in str(exc_info.value)

        claimed.boot_iso_source = "http://images/os.iso"
        assert SM.can_transition(claimed, HostState.PROVISIONING) is True

    def test_provisioning_to_provisioned(self):
        """Provisioning completes with consumer and boot image still set."""
        h = host(
            HostState.PROVISIONING,
            consumer_ref=consumer(),
            boot_iso_source="http://images/os.iso",
        )
        assert SM.can_transition(h, HostState.PROVISIONED) is True

    def test_release_requires_consumer_cleared(self):
        """Claimed, Provisioning and Provisioned release only without consumer."""
        for state in (HostState.CLAIMED, HostState.PROVISIONING, HostState.PROVISIONED):
            assert SM.can_transition(host(state), HostState.AVAILABLE) is True
            assert SM.can_transition(
                host(state, consumer_ref=consumer()), HostState.AVAILABLE
            ) is False

    def test_deprovisioning_requires_deletion_marker(self):
        """Deprovisioning starts only for hosts marked for deletion."""
        with pytest.raises(InvalidStateTransition) as exc_info:
            SM.validate_transition(host(HostState.AVAILABLE), HostState.DEPROVISIONING)
        assert "not marked for deletion" in str(exc_info.value)

        marked = host(HostState.AVAILABLE, deletion_timestamp=utcnow())
        assert SM.can_transition(marked, HostState.DEPROVISIONING) is True

    def test_deprovisioning_available_requires_no_consumer(self):
        """An Available host with a consumer cannot be deprovisioned."""
        h = host(HostState.AVAILABLE, deletion_timestamp=utcnow(), consumer_ref=consumer())
        assert SM.can_transition(h, HostState.DEPROVISIONING) is False

    def test_deprovisioning_provisioned_allows_consumer(self):
        """A Provisioned host may start tearing down while still referenced."""
        h = host(
            HostState.PROVISIONED, deletion_timestamp=utcnow(), consumer_ref=consumer()
        )
        assert SM.can_transition(h, HostState.DEPROVISIONING) is True

    def test_error_reachable_from_active_states(self):
        """Every active state can fail."""
        for state in (
            HostState.ENROLLING,
            HostState.AVAILABLE,
            HostState.CLAIMED,
            HostState.PROVISIONING,
            HostState.PROVISIONED,
            HostState.DEPROVISIONING,
        ):
            assert SM.can_transition(host(state), HostState.ERROR) is True

    def test_error_recovery(self):
        """Error recovers through enrollment or directly when unclaimed."""
        assert SM.can_transition(host(HostState.ERROR), HostState.ENROLLING) is True
        assert SM.can_transition(host(HostState.ERROR), HostState.AVAILABLE) is True
        assert SM.can_transition(
            host(HostState.ERROR, consumer_ref=consumer()), HostState.AVAILABLE
        ) is False

    def test_unknown_only_reenrolls(self):
        """Unknown routes back through enrollment only."""
        assert SM.get_valid_transitions(HostState.UNKNOWN) == [HostState.ENROLLING]
        assert SM.can_transition(host(HostState.UNKNOWN), HostState.ERROR) is False

    def test_cannot_skip_states(self):
        """Cannot go straight from None to Available or Available to Provisioned."""
        assert SM.can_transition(host(HostState.NONE), HostState.AVAILABLE) is False
        assert SM.can_transition(
            host(HostState.AVAILABLE, consumer_ref=consumer()), HostState.PROVISIONED
        ) is False

    def test_same_state_always_valid(self):
        """Same-state transitions are valid from every state."""
        for state in HostState:
            assert SM.validate_transition(host(state), state) is None

    def test_transition_raises_on_invalid(self):
        """transition() raises InvalidStateTransition naming both states."""
        with pytest.raises(InvalidStateTransition) as exc_info:
            SM.transition(host(HostState.NONE), HostState.PROVISIONED)
        assert exc_info.value.from_state == HostState.NONE
        assert exc_info.value.to_state == HostState.PROVISIONED
        assert "'None'" in str(exc_info.value)
        assert "'Provisioned'" in str(exc_info.value)

    def test_transition_updates_state(self):
        """transition() sets the new state on the host."""
        h = SM.transition(host(HostState.NONE), HostState.ENROLLING, reason="test")
        assert h.state == HostState.ENROLLING

    def test_get_valid_transitions(self):
        """get_valid_transitions lists targets without evaluating conditions."""
        valid = SM.get_valid_transitions(HostState.AVAILABLE)
        assert set(valid) == {HostState.CLAIMED, HostState.ERROR, HostState.DEPROVISIONING}

    def test_is_state_valid(self):
        """Only HostState values are valid states."""
        assert SM.is_state_valid("Available") is True
        assert SM.is_state_valid("") is True
        assert SM.is_state_valid("available") is False
        assert SM.is_state_valid("Retired") is False


class TestStateConsistency:
    """Test cross-checks between state and desired-state fields."""

    def test_available_with_consumer_is_inconsistent(self):
        with pytest.raises(ValueError):
            SM.validate_state_consistency(host(HostState.AVAILABLE, consumer_ref=consumer()))

    def test_available_with_boot_source_is_inconsistent(self):
        with pytest.raises(ValueError):
            SM.validate_state_consistency(
                host(HostState.AVAILABLE, boot_iso_source="http://images/os.iso")
            )

    def test_claimed_without_consumer_is_inconsistent(self):
        with pytest.raises(ValueError):
            SM.validate_state_consistency(host(HostState.CLAIMED))

    def test_consistent_hosts_pass(self):
        SM.validate_state_consistency(host(HostState.AVAILABLE))
        SM.validate_state_consistency(
            host(
                HostState.PROVISIONED,
                consumer_ref=consumer(),
                boot_iso_source="http://images/os.iso",
            )
        )
