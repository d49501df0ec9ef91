"""Machine reconciliation: claim a host, then provision it."""
import logging
from dataclasses import dataclass

from metalclaim.coordination.provisioning_queue import ProvisioningQueueError
from metalclaim.coordination.types import ClaimCoordinator, ClaimRequest, HostRequirements
from metalclaim.core.models import HostState, Machine, PhysicalHost
from metalclaim.core.provisioner import HostProvisioner

logger = logging.getLogger(__name__)

# Machine condition types
PHYSICAL_HOST_ASSOCIATED = "PhysicalHostAssociated"
INFRASTRUCTURE_READY = "InfrastructureReady"

# Condition reasons
WAITING_FOR_PHYSICAL_HOST = "WaitingForPhysicalHost"
PHYSICAL_HOST_CLAIMED = "PhysicalHostClaimed"
PHYSICAL_HOST_RELEASED = "PhysicalHostReleased"
PROVISIONING_IN_PROGRESS = "ProvisioningInProgress"
PROVISIONING_FAILED = "ProvisioningFailed"
HOST_PROVISIONED = "HostProvisioned"


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass."""
    host: PhysicalHost | None = None
    requeue_after: float | None = None  # seconds


class MachineReconciler:
    """Reconcile one machine towards a provisioned physical host.

    Conditions on the machine explain what it is waiting for; a failed claim
    is a normal outcome and only asks to be requeued.
    """

    def __init__(
        self,
        coordinator: ClaimCoordinator,
        provisioner: HostProvisioner | None = None,
        provisioning_requeue_seconds: float = 30.0,
    ):
        self.coordinator = coordinator
        self.provisioner = provisioner
        self.provisioning_requeue_seconds = provisioning_requeue_seconds

    async def reconcile(
        self,
        machine: Machine,
        image_url: str,
        requirements: HostRequirements | None = None,
    ) -> ReconcileResult:
        """Claim (or find) the machine's host and provision it.

        Args:
            machine: Machine to reconcile; its conditions and provider ID are
                updated in place
            image_url: Image the host boots for the machine
            requirements: Placement constraints

        Returns:
            ReconcileResult with the host and a requeue delay if not done
        """
        request = ClaimRequest(
            machine=machine,
            image_url=image_url,
            requirements=requirements or HostRequirements(),
        )
        result = await self.coordinator.claim_host(request)

        if not result.claim_success or result.host is None:
            message = result.error or "no physical host available"
            machine.set_condition(
                PHYSICAL_HOST_ASSOCIATED,
                "False",
                reason=WAITING_FOR_PHYSICAL_HOST,
                message=f"Waiting for a physical host: {message}",
            )
            logger.info(f"Machine {machine.name} waiting for a physical host: {message}")
            return ReconcileResult(
                requeue_after=result.retry_after if result.retry else None
            )

        host = result.host
        machine.provider_id = host.provider_id
        machine.set_condition(
            PHYSICAL_HOST_ASSOCIATED,
            "True",
            reason=PHYSICAL_HOST_CLAIMED,
            message=f"Claimed physical host {host.name}",
        )

        if self.provisioner is None:
            return ReconcileResult(host=host)

        if host.state in (HostState.CLAIMED, HostState.PROVISIONING):
            try:
                host = await self.provisioner.provision(host, machine)
            except ProvisioningQueueError as e:
                machine.set_condition(
                    INFRASTRUCTURE_READY,
                    "False",
                    reason=PROVISIONING_IN_PROGRESS,
                    message=str(e),
                )
                logger.info(f"Provisioning for machine {machine.name} deferred: {e}")
                return ReconcileResult(
                    host=host, requeue_after=self.provisioning_requeue_seconds
                )

        if host.state == HostState.PROVISIONED:
            machine.set_condition(
                INFRASTRUCTURE_READY,
                "True",
                reason=HOST_PROVISIONED,
                message=f"Physical host {host.name} provisioned",
            )
            return ReconcileResult(host=host)

        if host.state == HostState.ERROR:
            machine.set_condition(
                INFRASTRUCTURE_READY,
                "False",
                reason=PROVISIONING_FAILED,
                message=host.error_message or f"Physical host {host.name} failed",
            )
            logger.warning(
                f"Physical host {host.key} of machine {machine.name} is in Error: "
                f"{host.error_message}"
            )
            return ReconcileResult(host=host)

        machine.set_condition(
            INFRASTRUCTURE_READY,
            "False",
            reason=PROVISIONING_IN_PROGRESS,
            message=f"Physical host {host.name} is {host.state.label}",
        )
        return ReconcileResult(host=host, requeue_after=self.provisioning_requeue_seconds)

    async def reconcile_delete(self, machine: Machine) -> None:
        """Release the machine's host."""
        await self.coordinator.release_host(machine)
        machine.provider_id = None
        machine.set_condition(
            PHYSICAL_HOST_ASSOCIATED,
            "False",
            reason=PHYSICAL_HOST_RELEASED,
            message="Physical host released",
        )
        logger.info(f"Machine {machine.name} released its physical host")
