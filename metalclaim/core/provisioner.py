"""Host enrollment, provisioning and deprovisioning workflows."""
import logging

from metalclaim.config import settings
from metalclaim.coordination.provisioning_queue import (
    ProvisioningOperation,
    ProvisioningQueue,
    ProvisioningResult,
)
from metalclaim.core.host_store import HostStore
from metalclaim.core.models import HardwareDetails, HostState, Machine, PhysicalHost
from metalclaim.core.operations import ClientFactory
from metalclaim.core.state_service import StateTransitionGuard
from metalclaim.redfish import client as redfish
from metalclaim.redfish.client import POWER_OFF, POWER_ON, RedfishError, SystemInfo

logger = logging.getLogger(__name__)


class HostProvisioner:
    """Drives hosts through their hardware-facing lifecycle states.

    BMC access goes through the provisioning queue: enrollment inspects the
    system under a BMC permit, provisioning and deprovisioning are queued
    operations.
    """

    def __init__(
        self,
        store: HostStore,
        queue: ProvisioningQueue,
        guard: StateTransitionGuard | None = None,
        client_factory: ClientFactory | None = None,
        result_timeout_seconds: float | None = None,
    ):
        self.store = store
        self.queue = queue
        self.guard = guard or StateTransitionGuard(store)
        self.client_factory = client_factory or redfish.client_factory
        self.result_timeout_seconds = (
            result_timeout_seconds or settings.queue.result_timeout_seconds
        )

    async def enroll(self, host: PhysicalHost) -> PhysicalHost:
        """Inspect a new, unknown or failed host and make it Available.

        Returns:
            The host as stored (Available, or Error if inspection failed)

        Raises:
            InvalidStateTransition: If the host cannot enter enrollment
        """
        host = await self.guard.transition(
            host, HostState.ENROLLING, "enrollment started", triggered_by="provisioner"
        )

        try:
            info = await self._inspect(host)
        except RedfishError as e:
            logger.warning(f"Enrollment of host {host.key} failed: {e}")
            return await self._fail(host, f"enrollment failed: {e}")

        def record(latest: PhysicalHost) -> None:
            latest.observed_power_state = info.power_state
            latest.hardware_details = HardwareDetails(
                manufacturer=info.manufacturer,
                model=info.model,
                serial_number=info.serial_number,
                health=info.health,
                cpu_cores=info.cpu_cores,
                memory_gb=info.memory_gb,
            )

        return await self.guard.transition(
            host,
            HostState.AVAILABLE,
            "enrollment completed",
            mutate=record,
            triggered_by="provisioner",
        )

    async def provision(self, host: PhysicalHost, machine: Machine) -> PhysicalHost:
        """Boot a claimed host for its machine.

        A retryable failure leaves the host Provisioning, where the recovery
        manager picks it up once it is stuck.

        Returns:
            The host as stored after the attempt
        """
        host = await self.guard.transition(
            host,
            HostState.PROVISIONING,
            f"provisioning for machine {machine.name}",
            triggered_by="provisioner",
        )

        result = await self._run(host, machine, ProvisioningOperation.PROVISION)
        if result.success:
            def powered_on(latest: PhysicalHost) -> None:
                latest.observed_power_state = POWER_ON

            return await self.guard.transition(
                host,
                HostState.PROVISIONED,
                f"provisioned for machine {machine.name}",
                mutate=powered_on,
                triggered_by="provisioner",
            )

        if result.retryable:
            logger.info(
                f"Provisioning of host {host.key} failed, will be retried: {result.error}"
            )
            return await self.store.get(host.name, host.namespace)

        return await self._fail(host, f"provisioning failed: {result.error}")

    async def deprovision(self, host: PhysicalHost) -> PhysicalHost:
        """Power off a host marked for deletion and return it to Available.

        Raises:
            InvalidStateTransition: If the host is not marked for deletion or
                is still claimed
        """
        def detach(latest: PhysicalHost) -> None:
            latest.consumer_ref = None
            latest.boot_iso_source = None

        host = await self.guard.transition(
            host,
            HostState.DEPROVISIONING,
            "deprovisioning started",
            mutate=detach,
            triggered_by="provisioner",
        )

        result = await self._run(host, None, ProvisioningOperation.DEPROVISION)
        if result.success:
            def powered_off(latest: PhysicalHost) -> None:
                latest.observed_power_state = POWER_OFF

            return await self.guard.transition(
                host,
                HostState.AVAILABLE,
                "deprovisioning completed",
                mutate=powered_off,
                triggered_by="provisioner",
            )

        if result.retryable:
            logger.info(
                f"Deprovisioning of host {host.key} failed, will be retried: {result.error}"
            )
            return await self.store.get(host.name, host.namespace)

        return await self._fail(host, f"deprovisioning failed: {result.error}")

    async def _inspect(self, host: PhysicalHost) -> SystemInfo:
        async with self.queue.bmc_permit(host):
            client = self.client_factory(host.redfish_connection)
            try:
                return await client.get_system_info()
            finally:
                await client.close()

    async def _run(
        self,
        host: PhysicalHost,
        machine: Machine | None,
        operation: ProvisioningOperation,
    ) -> ProvisioningResult:
        request = await self.queue.submit_request(host, machine, operation)
        return await self.queue.wait_for_result(request, self.result_timeout_seconds)

    async def _fail(self, host: PhysicalHost, message: str) -> PhysicalHost:
        def set_error(latest: PhysicalHost) -> None:
            latest.error_message = message

        return await self.guard.transition(
            host, HostState.ERROR, message, mutate=set_error, triggered_by="provisioner"
        )
