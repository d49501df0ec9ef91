"""Execute queued host operations against the BMC."""
import logging
from typing import Callable

from metalclaim.coordination.provisioning_queue import (
    ProvisioningOperation,
    ProvisioningRequest,
)
from metalclaim.core.models import PhysicalHost, RedfishConnection
from metalclaim.redfish import client as redfish
from metalclaim.redfish.client import POWER_OFF, POWER_ON, RedfishClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[RedfishConnection], RedfishClient]


class HostOperationExecutor:
    """Runs provisioning queue operations.

    Claim and release only change host metadata and never touch the BMC.
    """

    def __init__(self, client_factory: ClientFactory | None = None):
        self.client_factory = client_factory or redfish.client_factory

    async def execute(self, request: ProvisioningRequest) -> None:
        """Run one operation.

        Raises:
            RedfishError: If the BMC rejects a request or is unreachable
        """
        operation = request.operation
        host = request.host

        if operation in (ProvisioningOperation.CLAIM, ProvisioningOperation.RELEASE):
            logger.debug(f"{operation.value} on host {host.key} needs no BMC traffic")
            return

        client = self.client_factory(host.redfish_connection)
        try:
            if operation == ProvisioningOperation.PROVISION:
                await self._provision(client, host)
            elif operation == ProvisioningOperation.DEPROVISION:
                await self._deprovision(client, host)
        finally:
            await client.close()

    async def _provision(self, client: RedfishClient, host: PhysicalHost) -> None:
        """Network boot the host."""
        await client.set_boot_source_pxe()
        if await client.get_power_state() == POWER_ON:
            await client.reset("ForceRestart")
        else:
            await client.set_power_state(POWER_ON)
        logger.info(f"Host {host.key} is booting from the network")

    async def _deprovision(self, client: RedfishClient, host: PhysicalHost) -> None:
        """Power the host off."""
        if await client.get_power_state() == POWER_OFF:
            logger.debug(f"Host {host.key} already powered off")
            return
        await client.set_power_state(POWER_OFF)
        logger.info(f"Host {host.key} powered off")
