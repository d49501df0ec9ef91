"""Tests for the BMC operation executor."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from metalclaim.coordination.provisioning_queue import (
    ProvisioningOperation,
    ProvisioningRequest,
)
from metalclaim.core.operations import HostOperationExecutor
from metalclaim.redfish.client import POWER_OFF, POWER_ON, RedfishError


def fake_client(power_state: str = POWER_OFF) -> AsyncMock:
    client = AsyncMock()
    client.get_power_state = AsyncMock(return_value=power_state)
    return client


def request_for(host, operation: ProvisioningOperation) -> ProvisioningRequest:
    return ProvisioningRequest(id="req-1", host=host, operation=operation)


class TestHostOperationExecutor:
    """Test operation dispatch."""

    @pytest.mark.asyncio
    async def test_provision_powers_on_host(self, make_host):
        client = fake_client(POWER_OFF)
        factory = MagicMock(return_value=client)
        host = make_host()

        await HostOperationExecutor(factory).execute(
            request_for(host, ProvisioningOperation.PROVISION)
        )

        factory.assert_called_once_with(host.redfish_connection)
        client.set_boot_source_pxe.assert_awaited_once()
        client.set_power_state.assert_awaited_once_with(POWER_ON)
        client.reset.assert_not_awaited()
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_provision_restarts_running_host(self, make_host):
        client = fake_client(POWER_ON)

        await HostOperationExecutor(MagicMock(return_value=client)).execute(
            request_for(make_host(), ProvisioningOperation.PROVISION)
        )

        client.set_boot_source_pxe.assert_awaited_once()
        client.reset.assert_awaited_once_with("ForceRestart")
        client.set_power_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deprovision_powers_off(self, make_host):
        client = fake_client(POWER_ON)

        await HostOperationExecutor(MagicMock(return_value=client)).execute(
            request_for(make_host(), ProvisioningOperation.DEPROVISION)
        )

        client.set_power_state.assert_awaited_once_with(POWER_OFF)
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_deprovision_skips_powered_off_host(self, make_host):
        client = fake_client(POWER_OFF)

        await HostOperationExecutor(MagicMock(return_value=client)).execute(
            request_for(make_host(), ProvisioningOperation.DEPROVISION)
        )

        client.set_power_state.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation", [ProvisioningOperation.CLAIM, ProvisioningOperation.RELEASE]
    )
    async def test_metadata_operations_skip_bmc(self, make_host, operation):
        factory = MagicMock()

        await HostOperationExecutor(factory).execute(request_for(make_host(), operation))

        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_closed_on_failure(self, make_host):
        client = fake_client(POWER_OFF)
        client.set_boot_source_pxe = AsyncMock(side_effect=RedfishError("PATCH failed: 500"))

        with pytest.raises(RedfishError):
            await HostOperationExecutor(MagicMock(return_value=client)).execute(
                request_for(make_host(), ProvisioningOperation.PROVISION)
            )

        client.close.assert_awaited_once()
        client.set_power_state.assert_not_awaited()
