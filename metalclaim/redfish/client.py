"""Minimal Redfish client for the BMC operations the controller needs.

Talks to the first ComputerSystem under ``/redfish/v1/Systems``:
power state, reset actions, one-time PXE boot override and the inventory
summary gathered during enrollment.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from metalclaim.config import settings
from metalclaim.core.models import RedfishConnection

logger = logging.getLogger(__name__)

POWER_ON = "On"
POWER_OFF = "Off"

# Power states that map onto a ComputerSystem.Reset ResetType
_RESET_TYPES = {
    POWER_ON: "On",
    POWER_OFF: "ForceOff",
}


class RedfishError(Exception):
    """Error talking to a BMC."""
    pass


@dataclass
class SystemInfo:
    """Inventory summary of a ComputerSystem."""
    manufacturer: str | None
    model: str | None
    serial_number: str | None
    health: str | None
    power_state: str | None
    cpu_cores: int | None = None
    memory_gb: int | None = None


class RedfishClient(Protocol):
    """Operations performed against a host's BMC."""

    async def get_power_state(self) -> str:
        ...

    async def set_power_state(self, state: str) -> None:
        ...

    async def set_boot_source_pxe(self) -> None:
        ...

    async def get_system_info(self) -> SystemInfo:
        ...

    async def reset(self, reset_type: str = "ForceRestart") -> None:
        ...

    async def close(self) -> None:
        ...


class HttpRedfishClient:
    """Redfish client over httpx."""

    def __init__(
        self,
        address: str,
        username: str,
        password: str,
        insecure_skip_verify: bool = False,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the Redfish client.

        Args:
            address: BMC address, with or without scheme (https is assumed)
            username: BMC user
            password: BMC password
            insecure_skip_verify: Skip TLS certificate verification
            timeout: HTTP request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        if "://" not in address:
            address = f"https://{address}"
        self.base_url = address.rstrip("/")
        self._auth = (username, password)
        self._verify = not insecure_skip_verify
        self.timeout = timeout or settings.redfish.timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._system_path: str | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=self._auth,
                verify=self._verify,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise RedfishError(f"Connection error to {self.base_url}: {e}")

        if response.status_code >= 400:
            raise RedfishError(
                f"{method} {path} failed: {response.status_code} - {response.text}"
            )
        return response

    async def _system(self) -> tuple[str, dict]:
        """Path and body of the first ComputerSystem."""
        if self._system_path is None:
            members = (await self._request("GET", "/redfish/v1/Systems")).json().get(
                "Members", []
            )
            if not members:
                raise RedfishError(f"No systems found on {self.base_url}")
            if len(members) > 1:
                logger.info(
                    f"Multiple systems found on {self.base_url}, using the first one"
                )
            self._system_path = members[0]["@odata.id"]

        response = await self._request("GET", self._system_path)
        return self._system_path, response.json()

    async def get_system_info(self) -> SystemInfo:
        """Get the system inventory summary."""
        _, system = await self._system()
        memory = system.get("MemorySummary", {}).get("TotalSystemMemoryGiB")
        info = SystemInfo(
            manufacturer=system.get("Manufacturer"),
            model=system.get("Model"),
            serial_number=system.get("SerialNumber"),
            health=system.get("Status", {}).get("Health"),
            power_state=system.get("PowerState"),
            cpu_cores=system.get("ProcessorSummary", {}).get("Count"),
            memory_gb=int(memory) if memory is not None else None,
        )
        logger.debug(
            f"System info from {self.base_url}: {info.manufacturer} {info.model} "
            f"(serial {info.serial_number})"
        )
        return info

    async def get_power_state(self) -> str:
        """Get the current power state (On, Off, ...)."""
        _, system = await self._system()
        state = system.get("PowerState")
        if not state:
            raise RedfishError(f"No power state reported by {self.base_url}")
        return state

    async def reset(self, reset_type: str = "ForceRestart") -> None:
        """Issue a ComputerSystem.Reset action."""
        path, _ = await self._system()
        await self._request(
            "POST",
            f"{path}/Actions/ComputerSystem.Reset",
            json={"ResetType": reset_type},
        )
        logger.info(f"Requested reset {reset_type} on {self.base_url}")

    async def set_power_state(self, state: str) -> None:
        """Power the system on or off.

        Raises:
            RedfishError: If the state is unsupported or the BMC refuses
        """
        reset_type = _RESET_TYPES.get(state)
        if reset_type is None:
            raise RedfishError(f"Unsupported power state: {state}")
        await self.reset(reset_type)

    async def set_boot_source_pxe(self) -> None:
        """Boot from the network on the next boot."""
        path, _ = await self._system()
        await self._request(
            "PATCH",
            path,
            json={
                "Boot": {
                    "BootSourceOverrideTarget": "Pxe",
                    "BootSourceOverrideEnabled": "Once",
                }
            },
        )
        logger.info(f"Set one-time PXE boot on {self.base_url}")


def read_credentials(
    secret_ref: str, credentials_dir: Path | None = None
) -> tuple[str, str]:
    """Read ``username`` and ``password`` of a mounted credentials secret.

    Raises:
        RedfishError: If the secret is missing or incomplete
    """
    if not secret_ref:
        raise RedfishError("No credentials secret reference set")

    secret_dir = (credentials_dir or settings.redfish.credentials_dir) / secret_ref
    try:
        username = (secret_dir / "username").read_text().strip()
        password = (secret_dir / "password").read_text().strip()
    except OSError as e:
        raise RedfishError(f"Cannot read credentials secret {secret_ref}: {e}")

    if not username or not password:
        raise RedfishError(f"Credentials secret {secret_ref} is incomplete")
    return username, password


def client_factory(
    connection: RedfishConnection,
    credentials_dir: Path | None = None,
) -> HttpRedfishClient:
    """Create a client for a host's Redfish connection."""
    username, password = read_credentials(
        connection.credentials_secret_ref, credentials_dir
    )
    return HttpRedfishClient(
        connection.address,
        username,
        password,
        insecure_skip_verify=(
            connection.insecure_skip_verify or settings.redfish.insecure_skip_verify
        ),
    )
