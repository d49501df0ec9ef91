"""Redfish (BMC) access."""
from metalclaim.redfish.client import (
    POWER_OFF,
    POWER_ON,
    HttpRedfishClient,
    RedfishClient,
    RedfishError,
    SystemInfo,
    client_factory,
)

__all__ = [
    "POWER_OFF",
    "POWER_ON",
    "HttpRedfishClient",
    "RedfishClient",
    "RedfishError",
    "SystemInfo",
    "client_factory",
]
