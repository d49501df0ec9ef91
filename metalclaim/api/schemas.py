"""Pydantic schemas for API request/response validation."""
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from metalclaim.coordination.types import HostRequirements
from metalclaim.core.models import (
    Condition,
    ConsumerRef,
    HardwareDetails,
    Machine,
    PhysicalHost,
    RedfishConnection,
)

T = TypeVar("T")


# ============== Host Schemas ==============


class HostCreate(BaseModel):
    """Schema for registering a physical host."""

    name: str = Field(..., min_length=1, max_length=253)
    namespace: str | None = None
    labels: dict[str, str] = {}
    redfish_address: str = Field(..., min_length=1)
    credentials_secret_ref: str = Field(..., min_length=1)
    insecure_skip_verify: bool = False

    def to_host(self, default_namespace: str) -> PhysicalHost:
        return PhysicalHost(
            name=self.name,
            namespace=self.namespace or default_namespace,
            labels=self.labels,
            redfish_connection=RedfishConnection(
                address=self.redfish_address,
                credentials_secret_ref=self.credentials_secret_ref,
                insecure_skip_verify=self.insecure_skip_verify,
            ),
        )


class HostResponse(BaseModel):
    """Schema for host response."""

    name: str
    namespace: str
    state: str
    labels: dict[str, str]
    annotations: dict[str, str]
    redfish_address: str
    consumer_ref: ConsumerRef | None
    boot_iso_source: str | None
    error_message: str | None
    observed_power_state: str | None
    hardware_details: HardwareDetails
    conditions: list[Condition]
    provider_id: str
    created_at: datetime
    deletion_timestamp: datetime | None
    version: int

    @classmethod
    def from_host(cls, host: PhysicalHost) -> "HostResponse":
        """Create response from PhysicalHost."""
        return cls(
            name=host.name,
            namespace=host.namespace,
            state=host.state.label,
            labels=host.labels,
            annotations=host.annotations,
            redfish_address=host.redfish_connection.address,
            consumer_ref=host.consumer_ref,
            boot_iso_source=host.boot_iso_source,
            error_message=host.error_message,
            observed_power_state=host.observed_power_state,
            hardware_details=host.hardware_details,
            conditions=host.conditions,
            provider_id=host.provider_id,
            created_at=host.created_at,
            deletion_timestamp=host.deletion_timestamp,
            version=host.version,
        )


class HostStateLogResponse(BaseModel):
    """Schema for a host state transition."""

    from_state: str
    to_state: str
    triggered_by: str
    comment: str | None
    created_at: datetime | None


# ============== Machine Schemas ==============


class MachineReconcileRequest(BaseModel):
    """Schema for reconciling a machine against the host pool."""

    machine: Machine
    image_url: str = Field(..., min_length=1)
    requirements: HostRequirements = Field(default_factory=HostRequirements)


class MachineReconcileResponse(BaseModel):
    """Schema for a machine reconcile outcome."""

    machine: Machine
    host: HostResponse | None = None
    requeue_after: float | None = None


# ============== Coordination Schemas ==============


class LeadershipStatusResponse(BaseModel):
    """Leader election status of this replica."""

    enabled: bool
    is_leader: bool
    identity: str | None
    leader_identity: str | None
    leadership_changes: int = 0


class ClaimQueueStatusResponse(BaseModel):
    """Leader claim queue status."""

    queued: int
    pending: int


class ProvisioningQueueStatusResponse(BaseModel):
    """Provisioning queue status."""

    queued: int
    in_flight: int
    stats: dict


class CoordinationStatusResponse(BaseModel):
    """Combined coordination status."""

    leadership: LeadershipStatusResponse
    claim_queue: ClaimQueueStatusResponse
    provisioning_queue: ProvisioningQueueStatusResponse


# ============== Response Wrappers ==============


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    success: bool = True
    data: T
    message: str | None = None


class ApiListResponse(BaseModel, Generic[T]):
    """Generic API list response wrapper."""

    success: bool = True
    data: list[T]
    total: int
