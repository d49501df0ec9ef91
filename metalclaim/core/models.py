"""Domain models for physical hosts and the machines that consume them."""
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

# Annotation keys written by the claim coordinator
CLAIMED_AT_ANNOTATION = "metalclaim.io/claimed-at"
CLAIMED_BY_ANNOTATION = "metalclaim.io/claimed-by"
RELEASED_AT_ANNOTATION = "metalclaim.io/released-at"

PROVIDER_ID_PREFIX = "metalclaim://"

# Condition written by every persisted state transition
STATE_TRANSITIONED_CONDITION = "StateTransitioned"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class HostState(str, Enum):
    """Lifecycle states of a PhysicalHost."""

    NONE = ""
    ENROLLING = "Enrolling"
    AVAILABLE = "Available"
    CLAIMED = "Claimed"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    DEPROVISIONING = "Deprovisioning"
    ERROR = "Error"
    UNKNOWN = "Unknown"

    @property
    def label(self) -> str:
        """Human-readable state name ("None" for the empty state)."""
        return self.value or "None"


# States a host should only pass through
TRANSIENT_STATES = frozenset(
    {HostState.ENROLLING, HostState.PROVISIONING, HostState.DEPROVISIONING}
)


class RedfishConnection(BaseModel):
    """Management (BMC) endpoint of a host."""

    address: str = ""
    credentials_secret_ref: str = ""
    insecure_skip_verify: bool = False


class ConsumerRef(BaseModel):
    """Reference to the machine that exclusively owns a host."""

    kind: str = "Machine"
    namespace: str = "default"
    name: str
    uid: str


class HardwareDetails(BaseModel):
    """Hardware inventory gathered during enrollment."""

    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    health: str | None = None
    cpu_cores: int | None = None
    memory_gb: int | None = None


class Condition(BaseModel):
    """Observed condition of a host or machine."""

    type: str
    status: Literal["True", "False", "Unknown"] = "True"
    reason: str | None = None
    message: str | None = None
    last_transition_time: datetime = Field(default_factory=utcnow)


def _set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: Literal["True", "False", "Unknown"],
    reason: str | None,
    message: str | None,
    now: datetime | None,
) -> Condition:
    """Insert or replace a condition, stamping the transition time."""
    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=now or utcnow(),
    )
    for i, existing in enumerate(conditions):
        if existing.type == condition_type:
            conditions[i] = condition
            break
    else:
        conditions.append(condition)
    return condition


class Machine(BaseModel):
    """A compute request that consumes one physical host."""

    name: str
    namespace: str = "default"
    uid: str
    creation_timestamp: datetime = Field(default_factory=utcnow)
    provider_id: str | None = None
    conditions: list[Condition] = []

    def age_minutes(self, now: datetime | None = None) -> int:
        """Whole minutes since the machine was created."""
        now = now or utcnow()
        return max(0, int((now - self.creation_timestamp).total_seconds() // 60))

    def get_condition(self, condition_type: str) -> Condition | None:
        """Get a condition by type."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: str,
        status: Literal["True", "False", "Unknown"],
        reason: str | None = None,
        message: str | None = None,
        now: datetime | None = None,
    ) -> Condition:
        """Set a condition on the machine."""
        return _set_condition(
            self.conditions, condition_type, status, reason, message, now
        )


class PhysicalHost(BaseModel):
    """A managed bare-metal server.

    ``version`` is the optimistic concurrency token of the stored record. A
    host read from the store carries the version it was read at; the store
    refuses updates made against a stale version.
    """

    name: str
    namespace: str = "default"
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}

    redfish_connection: RedfishConnection = Field(default_factory=RedfishConnection)
    consumer_ref: ConsumerRef | None = None
    boot_iso_source: str | None = None

    state: HostState = HostState.NONE
    error_message: str | None = None
    observed_power_state: str | None = None
    hardware_details: HardwareDetails = Field(default_factory=HardwareDetails)
    conditions: list[Condition] = []

    created_at: datetime = Field(default_factory=utcnow)
    deletion_timestamp: datetime | None = None
    version: int = 0

    @property
    def key(self) -> str:
        """Namespaced identity, ``<namespace>/<name>``."""
        return f"{self.namespace}/{self.name}"

    @property
    def bmc_address(self) -> str:
        """Management address used for BMC cooldown bookkeeping."""
        return self.redfish_connection.address

    @property
    def is_marked_for_deletion(self) -> bool:
        """Check if the host carries a deletion marker."""
        return self.deletion_timestamp is not None

    @property
    def provider_id(self) -> str:
        """Provider ID a machine records once it owns this host."""
        return f"{PROVIDER_ID_PREFIX}{self.namespace}/{self.name}"

    def is_owned_by(self, machine: Machine) -> bool:
        """Check if the given machine is this host's consumer."""
        ref = self.consumer_ref
        if ref is None:
            return False
        if ref.uid and machine.uid:
            return ref.uid == machine.uid
        return ref.name == machine.name and ref.namespace == machine.namespace

    def get_condition(self, condition_type: str) -> Condition | None:
        """Get a condition by type."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: str,
        status: Literal["True", "False", "Unknown"] = "True",
        reason: str | None = None,
        message: str | None = None,
        now: datetime | None = None,
    ) -> Condition:
        """Set a condition on the host."""
        return _set_condition(
            self.conditions, condition_type, status, reason, message, now
        )

    def last_transition_time(self) -> datetime:
        """Most recent condition transition, or creation time if none."""
        if not self.conditions:
            return self.created_at
        return max(c.last_transition_time for c in self.conditions)


def parse_provider_id(provider_id: str | None) -> tuple[str, str] | None:
    """Split ``metalclaim://<namespace>/<name>`` into (namespace, name)."""
    if not provider_id or not provider_id.startswith(PROVIDER_ID_PREFIX):
        return None
    namespace, sep, name = provider_id[len(PROVIDER_ID_PREFIX):].partition("/")
    if not sep or not namespace or not name:
        return None
    return namespace, name
