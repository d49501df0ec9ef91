"""Claim request and result types shared by the claim coordinators."""
from typing import Protocol

from pydantic import BaseModel, Field

from metalclaim.core.models import Machine, PhysicalHost


def _tag_matches(tag: str, labels: dict[str, str]) -> bool:
    """Check a ``key`` or ``key=value`` tag against host labels."""
    key, sep, value = tag.partition("=")
    if not sep:
        return key in labels
    return labels.get(key) == value


class HostRequirements(BaseModel):
    """Placement constraints of a claim."""

    required_tags: list[str] = Field(default_factory=list)
    preferred_tags: list[str] = Field(default_factory=list)
    min_cpu_cores: int | None = None
    min_memory_gb: int | None = None

    @property
    def is_simple(self) -> bool:
        """Check if the request carries no tag constraints."""
        return not self.required_tags and not self.preferred_tags

    def is_satisfied_by(self, host: PhysicalHost) -> bool:
        """Check the hard constraints (required tags, minimum hardware)."""
        if not all(_tag_matches(tag, host.labels) for tag in self.required_tags):
            return False

        hardware = host.hardware_details
        if self.min_cpu_cores is not None:
            if hardware.cpu_cores is None or hardware.cpu_cores < self.min_cpu_cores:
                return False
        if self.min_memory_gb is not None:
            if hardware.memory_gb is None or hardware.memory_gb < self.min_memory_gb:
                return False
        return True

    def preference_score(self, host: PhysicalHost) -> int:
        """Number of preferred tags the host matches."""
        return sum(1 for tag in self.preferred_tags if _tag_matches(tag, host.labels))


class ClaimRequest(BaseModel):
    """Request to claim one host for a machine."""

    machine: Machine
    image_url: str
    requirements: HostRequirements = Field(default_factory=HostRequirements)


class ClaimResult(BaseModel):
    """Outcome of a claim attempt.

    A failed claim is not an error: ``retry`` tells the caller to come back
    after ``retry_after`` seconds.
    """

    claim_success: bool
    host: PhysicalHost | None = None
    retry: bool = False
    retry_after: float = 0.0
    error: str | None = None


class ClaimCoordinator(Protocol):
    """Something that assigns hosts to machines."""

    async def claim_host(self, request: ClaimRequest) -> ClaimResult:
        ...

    async def release_host(self, machine: Machine) -> None:
        ...
