"""Host claim coordination and BMC operation scheduling."""
from metalclaim.coordination.host_claim import HostClaimCoordinator
from metalclaim.coordination.leader_coordinator import LeaderElectionClaimCoordinator
from metalclaim.coordination.leader_election import LeaseElector
from metalclaim.coordination.provisioning_queue import (
    ProvisioningOperation,
    ProvisioningQueue,
)
from metalclaim.coordination.types import (
    ClaimCoordinator,
    ClaimRequest,
    ClaimResult,
    HostRequirements,
)

__all__ = [
    "HostClaimCoordinator",
    "LeaderElectionClaimCoordinator",
    "LeaseElector",
    "ProvisioningOperation",
    "ProvisioningQueue",
    "ClaimCoordinator",
    "ClaimRequest",
    "ClaimResult",
    "HostRequirements",
]
