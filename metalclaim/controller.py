"""Controller wiring: one instance of every component, started and stopped together."""
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metalclaim.config import settings
from metalclaim.coordination.host_claim import HostClaimCoordinator
from metalclaim.coordination.leader_coordinator import LeaderElectionClaimCoordinator
from metalclaim.coordination.leader_election import LeaseElector
from metalclaim.coordination.provisioning_queue import ProvisioningQueue
from metalclaim.core.host_store import HostStore
from metalclaim.core.machine_reconciler import MachineReconciler
from metalclaim.core.operations import ClientFactory, HostOperationExecutor
from metalclaim.core.provisioner import HostProvisioner
from metalclaim.core.recovery import RecoveryScheduler, StateRecoveryManager
from metalclaim.core.state_service import StateTransitionGuard

logger = logging.getLogger(__name__)


class Controller:
    """All controller components sharing one host store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: ClientFactory | None = None,
        leader_election: bool | None = None,
    ):
        """Wire the components.

        Args:
            session_factory: Session factory of the shared database
            client_factory: Redfish client factory (defaults to mounted secrets)
            leader_election: Override ``settings.uses_leader_election``
        """
        if leader_election is None:
            leader_election = settings.uses_leader_election

        self.store = HostStore(session_factory)
        self.guard = StateTransitionGuard(self.store)
        self.queue = ProvisioningQueue(executor=HostOperationExecutor(client_factory))
        self.claims = HostClaimCoordinator(self.store, self.guard)
        self.coordinator = LeaderElectionClaimCoordinator(
            self.claims,
            LeaseElector(session_factory) if leader_election else None,
        )
        self.provisioner = HostProvisioner(
            self.store, self.queue, self.guard, client_factory=client_factory
        )
        self.reconciler = MachineReconciler(self.coordinator, self.provisioner)
        self.recovery = StateRecoveryManager(self.store, self.guard)
        self.recovery_scheduler = RecoveryScheduler(self.recovery)

    async def start(self) -> None:
        """Start background processing."""
        await self.queue.start()
        await self.coordinator.start()
        if settings.recovery.enabled:
            self.recovery_scheduler.start()
        logger.info("Controller started")

    async def stop(self) -> None:
        """Stop background processing in reverse start order."""
        self.recovery_scheduler.shutdown(wait=False)
        await self.coordinator.stop()
        await self.queue.stop()
        logger.info("Controller stopped")
