"""Stuck state detection and recovery."""
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from metalclaim.config import settings
from metalclaim.core.host_store import HostStore, HostStoreError
from metalclaim.core.models import TRANSIENT_STATES, HostState, PhysicalHost, utcnow
from metalclaim.core.state_machine import InvalidStateTransition
from metalclaim.core.state_service import StateTransitionGuard

logger = logging.getLogger(__name__)


def default_timeouts() -> dict[HostState, timedelta]:
    """Stuck timeouts per state from settings."""
    recovery = settings.recovery
    return {
        HostState.ENROLLING: timedelta(minutes=recovery.enrolling_timeout_minutes),
        HostState.PROVISIONING: timedelta(minutes=recovery.provisioning_timeout_minutes),
        HostState.DEPROVISIONING: timedelta(minutes=recovery.deprovisioning_timeout_minutes),
        HostState.CLAIMED: timedelta(minutes=recovery.claimed_timeout_minutes),
        HostState.UNKNOWN: timedelta(minutes=recovery.unknown_timeout_minutes),
    }


class StateRecoveryManager:
    """Detect hosts stuck in a state and move them on.

    Recovery never bypasses the guard, so it cannot overwrite a concurrent
    writer.
    """

    def __init__(self, store: HostStore, guard: StateTransitionGuard | None = None):
        self.store = store
        self.guard = guard or StateTransitionGuard(store)

    def detect_stuck_state(
        self,
        host: PhysicalHost,
        timeout: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Check if a host has stayed in its state for longer than ``timeout``.

        Elapsed time is measured from the most recent condition transition,
        or from creation when the host has no conditions.
        """
        now = now or utcnow()
        return now - host.last_transition_time() > timeout

    async def recover_stuck_state(
        self, host: PhysicalHost, now: datetime | None = None
    ) -> PhysicalHost:
        """Recover a stuck host.

        Enrolling, Provisioning and Deprovisioning are retried in place.
        Provisioning without a consumer is released to Available. Any other
        state is moved to Error for investigation.

        Returns:
            The host as stored after recovery

        Raises:
            InvalidStateTransition: If the recovery transition is not allowed
        """
        now = now or utcnow()
        state = HostState(host.state)
        elapsed = now - host.last_transition_time()
        minutes = int(elapsed.total_seconds() // 60)

        logger.info(
            f"Attempting recovery of host {host.key} stuck in {state.label} "
            f"for {minutes}m"
        )

        if state == HostState.PROVISIONING and host.consumer_ref is None:
            def clear_boot_source(latest: PhysicalHost) -> None:
                latest.boot_iso_source = None

            return await self.guard.transition(
                host,
                HostState.AVAILABLE,
                f"consumer removed during provisioning (stuck for {minutes}m)",
                mutate=clear_boot_source,
                triggered_by="recovery",
            )

        if state in TRANSIENT_STATES:
            return await self.guard.transition(
                host,
                state,
                f"stuck {state.label.lower()} recovery after {minutes}m",
                triggered_by="recovery",
                refresh=True,
            )

        return await self.guard.transition(
            host,
            HostState.ERROR,
            f"stuck in state {state.label} for {minutes}m",
            triggered_by="recovery",
        )

    async def scan(
        self,
        timeouts: dict[HostState, timedelta] | None = None,
        now: datetime | None = None,
    ) -> list[PhysicalHost]:
        """Recover every host that is stuck according to ``timeouts``.

        Failures are logged per host and do not stop the scan.

        Returns:
            Hosts that were recovered
        """
        timeouts = timeouts if timeouts is not None else default_timeouts()
        recovered = []

        for state, timeout in timeouts.items():
            for host in await self.store.list(state=state):
                if not self.detect_stuck_state(host, timeout, now):
                    continue
                try:
                    recovered.append(await self.recover_stuck_state(host, now))
                except InvalidStateTransition as e:
                    logger.warning(f"Cannot recover host {host.key}: {e}")
                except HostStoreError as e:
                    logger.info(f"Recovery of host {host.key} deferred: {e}")

        if recovered:
            logger.info(f"Recovered {len(recovered)} stuck host(s)")
        return recovered


class RecoveryScheduler:
    """Runs the stuck state scan on an interval using APScheduler."""

    JOB_ID = "stuck-state-recovery"

    def __init__(
        self,
        manager: StateRecoveryManager,
        interval_seconds: float | None = None,
        timeouts: dict[HostState, timedelta] | None = None,
    ):
        self.manager = manager
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.recovery.scan_interval_seconds
        )
        self.timeouts = timeouts
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    async def _run_scan(self) -> None:
        """Execute one scan when the scheduler triggers."""
        try:
            await self.manager.scan(self.timeouts)
        except Exception as e:
            logger.exception(f"Recovery scan failed: {e}")

    def start(self) -> None:
        """Start scheduler."""
        if self.scheduler.running:
            logger.warning("Recovery scheduler already running")
            return

        self.scheduler.add_job(
            self._run_scan,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Recovery scheduler started (interval={self.interval_seconds}s)")

    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Recovery scheduler stopped")

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self.scheduler.running
