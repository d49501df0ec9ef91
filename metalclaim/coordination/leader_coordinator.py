"""Claim coordination through an elected leader.

While this replica leads, claims are queued and processed in priority order by
a single batch processor, which removes claim races between replicas. The
selection logic itself is that of ``HostClaimCoordinator``; leadership only
changes the order in which claims are served.

Replicas that do not lead (or run without an elector) claim directly through
``HostClaimCoordinator``. Claims are not forwarded to the leader over the
network; optimistic concurrency on the host store keeps claims exclusive in
this degraded mode, only the ordering guarantee is lost.
"""
import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime

from metalclaim.config import settings
from metalclaim.config.settings import PrioritySettings
from metalclaim.coordination.host_claim import HostClaimCoordinator
from metalclaim.coordination.leader_election import LeaseElector
from metalclaim.coordination.types import ClaimRequest, ClaimResult
from metalclaim.core.models import Machine, utcnow

logger = logging.getLogger(__name__)


def calculate_priority(
    request: ClaimRequest,
    policy: PrioritySettings | None = None,
    now: datetime | None = None,
) -> int:
    """Priority score of a claim; higher is served first.

    Older machines gain priority over time so they are not starved, and
    requests without tag constraints get a bonus so they do not wait behind
    hard-to-place ones.
    """
    policy = policy or settings.leader_election.priority
    score = policy.base + policy.per_minute * request.machine.age_minutes(now)
    if request.requirements.is_simple:
        score += policy.simplicity_bonus
    return score


@dataclass
class PendingClaim:
    """A claim waiting for the leader's batch processor."""

    request: ClaimRequest
    priority: int
    sequence: int
    future: asyncio.Future
    submitted_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0

    @property
    def machine_uid(self) -> str:
        return self.request.machine.uid


class LeaderElectionClaimCoordinator:
    """Claim coordinator that serializes claims on the elected leader."""

    def __init__(
        self,
        coordinator: HostClaimCoordinator,
        elector: LeaseElector | None = None,
        priority: PrioritySettings | None = None,
        processing_interval_seconds: float | None = None,
        claim_wait_timeout_seconds: float | None = None,
        max_claim_retries: int | None = None,
    ):
        """Initialize the coordinator.

        Args:
            coordinator: Coordinator that performs the actual claims
            elector: Lease elector; None disables leader coordination
            priority: Priority policy for the claim queue
            processing_interval_seconds: Batch processor tick
            claim_wait_timeout_seconds: How long ``claim_host`` waits for the
                batch processor before answering with a retry
            max_claim_retries: Batches a claim may fail with an error before
                its caller gets the error
        """
        cfg = settings.leader_election
        self.coordinator = coordinator
        self.elector = elector
        self.priority = priority or cfg.priority
        self.processing_interval_seconds = (
            processing_interval_seconds or cfg.processing_interval_seconds
        )
        self.claim_wait_timeout_seconds = (
            claim_wait_timeout_seconds or cfg.claim_wait_timeout_seconds
        )
        self.max_claim_retries = (
            cfg.max_claim_retries if max_claim_retries is None else max_claim_retries
        )

        self._lock = asyncio.Lock()
        self._queue: list[tuple[int, int, PendingClaim]] = []
        self._pending: dict[str, PendingClaim] = {}  # machine uid -> claim
        self._sequence = itertools.count()
        self._processor_task: asyncio.Task | None = None
        self._stop_processing = asyncio.Event()
        self._running = False

        self._stats = {
            "leader_claims": 0,
            "fallback_claims": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": 0,
            "leadership_changes": 0,
        }

        if elector is not None:
            elector.on_started_leading = self._on_started_leading
            elector.on_stopped_leading = self._on_stopped_leading
            elector.on_new_leader = self._on_new_leader

    @property
    def is_leader(self) -> bool:
        return self.elector is not None and self.elector.is_leader

    async def start(self) -> None:
        """Start leader election (no-op without an elector)."""
        if self._running:
            logger.warning("Claim coordinator already running")
            return
        self._running = True
        if self.elector is None:
            logger.info("Claim coordinator running without leader election")
            return
        await self.elector.start()

    async def stop(self) -> None:
        """Stop leader election, processing claims accepted so far."""
        if not self._running:
            return
        self._running = False

        if self.elector is not None:
            # Releasing the lease triggers the stopped-leading drain
            await self.elector.stop()
        await self._stop_processor()
        await self.process_claim_batch(force=True)
        logger.info("Claim coordinator stopped")

    async def claim_host(self, request: ClaimRequest) -> ClaimResult:
        """Claim a host, through the leader's queue when this replica leads."""
        if not self.is_leader:
            logger.debug(
                f"Not leader, claiming directly for machine {request.machine.name}"
            )
            self._stats["fallback_claims"] += 1
            return await self.coordinator.claim_host(request)

        self._stats["leader_claims"] += 1
        future = await self.submit_claim(request)
        try:
            return await asyncio.wait_for(
                asyncio.shield(future), self.claim_wait_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.info(
                f"Claim for machine {request.machine.name} still queued after "
                f"{self.claim_wait_timeout_seconds}s"
            )
            return ClaimResult(
                claim_success=False,
                retry=True,
                retry_after=self.processing_interval_seconds,
                error="claim is queued on the leader",
            )

    async def release_host(self, machine: Machine) -> None:
        """Release the machine's host; releases need no ordering."""
        await self.coordinator.release_host(machine)

    async def submit_claim(self, request: ClaimRequest) -> asyncio.Future:
        """Queue a claim for the batch processor.

        A machine with a claim already queued gets the existing claim's future.
        """
        async with self._lock:
            existing = self._pending.get(request.machine.uid)
            if existing is not None:
                return existing.future

            claim = PendingClaim(
                request=request,
                priority=calculate_priority(request, self.priority),
                sequence=next(self._sequence),
                future=asyncio.get_running_loop().create_future(),
            )
            heapq.heappush(self._queue, (-claim.priority, claim.sequence, claim))
            self._pending[claim.machine_uid] = claim

        logger.debug(
            f"Queued claim for machine {request.machine.name} "
            f"(priority {claim.priority}, queue length {len(self._queue)})"
        )
        return claim.future

    async def process_claim_batch(self, force: bool = False) -> int:
        """Process every queued claim in priority order.

        Args:
            force: Process even when not leading (drain on step-down)

        Returns:
            Number of claims processed
        """
        if not force and not self.is_leader:
            return 0

        async with self._lock:
            batch = [heapq.heappop(self._queue)[2] for _ in range(len(self._queue))]

        if not batch:
            return 0
        logger.debug(f"Processing claim batch of {len(batch)}")

        for index, claim in enumerate(batch):
            try:
                await self._process_claim(claim, requeue=not force)
            except asyncio.CancelledError:
                self._restore(batch[index:])
                raise
        return len(batch)

    def _restore(self, claims: list[PendingClaim]) -> None:
        """Put unhandled claims back on the queue (no await, so no lock needed)."""
        queued = {id(entry[2]) for entry in self._queue}
        for claim in claims:
            if claim.future.done() or id(claim) in queued:
                continue
            heapq.heappush(self._queue, (-claim.priority, claim.sequence, claim))
        logger.warning(f"Claim batch interrupted, {len(self._queue)} claims queued")

    async def _process_claim(self, claim: PendingClaim, requeue: bool) -> None:
        machine = claim.request.machine
        try:
            result = await self.coordinator.claim_host(claim.request)
        except Exception as e:
            self._stats["errors"] += 1
            claim.retry_count += 1
            if requeue and claim.retry_count < self.max_claim_retries:
                logger.warning(
                    f"Claim for machine {machine.name} failed "
                    f"(attempt {claim.retry_count}), requeueing: {e}"
                )
                async with self._lock:
                    heapq.heappush(self._queue, (-claim.priority, claim.sequence, claim))
                return
            logger.error(f"Claim for machine {machine.name} failed: {e}")
            result = ClaimResult(
                claim_success=False,
                retry=True,
                retry_after=settings.claims.error_retry_after_seconds,
                error=str(e),
            )

        self._stats["succeeded" if result.claim_success else "failed"] += 1
        async with self._lock:
            self._pending.pop(claim.machine_uid, None)
        if not claim.future.done():
            claim.future.set_result(result)

    def get_leadership_status(self) -> dict:
        """Leadership introspection."""
        return {
            "enabled": self.elector is not None,
            "is_leader": self.is_leader,
            "identity": self.elector.identity if self.elector else None,
            "leader_identity": self.elector.leader_identity if self.elector else None,
            "leadership_changes": self._stats["leadership_changes"],
        }

    def get_claim_queue_status(self) -> tuple[int, int]:
        """Get (queued, pending) claim counts.

        Pending claims include those being processed by the current batch.
        """
        return len(self._queue), len(self._pending)

    def get_stats(self) -> dict:
        return dict(self._stats)

    async def _processor_loop(self):
        while self.is_leader and not self._stop_processing.is_set():
            try:
                await self.process_claim_batch()
            except Exception as e:
                logger.exception(f"Claim batch processing failed: {e}")
            try:
                await asyncio.wait_for(
                    self._stop_processing.wait(), self.processing_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def _stop_processor(self) -> None:
        """Let the processor finish its current batch and exit."""
        self._stop_processing.set()
        task, self._processor_task = self._processor_task, None
        if task is None or task is asyncio.current_task():
            return
        await task

    async def _on_started_leading(self):
        self._stats["leadership_changes"] += 1
        logger.info("Became leader for claim coordination")
        self._stop_processing.clear()
        self._processor_task = asyncio.create_task(self._processor_loop())

    async def _on_stopped_leading(self):
        self._stats["leadership_changes"] += 1
        logger.info("Lost leadership for claim coordination, draining claim queue")
        await self._stop_processor()
        processed = await self.process_claim_batch(force=True)
        if processed:
            logger.info(f"Processed {processed} remaining claim(s) before stepping down")

    async def _on_new_leader(self, identity: str):
        logger.info(f"New claim coordination leader: {identity}")
