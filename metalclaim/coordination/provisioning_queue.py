"""BMC concurrency and cooldown governor.

Management controllers commonly fail or hang when hit with concurrent or
rapid-fire requests. The queue bounds the number of operations in flight and
keeps a minimum idle gap between operations on one management address.

Two access modes share the same bookkeeping:

- Permit mode: ``acquire_bmc_permit`` / ``release_bmc_permit`` (or the
  ``bmc_permit`` context manager) around code that talks to a BMC directly.
- Queue mode: ``submit_request`` hands an operation to the worker pool,
  ``wait_for_result`` waits for its ``ProvisioningResult``.
"""
import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Protocol

from pydantic import BaseModel

from metalclaim.config import settings
from metalclaim.core.models import Machine, PhysicalHost, utcnow

logger = logging.getLogger(__name__)


class ProvisioningQueueError(Exception):
    """Base exception for provisioning queue errors."""
    pass


class QueueFullError(ProvisioningQueueError):
    """Raised when the queue is at capacity."""

    retryable = True

    def __init__(self, max_queue_size: int):
        self.max_queue_size = max_queue_size
        super().__init__(f"Provisioning queue is full (max: {max_queue_size})")


class HostOperationInProgressError(ProvisioningQueueError):
    """Raised when a host already has a queued or running operation."""

    def __init__(self, request: "ProvisioningRequest"):
        self.request = request
        super().__init__(
            f"Host {request.host.name} already has operation "
            f"{request.operation.value} in progress"
        )


class ProvisioningTimeoutError(ProvisioningQueueError):
    """Raised when waiting for a permit or a result times out."""
    pass


class RequestCancelledError(ProvisioningQueueError):
    """Raised when waiting on a request that was cancelled."""
    pass


class ProvisioningOperation(str, Enum):
    """Operations the queue can run against a host."""

    CLAIM = "claim"
    PROVISION = "provision"
    DEPROVISION = "deprovision"
    RELEASE = "release"

    @property
    def retryable(self) -> bool:
        """Hardware operations are expected to fail transiently."""
        return self in (ProvisioningOperation.PROVISION, ProvisioningOperation.DEPROVISION)


class ProvisioningResult(BaseModel):
    """Result of a queued operation."""

    success: bool
    host_name: str
    operation: ProvisioningOperation
    error: str | None = None
    duration_seconds: float = 0.0
    retryable: bool = False


@dataclass
class ProvisioningRequest:
    """A queued operation against one host."""

    id: str
    host: PhysicalHost
    operation: ProvisioningOperation
    machine: Machine | None = None
    submitted_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deadline: float = 0.0  # monotonic
    error: str | None = None
    cancelled: bool = False
    future: asyncio.Future | None = None
    task: asyncio.Task | None = None

    @property
    def bmc_address(self) -> str:
        return self.host.bmc_address

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.completed_at is not None:
            return "completed"
        if self.started_at is not None:
            return "processing"
        return "queued"


class OperationExecutor(Protocol):
    """Runs one operation against the hardware; raises on failure."""

    async def execute(self, request: ProvisioningRequest) -> None:
        ...


class ProvisioningQueue:
    """Bounded queue and worker pool for BMC operations."""

    def __init__(
        self,
        executor: OperationExecutor | None = None,
        max_concurrent_ops: int | None = None,
        max_queue_size: int | None = None,
        bmc_cooldown_seconds: float | None = None,
        operation_timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        permit_poll_interval_seconds: float | None = None,
        finished_history_size: int | None = None,
    ):
        """Initialize provisioning queue.

        Args:
            executor: Runs operations against the hardware; without one every
                operation succeeds immediately (metadata-only)
            max_concurrent_ops: Operations allowed in flight at once
            max_queue_size: Queued (not yet started) requests accepted
            bmc_cooldown_seconds: Idle gap required between operations on
                one management address
            operation_timeout_seconds: Deadline of a request from submission
            poll_interval_seconds: Worker poll interval when idle
            permit_poll_interval_seconds: Poll interval while waiting for a permit
            finished_history_size: Finished request statuses kept for lookups
        """
        cfg = settings.queue
        self.executor = executor
        self.max_concurrent_ops = max_concurrent_ops or cfg.max_concurrent_ops
        self.max_queue_size = max_queue_size or cfg.max_queue_size
        self.bmc_cooldown_seconds = (
            cfg.bmc_cooldown_seconds if bmc_cooldown_seconds is None else bmc_cooldown_seconds
        )
        self.operation_timeout_seconds = (
            operation_timeout_seconds or cfg.operation_timeout_seconds
        )
        self.poll_interval_seconds = poll_interval_seconds or cfg.poll_interval_seconds
        self.permit_poll_interval_seconds = (
            permit_poll_interval_seconds or cfg.permit_poll_interval_seconds
        )
        self.finished_history_size = finished_history_size or cfg.finished_history_size

        self._lock = asyncio.Lock()
        self._queue: list[ProvisioningRequest] = []
        self._processing: dict[str, ProvisioningRequest] = {}  # host key -> request
        self._permits: dict[str, tuple[str, int]] = {}  # host key -> (address, depth)
        self._last_operation: dict[str, float] = {}  # address -> monotonic time
        self._requests: dict[str, ProvisioningRequest] = {}  # unfinished only
        self._finished: OrderedDict[str, str] = OrderedDict()  # request id -> status

        self._workers: list[asyncio.Task] = []
        self._running = False
        self._accepting = True

        self._stats = {
            "submitted": 0,
            "rejected": 0,
            "completed": 0,
            "failed": 0,
            "timed_out": 0,
            "cancelled": 0,
            "total_duration_seconds": 0.0,
        }

    @property
    def is_running(self) -> bool:
        """Check if workers are running."""
        return self._running

    # Eligibility (caller holds the lock)

    def _in_flight(self) -> int:
        return len(self._processing) + len(self._permits)

    def _address_busy(self, address: str) -> bool:
        if any(r.bmc_address == address for r in self._processing.values()):
            return True
        return any(addr == address for addr, _ in self._permits.values())

    def _cooling_down(self, address: str) -> bool:
        last = self._last_operation.get(address)
        return last is not None and time.monotonic() - last < self.bmc_cooldown_seconds

    def _can_start(self, address: str) -> bool:
        return (
            self._in_flight() < self.max_concurrent_ops
            and not self._address_busy(address)
            and not self._cooling_down(address)
        )

    # Permit mode

    async def acquire_bmc_permit(
        self, host: PhysicalHost, timeout: float | None = None
    ) -> None:
        """Wait until BMC operations on ``host`` are allowed and reserve a slot.

        Re-entrant: a host already holding a slot gets it again immediately.

        Args:
            host: Host about to be operated on
            timeout: Seconds to wait before giving up (None waits forever)

        Raises:
            ProvisioningTimeoutError: If no slot became free in time
        """
        started = time.monotonic()
        address = host.bmc_address

        while True:
            async with self._lock:
                if host.key in self._permits:
                    held_address, depth = self._permits[host.key]
                    self._permits[host.key] = (held_address, depth + 1)
                    return
                if host.key in self._processing:
                    return
                if self._can_start(address):
                    self._permits[host.key] = (address, 1)
                    logger.debug(f"BMC permit granted for host {host.key} ({address})")
                    return

            if timeout is not None and time.monotonic() - started >= timeout:
                raise ProvisioningTimeoutError(
                    f"Timed out after {timeout}s waiting for BMC permit for host {host.key}"
                )
            await asyncio.sleep(self.permit_poll_interval_seconds)

    async def release_bmc_permit(self, host: PhysicalHost) -> None:
        """Release a permit and start the cooldown of the host's address."""
        async with self._lock:
            held = self._permits.get(host.key)
            if held is None:
                logger.debug(f"No BMC permit held for host {host.key}")
                return
            address, depth = held
            if depth > 1:
                self._permits[host.key] = (address, depth - 1)
                return
            del self._permits[host.key]
            self._last_operation[address] = time.monotonic()
            logger.debug(f"BMC permit released for host {host.key} ({address})")

    @asynccontextmanager
    async def bmc_permit(
        self, host: PhysicalHost, timeout: float | None = None
    ) -> AsyncIterator[None]:
        """Hold a BMC permit for the duration of the block."""
        await self.acquire_bmc_permit(host, timeout)
        try:
            yield
        finally:
            await self.release_bmc_permit(host)

    # Queue mode

    async def submit_request(
        self,
        host: PhysicalHost,
        machine: Machine | None,
        operation: ProvisioningOperation | str,
    ) -> ProvisioningRequest:
        """Queue an operation against a host.

        Raises:
            QueueFullError: If the queue is at capacity (retry later)
            HostOperationInProgressError: If the host already has an operation
                queued or running
        """
        operation = ProvisioningOperation(operation)

        async with self._lock:
            if not self._accepting:
                raise ProvisioningQueueError("Provisioning queue is shutting down")

            if len(self._queue) >= self.max_queue_size:
                self._stats["rejected"] += 1
                logger.info(
                    f"Rejected {operation.value} for host {host.key}: queue full "
                    f"({len(self._queue)}/{self.max_queue_size})"
                )
                raise QueueFullError(self.max_queue_size)

            existing = self._processing.get(host.key) or next(
                (r for r in self._queue if r.host.key == host.key), None
            )
            if existing is not None:
                raise HostOperationInProgressError(existing)

            request = ProvisioningRequest(
                id=f"{host.name}-{operation.value}-{uuid.uuid4().hex[:8]}",
                host=host.model_copy(deep=True),
                machine=machine.model_copy(deep=True) if machine else None,
                operation=operation,
                deadline=time.monotonic() + self.operation_timeout_seconds,
                future=asyncio.get_running_loop().create_future(),
            )
            self._queue.append(request)
            self._requests[request.id] = request
            self._stats["submitted"] += 1

        logger.info(
            f"Submitted {operation.value} request {request.id} for host {host.key} "
            f"(queue length {len(self._queue)})"
        )
        return request

    async def wait_for_result(
        self, request: ProvisioningRequest, timeout: float | None = None
    ) -> ProvisioningResult:
        """Wait for the result of a request.

        Raises:
            ProvisioningTimeoutError: If no result arrived within ``timeout``
            RequestCancelledError: If the request was cancelled
        """
        timeout = timeout if timeout is not None else settings.queue.result_timeout_seconds
        try:
            result = await asyncio.wait_for(asyncio.shield(request.future), timeout)
        except asyncio.TimeoutError:
            raise ProvisioningTimeoutError(
                f"Timed out after {timeout}s waiting for request {request.id}"
            )
        if request.cancelled:
            raise RequestCancelledError(f"Request {request.id} was cancelled")
        return result

    async def cancel_request(self, request_id: str) -> bool:
        """Cancel a queued or running request.

        Returns:
            True if the request was found and cancelled
        """
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.completed_at is not None or request.cancelled:
                return False

            request.cancelled = True
            self._stats["cancelled"] += 1
            if request in self._queue:
                self._queue.remove(request)
                self._finish(request, "request cancelled", 0.0)
            elif request.task is not None:
                request.task.cancel()

        logger.info(f"Cancelled request {request_id}")
        return True

    def get_request_status(self, request_id: str) -> str | None:
        """Get the status of a request (queued, processing, completed, cancelled)."""
        request = self._requests.get(request_id)
        if request is not None:
            return request.status
        return self._finished.get(request_id)

    def get_queue_status(self) -> tuple[int, int]:
        """Get (queued, in flight) counts."""
        return len(self._queue), self._in_flight()

    def get_stats(self) -> dict:
        """Get queue statistics."""
        finished = self._stats["completed"] + self._stats["failed"]
        return {
            **self._stats,
            "queued": len(self._queue),
            "processing": len(self._processing),
            "permits": len(self._permits),
            "workers": len(self._workers),
            "max_concurrent_ops": self.max_concurrent_ops,
            "max_queue_size": self.max_queue_size,
            "average_duration_seconds": (
                self._stats["total_duration_seconds"] / finished if finished else 0.0
            ),
        }

    # Workers

    async def start(self, num_workers: int | None = None) -> None:
        """Start the worker pool."""
        if self._running:
            logger.warning("Provisioning queue already running")
            return

        num_workers = num_workers or settings.queue.num_workers
        self._running = True
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(num_workers)
        ]
        logger.info(
            f"Provisioning queue started (workers={num_workers}, "
            f"max_concurrent={self.max_concurrent_ops}, "
            f"cooldown={self.bmc_cooldown_seconds}s)"
        )

    async def stop(self, grace_period: float | None = None) -> None:
        """Stop accepting work, drain for up to ``grace_period`` seconds, then
        cancel whatever is left."""
        if not self._running:
            return

        grace_period = (
            settings.queue.stop_grace_period_seconds
            if grace_period is None
            else grace_period
        )
        logger.info(f"Stopping provisioning queue (grace period {grace_period}s)...")
        self._accepting = False

        deadline = time.monotonic() + grace_period
        while (self._queue or self._processing) and time.monotonic() < deadline:
            await asyncio.sleep(min(self.poll_interval_seconds, 0.1))

        self._running = False
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        async with self._lock:
            for request in self._queue:
                request.cancelled = True
                self._stats["cancelled"] += 1
                self._finish(request, "provisioning queue stopped", 0.0)
            self._queue.clear()

        logger.info("Provisioning queue stopped")

    async def _next_request(self) -> ProvisioningRequest | None:
        """Take the oldest request that may start now."""
        async with self._lock:
            now = time.monotonic()
            for request in list(self._queue):
                if now >= request.deadline:
                    self._queue.remove(request)
                    self._stats["timed_out"] += 1
                    self._finish(
                        request, "deadline exceeded before the operation started", 0.0
                    )
                    continue

                if self._in_flight() >= self.max_concurrent_ops:
                    return None
                if not self._can_start(request.bmc_address):
                    continue

                self._queue.remove(request)
                self._processing[request.host.key] = request
                request.started_at = utcnow()
                return request
        return None

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Provisioning worker {worker_id} started")
        while self._running:
            request = await self._next_request()
            if request is None:
                await asyncio.sleep(self.poll_interval_seconds)
                continue
            await self._process(request, worker_id)

    async def _process(self, request: ProvisioningRequest, worker_id: int) -> None:
        """Run one request and deliver its result."""
        logger.info(
            f"Worker {worker_id} processing {request.operation.value} "
            f"request {request.id} for host {request.host.key}"
        )
        started = time.monotonic()
        error = None
        interrupted = False

        request.task = asyncio.create_task(self._execute(request))
        try:
            await asyncio.wait_for(
                asyncio.shield(request.task), max(0.0, request.deadline - started)
            )
        except asyncio.TimeoutError:
            request.task.cancel()
            self._stats["timed_out"] += 1
            error = f"operation timed out after {self.operation_timeout_seconds}s"
        except asyncio.CancelledError:
            request.task.cancel()
            if request.cancelled:
                error = "request cancelled"
            else:
                # The worker itself is being cancelled
                interrupted = True
                request.cancelled = True
                error = "provisioning queue stopped"
        except Exception as e:
            error = str(e) or type(e).__name__

        duration = time.monotonic() - started
        async with self._lock:
            del self._processing[request.host.key]
            self._last_operation[request.bmc_address] = time.monotonic()
            self._finish(request, error, duration)

        if interrupted:
            raise asyncio.CancelledError()

        if error:
            logger.warning(
                f"{request.operation.value} request {request.id} failed after "
                f"{duration:.2f}s: {error}"
            )
        else:
            logger.info(
                f"{request.operation.value} request {request.id} completed in "
                f"{duration:.2f}s"
            )

    async def _execute(self, request: ProvisioningRequest) -> None:
        if self.executor is not None:
            await self.executor.execute(request)

    def _finish(
        self, request: ProvisioningRequest, error: str | None, duration: float
    ) -> None:
        """Record completion and deliver the result (caller holds the lock)."""
        request.completed_at = utcnow()
        request.error = error
        self._requests.pop(request.id, None)
        self._finished[request.id] = request.status
        while len(self._finished) > self.finished_history_size:
            self._finished.popitem(last=False)
        if not request.cancelled:
            self._stats["completed" if error is None else "failed"] += 1
            self._stats["total_duration_seconds"] += duration

        result = ProvisioningResult(
            success=error is None,
            host_name=request.host.name,
            operation=request.operation,
            error=error,
            duration_seconds=duration,
            retryable=request.operation.retryable,
        )
        if request.future is not None and not request.future.done():
            request.future.set_result(result)
