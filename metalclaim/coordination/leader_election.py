"""Lease based leader election backed by the database.

One row in the ``leases`` table per election. The holder renews the lease
every retry period; a candidate may take the lease over once the holder has
not renewed it for ``lease_duration_seconds``. All writes are compare-and-set
on the row version, so two candidates can never both win the same round.
"""
import asyncio
import logging
import socket
import time
import uuid
from datetime import timedelta
from typing import Awaitable, Callable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metalclaim.config import settings
from metalclaim.core.models import utcnow
from metalclaim.db.database import from_db_time, to_db_time
from metalclaim.db.models import LeaseRecord

logger = logging.getLogger(__name__)


class LeaderElectionError(Exception):
    """Raised for invalid leader election configuration or use."""
    pass


def default_identity() -> str:
    """Hostname plus a random suffix, unique per process."""
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:6]}"


class LeaseElector:
    """Acquire and hold a named lease.

    Callbacks are coroutines:
        on_started_leading(): this instance became leader
        on_stopped_leading(): this instance lost or gave up leadership
        on_new_leader(identity): the observed leader changed
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        identity: str | None = None,
        lease_name: str | None = None,
        lease_duration_seconds: float | None = None,
        renew_deadline_seconds: float | None = None,
        retry_period_seconds: float | None = None,
    ):
        cfg = settings.leader_election
        self._session_factory = session_factory
        self.identity = identity or cfg.identity or default_identity()
        self.lease_name = lease_name or cfg.lease_name
        self.lease_duration_seconds = lease_duration_seconds or cfg.lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds or cfg.renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds or cfg.retry_period_seconds

        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise LeaderElectionError(
                "renew deadline must be shorter than the lease duration"
            )
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise LeaderElectionError(
                "retry period must be shorter than the renew deadline"
            )

        self.on_started_leading: Callable[[], Awaitable[None]] | None = None
        self.on_stopped_leading: Callable[[], Awaitable[None]] | None = None
        self.on_new_leader: Callable[[str], Awaitable[None]] | None = None

        self._is_leader = False
        self._leader_identity: str | None = None
        self._last_renew: float | None = None  # monotonic
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def is_leader(self) -> bool:
        """Check if this instance holds the lease."""
        return self._is_leader

    @property
    def leader_identity(self) -> str | None:
        """Identity of the last observed lease holder."""
        return self._leader_identity

    @property
    def is_running(self) -> bool:
        return self._running

    async def try_acquire_or_renew(self) -> bool:
        """Make one attempt to acquire or renew the lease.

        Returns:
            True if this instance holds the lease afterwards
        """
        now = utcnow()

        async with self._session_factory() as session:
            record = await session.get(LeaseRecord, self.lease_name)

        if record is None:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        session.add(
                            LeaseRecord(
                                name=self.lease_name,
                                holder_identity=self.identity,
                                lease_duration_seconds=self.lease_duration_seconds,
                                acquire_time=to_db_time(now),
                                renew_time=to_db_time(now),
                                lease_transitions=0,
                                version=1,
                            )
                        )
            except IntegrityError:
                logger.debug(f"Lease {self.lease_name} was created by another candidate")
                return False
            await self._observe(self.identity)
            return True

        holder = record.holder_identity
        renew_time = from_db_time(record.renew_time)
        expired = renew_time is None or now - renew_time > timedelta(
            seconds=record.lease_duration_seconds
        )

        if holder and holder != self.identity and not expired:
            await self._observe(holder)
            return False

        values = {
            "holder_identity": self.identity,
            "lease_duration_seconds": self.lease_duration_seconds,
            "renew_time": to_db_time(now),
            "version": LeaseRecord.version + 1,
        }
        if holder != self.identity:
            values["acquire_time"] = to_db_time(now)
            values["lease_transitions"] = record.lease_transitions + 1

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(LeaseRecord)
                    .where(
                        LeaseRecord.name == self.lease_name,
                        LeaseRecord.version == record.version,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

        if result.rowcount == 0:
            logger.debug(f"Lost race for lease {self.lease_name}")
            return False

        if holder != self.identity:
            logger.info(
                f"Acquired lease {self.lease_name} "
                f"(previous holder: {holder or 'none'})"
            )
        await self._observe(self.identity)
        return True

    async def release(self) -> None:
        """Give up the lease so another candidate can take over immediately."""
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(LeaseRecord)
                    .where(
                        LeaseRecord.name == self.lease_name,
                        LeaseRecord.holder_identity == self.identity,
                    )
                    .values(
                        holder_identity=None,
                        renew_time=None,
                        version=LeaseRecord.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
        logger.info(f"Released lease {self.lease_name}")
        await self._set_leader(False)

    async def _observe(self, identity: str) -> None:
        if identity == self._leader_identity:
            return
        self._leader_identity = identity
        logger.info(f"New leader for {self.lease_name}: {identity}")
        if self.on_new_leader is not None:
            try:
                await self.on_new_leader(identity)
            except Exception as e:
                logger.error(f"Error in new leader callback: {e}")

    async def _set_leader(self, leading: bool) -> None:
        if leading == self._is_leader:
            return
        self._is_leader = leading
        callback = self.on_started_leading if leading else self.on_stopped_leading
        if leading:
            logger.info(f"{self.identity} started leading {self.lease_name}")
        else:
            logger.info(f"{self.identity} stopped leading {self.lease_name}")
        if callback is not None:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Error in leadership callback: {e}")

    async def _run_loop(self):
        """Acquire, renew and step down as the lease dictates."""
        while self._running:
            try:
                acquired = await self.try_acquire_or_renew()
            except Exception as e:
                logger.error(f"Failed to acquire or renew lease {self.lease_name}: {e}")
                acquired = False

            if acquired:
                self._last_renew = time.monotonic()
                await self._set_leader(True)
            elif self._is_leader:
                taken_over = (
                    self._leader_identity is not None
                    and self._leader_identity != self.identity
                )
                deadline_passed = (
                    self._last_renew is None
                    or time.monotonic() - self._last_renew > self.renew_deadline_seconds
                )
                if taken_over or deadline_passed:
                    logger.warning(f"Lost lease {self.lease_name}")
                    await self._set_leader(False)

            await asyncio.sleep(self.retry_period_seconds)

    async def start(self):
        """Start campaigning for the lease."""
        if self._running:
            logger.warning("Leader election already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Leader election started for {self.lease_name} "
            f"(identity={self.identity}, lease={self.lease_duration_seconds}s)"
        )

    async def stop(self):
        """Stop campaigning and release the lease if held."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._is_leader:
            await self.release()
        logger.info("Leader election stopped")
