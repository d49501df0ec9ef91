"""Versioned PhysicalHost store with compare-and-set updates.

The store is the only source of truth for host state. Every update is
conditional on the version the caller read; a stale version fails with
``ConflictError`` so concurrent writers (threads, tasks or other controller
replicas sharing the database) never overwrite each other.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metalclaim.core.models import (
    Condition,
    ConsumerRef,
    HardwareDetails,
    HostState,
    PhysicalHost,
    RedfishConnection,
    utcnow,
)
from metalclaim.db.database import from_db_time, to_db_time
from metalclaim.db.models import HostStateLog, PhysicalHostRecord

logger = logging.getLogger(__name__)


class HostStoreError(Exception):
    """Base exception for host store errors."""
    pass


class ConflictError(HostStoreError):
    """Raised when an update is made against a stale version."""

    def __init__(self, key: str, version: int):
        self.key = key
        self.version = version
        super().__init__(f"Host {key} was modified concurrently (read version {version})")


class HostNotFoundError(HostStoreError):
    """Raised when a host does not exist."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Host {key} not found")


class HostAlreadyExistsError(HostStoreError):
    """Raised when creating a host whose name is taken."""
    pass


class HostInUseError(HostStoreError):
    """Raised when deleting a host that still has a consumer."""
    pass


class StateLogEntry(BaseModel):
    """A persisted state transition."""

    from_state: HostState
    to_state: HostState
    triggered_by: str = "system"
    comment: str | None = None
    metadata: dict | None = None
    created_at: datetime | None = None


def record_to_host(record: PhysicalHostRecord) -> PhysicalHost:
    """Convert database row to PhysicalHost."""
    return PhysicalHost(
        name=record.name,
        namespace=record.namespace,
        labels=dict(record.labels or {}),
        annotations=dict(record.annotations or {}),
        redfish_connection=RedfishConnection(
            address=record.redfish_address or "",
            credentials_secret_ref=record.credentials_secret_ref or "",
            insecure_skip_verify=record.insecure_skip_verify,
        ),
        consumer_ref=(
            ConsumerRef.model_validate(record.consumer_ref)
            if record.consumer_ref
            else None
        ),
        boot_iso_source=record.boot_iso_source,
        state=HostState(record.state or ""),
        error_message=record.error_message,
        observed_power_state=record.observed_power_state,
        hardware_details=HardwareDetails.model_validate(record.hardware_details or {}),
        conditions=[Condition.model_validate(c) for c in record.conditions or []],
        created_at=from_db_time(record.created_at),
        deletion_timestamp=from_db_time(record.deletion_timestamp),
        version=record.version,
    )


def host_to_values(host: PhysicalHost) -> dict:
    """Column values for a host (excluding identity and version)."""
    return {
        "labels": dict(host.labels),
        "annotations": dict(host.annotations),
        "redfish_address": host.redfish_connection.address,
        "credentials_secret_ref": host.redfish_connection.credentials_secret_ref,
        "insecure_skip_verify": host.redfish_connection.insecure_skip_verify,
        "consumer_ref": host.consumer_ref.model_dump() if host.consumer_ref else None,
        "consumer_uid": host.consumer_ref.uid if host.consumer_ref else None,
        "boot_iso_source": host.boot_iso_source,
        "state": HostState(host.state).value,
        "error_message": host.error_message,
        "observed_power_state": host.observed_power_state,
        "hardware_details": host.hardware_details.model_dump(mode="json"),
        "conditions": [c.model_dump(mode="json") for c in host.conditions],
        "deletion_timestamp": to_db_time(host.deletion_timestamp),
    }


class HostStore:
    """PhysicalHost persistence with optimistic concurrency."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize host store.

        Args:
            session_factory: Async session factory bound to the database
        """
        self._session_factory = session_factory

    async def get(self, name: str, namespace: str = "default") -> PhysicalHost:
        """Get the latest stored version of a host.

        Raises:
            HostNotFoundError: If the host does not exist
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(PhysicalHostRecord).where(
                    PhysicalHostRecord.namespace == namespace,
                    PhysicalHostRecord.name == name,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise HostNotFoundError(f"{namespace}/{name}")
            return record_to_host(record)

    async def list(
        self,
        state: HostState | None = None,
        namespace: str | None = None,
    ) -> list[PhysicalHost]:
        """List hosts ordered by name.

        Args:
            state: Only hosts in this state
            namespace: Only hosts in this namespace
        """
        query = select(PhysicalHostRecord)
        if state is not None:
            query = query.where(PhysicalHostRecord.state == HostState(state).value)
        if namespace is not None:
            query = query.where(PhysicalHostRecord.namespace == namespace)
        query = query.order_by(PhysicalHostRecord.namespace, PhysicalHostRecord.name)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [record_to_host(r) for r in result.scalars().all()]

    async def find_by_consumer(self, uid: str) -> PhysicalHost | None:
        """Find the host owned by the consumer with the given UID."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PhysicalHostRecord)
                .where(PhysicalHostRecord.consumer_uid == uid)
                .order_by(PhysicalHostRecord.name)
            )
            record = result.scalars().first()
            return record_to_host(record) if record else None

    async def create(self, host: PhysicalHost) -> PhysicalHost:
        """Store a new host.

        Raises:
            HostAlreadyExistsError: If a host with the same name exists
        """
        record = PhysicalHostRecord(
            name=host.name,
            namespace=host.namespace,
            created_at=to_db_time(host.created_at or utcnow()),
            version=1,
            **host_to_values(host),
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
        except IntegrityError as e:
            raise HostAlreadyExistsError(f"Host {host.key} already exists") from e

        logger.info(f"Created host {host.key} (state={HostState(host.state).label})")
        return record_to_host(record)

    async def update(
        self,
        host: PhysicalHost,
        log: StateLogEntry | None = None,
    ) -> PhysicalHost:
        """Conditionally update a host.

        The write only succeeds if the stored version still equals
        ``host.version``.

        Args:
            host: Host carrying the version it was read at
            log: Optional state transition to record in the same transaction

        Returns:
            The host as stored, with its new version

        Raises:
            ConflictError: If the host changed since it was read
            HostNotFoundError: If the host no longer exists
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(PhysicalHostRecord)
                    .where(
                        PhysicalHostRecord.namespace == host.namespace,
                        PhysicalHostRecord.name == host.name,
                        PhysicalHostRecord.version == host.version,
                    )
                    .values(version=PhysicalHostRecord.version + 1, **host_to_values(host))
                    .execution_options(synchronize_session=False)
                )

                host_id = (
                    await session.execute(
                        select(PhysicalHostRecord.id).where(
                            PhysicalHostRecord.namespace == host.namespace,
                            PhysicalHostRecord.name == host.name,
                        )
                    )
                ).scalar_one_or_none()

                if result.rowcount == 0:
                    if host_id is None:
                        raise HostNotFoundError(host.key)
                    raise ConflictError(host.key, host.version)

                if log is not None:
                    session.add(
                        HostStateLog(
                            host_id=host_id,
                            from_state=HostState(log.from_state).value,
                            to_state=HostState(log.to_state).value,
                            triggered_by=log.triggered_by,
                            comment=log.comment,
                            metadata_json=json.dumps(log.metadata) if log.metadata else None,
                            created_at=to_db_time(log.created_at or utcnow()),
                        )
                    )

        return host.model_copy(update={"version": host.version + 1})

    async def mark_for_deletion(
        self, name: str, namespace: str = "default"
    ) -> PhysicalHost:
        """Set the deletion marker on a host (idempotent)."""
        host = await self.get(name, namespace)
        if host.is_marked_for_deletion:
            return host
        host.deletion_timestamp = utcnow()
        updated = await self.update(host)
        logger.info(f"Host {host.key} marked for deletion")
        return updated

    async def delete(self, host: PhysicalHost) -> None:
        """Delete a host record.

        Raises:
            HostInUseError: If the host still has a consumer
            ConflictError: If the host changed since it was read
        """
        if host.consumer_ref is not None:
            raise HostInUseError(
                f"Host {host.key} is still claimed by {host.consumer_ref.name}"
            )

        async with self._session_factory() as session:
            async with session.begin():
                host_id = await session.scalar(
                    select(PhysicalHostRecord.id).where(
                        PhysicalHostRecord.namespace == host.namespace,
                        PhysicalHostRecord.name == host.name,
                        PhysicalHostRecord.version == host.version,
                        PhysicalHostRecord.consumer_uid.is_(None),
                    )
                )
                if host_id is None:
                    raise ConflictError(host.key, host.version)

                # Bulk deletes bypass the ORM cascade
                await session.execute(
                    delete(HostStateLog)
                    .where(HostStateLog.host_id == host_id)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(
                    delete(PhysicalHostRecord)
                    .where(
                        PhysicalHostRecord.id == host_id,
                        PhysicalHostRecord.version == host.version,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise ConflictError(host.key, host.version)

        logger.info(f"Deleted host {host.key}")

    async def history(
        self, name: str, namespace: str = "default", limit: int = 50
    ) -> list[StateLogEntry]:
        """Get the most recent state transitions of a host, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(HostStateLog)
                .join(PhysicalHostRecord)
                .where(
                    PhysicalHostRecord.namespace == namespace,
                    PhysicalHostRecord.name == name,
                )
                .order_by(HostStateLog.created_at.desc(), HostStateLog.id)
                .limit(limit)
            )
            return [
                StateLogEntry(
                    from_state=HostState(entry.from_state),
                    to_state=HostState(entry.to_state),
                    triggered_by=entry.triggered_by,
                    comment=entry.comment,
                    metadata=json.loads(entry.metadata_json) if entry.metadata_json else None,
                    created_at=from_db_time(entry.created_at),
                )
                for entry in result.scalars().all()
            ]
