"""SQLAlchemy database models."""
import uuid
from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class PhysicalHostRecord(Base):
    """Stored PhysicalHost.

    ``version`` is bumped by every update; writers must present the version
    they read (compare-and-set), so at most one writer wins per version.
    """

    __tablename__ = "physical_hosts"
    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_physical_hosts_namespace_name"),
        Index("ix_physical_hosts_state", "state"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(253), nullable=False)
    namespace: Mapped[str] = mapped_column(String(63), default="default", nullable=False)
    labels: Mapped[dict] = mapped_column(JSON, default=dict)
    annotations: Mapped[dict] = mapped_column(JSON, default=dict)

    # Redfish connection
    redfish_address: Mapped[str] = mapped_column(String(255), default="", index=True)
    credentials_secret_ref: Mapped[str] = mapped_column(String(255), default="")
    insecure_skip_verify: Mapped[bool] = mapped_column(default=False)

    # Ownership
    consumer_ref: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    consumer_uid: Mapped[str | None] = mapped_column(String(64), index=True)
    boot_iso_source: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Status
    state: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    observed_power_state: Mapped[str | None] = mapped_column(String(20))
    hardware_details: Mapped[dict] = mapped_column(JSON, default=dict)
    conditions: Mapped[list] = mapped_column(JSON, default=list)

    # Timestamps (naive UTC)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )
    deletion_timestamp: Mapped[datetime | None] = mapped_column(nullable=True)

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(default=1, nullable=False)

    state_logs: Mapped[list["HostStateLog"]] = relationship(
        back_populates="host", cascade="all, delete-orphan"
    )


class HostStateLog(Base):
    """Audit log for host state transitions."""

    __tablename__ = "host_state_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    host_id: Mapped[str] = mapped_column(
        ForeignKey("physical_hosts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_state: Mapped[str] = mapped_column(String(20), nullable=False)
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_by: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # claim, release, recovery, provisioner, system
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=func.now())

    host: Mapped[PhysicalHostRecord] = relationship(back_populates="state_logs")


class LeaseRecord(Base):
    """Leader election lease.

    One row per lease name. The holder renews ``renew_time`` periodically;
    other candidates may take the lease over once ``renew_time`` is older than
    ``lease_duration_seconds``. Updates are compare-and-set on ``version``.
    """

    __tablename__ = "leases"

    name: Mapped[str] = mapped_column(String(253), primary_key=True)
    holder_identity: Mapped[str | None] = mapped_column(String(253))
    lease_duration_seconds: Mapped[float] = mapped_column(default=15.0)
    acquire_time: Mapped[datetime | None] = mapped_column(nullable=True)
    renew_time: Mapped[datetime | None] = mapped_column(nullable=True)
    lease_transitions: Mapped[int] = mapped_column(default=0)
    version: Mapped[int] = mapped_column(default=1, nullable=False)
