"""Application settings using Pydantic."""
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database settings."""
    url: str = "sqlite+aiosqlite:///./data/metalclaim.db"
    echo: bool = False  # Log SQL statements


class QueueSettings(BaseSettings):
    """Provisioning queue settings.

    BMC firmware commonly fails or hangs under concurrent or rapid requests,
    so both the number of in-flight operations and the idle gap between
    operations on one management address are bounded.
    """
    max_concurrent_ops: int = 5
    max_queue_size: int = 50
    num_workers: int = 3
    bmc_cooldown_seconds: float = 10.0
    operation_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    permit_poll_interval_seconds: float = 0.1
    result_timeout_seconds: float = 600.0
    stop_grace_period_seconds: float = 30.0
    # Finished requests kept for status lookups
    finished_history_size: int = 100


class ClaimSettings(BaseSettings):
    """Host claim settings."""
    # Conditional update attempts inside the transition guard
    guard_max_attempts: int = 3
    guard_backoff_seconds: float = 0.1

    # Suggested retry delays returned to reconcilers
    no_hosts_retry_after_seconds: float = 60.0
    exhausted_retry_after_seconds: float = 5.0
    error_retry_after_seconds: float = 30.0


class PrioritySettings(BaseSettings):
    """Leader claim queue priority policy.

    score = base + per_minute * machine age in minutes
            + simplicity_bonus (request has no required/preferred tags)
    """
    base: int = 100
    per_minute: int = 1
    simplicity_bonus: int = 50


class LeaderElectionSettings(BaseSettings):
    """Leader election settings for the claim coordinator."""
    enabled: bool = False
    identity: str | None = None  # Defaults to hostname + random suffix
    lease_name: str = "metalclaim-claim-coordinator-leader"
    lease_duration_seconds: float = 15.0
    renew_deadline_seconds: float = 10.0
    retry_period_seconds: float = 2.0
    processing_interval_seconds: float = 1.0
    claim_wait_timeout_seconds: float = 30.0
    max_claim_retries: int = 3
    priority: PrioritySettings = Field(default_factory=PrioritySettings)


class RecoverySettings(BaseSettings):
    """Stuck state recovery settings."""
    enabled: bool = True
    scan_interval_seconds: int = 60

    # Time a host may stay in a transient state before recovery kicks in
    enrolling_timeout_minutes: int = 15
    provisioning_timeout_minutes: int = 60
    deprovisioning_timeout_minutes: int = 30
    claimed_timeout_minutes: int = 120
    unknown_timeout_minutes: int = 10


class RedfishSettings(BaseSettings):
    """Redfish (BMC) client settings."""
    timeout: float = 30.0
    insecure_skip_verify: bool = False

    # Mounted secret layout: <credentials_dir>/<secret ref>/{username,password}
    credentials_dir: Path = Path("/etc/metalclaim/credentials")


class Settings(BaseSettings):
    """Main application settings."""
    model_config = SettingsConfigDict(
        env_prefix="METALCLAIM_",
        env_nested_delimiter="__",
    )

    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    # Namespace hosts are enrolled into when none is given
    default_namespace: str = "default"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    claims: ClaimSettings = Field(default_factory=ClaimSettings)
    leader_election: LeaderElectionSettings = Field(
        default_factory=LeaderElectionSettings
    )
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    redfish: RedfishSettings = Field(default_factory=RedfishSettings)

    @property
    def uses_leader_election(self) -> bool:
        """Check if claims are coordinated through an elected leader."""
        return self.leader_election.enabled


settings = Settings()
