"""Application configuration using Pydantic settings."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecuritySettings(BaseModel):
    oidc_issuer_url: str | None = None
    oidc_audience: str | None = None
    role_claim: str = "roles"
    operator_role: str = "operator"


class NetworkSettings(BaseModel):
    size: int = Field(default=4, ge=1)
    validator_count: int | None = Field(default=None, ge=0)
    node_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)
    seed: int | None = Field(default=None, description="Deterministic key generation seed")
    key_scheme: Literal["ed25519", "secp256k1", "mixed"] = "mixed"
    chain_name: str = "casper-net-1"
    protocol_version: str = "1.0.0"
    genesis_delay_ms: int = 1_000
    host: str = "127.0.0.1"
    base_bind_port: int = 34_000
    base_rpc_port: int = 7_777
    base_speculative_port: int = 6_666
    base_rest_port: int = 8_888
    base_event_stream_port: int = 9_999
    default_balance: int = 1_000_000_000_000_000_000_000_000_000
    validator_bond: int = 500_000_000_000_000
    workdir_root: Path | None = Field(
        default=None,
        description="Parent directory for network working directories (temporary directory when unset)",
    )


class ProvisioningSettings(BaseModel):
    source: Literal["local", "revision", "remote", "path"] = "local"
    local_path: Path = Path("../casper-node")
    compile: bool = True
    revision: str | None = None
    repo_url: str = "https://github.com/casper-network/casper-node.git"
    remote_url: str | None = None
    remote_sha256: str | None = None
    artifact_path: Path | None = None
    verify_checksums: bool = True
    fetch_retries: int = Field(default=3, ge=1)
    fetch_backoff_s: float = Field(default=0.5, ge=0)
    fetch_timeout_s: float = 120.0
    cache_dir: Path = Path.home() / ".cache" / "testnet-orchestrator"
    build_command: list[str] = Field(default_factory=lambda: ["cargo", "build", "--release", "-p", "casper-node"])
    binary_relpath: str = "target/release/casper-node"
    config_template_relpath: str = "resources/local/config.toml"
    chainspec_template_relpath: str = "resources/local/chainspec.toml.in"


class ReadinessSettings(BaseModel):
    kind: Literal["log-marker", "http-status"] = "http-status"
    log_pattern: str = r"Node is ready|finished joining"
    status_path: str = "/status"
    probe_interval_s: float = 0.5
    probe_max_interval_s: float = 4.0


class SupervisorSettings(BaseModel):
    startup_timeout_s: float = Field(default=30.0, gt=0)
    stop_grace_s: float = Field(default=10.0, ge=0)
    upgrade_concurrency: int = Field(default=1, ge=1)
    readiness: ReadinessSettings = ReadinessSettings()
    readiness_by_version: dict[str, ReadinessSettings] = Field(default_factory=dict)
    crash_tail_lines: int = 20


class MonitoringSettings(BaseModel):
    log_retention_lines: int = Field(default=5_000, ge=1)
    sample_interval_s: float = Field(default=1.0, gt=0)
    sample_retention: int = Field(default=600, ge=1)
    subscriber_queue_size: int = 1_000
    log_flush_lines: int = Field(default=200, ge=1)
    log_flush_interval_s: float = Field(default=0.25, gt=0)


class ObservabilitySettings(BaseModel):
    otel_service_name: str = "testnet-orchestrator"
    otel_exporter_otlp_endpoint: str | None = None
    log_level: str = "INFO"
    log_json: bool = False


class StorageSettings(BaseModel):
    database_url: str = Field(
        default="sqlite+aiosqlite:///./testnet.db",
        description="SQLAlchemy async database URL for deploy and audit records",
    )
    export_dir: Path = Path("./.exports")
    s3_endpoint: str | None = None
    s3_region: str | None = None
    s3_bucket: str | None = None


class OrchestratorSettings(BaseSettings):
    security: SecuritySettings = SecuritySettings()
    network: NetworkSettings = NetworkSettings()
    provisioning: ProvisioningSettings = ProvisioningSettings()
    supervisor: SupervisorSettings = SupervisorSettings()
    monitoring: MonitoringSettings = MonitoringSettings()
    observability: ObservabilitySettings = ObservabilitySettings()
    storage: StorageSettings = StorageSettings()
    api_host: str = "127.0.0.1"
    api_port: int = 6_532
    environment: Literal["dev", "ci"] | str = "dev"

    model_config = SettingsConfigDict(env_nested_delimiter="__", env_prefix="TESTNET_", case_sensitive=False)


@lru_cache(maxsize=1)
def get_settings(**kwargs: Any) -> OrchestratorSettings:
    """Return cached settings instance."""
    return OrchestratorSettings(**kwargs)


__all__ = ["OrchestratorSettings", "get_settings"]
