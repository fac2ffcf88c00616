"""Request payloads for the web API."""
from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from ..config import get_settings
from ..domain.assets import AssetOverrides
from ..domain.orchestrator import NetworkRequest
from ..domain.types import BinarySource, LocalBuild, PrebuiltPath, RemoteArtifact, RevisionBuild


class LocalSourcePayload(BaseModel):
    kind: Literal["local"] = "local"
    project_path: Path | None = Field(default=None, alias="projectPath")
    compile: bool = True

    model_config = ConfigDict(populate_by_name=True)

    def to_source(self) -> BinarySource:
        return LocalBuild(project_path=self.project_path or get_settings().provisioning.local_path, compile=self.compile)


class RevisionSourcePayload(BaseModel):
    kind: Literal["revision"]
    revision: str = Field(min_length=1)
    repo_url: str | None = Field(default=None, alias="repoUrl")

    model_config = ConfigDict(populate_by_name=True)

    def to_source(self) -> BinarySource:
        return RevisionBuild(revision=self.revision, repo_url=self.repo_url or get_settings().provisioning.repo_url)


class RemoteSourcePayload(BaseModel):
    kind: Literal["remote"]
    url: str = Field(min_length=1)
    sha256: str | None = None
    version: str | None = None

    def to_source(self) -> BinarySource:
        return RemoteArtifact(url=self.url, sha256=self.sha256, version=self.version)


class PathSourcePayload(BaseModel):
    kind: Literal["path"]
    path: Path

    def to_source(self) -> BinarySource:
        return PrebuiltPath(path=self.path)


SourcePayload = Annotated[
    Union[LocalSourcePayload, RevisionSourcePayload, RemoteSourcePayload, PathSourcePayload],
    Field(discriminator="kind"),
]


class NetworkCreateRequest(BaseModel):
    size: int | None = Field(default=None, ge=1)
    name: str | None = None
    validator_count: int | None = Field(default=None, alias="validatorCount")
    validator_slots: int | None = Field(default=None, alias="validatorSlots")
    chain_name: str | None = Field(default=None, alias="chainName")
    protocol_version: str | None = Field(default=None, alias="protocolVersion")
    accounts: list[str] = Field(default_factory=list)
    balances: dict[str, int] = Field(default_factory=dict)
    node_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict, alias="nodeOverrides")
    timing: dict[str, Any] = Field(default_factory=dict)
    key_scheme: Literal["ed25519", "secp256k1", "mixed"] | None = Field(default=None, alias="keyScheme")
    seed: int | None = None
    source: SourcePayload | None = None
    start: bool = True

    model_config = ConfigDict(populate_by_name=True)

    def to_request(self) -> NetworkRequest:
        return NetworkRequest(
            size=self.size,
            name=self.name,
            start=self.start,
            source=self.source.to_source() if self.source else None,
            overrides=AssetOverrides(
                chain_name=self.chain_name,
                protocol_version=self.protocol_version,
                validator_count=self.validator_count,
                validator_slots=self.validator_slots,
                accounts=list(self.accounts),
                balances=dict(self.balances),
                node_overrides=dict(self.node_overrides),
                timing=dict(self.timing),
                key_scheme=self.key_scheme,
                seed=self.seed,
            ),
        )


class UpgradeRequest(BaseModel):
    source: SourcePayload
    node_ids: list[str] | None = Field(default=None, alias="nodeIds")

    model_config = ConfigDict(populate_by_name=True)


class NodeUpgradeRequest(BaseModel):
    source: SourcePayload


class DeployCreateRequest(BaseModel):
    target_node: str = Field(alias="targetNode")
    signer: str = Field(description="Account name whose key signs the deploy")
    amount: int | None = Field(default=None, gt=0, description="Transfer amount in motes")
    recipient: str | None = Field(default=None, description="Receiving account name for transfers")
    transfer_id: int | None = Field(default=None, alias="transferId", ge=0)
    session: dict[str, Any] | None = Field(default=None, description="Raw session item instead of a transfer")
    payment: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "SourcePayload",
    "LocalSourcePayload",
    "RevisionSourcePayload",
    "RemoteSourcePayload",
    "PathSourcePayload",
    "NetworkCreateRequest",
    "UpgradeRequest",
    "NodeUpgradeRequest",
    "DeployCreateRequest",
]
