"""On-disk layout of a network working directory.

::

    <workdir>/
        chainspec.toml
        accounts.toml
        accounts/<name>/{secret_key.pem,public_key_hex}
        Node_A/{config.toml,secret_key.pem,public_key_hex,chainspec.toml,accounts.toml,node.log}
        ...
"""
from __future__ import annotations

import copy
import os
import shutil
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog
import tomli_w

from ..domain.assets import NetworkAssets
from ..domain.crypto import KeyPair
from ..domain.errors import AssetGenerationError
from ..domain.types import BinaryArtifact, ChainSpec

logger = structlog.get_logger(__name__)


@dataclass
class NetworkLayout:
    root: Path
    chainspec: Path
    accounts: Path
    node_dirs: dict[str, Path] = field(default_factory=dict)

    def node_dir(self, node_id: str) -> Path:
        return self.node_dirs[node_id]


def read_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as handle:
        return tomllib.load(handle)


def write_toml(path: Path, document: dict[str, Any]) -> None:
    path.write_text(tomli_w.dumps(document), encoding="utf-8")


def set_nested(document: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    """Set ``document[path[0]][path[1]]... = value``, creating tables as needed."""
    table = document
    for key in path[:-1]:
        child = table.get(key)
        if not isinstance(child, dict):
            child = table[key] = {}
        table = child
    table[path[-1]] = value


def deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def activation_point(delay_ms: int, now: datetime | None = None) -> str:
    """RFC 3339 timestamp ``delay_ms`` after ``now`` with millisecond precision."""
    moment = (now or datetime.now(timezone.utc)) + timedelta(milliseconds=delay_ms)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _template(artifact: BinaryArtifact | None, name: str) -> dict[str, Any]:
    path = artifact.template(name) if artifact else None
    if path is None:
        return {}
    try:
        return read_toml(path)
    except tomllib.TOMLDecodeError as exc:
        raise AssetGenerationError(f"Template {path} is not valid TOML", operation="write_network", cause=exc) from exc


def render_chainspec(chainspec: ChainSpec, artifact: BinaryArtifact | None = None) -> dict[str, Any]:
    document = _template(artifact, "chainspec.toml")
    timing = chainspec.timing
    updates: dict[tuple[str, ...], Any] = {
        ("protocol", "version"): chainspec.protocol_version,
        ("protocol", "activation_point"): activation_point(chainspec.genesis_delay_ms),
        ("network", "name"): chainspec.chain_name,
        ("core", "validator_slots"): chainspec.validator_slots,
        ("core", "era_duration"): timing.era_duration,
        ("core", "minimum_era_height"): timing.minimum_era_height,
        ("core", "minimum_block_time"): timing.minimum_block_time,
        ("core", "auction_delay"): timing.auction_delay,
        ("core", "unbonding_delay"): timing.unbonding_delay,
    }
    for path, value in updates.items():
        set_nested(document, path, value)
    return document


def render_accounts(chainspec: ChainSpec) -> dict[str, Any]:
    accounts = []
    for entry in chainspec.accounts:
        account: dict[str, Any] = {"public_key": entry.keypair.public_key_hex, "balance": str(entry.balance)}
        if entry.bonded_amount is not None:
            account["validator"] = {"bonded_amount": str(entry.bonded_amount), "delegation_rate": 0}
        accounts.append(account)
    return {"accounts": accounts}


def _write_keys(directory: Path, keypair: KeyPair) -> None:
    secret = directory / "secret_key.pem"
    secret.write_text(keypair.secret_key_pem(), encoding="ascii")
    secret.chmod(0o600)
    (directory / "public_key_hex").write_text(keypair.public_key_hex, encoding="ascii")


def _link(source: Path, dest: Path) -> None:
    try:
        os.link(source, dest)
    except OSError:
        shutil.copy2(source, dest)


def write_network(workdir: Path, assets: NetworkAssets, artifact: BinaryArtifact | None = None) -> NetworkLayout:
    """Write every generated asset under ``workdir``; nothing is left behind on failure."""
    workdir = Path(workdir)
    if workdir.exists() and any(workdir.iterdir()):
        raise AssetGenerationError(f"Working directory {workdir} is not empty", operation="write_network")
    created = not workdir.exists()
    try:
        workdir.mkdir(parents=True, exist_ok=True)
        layout = NetworkLayout(root=workdir, chainspec=workdir / "chainspec.toml", accounts=workdir / "accounts.toml")
        write_toml(layout.chainspec, render_chainspec(assets.chainspec, artifact))
        write_toml(layout.accounts, render_accounts(assets.chainspec))

        node_ids = {node.node_id for node in assets.nodes}
        for entry in assets.chainspec.accounts:
            if entry.name not in node_ids:
                account_dir = workdir / "accounts" / entry.name
                account_dir.mkdir(parents=True)
                _write_keys(account_dir, entry.keypair)

        config_base = _template(artifact, "config.toml")
        for node in assets.nodes:
            node_dir = workdir / node.node_id
            node_dir.mkdir()
            config = copy.deepcopy(config_base)
            for path, value in node.config.toml_updates().items():
                set_nested(config, path, value)
            config = deep_merge(config, node.config.overrides)
            write_toml(node_dir / "config.toml", config)
            _write_keys(node_dir, node.keypair)
            _link(layout.chainspec, node_dir / "chainspec.toml")
            _link(layout.accounts, node_dir / "accounts.toml")
            layout.node_dirs[node.node_id] = node_dir
    except AssetGenerationError:
        _discard(workdir, created)
        raise
    except (OSError, TypeError, ValueError) as exc:
        _discard(workdir, created)
        raise AssetGenerationError(
            f"Failed to write network assets to {workdir}", operation="write_network", cause=exc
        ) from exc
    logger.info("layout.written", workdir=str(workdir), nodes=len(layout.node_dirs))
    return layout


def _discard(workdir: Path, created: bool) -> None:
    if created:
        shutil.rmtree(workdir, ignore_errors=True)
    elif workdir.exists():
        for child in workdir.iterdir():
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink(missing_ok=True)


__all__ = [
    "NetworkLayout",
    "write_network",
    "render_chainspec",
    "render_accounts",
    "read_toml",
    "write_toml",
    "set_nested",
    "deep_merge",
    "activation_point",
]
