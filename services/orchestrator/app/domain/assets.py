"""Genesis, per-node configuration and key material generation.

Everything here is pure: the generator returns in-memory structures and never touches the
filesystem or spawns processes. Writing the assets out is done by
``persistence.layout.write_network``.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Iterator, Literal

import structlog

from ..config import NetworkSettings
from .crypto import KeyPair, KeyScheme, KeySource, generate_keypair
from .errors import AssetGenerationError
from .types import AccountEntry, ChainSpec, ConsensusTiming, NodeConfig

logger = structlog.get_logger(__name__)

_TIMING_FIELDS = {f.name for f in fields(ConsensusTiming)}


@dataclass
class AssetOverrides:
    """Operator-supplied partial configuration; every field is optional."""

    chain_name: str | None = None
    protocol_version: str | None = None
    validator_count: int | None = None
    validator_slots: int | None = None
    accounts: list[str] = field(default_factory=list)
    balances: dict[str, int] = field(default_factory=dict)
    node_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    timing: dict[str, Any] = field(default_factory=dict)
    key_scheme: Literal["ed25519", "secp256k1", "mixed"] | None = None
    seed: int | None = None


@dataclass(frozen=True)
class NodeAssets:
    config: NodeConfig
    keypair: KeyPair

    @property
    def node_id(self) -> str:
        return self.config.node_id


@dataclass(frozen=True)
class NetworkAssets:
    chainspec: ChainSpec
    nodes: tuple[NodeAssets, ...]
    seed: int | None

    @property
    def ledger(self) -> dict[str, int]:
        return self.chainspec.balances()

    def node(self, node_id: str) -> NodeAssets:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        raise KeyError(node_id)

    def all_keypairs(self) -> list[KeyPair]:
        return [account.keypair for account in self.chainspec.accounts]


def node_names() -> Iterator[str]:
    """Yield ``Node_A`` … ``Node_Z``, ``Node_AA``, ``Node_AB`` …"""
    letters = [0]
    while True:
        yield "Node_" + "".join(chr(ord("A") + value) for value in letters)
        position = len(letters) - 1
        while position >= 0:
            if letters[position] < 25:
                letters[position] += 1
                break
            letters[position] = 0
            position -= 1
        else:
            letters.insert(0, 0)


def _scheme(name: str | None) -> KeyScheme | None:
    if name in (None, "mixed"):
        return None
    return KeyScheme(name)


def _validate(size: int, overrides: AssetOverrides, node_ids: list[str], validator_count: int) -> None:
    if size < 1:
        raise AssetGenerationError(f"Network size must be at least 1, got {size}", operation="generate_assets")
    if not 1 <= validator_count <= size:
        raise AssetGenerationError(
            f"Validator count {validator_count} must be between 1 and the network size {size}",
            operation="generate_assets",
        )
    seen: set[str] = set()
    for name in overrides.accounts:
        if not name:
            raise AssetGenerationError("Account names must be non-empty", operation="generate_assets")
        if name in seen:
            raise AssetGenerationError(f"Account {name!r} is declared twice", operation="generate_assets")
        if name in node_ids:
            raise AssetGenerationError(
                f"Account {name!r} collides with a node identity", operation="generate_assets"
            )
        seen.add(name)
    known = seen | set(node_ids)
    for name, amount in overrides.balances.items():
        if name not in known:
            raise AssetGenerationError(
                f"Balance references account {name!r} which has no matching key", operation="generate_assets"
            )
        if amount < 0:
            raise AssetGenerationError(f"Balance for {name!r} is negative", operation="generate_assets")
    unknown_nodes = sorted(set(overrides.node_overrides) - set(node_ids))
    if unknown_nodes:
        raise AssetGenerationError(
            f"Node overrides reference unknown nodes: {unknown_nodes}", operation="generate_assets"
        )
    unknown_timing = sorted(set(overrides.timing) - _TIMING_FIELDS)
    if unknown_timing:
        raise AssetGenerationError(f"Unknown consensus timing fields: {unknown_timing}", operation="generate_assets")
    if overrides.validator_slots is not None and overrides.validator_slots < validator_count:
        raise AssetGenerationError(
            f"Validator slots ({overrides.validator_slots}) cannot hold {validator_count} validators",
            operation="generate_assets",
        )


def generate_assets(
    size: int | None = None,
    overrides: AssetOverrides | None = None,
    settings: NetworkSettings | None = None,
) -> NetworkAssets:
    """Produce the chainspec, per-node configs and keypairs, and the balance ledger."""
    settings = settings or NetworkSettings()
    overrides = overrides or AssetOverrides()
    size = settings.size if size is None else size

    names = node_names()
    node_ids = [next(names) for _ in range(max(size, 0))]
    if overrides.validator_count is not None:
        validator_count = overrides.validator_count
    elif settings.validator_count is not None:
        validator_count = min(settings.validator_count, size)
    else:
        validator_count = size
    _validate(size, overrides, node_ids, validator_count)

    seed = overrides.seed if overrides.seed is not None else settings.seed
    source = KeySource(seed)
    scheme = _scheme(overrides.key_scheme or settings.key_scheme)

    known_addresses = tuple(f"{settings.host}:{settings.base_bind_port + index}" for index in range(size))
    node_overrides = {**settings.node_overrides, **overrides.node_overrides}

    nodes: list[NodeAssets] = []
    accounts: list[AccountEntry] = []
    for index, node_id in enumerate(node_ids):
        validator = index < validator_count
        config = NodeConfig(
            node_id=node_id,
            index=index,
            host=settings.host,
            bind_port=settings.base_bind_port + index,
            rpc_port=settings.base_rpc_port + index,
            rest_port=settings.base_rest_port + index,
            speculative_port=settings.base_speculative_port + index,
            event_stream_port=settings.base_event_stream_port + index,
            known_addresses=known_addresses,
            validator=validator,
            overrides=dict(node_overrides.get(node_id, {})),
        )
        keypair = generate_keypair(node_id, source, scheme)
        nodes.append(NodeAssets(config=config, keypair=keypair))
        accounts.append(
            AccountEntry(
                name=node_id,
                keypair=keypair,
                balance=overrides.balances.get(node_id, settings.default_balance),
                bonded_amount=settings.validator_bond if validator else None,
            )
        )

    for name in overrides.accounts:
        accounts.append(
            AccountEntry(
                name=name,
                keypair=generate_keypair(f"account:{name}", source, scheme),
                balance=overrides.balances.get(name, 0),
            )
        )

    public_keys = [account.keypair.public_key_hex for account in accounts]
    if len(set(public_keys)) != len(public_keys):
        raise AssetGenerationError("Generated keypairs are not pairwise distinct", operation="generate_assets")

    chainspec = ChainSpec(
        chain_name=overrides.chain_name or settings.chain_name,
        protocol_version=overrides.protocol_version or settings.protocol_version,
        genesis_delay_ms=settings.genesis_delay_ms,
        validator_slots=overrides.validator_slots or max(100, validator_count),
        timing=ConsensusTiming(**overrides.timing),
        accounts=tuple(accounts),
    )
    logger.debug(
        "assets.generated",
        nodes=size,
        validators=validator_count,
        accounts=len(overrides.accounts),
        deterministic=source.deterministic,
    )
    return NetworkAssets(chainspec=chainspec, nodes=tuple(nodes), seed=seed)


__all__ = ["AssetOverrides", "NodeAssets", "NetworkAssets", "generate_assets", "node_names"]
