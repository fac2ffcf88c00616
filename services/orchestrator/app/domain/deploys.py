"""Build, sign and submit deploys to a running node's JSON-RPC endpoint."""
from __future__ import annotations

import dataclasses
import json
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from opentelemetry import trace

from .crypto import KeyPair, blake2b_hex
from .errors import NetworkStateError, ProcessError
from .topology import NetworkTopology
from .types import Deploy, DeployOutcome, NodeState

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TTL = "30m"
DEFAULT_GAS_PRICE = 1
DEFAULT_PAYMENT = 100_000_000


def _canonical(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


def cl_u64(value: int) -> dict[str, Any]:
    return {"cl_type": "U64", "bytes": value.to_bytes(8, "little").hex(), "parsed": value}


def cl_u512(value: int) -> dict[str, Any]:
    if value < 0:
        raise ValueError("U512 values are unsigned")
    raw = value.to_bytes((value.bit_length() + 7) // 8, "little") if value else b""
    return {"cl_type": "U512", "bytes": (bytes([len(raw)]) + raw).hex(), "parsed": str(value)}


def cl_public_key(public_key_hex: str) -> dict[str, Any]:
    return {"cl_type": "PublicKey", "bytes": public_key_hex, "parsed": public_key_hex}


def cl_option_u64(value: int | None) -> dict[str, Any]:
    if value is None:
        return {"cl_type": {"Option": "U64"}, "bytes": "00", "parsed": None}
    return {"cl_type": {"Option": "U64"}, "bytes": "01" + value.to_bytes(8, "little").hex(), "parsed": value}


def standard_payment(amount: int = DEFAULT_PAYMENT) -> dict[str, Any]:
    return {"ModuleBytes": {"module_bytes": "", "args": [["amount", cl_u512(amount)]]}}


def transfer_session(amount: int, target_public_key: str, transfer_id: int | None = None) -> dict[str, Any]:
    return {
        "Transfer": {
            "args": [
                ["amount", cl_u512(amount)],
                ["target", cl_public_key(target_public_key)],
                ["id", cl_option_u64(transfer_id)],
            ]
        }
    }


def build_deploy(
    signer: KeyPair,
    session: dict[str, Any],
    *,
    chain_name: str,
    payment: dict[str, Any] | None = None,
    ttl: str = DEFAULT_TTL,
    gas_price: int = DEFAULT_GAS_PRICE,
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    """Return the signed deploy document in the node's RPC shape."""
    payment = payment or standard_payment()
    moment = (timestamp or datetime.now(timezone.utc)).astimezone(timezone.utc)
    header = {
        "account": signer.public_key_hex,
        "timestamp": moment.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "ttl": ttl,
        "gas_price": gas_price,
        "body_hash": blake2b_hex(_canonical({"payment": payment, "session": session})),
        "dependencies": [],
        "chain_name": chain_name,
    }
    deploy_hash = blake2b_hex(_canonical(header))
    return {
        "hash": deploy_hash,
        "header": header,
        "payment": payment,
        "session": session,
        "approvals": [{"signer": signer.public_key_hex, "signature": signer.sign(bytes.fromhex(deploy_hash))}],
    }


def verify_deploy(document: dict[str, Any], signer: KeyPair) -> bool:
    """Check hashes and the signer's approval of a deploy document."""
    body_hash = blake2b_hex(_canonical({"payment": document["payment"], "session": document["session"]}))
    if body_hash != document["header"]["body_hash"]:
        return False
    if blake2b_hex(_canonical(document["header"])) != document["hash"]:
        return False
    message = bytes.fromhex(document["hash"])
    return any(
        approval["signer"] == signer.public_key_hex and signer.verify(message, approval["signature"])
        for approval in document["approvals"]
    )


class DeploySubmitter:
    """Submit signed deploys to Running nodes; outcomes are reported, never interpreted."""

    def __init__(
        self,
        topology: NetworkTopology,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._topology = topology
        self._transport = transport
        self._timeout = timeout

    async def submit(
        self,
        target_node: str,
        session: dict[str, Any],
        signer: KeyPair,
        *,
        signer_name: str | None = None,
        payment: dict[str, Any] | None = None,
    ) -> Deploy:
        record = self._topology.get(target_node)
        if record.state is not NodeState.running:
            raise NetworkStateError(
                f"Deploys require a Running node, {target_node} is {record.state.value}",
                node_id=target_node,
                operation="submit_deploy",
            )
        document = build_deploy(signer, session, chain_name=self._topology.chainspec.chain_name, payment=payment)
        deploy = Deploy(
            deploy_hash=document["hash"],
            target_node=target_node,
            signer=signer_name or signer.owner,
            payload=document,
        )
        request = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": "account_put_deploy",
            "params": {"deploy": document},
        }
        with tracer.start_as_current_span("deploys.submit", attributes={"node_id": target_node}):
            try:
                async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                    response = await client.post(record.config.rpc_endpoint, json=request)
            except httpx.HTTPError as exc:
                raise ProcessError(
                    f"Node RPC endpoint {record.config.rpc_endpoint} unreachable",
                    node_id=target_node,
                    operation="submit_deploy",
                    cause=exc,
                ) from exc
        try:
            body: dict[str, Any] = response.json()
        except ValueError:
            body = {"raw": response.text}
        accepted = response.is_success and "result" in body and "error" not in body
        outcome = DeployOutcome.accepted if accepted else DeployOutcome.rejected
        logger.info(
            "deploys.submitted",
            node_id=target_node,
            deploy_hash=deploy.deploy_hash,
            outcome=outcome.value,
            status_code=response.status_code,
        )
        return dataclasses.replace(deploy, outcome=outcome, response=body, status_code=response.status_code)

    async def transfer(
        self,
        target_node: str,
        source_account: str,
        target_account: str,
        amount: int,
        *,
        transfer_id: int | None = None,
    ) -> Deploy:
        """Transfer ``amount`` between two genesis accounts, signed by the source account."""
        source = self._topology.account(source_account)
        target = self._topology.account(target_account)
        session = transfer_session(amount, target.keypair.public_key_hex, transfer_id)
        return await self.submit(target_node, session, source.keypair, signer_name=source.name)


__all__ = [
    "DeploySubmitter",
    "build_deploy",
    "verify_deploy",
    "transfer_session",
    "standard_payment",
    "cl_u512",
    "cl_u64",
    "cl_public_key",
    "cl_option_u64",
]
