"""Command-line interface for the testnet orchestrator.

Usage:
    testnet run-network --size 4 --account A    # define, start and serve the web API
    testnet stop-node Node_B                    # stop one node of the served network
    testnet upgrade-node Node_A --revision v2   # swap a node onto another binary
    testnet add-deploy Node_A --signer A --recipient Node_B --amount 100
    testnet network-status

Every command other than ``run-network`` talks to the web API served by ``run-network``.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Sequence

import httpx
import structlog
import uvicorn

from .config import get_settings
from .domain.assets import AssetOverrides
from .domain.errors import OrchestratorError
from .domain.orchestrator import NetworkOrchestrator, NetworkRequest
from .domain.types import BinarySource, LocalBuild, PrebuiltPath, RemoteArtifact, RevisionBuild
from .observability.logging import configure_logging

logger = structlog.get_logger(__name__)


class CommandFailed(Exception):
    """An API call or engine operation failed; the message goes to stderr."""


def source_from_args(args: argparse.Namespace) -> BinarySource | None:
    if getattr(args, "revision", None):
        return RevisionBuild(revision=args.revision, repo_url=args.repo_url or get_settings().provisioning.repo_url)
    if getattr(args, "remote_url", None):
        return RemoteArtifact(url=args.remote_url, sha256=args.sha256)
    if getattr(args, "binary", None):
        return PrebuiltPath(path=Path(args.binary))
    if getattr(args, "local_path", None):
        return LocalBuild(project_path=Path(args.local_path), compile=not args.no_compile)
    return None


def source_payload(source: BinarySource) -> dict[str, Any]:
    if isinstance(source, RevisionBuild):
        return {"kind": "revision", "revision": source.revision, "repoUrl": source.repo_url}
    if isinstance(source, RemoteArtifact):
        return {"kind": "remote", "url": source.url, "sha256": source.sha256}
    if isinstance(source, PrebuiltPath):
        return {"kind": "path", "path": str(source.path)}
    return {"kind": "local", "projectPath": str(source.project_path), "compile": source.compile}


def request_from_args(args: argparse.Namespace) -> NetworkRequest:
    return NetworkRequest(
        size=args.size,
        name=args.name,
        workdir=Path(args.workdir) if args.workdir else None,
        source=source_from_args(args),
        overrides=AssetOverrides(
            chain_name=args.chain_name,
            validator_count=args.validators,
            accounts=list(args.account or []),
            seed=args.seed,
        ),
    )


async def _serve(args: argparse.Namespace) -> None:
    # Deferred so that settings and logging are configured before the app module builds its state.
    from .api.deps import set_orchestrator
    from .main import app

    settings = get_settings()
    orchestrator = NetworkOrchestrator(settings)
    set_orchestrator(orchestrator)
    try:
        topology = await orchestrator.run_network(request_from_args(args))
        print(json.dumps(topology.describe(), indent=2, default=str))
        server = uvicorn.Server(
            uvicorn.Config(app, host=args.host or settings.api_host, port=args.port or settings.api_port, log_config=None)
        )
        serve_task = asyncio.create_task(server.serve())
        shutdown_task = asyncio.create_task(app.state.shutdown_event.wait())
        try:
            await asyncio.wait({serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            server.should_exit = True
            shutdown_task.cancel()
            await serve_task
    finally:
        if orchestrator.defined:
            await orchestrator.teardown()
        set_orchestrator(None)


def cmd_run_network(args: argparse.Namespace) -> None:
    """Boot the network and serve the web API until interrupted or shut down."""
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
    except OrchestratorError as exc:
        raise CommandFailed(f"{exc.message} ({exc.remediation})") from exc


def _call(args: argparse.Namespace, method: str, path: str, **kwargs: Any) -> Any:
    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    try:
        with httpx.Client(base_url=args.api_url, timeout=args.timeout, headers=headers) as client:
            response = client.request(method, path, **kwargs)
    except httpx.HTTPError as exc:
        raise CommandFailed(f"Cannot reach the orchestrator at {args.api_url}: {exc}") from exc
    if response.is_error:
        try:
            body = response.json()
        except ValueError:
            raise CommandFailed(f"HTTP {response.status_code}: {response.text}") from None
        message = body.get("message") or body.get("detail") or response.text
        remediation = body.get("remediation")
        raise CommandFailed(f"{message} ({remediation})" if remediation else str(message))
    return response.json()


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_stop_node(args: argparse.Namespace) -> None:
    _emit(_call(args, "POST", f"/network/nodes/{args.node_id}/stop"))


def cmd_restart_node(args: argparse.Namespace) -> None:
    _emit(_call(args, "POST", f"/network/nodes/{args.node_id}/restart"))


def cmd_upgrade_node(args: argparse.Namespace) -> None:
    source = source_from_args(args)
    if source is None:
        raise CommandFailed("upgrade-node needs one of --revision, --remote-url, --binary or --local-path")
    _emit(_call(args, "POST", f"/network/nodes/{args.node_id}/upgrade", json={"source": source_payload(source)}))


def cmd_add_deploy(args: argparse.Namespace) -> None:
    body: dict[str, Any] = {"targetNode": args.node_id, "signer": args.signer}
    if args.session:
        body["session"] = json.loads(Path(args.session).read_text())
    else:
        body.update(amount=args.amount, recipient=args.recipient, transferId=args.transfer_id)
    _emit(_call(args, "POST", "/network/deploys", json=body))


def cmd_export_logs(args: argparse.Namespace) -> None:
    params = {"nodeId": args.node_id} if args.node_id else None
    _emit(_call(args, "POST", "/network/logs/export", params=params))


def cmd_network_status(args: argparse.Namespace) -> None:
    _emit(_call(args, "GET", "/network/status"))


def _add_source_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--revision", help="Build the node from this git revision")
    group.add_argument("--remote-url", help="Download a prebuilt node archive")
    group.add_argument("--binary", help="Use an existing node executable")
    group.add_argument("--local-path", help="Build from a local checkout")
    parser.add_argument("--repo-url", help="Repository to clone for --revision")
    parser.add_argument("--sha256", help="Expected checksum for --remote-url")
    parser.add_argument("--no-compile", action="store_true", help="Skip the build step for --local-path")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testnet",
        description="Provision and operate a local multi-node test network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    settings = get_settings()
    parser.add_argument(
        "--api-url",
        default=f"http://{settings.api_host}:{settings.api_port}",
        help="Web API of a running orchestrator",
    )
    parser.add_argument("--token", help="Bearer token for the operator role")
    parser.add_argument("--timeout", type=float, default=300.0, help="Request timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run-network", help="Define and start a network, then serve the API")
    run_parser.add_argument("--size", type=int, help="Number of nodes")
    run_parser.add_argument("--validators", type=int, help="Number of genesis validators")
    run_parser.add_argument("--account", action="append", help="Extra funded account name (repeatable)")
    run_parser.add_argument("--chain-name", help="Chain name written to the chainspec")
    run_parser.add_argument("--seed", type=int, help="Seed for deterministic keys")
    run_parser.add_argument("--name", help="Network name")
    run_parser.add_argument("--workdir", help="Empty directory for node assets")
    run_parser.add_argument("--host", help="API bind host")
    run_parser.add_argument("--port", type=int, help="API bind port")
    _add_source_options(run_parser)
    run_parser.set_defaults(handler=cmd_run_network)

    for name, handler, summary in (
        ("stop-node", cmd_stop_node, "Stop a node"),
        ("restart-node", cmd_restart_node, "Restart a node"),
    ):
        node_parser = subparsers.add_parser(name, help=summary)
        node_parser.add_argument("node_id")
        node_parser.set_defaults(handler=handler)

    upgrade_parser = subparsers.add_parser("upgrade-node", help="Replace a running node's binary")
    upgrade_parser.add_argument("node_id")
    _add_source_options(upgrade_parser)
    upgrade_parser.set_defaults(handler=cmd_upgrade_node)

    deploy_parser = subparsers.add_parser("add-deploy", help="Sign and submit a deploy to a node")
    deploy_parser.add_argument("node_id", help="Target node")
    deploy_parser.add_argument("--signer", required=True, help="Signing account name")
    deploy_parser.add_argument("--recipient", help="Receiving account name for a transfer")
    deploy_parser.add_argument("--amount", type=int, help="Transfer amount in motes")
    deploy_parser.add_argument("--transfer-id", type=int, help="Optional transfer id")
    deploy_parser.add_argument("--session", help="JSON file holding a raw session item")
    deploy_parser.set_defaults(handler=cmd_add_deploy)

    export_parser = subparsers.add_parser("export-logs", help="Export retained logs and metrics")
    export_parser.add_argument("--node-id", help="Only this node")
    export_parser.set_defaults(handler=cmd_export_logs)

    status_parser = subparsers.add_parser("network-status", help="Show per-node status")
    status_parser.set_defaults(handler=cmd_network_status)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "add-deploy" and not args.session and (args.amount is None or not args.recipient):
        parser.error("add-deploy needs --amount and --recipient, or --session")
    try:
        args.handler(args)
    except CommandFailed as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


__all__ = ["main", "build_parser", "request_from_args", "source_from_args", "source_payload"]


if __name__ == "__main__":
    sys.exit(main())
