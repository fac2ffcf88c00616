import json
from itertools import islice
from pathlib import Path

import httpx
import pytest

from services.orchestrator.app import cli
from services.orchestrator.app.domain.assets import node_names
from services.orchestrator.app.domain.types import PrebuiltPath, RevisionBuild


@pytest.fixture
def api(monkeypatch):
    """Route the CLI's HTTP calls to a handler instead of a live orchestrator."""
    calls = []
    responses = {}
    real_client = httpx.Client

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return responses.get((request.method, request.url.path), httpx.Response(200, json={"ok": True}))

    monkeypatch.setattr(cli.httpx, "Client", lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs))
    return calls, responses


def test_run_network_arguments_build_the_request():
    args = cli.build_parser().parse_args(
        ["run-network", "--size", "5", "--validators", "3", "--seed", "9", "--account", "faucet", "--binary", "/opt/node"]
    )
    request = cli.request_from_args(args)

    assert request.size == 5
    assert request.overrides.validator_count == 3
    assert request.overrides.seed == 9
    assert request.overrides.accounts == ["faucet"]
    assert request.source == PrebuiltPath(Path("/opt/node"))


def test_source_payload_matches_the_api_schema():
    payload = cli.source_payload(RevisionBuild(revision="v1.5.0", repo_url="https://git.test/node.git"))
    assert payload == {"kind": "revision", "revision": "v1.5.0", "repoUrl": "https://git.test/node.git"}


def test_stop_node_calls_the_api(api, capsys):
    calls, responses = api
    responses[("POST", "/network/nodes/Node_B/stop")] = httpx.Response(200, json={"nodeId": "Node_B", "state": "Stopped"})

    assert cli.main(["stop-node", "Node_B"]) == 0

    assert calls[0].method == "POST"
    assert json.loads(capsys.readouterr().out)["state"] == "Stopped"


def test_engine_errors_exit_non_zero(api, capsys):
    calls, responses = api
    responses[("POST", "/network/nodes/Node_A/restart")] = httpx.Response(
        409,
        json={
            "error": "NetworkStateError",
            "message": "Cannot restart a node in Provisioned",
            "remediation": "Query the network status",
        },
    )

    assert cli.main(["restart-node", "Node_A"]) == 1
    err = capsys.readouterr().err
    assert "Cannot restart a node in Provisioned" in err
    assert "Query the network status" in err


def test_add_deploy_sends_a_transfer(api):
    calls, _ = api

    assert cli.main(["add-deploy", "Node_A", "--signer", "faucet", "--recipient", "user-1", "--amount", "50"]) == 0

    body = json.loads(calls[0].content)
    assert body == {"targetNode": "Node_A", "signer": "faucet", "amount": 50, "recipient": "user-1", "transferId": None}


def test_upgrade_node_requires_a_source(capsys):
    assert cli.main(["upgrade-node", "Node_A"]) == 1
    assert "needs one of" in capsys.readouterr().err


def test_unreachable_api_exits_non_zero(capsys):
    assert cli.main(["--api-url", "http://127.0.0.1:9", "--timeout", "2", "network-status"]) == 1
    assert "Cannot reach the orchestrator" in capsys.readouterr().err


def test_usage_errors_exit_with_two():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["add-deploy", "Node_A", "--signer", "faucet"])
    assert excinfo.value.code == 2
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 2


def test_usage_examples_parse_and_name_generated_nodes():
    examples = [
        line.split("#")[0].split()[1:]
        for line in cli.__doc__.splitlines()
        if line.strip().startswith("testnet ")
    ]
    generated = set(islice(node_names(), 4))
    parser = cli.build_parser()

    assert examples
    for argv in examples:
        args = parser.parse_args(argv)
        if getattr(args, "node_id", None):
            assert args.node_id in generated
        if getattr(args, "recipient", None):
            assert args.recipient in generated
