import os
import stat
from datetime import datetime, timezone

import pytest

from services.orchestrator.app.domain.assets import AssetOverrides, generate_assets
from services.orchestrator.app.domain.crypto import load_keypair
from services.orchestrator.app.domain.errors import AssetGenerationError
from services.orchestrator.app.domain.types import BinaryArtifact
from services.orchestrator.app.persistence.layout import activation_point, read_toml, write_network


@pytest.fixture
def assets():
    return generate_assets(
        3,
        AssetOverrides(
            seed=21,
            validator_count=2,
            accounts=["faucet"],
            balances={"faucet": 5000},
            node_overrides={"Node_B": {"consensus": {"max_execution_delay": 3}}},
        ),
    )


def test_writes_chainspec_accounts_and_node_dirs(tmp_path, assets):
    layout = write_network(tmp_path / "net", assets)

    chainspec = read_toml(layout.chainspec)
    assert chainspec["network"]["name"] == assets.chainspec.chain_name
    assert chainspec["protocol"]["version"] == "1.0.0"
    assert chainspec["core"]["validator_slots"] == 100

    accounts = read_toml(layout.accounts)["accounts"]
    by_key = {entry["public_key"]: entry for entry in accounts}
    faucet = assets.chainspec.account("faucet")
    assert by_key[faucet.keypair.public_key_hex]["balance"] == "5000"
    assert "validator" not in by_key[faucet.keypair.public_key_hex]
    node_a = assets.chainspec.account("Node_A")
    assert by_key[node_a.keypair.public_key_hex]["validator"]["delegation_rate"] == 0
    assert "validator" not in by_key[assets.chainspec.account("Node_C").keypair.public_key_hex]

    assert set(layout.node_dirs) == {"Node_A", "Node_B", "Node_C"}
    faucet_dir = tmp_path / "net" / "accounts" / "faucet"
    assert load_keypair("faucet", (faucet_dir / "secret_key.pem").read_text()) == faucet.keypair


def test_node_directory_contents(tmp_path, assets):
    layout = write_network(tmp_path / "net", assets)
    node_dir = layout.node_dir("Node_B")
    node = assets.node("Node_B")

    config = read_toml(node_dir / "config.toml")
    assert config["network"]["bind_address"] == f"0.0.0.0:{node.config.bind_port}"
    assert config["network"]["known_addresses"] == list(node.config.known_addresses)
    assert config["consensus"] == {"secret_key_path": "secret_key.pem", "max_execution_delay": 3}

    secret = node_dir / "secret_key.pem"
    assert stat.S_IMODE(secret.stat().st_mode) == 0o600
    assert load_keypair("Node_B", secret.read_text()) == node.keypair
    assert (node_dir / "public_key_hex").read_text() == node.keypair.public_key_hex
    assert os.path.samefile(node_dir / "chainspec.toml", layout.chainspec) or (
        (node_dir / "chainspec.toml").read_bytes() == layout.chainspec.read_bytes()
    )


def test_templates_from_the_artifact_are_preserved(tmp_path, assets):
    resources = tmp_path / "resources"
    resources.mkdir()
    (resources / "config.toml").write_text('[logging]\nformat = "json"\n\n[network]\ngossip_interval = "30 seconds"\n')
    (resources / "chainspec.toml").write_text('[deploys]\nmax_ttl = "18 hours"\n\n[protocol]\nversion = "0.0.1"\n')
    binary = resources / "casper-node"
    binary.write_text("")
    artifact = BinaryArtifact(version="v1", source="path", path=binary, sha256="0", resources_dir=resources)

    layout = write_network(tmp_path / "net", assets, artifact)

    config = read_toml(layout.node_dir("Node_A") / "config.toml")
    assert config["logging"]["format"] == "json"
    assert config["network"]["gossip_interval"] == "30 seconds"
    assert "bind_address" in config["network"]
    chainspec = read_toml(layout.chainspec)
    assert chainspec["deploys"]["max_ttl"] == "18 hours"
    assert chainspec["protocol"]["version"] == "1.0.0"


def test_refuses_a_non_empty_workdir(tmp_path, assets):
    workdir = tmp_path / "net"
    workdir.mkdir()
    (workdir / "leftover").write_text("x")

    with pytest.raises(AssetGenerationError):
        write_network(workdir, assets)
    assert [p.name for p in workdir.iterdir()] == ["leftover"]


def test_failure_leaves_nothing_behind(tmp_path):
    broken = generate_assets(2, AssetOverrides(node_overrides={"Node_B": {"custom": {"value": object()}}}))
    workdir = tmp_path / "net"

    with pytest.raises(AssetGenerationError):
        write_network(workdir, broken)
    assert not workdir.exists()


def test_activation_point_is_rfc3339_utc():
    now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert activation_point(1500, now) == "2024-01-02T03:04:06.500Z"
