"""Unit tests for the per-service adapters."""

import json

import pytest

from kupcake_cli.deploy.docker import ContainerHandle, DockerImage, NetworkMode
from kupcake_cli.deploy.services.anvil import Account, AnvilAccounts, AnvilConfig
from kupcake_cli.deploy.services.base import config_bind, container_path, entrypoint_for
from kupcake_cli.deploy.services.kona_node import KonaNodeConfig, NodeRole, write_local_l1_config
from kupcake_cli.deploy.services.op_batcher import OpBatcherConfig
from kupcake_cli.deploy.services.op_challenger import OpChallengerConfig
from kupcake_cli.deploy.services.op_conductor import ConductorContext, ConductorRole, OpConductorConfig
from kupcake_cli.deploy.services.op_proposer import OpProposerConfig
from kupcake_cli.deploy.services.op_reth import OpRethConfig, OpRethHandle
from kupcake_cli.deploy.services.p2p import P2pKeypair
from kupcake_cli.deploy.stages import L1Context
from kupcake_cli.errors import ConfigError

GAME_FACTORY = "0x00000000000000000000000000000000000000fa"


def flag(cmd: list[str], name: str) -> str:
    """Value following a flag in a command line."""
    return cmd[cmd.index(name) + 1]


def op_reth_handle(name: str = "kup-op-reth") -> OpRethHandle:
    return OpRethHandle(
        container=ContainerHandle(f"id-{name}", name),
        http_rpc_url=f"http://{name}:9545/",
        ws_rpc_url=f"ws://{name}:9546/",
        authrpc_url=f"http://{name}:9551/",
        http_host_url=None,
        ws_host_url=None,
        enode=f"enode://00@{name}:30303",
    )


@pytest.mark.cli_unit
class TestBaseHelpers:
    """Tests for shared service helpers."""

    def test_container_path(self):
        """Test paths are rooted at the /data mount."""
        assert container_path("genesis.json") == "/data/genesis.json"
        assert container_path() == "/data"

    def test_config_bind(self, tmp_path):
        """Test host directories mount read-write at /data."""
        assert config_bind(tmp_path) == f"{tmp_path.resolve()}:/data:rw"

    def test_entrypoint_for(self):
        """Test local binaries keep their own entrypoint."""
        assert entrypoint_for(DockerImage("op-batcher", "v1"), "op-batcher") == ["op-batcher"]
        assert entrypoint_for(DockerImage.from_binary("/bin/op-batcher"), "op-batcher") is None

    def test_unknown_fields_rejected(self):
        """Test descriptors with unknown service fields fail loudly."""
        with pytest.raises(ConfigError, match="Unknown fields for OpBatcherConfig: colour"):
            OpBatcherConfig.from_dict({"colour": "blue"})

    def test_spec_dict_round_trip(self):
        """Test a service spec survives to_dict/from_dict with its image."""
        config = OpRethConfig(container_name="kup-op-reth", image=DockerImage("r", "1"), extra_args=["--x"])
        assert OpRethConfig.from_dict(config.to_dict()) == config


@pytest.mark.cli_unit
class TestAnvil:
    """Tests for the anvil adapter."""

    def test_accounts_by_role(self, anvil_config_json):
        """Test roles are assigned by account index."""
        accounts = AnvilAccounts.from_anvil_config(anvil_config_json)
        assert accounts.deployer.address == f"0x{1:040x}"
        assert accounts.unsafe_block_signer.address == f"0x{7:040x}"
        assert accounts.batcher.private_key == f"0x{8:064x}"
        assert accounts.challenger.address == f"0x{10:040x}"
        count = len(anvil_config_json["private_keys"])
        assert len(accounts.extra) == count - 10
        assert len(accounts.all()) == count

    def test_too_few_accounts(self):
        """Test fewer than ten accounts is a config error."""
        with pytest.raises(ConfigError, match="Need at least 10, got 9"):
            AnvilAccounts.from_accounts([Account(f"0x{i}", f"k{i}") for i in range(9)])

    def test_malformed_config(self):
        """Test anvil output without account lists is rejected."""
        with pytest.raises(ConfigError):
            AnvilAccounts.from_anvil_config({"accounts": []})

    def test_local_cmd(self):
        """Test a local L1 command line."""
        cmd = AnvilConfig(block_time=2, timestamp=1700000000).build_cmd(1337)
        assert flag(cmd, "--chain-id") == "1337"
        assert flag(cmd, "--block-time") == "2"
        assert flag(cmd, "--timestamp") == "1700000000"
        assert flag(cmd, "--config-out") == "/data/anvil.json"
        assert "--fork-url" not in cmd

    def test_fork_cmd(self):
        """Test forking passes the URL and block."""
        cmd = AnvilConfig(fork_url="https://l1.example", fork_block_number=123).build_cmd(11155111)
        assert flag(cmd, "--fork-url") == "https://l1.example"
        assert flag(cmd, "--fork-block-number") == "123"

    @pytest.mark.asyncio
    async def test_start_reads_accounts(self, fake_docker, tmp_path):
        """Test start waits for anvil.json and exposes accounts and URLs."""
        stale = tmp_path / "anvil" / "anvil.json"
        stale.parent.mkdir()
        stale.write_text("stale")
        ctx = L1Context(fake_docker, tmp_path, 1337, 42069)

        handle = await AnvilConfig(container_name="kup-anvil").start(ctx)

        config = fake_docker.config_of("kup-anvil")
        assert config.entrypoint == ["anvil"]
        assert config.binds == [f"{(tmp_path / 'anvil').resolve()}:/data:rw"]
        assert handle.rpc_url == "http://kup-anvil:8545/"
        assert handle.host_rpc_url.startswith("http://localhost:")
        assert handle.chain_id == 1337
        assert handle.accounts.deployer.address == f"0x{1:040x}"
        assert json.loads(stale.read_text())["available_accounts"]


@pytest.mark.cli_unit
class TestOpReth:
    """Tests for the op-reth adapter."""

    def test_cmd(self):
        """Test peers, jwt and sequencer URL end up on the command line."""
        cmd = OpRethConfig(container_name="kup-op-reth-validator-1").build_cmd(
            "jwt-kup-op-reth-validator-1.hex", ["enode://a@x:1", "enode://b@y:2"], "http://kup-op-reth:9545/"
        )
        assert cmd[0] == "node"
        assert flag(cmd, "--chain") == "/data/genesis.json"
        assert flag(cmd, "--datadir") == "/data/reth-data-kup-op-reth-validator-1"
        assert flag(cmd, "--authrpc.jwtsecret") == "/data/jwt-kup-op-reth-validator-1.hex"
        assert flag(cmd, "--trusted-peers") == "enode://a@x:1,enode://b@y:2"
        assert flag(cmd, "--rollup.sequencer-http") == "http://kup-op-reth:9545/"

    def test_no_peers(self):
        """Test the first node has no trusted peers flag."""
        assert "--trusted-peers" not in OpRethConfig().build_cmd("jwt.hex", [], "http://self:9545/")

    def test_port_offset(self):
        """Test container ports shift while internal and ephemeral host ports stay."""
        shifted = OpRethConfig(discovery_host_port=30303).with_port_offset(10)
        assert shifted.http_port == 9555
        assert shifted.discovery_port == 30313
        assert shifted.discovery_host_port == 30313
        assert shifted.http_host_port == 0
        assert shifted.authrpc_host_port is None


@pytest.mark.cli_unit
class TestKonaNode:
    """Tests for the kona-node adapter."""

    def test_sequencer_cmd(self, l2_context):
        """Test a sequencer gets the unsafe block signer key and local L1 config."""
        keypair = P2pKeypair.from_private_key("00" * 31 + "02")
        cmd = KonaNodeConfig(l1_slot_duration=2).build_cmd(
            l2_context, NodeRole.SEQUENCER, op_reth_handle(), "jwt.hex", keypair, "kup-kona-node", []
        )

        assert cmd[:3] == ["--metrics.enabled", "--metrics.port", "7300"]
        assert flag(cmd, "--mode") == "sequencer"
        assert flag(cmd, "--l1") == "http://kup-anvil:8545/"
        assert flag(cmd, "--l1.slot-duration") == "2"
        assert flag(cmd, "--l2") == "http://kup-op-reth:9551/"
        assert flag(cmd, "--p2p.sequencer.key") == f"0x{7:064x}"
        assert flag(cmd, "--p2p.priv.raw") == keypair.private_key
        assert flag(cmd, "--l1-config-file") == "/data/l1-config.json"
        assert "--p2p.bootnodes" not in cmd
        assert "--conductor.rpc" not in cmd

    def test_validator_cmd(self, l2_context):
        """Test a validator has bootnodes and no sequencer key."""
        cmd = KonaNodeConfig().build_cmd(
            l2_context,
            NodeRole.VALIDATOR,
            op_reth_handle(),
            "jwt.hex",
            P2pKeypair.generate(),
            "kup-kona-node-validator-1",
            ["enode://a@kup-kona-node:9222"],
        )
        assert flag(cmd, "--mode") == "validator"
        assert flag(cmd, "--p2p.bootnodes") == "enode://a@kup-kona-node:9222"
        assert "--p2p.sequencer.key" not in cmd

    def test_known_l1_has_no_config_file(self, l2_context):
        """Test public L1 chains use the built-in config."""
        l2_context.l1_chain_id = 11155111
        cmd = KonaNodeConfig().build_cmd(
            l2_context, NodeRole.VALIDATOR, op_reth_handle(), "jwt.hex", P2pKeypair.generate(), "ip", []
        )
        assert "--l1-config-file" not in cmd

    def test_follower_conductor_flags(self, l2_context):
        """Test a follower sequencer starts stopped and points at its conductor."""
        conductor = ConductorContext.follower(1, "http://kup-op-conductor-1:8547/")
        keypair = P2pKeypair.generate()
        cmd = KonaNodeConfig().build_cmd(
            l2_context, NodeRole.SEQUENCER, op_reth_handle(), "jwt.hex", keypair, "ip", [], conductor
        )
        assert flag(cmd, "--conductor.rpc") == "http://kup-op-conductor-1:8547/"
        assert "--sequencer.stopped" in cmd

    def test_local_l1_config(self, tmp_path):
        """Test the local L1 config activates every fork at genesis."""
        path = write_local_l1_config(tmp_path, 1337)
        config = json.loads(path.read_text())
        assert config["chain_id"] == 1337
        assert config["london_block"] == 0
        assert config["prague_time"] == 0
        assert config["terminal_total_difficulty_passed"] is True

    @pytest.mark.asyncio
    async def test_start_host_mode_enode(self, make_docker, l2_context):
        """Test host mode advertises 127.0.0.1 in the enode."""
        l2_context.docker = make_docker(network_mode=NetworkMode.HOST)
        handle = await KonaNodeConfig(container_name="kup-kona-node").start(
            l2_context, NodeRole.SEQUENCER, op_reth_handle(), "jwt.hex", []
        )
        assert handle.p2p_enode.endswith("@127.0.0.1:9222")
        assert handle.rpc_url == "http://localhost:7545/"
        assert handle.rpc_host_url == "http://localhost:7545/"
        assert (l2_context.l2_dir / "p2p-kup-kona-node.key").exists()


@pytest.mark.cli_unit
class TestOpConductor:
    """Tests for op-conductor wiring."""

    def test_context_roles(self):
        """Test leader bootstraps and followers start stopped."""
        leader = ConductorContext.leader(0, "http://c0:8547/")
        follower = ConductorContext.follower(1, "http://c1:8547/")
        none = ConductorContext.none()

        assert leader.raft_bootstrap and not leader.sequencer_stopped
        assert follower.sequencer_stopped and not follower.raft_bootstrap
        assert not none.enabled
        assert none.role is ConductorRole.NONE

    def test_cmd_bootstrap(self):
        """Test only a bootstrapping conductor gets --raft.bootstrap."""
        config = OpConductorConfig(container_name="kup-op-conductor")
        leader = config.build_cmd("http://kup-kona-node:7545/", op_reth_handle(), True)
        follower = config.build_cmd("http://kup-kona-node:7545/", op_reth_handle(), False)

        assert "--raft.bootstrap" in leader
        assert "--raft.bootstrap" not in follower
        assert flag(leader, "--raft.server.id") == "kup-op-conductor"
        assert flag(leader, "--raft.storage.dir") == "/data/raft-kup-op-conductor"
        assert flag(leader, "--execution.rpc") == "http://kup-op-reth:9545/"


@pytest.mark.cli_unit
class TestL1FacingServices:
    """Tests for batcher, proposer and challenger command lines."""

    def test_batcher_cmd(self):
        """Test the batcher posts blobs with the batcher key."""
        cmd = OpBatcherConfig().build_cmd("http://l1/", "http://l2/", "http://rollup/", "0xkey")
        assert flag(cmd, "--l1-eth-rpc") == "http://l1/"
        assert flag(cmd, "--private-key") == "0xkey"
        assert flag(cmd, "--data-availability-type") == "blobs"
        assert flag(cmd, "--target-num-frames") == "1"
        assert "--max-l1-tx-size-bytes" not in cmd

    def test_proposer_cmd(self):
        """Test the proposer uses the permissioned game type."""
        cmd = OpProposerConfig().build_cmd("http://l1/", "http://rollup/", "0xkey", GAME_FACTORY)
        assert flag(cmd, "--game-factory-address") == GAME_FACTORY
        assert flag(cmd, "--game-type") == "254"

    def test_challenger_cmd(self):
        """Test the challenger plays permissioned games only."""
        cmd = OpChallengerConfig().build_cmd("http://l1/", "http://l2/", "http://rollup/", "0xkey", GAME_FACTORY)
        assert flag(cmd, "--trace-type") == "permissioned"
        assert flag(cmd, "--game-allowlist") == "254"
        assert flag(cmd, "--l2-genesis") == "/data/genesis.json"

    @pytest.mark.asyncio
    async def test_proposer_start_reads_factory(self, l2_context, fake_docker):
        """Test the proposer reads the game factory from state.json."""
        kona = KonaNodeConfig(container_name="kup-kona-node")
        kona_handle = await kona.start(l2_context, NodeRole.SEQUENCER, op_reth_handle(), "jwt.hex", [])

        await OpProposerConfig(container_name="kup-op-proposer").start(l2_context, kona_handle)

        cmd = fake_docker.config_of("kup-op-proposer").cmd
        assert flag(cmd, "--game-factory-address") == GAME_FACTORY
        assert flag(cmd, "--private-key") == f"0x{9:064x}"
        assert flag(cmd, "--rollup-rpc") == "http://kup-kona-node:7545/"

    @pytest.mark.asyncio
    async def test_local_binary_keeps_entrypoint(self, l2_context, fake_docker):
        """Test a batcher built from a local binary has no entrypoint override."""
        config = OpBatcherConfig(container_name="kup-op-batcher", image=DockerImage.from_binary("/bin/b"))
        kona = await KonaNodeConfig(container_name="kup-kona-node").start(
            l2_context, NodeRole.SEQUENCER, op_reth_handle(), "jwt.hex", []
        )

        await config.start(l2_context, op_reth_handle(), kona)

        service = fake_docker.config_of("kup-op-batcher")
        assert service.entrypoint is None
        assert flag(service.cmd, "--l2-eth-rpc") == "http://kup-op-reth:9545/"
