"""Unit tests for kupcake_cli.deploy.docker."""

import asyncio
import logging
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kupcake_cli.deploy.docker import (
    CommandResult,
    ContainerHandle,
    DockerCLI,
    DockerImage,
    DockerManager,
    NetworkMode,
    PortMapping,
    ServiceConfig,
    StartOptions,
    cleanup_by_prefix,
    parse_port_output,
    port_mappings,
)
from kupcake_cli.errors import ConfigError, ResourceError


@pytest.fixture
def no_network_cli(make_cli):
    """FakeDockerCLI where `network inspect` finds nothing."""

    class NoNetworkCLI(make_cli):
        async def run(self, *args, timeout=None):
            if args[:2] == ("network", "inspect"):
                self.calls.append(args)
                return CommandResult(1, "", "No such network")
            return await super().run(*args, timeout=timeout)

    return NoNetworkCLI(outputs={"network": "new-id"})


@pytest.mark.cli_unit
class TestDockerImage:
    """Tests for DockerImage."""

    def test_parse_with_tag(self):
        """Test name:tag is split."""
        image = DockerImage.parse("ghcr.io/paradigmxyz/op-reth:v1.3.0")
        assert image.image == "ghcr.io/paradigmxyz/op-reth"
        assert image.tag == "v1.3.0"

    def test_parse_without_tag(self):
        """Test a bare name defaults to latest."""
        assert DockerImage.parse("prom/prometheus").image_ref() == "prom/prometheus:latest"

    def test_parse_registry_port(self):
        """Test a registry port is not mistaken for a tag."""
        image = DockerImage.parse("localhost:5000/op-reth")
        assert image.image == "localhost:5000/op-reth"
        assert image.tag == "latest"

    def test_local_binary_has_no_ref(self):
        """Test image_ref() is refused for local binaries."""
        image = DockerImage.from_binary("/tmp/op-batcher", "op-batcher")
        assert image.is_local_binary
        with pytest.raises(ConfigError):
            image.image_ref()

    def test_dict_forms(self):
        """Test remote and binary images serialize to their own keys."""
        assert DockerImage("a", "b").to_dict() == {"image": "a", "tag": "b"}
        binary = DockerImage.from_binary("/bin/x", "x")
        assert binary.to_dict() == {"binary": "/bin/x", "binary_name": "x"}
        assert DockerImage.from_dict(binary.to_dict()) == binary


@pytest.mark.cli_unit
class TestPortMapping:
    """Tests for PortMapping and helpers."""

    def test_publish_arg_ephemeral(self):
        """Test host port 0 lets docker choose."""
        assert PortMapping(8545).publish_arg() == "8545/tcp"

    def test_publish_arg_fixed(self):
        """Test a fixed host port is included."""
        assert PortMapping(30303, 30313, "udp").publish_arg() == "30313:30303/udp"

    def test_optional_none_is_internal(self):
        """Test None host ports produce no mapping."""
        assert PortMapping.tcp_optional(9551, None) is None
        mappings = port_mappings(PortMapping.tcp_optional(9545, 0), PortMapping.udp_optional(30303, None))
        assert mappings == [PortMapping(9545, 0, "tcp")]

    def test_parse_port_output(self):
        """Test docker port output is parsed, ignoring IPv6 duplicates."""
        output = "8545/tcp -> 0.0.0.0:32768\n8545/tcp -> [::]:32768\n9001/tcp -> 0.0.0.0:32769\n"
        assert parse_port_output(output) == {"8545/tcp": 32768, "9001/tcp": 32769}

    def test_parse_port_output_empty(self):
        """Test empty output gives no ports."""
        assert parse_port_output("") == {}


@pytest.mark.cli_unit
class TestDockerManagerContainers:
    """Tests for network and container creation."""

    @pytest.mark.asyncio
    async def test_create_network_reuses_existing(self, make_cli):
        """Test an existing network is reused, not recreated."""
        cli = make_cli(outputs={"network": "net-id\n"})
        docker = DockerManager("kup-network", cli=cli)

        assert await docker.create_network() == "net-id"
        assert not [c for c in cli.commands("network") if c[1] == "create"]

    @pytest.mark.asyncio
    async def test_create_network_when_missing(self, no_network_cli):
        """Test a missing network is created as a bridge."""
        cli = no_network_cli
        docker = DockerManager("kup-network", cli=cli)

        assert await docker.create_network() == "new-id"
        assert ("network", "create", "--driver", "bridge", "kup-network") in cli.calls

    @pytest.mark.asyncio
    async def test_host_mode_skips_network(self, make_cli):
        """Test host mode never touches docker networks."""
        cli = make_cli()
        docker = DockerManager("kup-network", network_mode=NetworkMode.HOST, cli=cli)

        assert await docker.create_network() is None
        assert cli.calls == []

    @pytest.mark.asyncio
    async def test_start_service(self, make_cli):
        """Test a container is created, started, tracked and its ports resolved."""
        cli = make_cli(outputs={"create": "abc123\n", "port": "8545/tcp -> 0.0.0.0:40000\n"})
        docker = DockerManager("kup-network", cli=cli)
        config = ServiceConfig(
            image=DockerImage("ghcr.io/foundry-rs/foundry", "latest"),
            cmd=["--port", "8545"],
            entrypoint=["anvil"],
            ports=[PortMapping(8545)],
            binds=["/tmp/anvil:/data:rw"],
            env={"RUST_LOG": "info"},
        )

        handle = await docker.start_service("kup-anvil", config)

        assert handle.container_id == "abc123"
        assert handle.host_port(8545) == 40000
        assert docker.containers == {"abc123": "kup-anvil"}
        assert ("rm", "-f", "kup-anvil") in cli.calls
        create = cli.commands("create")[0]
        assert create[:5] == ("create", "--name", "kup-anvil", "--network", "kup-network")
        assert "-p" in create and "8545/tcp" in create
        assert "--entrypoint" in create and "anvil" in create
        assert create[-3:] == ("ghcr.io/foundry-rs/foundry:latest", "--port", "8545")
        assert ("start", "abc123") in cli.calls

    @pytest.mark.asyncio
    async def test_host_mode_create_args(self, make_cli):
        """Test host mode uses the host network and publishes nothing."""
        cli = make_cli(outputs={"create": "abc"})
        docker = DockerManager("kup-network", network_mode=NetworkMode.HOST, cli=cli)

        handle = await docker.start_service(
            "kup-anvil", ServiceConfig(image=DockerImage("anvil", "1"), ports=[PortMapping(8545)])
        )

        create = cli.commands("create")[0]
        assert ("--network", "host") == create[3:5]
        assert "-p" not in create
        assert handle.bound_ports == {"8545/tcp": 8545}
        assert not cli.commands("port")

    @pytest.mark.asyncio
    async def test_create_failure_names_container(self, make_cli):
        """Test a failing docker create raises ResourceError naming the container."""
        docker = DockerManager("kup-network", cli=make_cli(failing={"create"}))

        with pytest.raises(ResourceError) as exc_info:
            await docker.start_service("kup-anvil", ServiceConfig(image=DockerImage("anvil", "1")))

        assert exc_info.value.data["container_name"] == "kup-anvil"
        assert docker.containers == {}

    @pytest.mark.asyncio
    async def test_wait_nonzero_exit(self, make_cli):
        """Test a waited-on container exiting non-zero is an error carrying its logs."""
        cli = make_cli(outputs={"create": "one-shot", "wait": "1\n", "logs": "boom"})
        docker = DockerManager("kup-network", cli=cli)

        with pytest.raises(ResourceError, match="exited with code 1") as exc_info:
            await docker.start_service(
                "kup-op-deployer-init", ServiceConfig(image=DockerImage("d", "1")), StartOptions(wait=True)
            )

        assert exc_info.value.data["logs"] == "boom"

    @pytest.mark.asyncio
    async def test_wait_collects_logs(self, make_cli):
        """Test collect_logs captures the output of a finished container."""
        cli = make_cli(outputs={"create": "one-shot", "wait": "0", "logs": '{"genesis": true}'})
        docker = DockerManager("kup-network", cli=cli)

        handle = await docker.start_service(
            "kup-inspect",
            ServiceConfig(image=DockerImage("d", "1")),
            StartOptions(wait=True, collect_logs=True),
        )

        assert handle.exit_code == 0
        assert handle.logs == '{"genesis": true}'

    @pytest.mark.asyncio
    async def test_is_running(self, make_cli):
        """Test is_running reads the inspect state."""
        running = DockerManager("n", cli=make_cli(outputs={"inspect": "true\n"}))
        stopped = DockerManager("n", cli=make_cli(outputs={"inspect": "false\n"}))
        missing = DockerManager("n", cli=make_cli(failing={"inspect"}))

        assert await running.is_running("c") is True
        assert await stopped.is_running("c") is False
        assert await missing.is_running("c") is False

    def test_urls(self):
        """Test internal and host URL forms."""
        bridge = DockerManager("n")
        host = DockerManager("n", network_mode=NetworkMode.HOST)
        handle = ContainerHandle("id", "kup-anvil", bound_ports={"8545/tcp": 40000})

        assert bridge.internal_http_url("kup-anvil", 8545) == "http://kup-anvil:8545/"
        assert host.internal_http_url("kup-anvil", 8545) == "http://localhost:8545/"
        assert bridge.internal_ws_url("kup-op-reth", 9546) == "ws://kup-op-reth:9546/"
        assert DockerManager.host_http_url(handle, 8545) == "http://localhost:40000/"
        assert DockerManager.host_http_url(handle, 9000) is None


@pytest.mark.cli_unit
class TestEnsureImage:
    """Tests for DockerManager.ensure_image."""

    @pytest.mark.asyncio
    async def test_present_image_not_pulled(self, make_cli):
        """Test an image found by `docker image inspect` is used as-is."""
        cli = make_cli()
        docker = DockerManager("kup-network", cli=cli)

        assert await docker.ensure_image(DockerImage("ghcr.io/op-rs/kona/kona-node", "v1"), "kona-node") == (
            "ghcr.io/op-rs/kona/kona-node:v1"
        )
        assert cli.commands("pull") == []

    @pytest.mark.asyncio
    async def test_missing_image_pulled(self, make_cli):
        """Test an image absent locally is pulled, defaulting the tag to latest."""
        cli = make_cli(failing={"image"})
        docker = DockerManager("kup-network", cli=cli)

        assert await docker.ensure_image(DockerImage("prom/prometheus", None), "prometheus") == (
            "prom/prometheus:latest"
        )
        assert cli.commands("pull") == [("pull", "prom/prometheus:latest")]

    @pytest.mark.asyncio
    async def test_local_binary_built(self, make_cli, tmp_path):
        """Test a local binary is wrapped into a hash-tagged image."""
        binary = tmp_path / "op-reth"
        binary.write_bytes(b"\x7fELF")
        cli = make_cli(failing={"image"})
        docker = DockerManager("kup-network", cli=cli)

        image_ref = await docker.ensure_image(DockerImage.from_binary(binary), "op-reth")

        name, _, tag = image_ref.partition(":")
        assert name == "kupcake-op-reth-local"
        assert len(tag) == 12
        assert [call[:3] for call in cli.commands("build")] == [("build", "-t", image_ref)]
        assert cli.commands("pull") == [("pull", "debian:trixie-slim")]

    @pytest.mark.asyncio
    async def test_local_binary_reused(self, make_cli, tmp_path):
        """Test an existing image for the same binary hash is not rebuilt."""
        binary = tmp_path / "kona-node"
        binary.write_bytes(b"\x7fELF")
        cli = make_cli()
        docker = DockerManager("kup-network", cli=cli)

        await docker.ensure_image(DockerImage.from_binary(binary, "kona-node"), "kona-node")

        assert cli.commands("build") == []

    @pytest.mark.asyncio
    async def test_missing_binary(self, make_cli, tmp_path):
        """Test a binary path that does not exist is a config error."""
        docker = DockerManager("kup-network", cli=make_cli())
        with pytest.raises(ConfigError, match="Binary not found"):
            await docker.ensure_image(DockerImage.from_binary(tmp_path / "nope"), "op-batcher")


async def hang():
    await asyncio.Event().wait()


@pytest.mark.cli_unit
class TestDockerCLICancellation:
    """Tests for DockerCLI.run when the caller is cancelled."""

    @pytest.mark.asyncio
    async def test_cancel_kills_child(self):
        """Test a cancelled command kills and reaps the docker process."""
        proc = MagicMock()
        proc.returncode = None
        proc.communicate = hang
        proc.wait = AsyncMock(return_value=-9)

        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)):
            task = asyncio.create_task(DockerCLI().run("stop", "-t", "5", "abc"))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        proc.kill.assert_called_once()
        proc.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_returns_failed_result(self):
        """Test a timed out command is killed and reported with returncode -1."""
        proc = MagicMock()
        proc.returncode = None
        proc.communicate = hang
        proc.wait = AsyncMock(return_value=-9)

        with patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)):
            result = await DockerCLI().run("pull", "anvil:latest", timeout=0.01)

        assert result.returncode == -1
        assert "timed out" in result.stderr
        proc.kill.assert_called_once()


@pytest.mark.cli_unit
class TestDockerManagerShutdown:
    """Tests for teardown."""

    @pytest.mark.asyncio
    async def test_shutdown_removes_everything_once(self, make_cli):
        """Test containers and network are removed and a second shutdown is a no-op."""
        cli = make_cli()
        docker = DockerManager("kup-network", cli=cli)
        docker.network_id = "net"
        docker.containers = {"a": "kup-a", "b": "kup-b"}

        await docker.shutdown()
        await docker.shutdown()

        assert sorted(c[-1] for c in cli.commands("stop")) == ["a", "b"]
        assert ("network", "rm", "kup-network") in cli.calls
        assert docker.containers == {}
        assert len(cli.commands("stop")) == 2

    @pytest.mark.asyncio
    async def test_containers_removed_concurrently_before_network(self, make_cli):
        """Test containers are stopped in parallel and the network goes last."""
        cli = make_cli(delay=0.2)
        docker = DockerManager("kup-network", cli=cli)
        docker.network_id = "net"
        docker.containers = {f"id-{i}": f"kup-{i}" for i in range(5)}

        started = time.monotonic()
        await docker.shutdown()
        elapsed = time.monotonic() - started

        # stop + rm for five containers one after another would take 2s
        assert elapsed < 1.0
        assert len(cli.commands("rm")) == 5
        network_rm = cli.calls.index(("network", "rm", "kup-network"))
        assert network_rm == len(cli.calls) - 1
        assert all(cli.calls.index(call) < network_rm for call in cli.commands("rm"))

    @pytest.mark.asyncio
    async def test_log_streams_awaited_on_shutdown(self, make_cli):
        """Test log streaming tasks are cancelled and finished before teardown returns."""
        docker = DockerManager("kup-network", cli=make_cli())
        stream = asyncio.create_task(asyncio.Event().wait())
        docker._log_tasks.append(stream)

        await docker.shutdown()

        assert stream.cancelled()
        assert docker._log_tasks == []

    @pytest.mark.asyncio
    async def test_no_cleanup_leaves_containers(self, make_cli):
        """Test no_cleanup skips teardown entirely."""
        cli = make_cli()
        docker = DockerManager("kup-network", no_cleanup=True, cli=cli)
        docker.containers = {"a": "kup-a"}

        await docker.shutdown()

        assert cli.calls == []
        assert docker.containers == {"a": "kup-a"}

    @pytest.mark.asyncio
    async def test_stop_failures_are_ignored(self, make_cli):
        """Test already-gone containers do not fail teardown."""
        cli = make_cli(failing={"stop", "rm"})
        docker = DockerManager("kup-network", cli=cli)
        docker.containers = {"a": "kup-a"}

        await docker.shutdown()

        assert docker.containers == {}

    @pytest.mark.asyncio
    async def test_teardown_timeout_is_logged(self, make_cli, caplog):
        """Test exceeding the teardown budget is logged, not raised."""
        cli = make_cli(delay=1.0)
        docker = DockerManager("kup-network", cli=cli, teardown_timeout=0.05)
        docker.containers = {"a": "kup-a"}

        with caplog.at_level(logging.ERROR, logger="kupcake_cli.deploy.docker"):
            await docker.shutdown()

        assert "did not finish" in caplog.text
        assert "kup-a" in caplog.text

    @pytest.mark.asyncio
    async def test_context_manager(self, make_cli):
        """Test the manager tears down on exit from an async with block."""
        cli = make_cli(outputs={"create": "abc"})
        async with DockerManager("kup-network", cli=cli) as docker:
            await docker.start_service("kup-a", ServiceConfig(image=DockerImage("a", "1")))

        assert ("stop", "-t", "5", "abc") in cli.calls


@pytest.mark.cli_unit
class TestCleanupByPrefix:
    """Tests for cleanup_by_prefix."""

    @pytest.mark.asyncio
    async def test_removes_matching_containers_and_network(self, make_cli):
        """Test only containers starting with the prefix are removed."""
        cli = make_cli(outputs={"ps": "id1 net-anvil\nid2 net-op-reth\nid3 other-net-anvil\n"})

        result = await cleanup_by_prefix("net", cli=cli)

        assert sorted(result.containers_removed) == ["net-anvil", "net-op-reth"]
        assert result.network_removed == "net-network"
        assert ("rm", "-f", "id3") not in cli.calls

    @pytest.mark.asyncio
    async def test_nothing_found(self, make_cli):
        """Test an empty listing and a missing network remove nothing."""
        cli = make_cli(failing={"network"})

        result = await cleanup_by_prefix("net", cli=cli)

        assert result.containers_removed == []
        assert result.network_removed is None
