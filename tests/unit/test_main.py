"""Unit tests for the command line entry point.

Tests:
- Legacy ssh argument detection
- Flag parsing and configuration layering
- run_agent and run_legacy_mode start ordering and shutdown
- main exit codes
"""

import asyncio
import os
import signal
from unittest.mock import AsyncMock, patch

import pytest
import structlog

from tunnel_agent.config import AgentConfig
from tunnel_agent.key_manager import KeyManager
from tunnel_agent.main import (
    build_parser,
    in_legacy_mode,
    load_config,
    main,
    run_agent,
    run_legacy_mode,
    try_get_openssh_version,
)
from tunnel_agent.signing import UnauthorizedError


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo logger configuration done by main."""
    yield
    structlog.reset_defaults()


def parse(*argv):
    return load_config(build_parser().parse_args(list(argv)))


class TestLegacyDetection:
    """Tests for in_legacy_mode."""

    @pytest.mark.parametrize("argv", [
        ["-i", "key", "user@host"],
        ["user@host", "-p", "22"],
        ["-R", "0", "host"],
        ["-o", "ServerAliveInterval=15", "host"],
    ])
    def test_legacy(self, argv):
        assert in_legacy_mode(argv)

    @pytest.mark.parametrize("argv", [
        [],
        ["-cluster", "prod-us-east-0"],
    ])
    def test_not_legacy(self, argv):
        assert not in_legacy_mode(argv)

    def test_ssh_flag_values_are_not_legacy(self):
        """Test agent flags alone never trigger legacy mode."""
        assert not in_legacy_mode(["-ssh-flag", "TCPKeepAlive=yes", "-cluster", "c"])


class TestLoadConfig:
    """Tests for flag parsing and layering."""

    def test_flags(self, temp_dir):
        """Test each flag lands in the configuration."""
        key = str(temp_dir / "key")
        cfg = parse(
            "-cluster", "prod-us-east-0",
            "-gcloud-hosted-grafana-id", "123456",
            "-token", "glc_flag",
            "-ssh-key-file", key,
            "-ssh-flag", "TCPKeepAlive=yes",
            "-ssh-flag", "C",
            "-cert-expiry-window", "2m",
            "-cert-check-expiry-period", "10s",
            "-skip-ssh-validation",
            "-metrics-addr", "127.0.0.1:9100",
        )

        assert cfg.cluster == "prod-us-east-0"
        assert cfg.tenant_id == "123456"
        assert cfg.token == "glc_flag"
        assert cfg.key_file == key
        assert cfg.ssh_flags == ["TCPKeepAlive=yes", "C"]
        assert cfg.cert_expiry_window == 120
        assert cfg.cert_check_expiry_period == 10
        assert cfg.skip_ssh_validation is True
        assert cfg.metrics_addr == "127.0.0.1:9100"
        cfg.validate()

    def test_double_dash_flags(self):
        """Test flags are accepted with two dashes as well."""
        cfg = parse("--cluster", "c1", "--log.level", "debug")

        assert cfg.cluster == "c1"
        assert cfg.log_level == "debug"
        assert cfg.ssh_log_level == 3

    def test_defaults(self):
        """Test defaults apply when nothing is set."""
        cfg = parse()

        assert cfg.key_file == "~/.ssh/grafana-pdc-agent"
        assert cfg.cert_expiry_window == 300
        assert cfg.cert_check_expiry_period == 60
        assert cfg.metrics_addr == ":8090"
        assert cfg.log_level == "info"
        assert cfg.ssh_log_level == 0

    def test_flags_override_env(self, monkeypatch):
        """Test flags win over the environment, which fills the rest."""
        monkeypatch.setenv("GCLOUD_PDC_CLUSTER", "from-env")
        monkeypatch.setenv("GCLOUD_PDC_SIGNING_TOKEN", "glc_env")

        cfg = parse("-cluster", "from-flag")

        assert cfg.cluster == "from-flag"
        assert cfg.token == "glc_env"

    def test_config_file_then_flags(self, temp_dir):
        """Test flags override values from the config file."""
        path = temp_dir / "agent.yaml"
        path.write_text("cluster: from-file\ntoken: glc_file\ncert_expiry_window: 7m\n")

        cfg = parse("-config", str(path), "-cluster", "from-flag")

        assert cfg.cluster == "from-flag"
        assert cfg.token == "glc_file"
        assert cfg.cert_expiry_window == 420

    def test_zero_expiry_window_flag(self, monkeypatch):
        """Test -cert-expiry-window 0 is kept instead of the default."""
        monkeypatch.setenv("GCLOUD_SSH_CERT_EXPIRY_WINDOW", "10m")

        cfg = parse("-cert-expiry-window", "0")

        assert cfg.cert_expiry_window == 0

    def test_dev_mode(self):
        """Test development mode settings."""
        cfg = parse(
            "-dev-mode",
            "-domain", "localhost",
            "-gcloud-hosted-grafana-id", "1",
            "-dev-network", "net-1",
        )

        assert cfg.api_url == "http://localhost:9090"
        assert cfg.gateway_host == "localhost"
        assert cfg.port == 9090
        assert cfg.extra_headers["X-Access-Policy-ID"] == "net-1"
        cfg.validate()


class TestRunAgent:
    """Tests for run_agent."""

    @pytest.mark.asyncio
    async def test_unauthorized_never_launches_ssh(self, agent_config, signer, process_factory):
        """Test a signing failure at start exits 1 without starting ssh."""
        signer.errors.append(UnauthorizedError("invalid token"))

        result = await run_agent(agent_config, signer=signer, process_factory=process_factory)

        assert result == 1
        assert process_factory.processes == []

    @pytest.mark.asyncio
    async def test_launch_failure(self, agent_config, signer, process_factory):
        """Test a tunnel start failure exits 1."""
        process_factory.fail_next = 1

        result = await run_agent(agent_config, signer=signer, process_factory=process_factory)

        assert result == 1

    @pytest.mark.asyncio
    async def test_shutdown_signal(self, agent_config, signer, process_factory):
        """Test SIGTERM stops ssh and exits 0."""
        task = asyncio.create_task(
            run_agent(agent_config, signer=signer, process_factory=process_factory)
        )
        await process_factory.wait_for_launches(1)

        os.kill(os.getpid(), signal.SIGTERM)
        result = await asyncio.wait_for(task, 2)

        assert result == 0
        assert process_factory.current.terminated
        assert len(process_factory.processes) == 1

    @pytest.mark.asyncio
    async def test_key_manager_failure_stops_agent(self, agent_config, signer, process_factory):
        """Test the agent exits 1 and stops ssh when the key manager fails."""
        async def crashing_running(self):
            await asyncio.sleep(0.05)
            raise RuntimeError("rotation loop crashed")

        with patch.object(KeyManager, "running", new=crashing_running):
            result = await asyncio.wait_for(
                run_agent(agent_config, signer=signer, process_factory=process_factory),
                2,
            )

        assert result == 1
        assert len(process_factory.processes) == 1
        assert process_factory.current.terminated


class TestRunLegacyMode:
    """Tests for run_legacy_mode."""

    @pytest.mark.asyncio
    async def test_shutdown_signal(self, process_factory):
        """Test SIGTERM stops the raw ssh process and exits 0."""
        config = AgentConfig(
            legacy_args=["-i", "/tmp/key", "user@host", "-R", "0"],
            ssh_log_level=0,
            terminate_timeout=0.2,
        )
        task = asyncio.create_task(run_legacy_mode(config, process_factory=process_factory))
        await process_factory.wait_for_launches(1)

        os.kill(os.getpid(), signal.SIGTERM)
        result = await asyncio.wait_for(task, 2)

        assert result == 0
        assert process_factory.current.terminated
        assert len(process_factory.processes) == 1


class TestMain:
    """Tests for main."""

    def test_help(self, capsys):
        """Test help exits 0."""
        assert main(["-h"]) == 0
        assert "-cluster" in capsys.readouterr().out

    def test_invalid_duration(self, capsys):
        """Test an unparsable duration flag is a usage error."""
        assert main(["-cert-expiry-window", "soon"]) == 2
        assert "invalid duration" in capsys.readouterr().err

    def test_missing_cluster(self, capsys):
        """Test missing required values exit 1."""
        assert main(["-gcloud-hosted-grafana-id", "1", "-token", "t"]) == 1
        assert "cluster is required" in capsys.readouterr().err

    def test_config_value_wrong_type(self, temp_dir, capsys):
        """Test a config file value of the wrong type exits 1 with a message."""
        path = temp_dir / "agent.yaml"
        path.write_text("port: twenty-two\n")

        assert main(["-config", str(path)]) == 1
        assert "port: expected an integer" in capsys.readouterr().err

    def test_runs_agent(self, temp_dir):
        """Test valid flags run the agent."""
        run = AsyncMock(return_value=0)
        with patch("tunnel_agent.main.run_agent", new=run), \
                patch("tunnel_agent.main.try_get_openssh_version", return_value="OpenSSH_9.6"):
            result = main([
                "-cluster", "prod-us-east-0",
                "-gcloud-hosted-grafana-id", "1",
                "-token", "t",
                "-ssh-key-file", str(temp_dir / "key"),
            ])

        assert result == 0
        config = run.call_args.args[0]
        assert config.cluster == "prod-us-east-0"

    def test_legacy_mode(self):
        """Test ssh style arguments bypass flag parsing."""
        argv = ["-i", "/tmp/key", "user@host", "-R", "0"]
        run = AsyncMock(return_value=0)
        with patch("tunnel_agent.main.run_legacy_mode", new=run):
            assert main(argv) == 0

        config = run.call_args.args[0]
        assert config.legacy_args == argv

    def test_openssh_version_unknown(self):
        """Test a missing ssh binary reports UNKNOWN."""
        assert try_get_openssh_version("/nonexistent/ssh") == "UNKNOWN"
