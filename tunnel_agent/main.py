"""Main entry point for Tunnel Agent.

Starts the key manager, then the tunnel supervisor, and keeps running until
the tunnel terminates or a shutdown signal arrives.
"""

import argparse
import asyncio
import logging
import platform
import signal
import subprocess
import sys
from typing import List, Optional, Sequence

import structlog

from . import __version__
from .config import AgentConfig, ConfigError, LOG_LEVELS, parse_duration
from .key_manager import KeyManager
from .metrics import MetricsServer
from .service import start_and_await_running
from .signing import SigningClient
from .tunnel import TunnelSupervisor

logger = structlog.get_logger()

LEGACY_FLAGS = ("-p", "-i", "-R", "-o")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

USAGE_EPILOG = """\
If tunnel-agent is run with SSH flags, it will pass all arguments directly
through to the "ssh" binary. This is deprecated behaviour.
"""


def setup_logger(level: str) -> None:
    """Configure structlog with logfmt output filtered at level."""
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            structlog.processors.add_log_level,
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.LINENO,
                ]
            ),
            structlog.processors.LogfmtRenderer(
                key_order=["ts", "level", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def in_legacy_mode(argv: Sequence[str]) -> bool:
    """True when argv looks like a raw ssh invocation."""
    return any(arg in LEGACY_FLAGS for arg in argv)


def try_get_openssh_version(ssh_binary: str = "ssh") -> str:
    """Return `ssh -V` output, or "UNKNOWN" on error."""
    try:
        result = subprocess.run(
            [ssh_binary, "-V"],
            capture_output=True,
            text=True,
            timeout=1,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "UNKNOWN"

    if result.returncode != 0:
        return "UNKNOWN"

    # ssh -V writes to stderr
    return result.stderr.strip()


def _duration_arg(value: str) -> float:
    try:
        return parse_duration(value)
    except ConfigError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    """Command line flags; every default is None so unset flags can be told apart."""
    parser = argparse.ArgumentParser(
        prog="tunnel-agent",
        description="Reverse SSH tunnel agent with short-lived certificates.",
        epilog=USAGE_EPILOG,
        add_help=False,
        allow_abbrev=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("-h", "--help", dest="print_help", action="store_true", help="Print help")
    parser.add_argument("-config", "--config", dest="config_file", help="YAML configuration file")
    parser.add_argument(
        "-log.level", "--log.level", dest="log_level", choices=LOG_LEVELS,
        help='"debug", "info", "warn" or "error" (default "info")',
    )
    parser.add_argument("-cluster", "--cluster", dest="cluster", help="the PDC cluster to connect to")
    parser.add_argument("-domain", "--domain", dest="domain", help='the domain of the PDC cluster (default "grafana.net")')
    parser.add_argument("-dev-mode", "--dev-mode", dest="dev_mode", action="store_true", default=None,
                        help="[DEVELOPMENT ONLY] run the agent in development mode")
    parser.add_argument("-dev-port", "--dev-port", dest="dev_port", type=int,
                        help="[DEVELOPMENT ONLY] port of the local gateway and API")
    parser.add_argument("-dev-network", "--dev-network", dest="dev_network",
                        help="[DEVELOPMENT ONLY] access policy id sent to the local API")

    parser.add_argument("-token", "--token", dest="token", help="token used to call the signing API")
    parser.add_argument("-gcloud-hosted-grafana-id", "--gcloud-hosted-grafana-id", dest="tenant_id",
                        help="the ID of the Hosted Grafana instance to connect to")
    parser.add_argument("-api-fqdn", "--api-fqdn", dest="api_url_override",
                        help="override the signing API URL")
    parser.add_argument("-gateway-fqdn", "--gateway-fqdn", dest="gateway_host_override",
                        help="override the gateway host")

    parser.add_argument("-ssh-key-file", "--ssh-key-file", dest="key_file",
                        help="the path of the private key file (default ~/.ssh/grafana-pdc-agent)")
    parser.add_argument("-ssh-flag", "--ssh-flag", dest="ssh_flags", action="append",
                        help="additional flag passed to ssh; can be set more than once")
    parser.add_argument("-force-key-file-overwrite", "--force-key-file-overwrite",
                        dest="force_key_file_overwrite", action="store_true", default=None,
                        help="force a new key pair to be generated on startup")
    parser.add_argument("-skip-ssh-validation", "--skip-ssh-validation",
                        dest="skip_ssh_validation", action="store_true", default=None,
                        help="skip validation of the gateway host key")
    parser.add_argument("-cert-expiry-window", "--cert-expiry-window", dest="cert_expiry_window",
                        type=_duration_arg, help="renew certificates this long before they expire (default 5m)")
    parser.add_argument("-cert-check-expiry-period", "--cert-check-expiry-period",
                        dest="cert_check_expiry_period", type=_duration_arg,
                        help="how often to check certificate expiry (default 1m)")
    parser.add_argument("-metrics-addr", "--metrics-addr", dest="metrics_addr",
                        help='address for the metrics listener (default ":8090")')

    return parser


def load_config(args: argparse.Namespace) -> AgentConfig:
    """Assemble the configuration: file, then flags, then environment, then defaults.

    Raises:
        ConfigError: On invalid values
    """
    cfg = AgentConfig.unset()
    if args.config_file:
        cfg.load_file(args.config_file)

    for name, value in vars(args).items():
        if name in ("print_help", "config_file") or value is None:
            continue
        if name == "ssh_flags":
            cfg.ssh_flags.extend(value)
            continue
        setattr(cfg, name, value)

    cfg.apply_env_fallback()
    cfg.fill_defaults()

    if cfg.dev_mode:
        cfg.apply_dev_mode()

    cfg.resolve_ssh_log_level()
    return cfg


async def run_agent(config: AgentConfig, signer=None, process_factory=None) -> int:
    """Run key manager and tunnel until shutdown.

    Returns:
        Process exit status
    """
    owns_signer = signer is None
    if signer is None:
        signer = SigningClient(config)

    key_manager = KeyManager(config, signer)
    tunnel = TunnelSupervisor(config, key_manager, process_factory=process_factory)
    metrics = MetricsServer(config.metrics_addr)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("shutdown_signal_received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        try:
            await start_and_await_running(key_manager)
        except Exception as e:
            logger.error("key_manager_start_failed", error=str(e), error_type=type(e).__name__)
            return 1

        try:
            await start_and_await_running(tunnel)
        except Exception as e:
            logger.error("tunnel_start_failed", error=str(e), error_type=type(e).__name__)
            await key_manager.stop()
            return 1

        metrics.start()
        logger.info("agent_started", gateway=config.gateway_host)

        terminated = asyncio.create_task(tunnel.await_terminated())
        credentials_lost = asyncio.create_task(key_manager.await_terminated())
        stopped = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait(
            {terminated, credentials_lost, stopped},
            return_when=asyncio.FIRST_COMPLETED,
        )
        stopped.cancel()

        # The key manager only ends on its own when rotation can no longer run
        key_manager_failed = credentials_lost in done and not stop_event.is_set()
        if key_manager_failed:
            logger.error(
                "key_manager_stopped_unexpectedly",
                state=key_manager.state.value,
                error=str(key_manager.failure_case),
            )

        await tunnel.stop()
        await key_manager.stop()
        await asyncio.gather(credentials_lost, return_exceptions=True)

        try:
            await terminated
        except Exception as e:
            logger.error("tunnel_failed", error=str(e))
            return 1

        return 1 if key_manager_failed else 0

    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        metrics.stop()
        if owns_signer:
            await signer.close()


async def run_legacy_mode(config: AgentConfig, process_factory=None) -> int:
    """Supervise `ssh <raw args>` without certificates or rotation."""
    tunnel = TunnelSupervisor(config, key_manager=None, process_factory=process_factory)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("shutdown_signal_received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        try:
            await start_and_await_running(tunnel)
        except Exception as e:
            logger.error("tunnel_start_failed", error=str(e))
            return 1

        terminated = asyncio.create_task(tunnel.await_terminated())
        stopped = asyncio.create_task(stop_event.wait())
        await asyncio.wait({terminated, stopped}, return_when=asyncio.FIRST_COMPLETED)
        stopped.cancel()
        await tunnel.stop()

        try:
            await terminated
        except Exception as e:
            logger.error("tunnel_failed", error=str(e))
            return 1
        return 0
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and run the agent.

    Returns:
        Process exit status
    """
    if argv is None:
        argv = sys.argv[1:]

    if in_legacy_mode(argv):
        config = AgentConfig(legacy_args=list(argv))
        setup_logger("info")
        logger.warning("legacy_mode", args=" ".join(argv))
        return asyncio.run(run_legacy_mode(config))

    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1

    if args.print_help:
        parser.print_help()
        return 0

    try:
        config = load_config(args)
        config.validate()
    except ConfigError as e:
        parser.print_usage(sys.stderr)
        print(f"error: {e}", file=sys.stderr)
        return 1

    setup_logger(config.log_level)

    logger.info(
        "agent_info",
        version=f"v{__version__}",
        ssh_version=try_get_openssh_version(config.ssh_binary),
        os=platform.system().lower(),
        arch=platform.machine(),
    )

    return asyncio.run(run_agent(config))


def run() -> None:
    """Entry point for console script."""
    sys.exit(main())


if __name__ == "__main__":
    run()
