"""SSH tunnel process supervision for Tunnel Agent.

Runs the ssh binary against the current certificate, restarts it with
backoff when it exits, and relaunches it when the key manager rotates the
certificate.
"""

import asyncio
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import structlog

from .config import AgentConfig
from .events import CredentialEvent, CredentialEventKind, Subscription
from .key_manager import KeyManager
from .metrics import SSH_RESTARTS
from .service import BasicService, PreconditionFailed, ServiceState

logger = structlog.get_logger()

ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]


class ProcessError(Exception):
    """Raised when the ssh process cannot be launched."""
    pass


class TunnelState(str, Enum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    RESTARTING = "Restarting"
    STOPPING = "Stopping"
    TERMINATED = "Terminated"


@dataclass(frozen=True)
class TunnelConfig:
    """Everything needed to launch one ssh process."""

    ssh_binary: str
    gateway_host: str
    port: int
    user: str
    key_file: str
    cert_file: str
    known_hosts_file: str
    skip_ssh_validation: bool
    log_level: int
    ssh_flags: Tuple[str, ...] = ()
    key_id: Optional[str] = None
    legacy_args: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: AgentConfig, key_id: Optional[str] = None) -> "TunnelConfig":
        return cls(
            ssh_binary=config.ssh_binary,
            gateway_host=config.gateway_host,
            port=config.port,
            user=config.tenant_id,
            key_file=str(config.key_path),
            cert_file=str(config.cert_path),
            known_hosts_file=str(config.known_hosts_path),
            skip_ssh_validation=config.skip_ssh_validation,
            log_level=max(0, min(config.ssh_log_level, 3)),
            ssh_flags=tuple(config.ssh_flags),
            key_id=key_id,
            legacy_args=tuple(config.legacy_args),
        )

    def args(self) -> List[str]:
        """ssh arguments in launch order.

        Target, identity and certificate, host validation, forwarding,
        keepalive options, verbosity, then pass-through flags.
        """
        if self.legacy_args:
            return list(self.legacy_args)

        result = [
            f"{self.user}@{self.gateway_host}",
            "-p", str(self.port),
            "-i", self.key_file,
            "-o", f"CertificateFile={self.cert_file}",
        ]

        if self.skip_ssh_validation:
            result += [
                "-o", "StrictHostKeyChecking=no",
                "-o", "UserKnownHostsFile=/dev/null",
            ]
        else:
            result += ["-o", f"UserKnownHostsFile={self.known_hosts_file}"]

        result += [
            "-R", "0",
            "-o", "ServerAliveInterval=15",
            "-o", "ConnectTimeout=1",
        ]

        if self.log_level > 0:
            result.append("-" + "v" * self.log_level)

        result += normalize_ssh_flags(self.ssh_flags)
        return result


def normalize_ssh_flags(flags: Sequence[str]) -> List[str]:
    """Turn user supplied ssh flags into arguments.

    "Key=Value" becomes "-o Key=Value", a bare word gets a leading dash, and
    anything already starting with a dash is kept, together with the value
    of a preceding "-o".
    """
    result: List[str] = []
    expect_value = False
    for flag in flags:
        flag = flag.strip()
        if not flag:
            continue
        if expect_value or flag.startswith("-"):
            result.append(flag)
            expect_value = flag == "-o"
        elif "=" in flag:
            result += ["-o", flag]
        else:
            result.append("-" + flag)
    return result


class Backoff:
    """Bounded exponential backoff.

    Starts at ``initial``, doubles up to ``maximum`` and resets once the
    process stayed up for ``reset_after`` seconds.
    """

    def __init__(self, initial: float, maximum: float, reset_after: float):
        self.initial = initial
        self.maximum = maximum
        self.reset_after = reset_after
        self._current = 0.0

    def next(self, uptime: float = 0.0) -> float:
        if uptime >= self.reset_after:
            self._current = 0.0
        if self._current <= 0:
            self._current = self.initial
        else:
            self._current = min(self._current * 2, self.maximum)
        return self._current


class TunnelSupervisor(BasicService):
    """Keeps exactly one ssh process alive."""

    name = "tunnel-supervisor"

    def __init__(
        self,
        config: AgentConfig,
        key_manager: Optional[KeyManager] = None,
        process_factory: Optional[ProcessFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize tunnel supervisor.

        Args:
            config: Agent configuration
            key_manager: Credential source; None runs the legacy raw ssh mode
            process_factory: Replacement for asyncio.create_subprocess_exec
            clock: Monotonic clock used for uptime
        """
        super().__init__()
        self.config = config
        self.key_manager = key_manager
        self.clock = clock
        self._spawn = process_factory or asyncio.create_subprocess_exec
        self._backoff = Backoff(
            config.restart_backoff_initial,
            config.restart_backoff_max,
            config.restart_backoff_reset,
        )
        self.tunnel_state = TunnelState.NOT_STARTED
        self._tunnel_config: Optional[TunnelConfig] = None
        self._subscription: Optional[Subscription] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pumps: List[asyncio.Task] = []
        self._started_at = 0.0
        self._awaiting_credentials = False
        self.launch_count = 0

    @property
    def tunnel_config(self) -> Optional[TunnelConfig]:
        return self._tunnel_config

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def awaiting_credentials(self) -> bool:
        """True while the tunnel is down because the certificate expired."""
        return self._awaiting_credentials

    def _build_config(self) -> TunnelConfig:
        key_id = None
        if self.key_manager is not None and self.key_manager.certificate is not None:
            key_id = self.key_manager.certificate.key_id
        return TunnelConfig.from_config(self.config, key_id=key_id)

    async def starting(self) -> None:
        if self.key_manager is not None:
            if self.key_manager.state is not ServiceState.RUNNING:
                raise PreconditionFailed(
                    f"{self.key_manager.name} must be Running before the tunnel starts "
                    f"(state: {self.key_manager.state.value})"
                )
            self._subscription = self.key_manager.subscribe()

        self._tunnel_config = self._build_config()
        await self._launch()

    async def _launch(self) -> None:
        """Start ssh with the current tunnel config.

        Raises:
            ProcessError: If the binary cannot be executed
        """
        cfg = self._tunnel_config
        args = cfg.args()
        try:
            process = await self._spawn(
                cfg.ssh_binary,
                *args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessError(f"Failed to launch {cfg.ssh_binary}: {e}")

        self._process = process
        self._started_at = self.clock()
        self.launch_count += 1
        self.tunnel_state = TunnelState.RUNNING
        self._start_pumps(process)

        logger.info(
            "ssh_process_started",
            pid=process.pid,
            key_id=cfg.key_id,
            args=" ".join(args),
        )

    def _start_pumps(self, process: asyncio.subprocess.Process) -> None:
        for stream_name in ("stdout", "stderr"):
            stream = getattr(process, stream_name, None)
            if stream is not None:
                self._pumps.append(
                    asyncio.create_task(self._pump(stream, stream_name))
                )

    async def _pump(self, stream: asyncio.StreamReader, stream_name: str) -> None:
        """Forward ssh output to the agent log."""
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.info("ssh_output", stream=stream_name, line=line.decode(errors="replace").rstrip())

    async def running(self) -> None:
        stop_wait = asyncio.create_task(self.stop_requested.wait())
        try:
            while True:
                waits = {stop_wait}
                exit_wait = None
                event_wait = None

                if self._process is not None:
                    exit_wait = asyncio.create_task(self._process.wait())
                    waits.add(exit_wait)
                if self._subscription is not None:
                    event_wait = asyncio.create_task(self._subscription.get())
                    waits.add(event_wait)

                done, _ = await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)

                for task in (exit_wait, event_wait):
                    if task is not None and task not in done:
                        task.cancel()

                if stop_wait in done:
                    return

                if event_wait is not None and event_wait in done:
                    await self._on_credentials(event_wait.result())
                elif exit_wait is not None and exit_wait in done:
                    await self._on_exit(exit_wait.result())
        finally:
            stop_wait.cancel()

    async def _on_exit(self, returncode: int) -> None:
        uptime = self.clock() - self._started_at
        self._process = None
        self.tunnel_state = TunnelState.RESTARTING
        await self._drain_pumps()

        delay = self._backoff.next(uptime)
        logger.warning(
            "ssh_process_exited",
            exit_code=returncode,
            signaled=returncode < 0,
            uptime_seconds=round(uptime, 3),
            restart_in_seconds=delay,
        )
        SSH_RESTARTS.labels(reason="exit").inc()
        await self._relaunch(delay)

    async def _on_credentials(self, event: CredentialEvent) -> None:
        self.tunnel_state = TunnelState.RESTARTING

        if event.kind is CredentialEventKind.EXPIRED:
            logger.error(
                "tunnel_paused_certificate_expired",
                key_id=event.certificate.key_id,
            )
            await self._terminate_process()
            self._awaiting_credentials = True
            return

        logger.info(
            "tunnel_relaunching_with_new_certificate",
            key_id=event.certificate.key_id,
            sequence=event.sequence,
        )
        await self._terminate_process()
        SSH_RESTARTS.labels(reason="rotation").inc()
        self._tunnel_config = self._build_config()
        self._awaiting_credentials = False
        await self._relaunch(0)

    async def _relaunch(self, delay: float) -> None:
        """Launch again after delay, backing off while launching fails."""
        while True:
            if delay > 0 and await self.wait_stopped(delay):
                return
            if self.stop_requested.is_set():
                return
            try:
                await self._launch()
                return
            except ProcessError as e:
                delay = self._backoff.next()
                logger.error("ssh_launch_failed", error=str(e), retry_in_seconds=delay)

    async def _terminate_process(self) -> None:
        """SIGTERM, wait terminate_timeout, then SIGKILL."""
        process = self._process
        self._process = None
        if process is None:
            return

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.terminate_timeout)
            except asyncio.TimeoutError:
                logger.warning("ssh_process_kill", pid=process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        logger.info("ssh_process_stopped", pid=process.pid, exit_code=process.returncode)
        await self._drain_pumps()

    async def _drain_pumps(self) -> None:
        pumps, self._pumps = self._pumps, []
        if not pumps:
            return
        _, pending = await asyncio.wait(pumps, timeout=1.0)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)

    async def stopping(self, failure: Optional[BaseException]) -> None:
        self.tunnel_state = TunnelState.STOPPING
        try:
            await self._terminate_process()
        except Exception as e:
            logger.error("ssh_process_stop_failed", error=str(e))
        self.tunnel_state = TunnelState.TERMINATED
