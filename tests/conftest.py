"""
Tunnel Agent Testing Framework - Global Test Configuration
Pytest fixtures shared by unit and integration tests
"""

import asyncio
import tempfile
from pathlib import Path
from typing import List, Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from tunnel_agent.cert_store import parse_certificate
from tunnel_agent.config import AgentConfig
from tunnel_agent.signing import SignedCertificate

T0 = 1_700_000_000

AGENT_ENV_VARS = (
    "GCLOUD_PDC_CLUSTER",
    "GCLOUD_PDC_SIGNING_TOKEN",
    "GCLOUD_HOSTED_GRAFANA_ID",
    "GCLOUD_SSH_KEY_FILE",
    "GCLOUD_SSH_LOG_LEVEL",
    "GCLOUD_SSH_SKIP_SSH_VALIDATION",
    "GCLOUD_SSH_ADDITIONAL_SSHFLAGS",
    "GCLOUD_SSH_FORCE_KEY_FILE_OVERWRITE",
    "GCLOUD_SSH_CERT_EXPIRY_WINDOW",
    "GCLOUD_SSH_CERT_CHECK_EXPIRY_PERIOD",
    "GCLOUD_SSH_METRICS_ADDR",
)

KNOWN_HOSTS = (
    "@cert-authority *.grafana.net ssh-ed25519 "
    "AAAAC3NzaC1lZDI1NTE5AAAAIEkZ3JpbXBsZWhvc3RrZXlmb3J0ZXN0aW5nb25seQ"
)


def make_certificate(
    public_key: str,
    valid_after: int,
    valid_before: int,
    key_id: str = "tunnel-agent-test",
    serial: int = 1,
) -> str:
    """Sign public_key with a throwaway CA and return the certificate line."""
    ca_key = ed25519.Ed25519PrivateKey.generate()
    subject = serialization.load_ssh_public_key(public_key.encode())

    cert = (
        serialization.SSHCertificateBuilder()
        .public_key(subject)
        .serial(serial)
        .type(serialization.SSHCertificateType.USER)
        .key_id(key_id.encode())
        .valid_principals([b"123456"])
        .valid_after(valid_after)
        .valid_before(valid_before)
        .sign(ca_key)
    )
    return cert.public_bytes().decode()


class FakeClock:
    """Controllable wall clock."""

    def __init__(self, now: float = T0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSigner:
    """In-memory signing API.

    Each call signs the given key for ``lifetime`` seconds from the clock's
    current time. Exceptions queued in ``errors`` are raised first.
    """

    def __init__(self, clock: FakeClock, lifetime: int = 600, trace: Optional[List[str]] = None):
        self.clock = clock
        self.lifetime = lifetime
        self.trace = trace if trace is not None else []
        self.calls = []
        self.errors: List[Exception] = []
        self.serial = 0
        self.known_hosts = KNOWN_HOSTS

    async def request_certificate(self, public_key, identity):
        self.calls.append((public_key, identity))
        if self.errors:
            raise self.errors.pop(0)

        self.serial += 1
        now = int(self.clock())
        text = make_certificate(
            public_key,
            valid_after=now,
            valid_before=now + self.lifetime,
            key_id=f"agent-{self.serial}",
            serial=self.serial,
        )
        self.trace.append("certificate_issued")
        return SignedCertificate(parse_certificate(text), self.known_hosts)


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, args: List[str], pid: int, ignore_terminate: bool = False):
        self.args = args
        self.pid = pid
        self.returncode: Optional[int] = None
        self.stdout = None
        self.stderr = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeProcessFactory:
    """Replacement for asyncio.create_subprocess_exec."""

    def __init__(self, trace: Optional[List[str]] = None):
        self.processes: List[FakeProcess] = []
        self.trace = trace if trace is not None else []
        self.fail_next = 0
        self.ignore_terminate = False
        self.kwargs = []

    async def __call__(self, program, *args, **kwargs):
        if self.fail_next:
            self.fail_next -= 1
            raise FileNotFoundError(2, "No such file or directory", program)

        process = FakeProcess(
            [program, *args],
            pid=1000 + len(self.processes),
            ignore_terminate=self.ignore_terminate,
        )
        self.processes.append(process)
        self.kwargs.append(kwargs)
        self.trace.append("launch")
        return process

    @property
    def current(self) -> FakeProcess:
        return self.processes[-1]

    async def wait_for_launches(self, count: int, timeout: float = 2.0) -> None:
        async def _wait():
            while len(self.processes) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_wait(), timeout)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it returns True."""

    async def _wait():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_wait(), timeout)


@pytest.fixture(scope='function')
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_path:
        yield Path(temp_path)


@pytest.fixture(scope='function')
def agent_config(temp_dir):
    """Agent configuration pointing at a temporary key directory."""
    return AgentConfig(
        cluster="prod-us-east-0",
        tenant_id="123456",
        token="glc_test_token",
        key_file=str(temp_dir / "keys" / "grafana-pdc-agent"),
        cert_expiry_window=300,
        cert_check_expiry_period=60,
        ssh_log_level=0,
        restart_backoff_initial=0.01,
        restart_backoff_max=0.08,
        restart_backoff_reset=60,
        terminate_timeout=0.2,
        sign_timeout=2.0,
        metrics_addr="",
    )


@pytest.fixture(scope='function')
def clock():
    """Fake wall clock starting at T0."""
    return FakeClock()


@pytest.fixture(scope='function')
def trace():
    """Shared event trace for ordering assertions."""
    return []


@pytest.fixture(scope='function')
def signer(clock, trace):
    """Fake signing API issuing ten minute certificates."""
    return FakeSigner(clock, lifetime=600, trace=trace)


@pytest.fixture(scope='function')
def process_factory(trace):
    """Fake ssh process launcher."""
    return FakeProcessFactory(trace=trace)


@pytest.fixture(scope='function')
def cert_factory():
    """Expose make_certificate to tests."""
    return make_certificate


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove agent variables inherited from the test environment."""
    for name in AGENT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
