"""Service lifecycle shared by the key manager and the tunnel supervisor.

A service moves through New -> Starting -> Running -> Stopping -> Terminated.
A failure while Starting or Running moves it straight to Failed. States are
never revisited.
"""

import asyncio
from enum import Enum
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()


class ServiceState(str, Enum):
    NEW = "New"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    TERMINATED = "Terminated"
    FAILED = "Failed"


_TRANSITIONS = {
    ServiceState.NEW: {ServiceState.STARTING, ServiceState.TERMINATED},
    ServiceState.STARTING: {ServiceState.RUNNING, ServiceState.STOPPING, ServiceState.FAILED},
    ServiceState.RUNNING: {ServiceState.STOPPING, ServiceState.FAILED},
    ServiceState.STOPPING: {ServiceState.TERMINATED, ServiceState.FAILED},
    ServiceState.TERMINATED: set(),
    ServiceState.FAILED: set(),
}


class PreconditionFailed(Exception):
    """Raised when a service is started out of its required order."""
    pass


class InvalidServiceState(Exception):
    """Raised when a service is not in the state the caller waited for."""

    def __init__(self, name: str, expected: ServiceState, actual: ServiceState):
        super().__init__(f"{name}: expected {expected.value}, got {actual.value}")
        self.expected = expected
        self.actual = actual


class BasicService:
    """Lifecycle state machine around three hooks.

    Subclasses implement ``starting`` (must finish before the service counts
    as Running), ``running`` (returns once ``stop_requested`` is set) and
    ``stopping`` (cleanup, also called after a failure).
    """

    name = "service"

    def __init__(self):
        self._state = ServiceState.NEW
        self._failure: Optional[BaseException] = None
        self._changed = asyncio.Event()
        self._stop_requested = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def failure_case(self) -> Optional[BaseException]:
        """Exception that moved the service to Failed, if any."""
        return self._failure

    @property
    def stop_requested(self) -> asyncio.Event:
        return self._stop_requested

    async def starting(self) -> None:
        pass

    async def running(self) -> None:
        await self._stop_requested.wait()

    async def stopping(self, failure: Optional[BaseException]) -> None:
        pass

    def _set_state(self, new: ServiceState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise PreconditionFailed(
                f"{self.name}: invalid transition {self._state.value} -> {new.value}"
            )
        logger.debug("service_state_changed", service=self.name, old=self._state.value, new=new.value)
        self._state = new
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def _wait_for(self, predicate: Callable[[ServiceState], bool]) -> ServiceState:
        while not predicate(self._state):
            await self._changed.wait()
        return self._state

    async def start(self) -> None:
        """Begin starting the service in the background.

        Raises:
            PreconditionFailed: If the service was already started
        """
        if self._state is not ServiceState.NEW:
            raise PreconditionFailed(
                f"{self.name}: cannot start service in state {self._state.value}"
            )
        self._set_state(ServiceState.STARTING)
        self._task = asyncio.create_task(self._main(), name=f"{self.name}-main")

    async def _main(self) -> None:
        try:
            await self.starting()
        except Exception as e:
            logger.error("service_start_failed", service=self.name, error=str(e))
            await self._cleanup_after_failure(e)
            return

        if self._stop_requested.is_set():
            await self._stop_cleanly()
            return

        self._set_state(ServiceState.RUNNING)

        try:
            await self.running()
        except Exception as e:
            logger.error("service_failed", service=self.name, error=str(e))
            await self._cleanup_after_failure(e)
            return

        await self._stop_cleanly()

    async def _cleanup_after_failure(self, failure: BaseException) -> None:
        try:
            await self.stopping(failure)
        except Exception as e:
            logger.error("service_cleanup_failed", service=self.name, error=str(e))
        self._failure = failure
        self._set_state(ServiceState.FAILED)

    async def _stop_cleanly(self) -> None:
        self._set_state(ServiceState.STOPPING)
        try:
            await self.stopping(None)
        except Exception as e:
            logger.error("service_stop_failed", service=self.name, error=str(e))
            self._failure = e
            self._set_state(ServiceState.FAILED)
            return
        self._set_state(ServiceState.TERMINATED)

    async def await_running(self) -> None:
        """Block until Running.

        Raises:
            The failure cause unchanged if the service Failed, or
            InvalidServiceState if it stopped without ever running.
        """
        state = await self._wait_for(lambda s: s is not ServiceState.NEW and s is not ServiceState.STARTING)
        if state is ServiceState.RUNNING:
            return
        if state is ServiceState.FAILED and self._failure is not None:
            raise self._failure
        raise InvalidServiceState(self.name, ServiceState.RUNNING, state)

    async def stop(self) -> None:
        """Request stop and wait for the service to finish.

        Stopping a Terminated or Failed service is a no-op.
        """
        if self._state is ServiceState.NEW:
            self._set_state(ServiceState.TERMINATED)
            return
        self._stop_requested.set()
        await self._wait_for(_is_finished)

    async def await_terminated(self) -> None:
        """Block until Terminated or Failed.

        Raises:
            The failure cause unchanged if the service Failed.
        """
        state = await self._wait_for(_is_finished)
        if state is ServiceState.FAILED and self._failure is not None:
            raise self._failure

    async def wait_stopped(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


def _is_finished(state: ServiceState) -> bool:
    return state in (ServiceState.TERMINATED, ServiceState.FAILED)


async def start_and_await_running(service: BasicService) -> None:
    """Start service and block until it is Running.

    Raises:
        Whatever made the service fail, unchanged.
    """
    await service.start()
    await service.await_running()


async def stop_and_await_terminated(service: BasicService) -> None:
    """Stop service and block until it has finished."""
    await service.stop()
