"""
Graceful Shutdown for the ERP API.

Stateful components (HTTP server, security coordinator, shared store,
background tasks) register a named, prioritised hook with the
ShutdownManager. On shutdown the hooks run one at a time in ascending
priority order under a single global deadline; failures and timeouts are
collected and raised together once every hook has been attempted.

Usage in FastAPI lifespan:
    manager = ShutdownManager(timeout=settings.shutdown_timeout_seconds)
    manager.register(CoordinatorHook(coordinator, priority=10))
    manager.register(StoreHook(store, priority=90))

    yield

    await manager.shutdown()
"""

import asyncio
import logging
import signal
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Coroutine

from app.core.errors import ShutdownError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ShutdownHook(ABC):
    """A named closer. Lower priority numbers run first."""

    def __init__(self, name: str, priority: int = 100):
        self.name = name
        self.priority = priority

    @abstractmethod
    async def shutdown(self, deadline: float) -> None:
        """Release the resource. `deadline` is a time.monotonic() timestamp."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"


class CallbackHook(ShutdownHook):
    """Wraps a plain sync or async callable."""

    def __init__(self, name: str, callback: Callable[[], Any], priority: int = 100):
        super().__init__(name, priority)
        self.callback = callback

    async def shutdown(self, deadline: float) -> None:
        result = self.callback()
        if asyncio.iscoroutine(result):
            await result


class HTTPServerHook(ShutdownHook):
    """Tells a uvicorn Server to stop accepting connections."""

    def __init__(self, server, priority: int = 0):
        super().__init__("http_server", priority)
        self.server = server

    async def shutdown(self, deadline: float) -> None:
        self.server.should_exit = True


class CoordinatorHook(ShutdownHook):
    def __init__(self, coordinator, priority: int = 10):
        super().__init__("security_coordinator", priority)
        self.coordinator = coordinator

    async def shutdown(self, deadline: float) -> None:
        await self.coordinator.stop()


class TaskManagerHook(ShutdownHook):
    def __init__(self, manager: "BackgroundTaskManager", priority: int = 50):
        super().__init__("background_tasks", priority)
        self.manager = manager

    async def shutdown(self, deadline: float) -> None:
        remaining = max(0.0, deadline - time.monotonic())
        await self.manager.wait_for_completion(timeout=remaining)


class StoreHook(ShutdownHook):
    def __init__(self, store, priority: int = 90):
        super().__init__("shared_store", priority)
        self.store = store

    async def shutdown(self, deadline: float) -> None:
        await self.store.close()


class ShutdownManager:
    """
    Runs registered hooks once, in priority order, under a global deadline.

    The first call to shutdown() does the work; later calls (including
    concurrent ones, which wait for the first) return without re-running
    hooks. `done` is set exactly once, as soon as the first run begins and
    before any hook executes; `finished` is set once that run completes.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        if timeout <= 0:
            raise ValueError("shutdown timeout must be positive")
        self.timeout = timeout
        self._hooks: list[ShutdownHook] = []
        self._lock = asyncio.Lock()
        self._started = False
        self.done = asyncio.Event()
        self.finished = asyncio.Event()

    @property
    def hooks(self) -> list[ShutdownHook]:
        return list(self._hooks)

    @property
    def is_shutting_down(self) -> bool:
        return self._started

    def register(self, hook: ShutdownHook) -> None:
        if hook is None:
            raise ValueError("shutdown hook cannot be None")
        if any(h.name == hook.name for h in self._hooks):
            raise ValueError(f"shutdown hook already registered: {hook.name}")
        self._hooks.append(hook)
        # sort() is stable, so equal priorities keep registration order
        self._hooks.sort(key=lambda h: h.priority)
        logger.debug("Registered shutdown hook: %s (priority %d)", hook.name, hook.priority)

    async def shutdown(self, deadline: float | None = None) -> None:
        """
        Run every hook. Raises ShutdownError listing each failed or timed
        out hook after all of them have been attempted.
        """
        async with self._lock:
            if self._started:
                return
            self._started = True
            self.done.set()

            limit = time.monotonic() + self.timeout
            if deadline is not None:
                limit = min(deadline, limit)

            logger.info("Graceful shutdown initiated (%d hooks)", len(self._hooks))
            errors: list[Exception] = []
            try:
                for hook in self._hooks:
                    error = await self._run_hook(hook, limit)
                    if error is not None:
                        errors.append(error)
            finally:
                self.finished.set()

            if errors:
                logger.error("Shutdown finished with %d error(s)", len(errors))
                raise ShutdownError(errors)
            logger.info("Graceful shutdown complete")

    async def _run_hook(self, hook: ShutdownHook, deadline: float) -> Exception | None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.error("Shutdown deadline passed before hook %s", hook.name)
            return TimeoutError(f"{hook.name}: deadline exceeded before start")

        logger.debug("Running shutdown hook: %s", hook.name)
        try:
            await asyncio.wait_for(hook.shutdown(deadline), timeout=remaining)
        except asyncio.TimeoutError:
            logger.error("Shutdown hook timed out: %s", hook.name)
            return TimeoutError(f"{hook.name}: timed out")
        except Exception as e:
            logger.error("Shutdown hook failed: %s - %s", hook.name, e)
            return RuntimeError(f"{hook.name}: {e}")
        logger.debug("Completed shutdown hook: %s", hook.name)
        return None

    async def wait(self) -> None:
        """Block until the first shutdown run has finished."""
        await self.finished.wait()


class GracefulShutdown:
    """
    Installs SIGINT/SIGTERM handlers that trigger a ShutdownManager.

    Used when the process runs its own event loop; under uvicorn the
    server handles signals and the lifespan exit runs the manager.
    """

    def __init__(self, manager: ShutdownManager):
        self.manager = manager
        self._signal_received = asyncio.Event()
        self._task: asyncio.Task | None = None

    def setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
                logger.debug("Registered signal handler for %s", sig.name)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self._handle_signal, signal.Signals(s)))
                logger.debug("Registered signal handler (fallback) for %s", sig.name)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received signal %s, initiating graceful shutdown...", sig.name)
        self._signal_received.set()
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            await self.manager.shutdown()
        except ShutdownError as e:
            logger.error("%s", e)

    async def wait_for_signal(self) -> None:
        await self._signal_received.wait()


class BackgroundTaskManager:
    """
    Tracks background tasks so shutdown can wait for them and cancel
    whatever is still running when the budget runs out.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def create_task(self, coro: Coroutine | Awaitable, name: str | None = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_completion(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return

        logger.info("Waiting for %d background tasks (timeout: %.1fs)", len(self._tasks), timeout)
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d tasks did not complete in time, cancelling", len(pending))
            await self.cancel_all(pending)

    async def cancel_all(self, tasks: set[asyncio.Task] | None = None) -> None:
        targets = list(tasks if tasks is not None else self._tasks)
        for task in targets:
            task.cancel()
        results = await asyncio.gather(*targets, return_exceptions=True)
        for task, result in zip(targets, results):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error("Task failed during shutdown: %s - %s", task.get_name(), result)
