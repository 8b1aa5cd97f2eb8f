# runtime.py
# Per-run handles and cooperative cancellation.
#
# A run owns its AgentContext and ledger outright. The only state shared
# between runs is the connection registry below, which a UI thread may hit at
# any moment through RunHandle.stop().

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe stop flag. Checked at the top of every step, never preemptive."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ConnectionRegistry:
    """
    In-flight model calls keyed by run id.

    Registering the task that wraps a model call lets stop() abort the network
    request from another thread instead of waiting for the next step check.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, tuple[asyncio.AbstractEventLoop, asyncio.Task]] = {}

    def register(self, run_id: str, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks[run_id] = (task.get_loop(), task)

    def release(self, run_id: str, task: asyncio.Task | None = None) -> None:
        with self._lock:
            entry = self._tasks.get(run_id)
            if entry is not None and (task is None or entry[1] is task):
                del self._tasks[run_id]

    def abort(self, run_id: str) -> bool:
        """Cancel the in-flight call for `run_id`. Returns False when nothing was running."""
        with self._lock:
            entry = self._tasks.pop(run_id, None)
        if entry is None:
            return False
        loop, task = entry
        if loop.is_closed():
            return False
        loop.call_soon_threadsafe(task.cancel)
        logger.info("Aborted in-flight model call for run %s", run_id)
        return True

    def active(self) -> list[str]:
        with self._lock:
            return list(self._tasks)


connections = ConnectionRegistry()


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


@dataclass
class RunHandle:
    """Explicit per-run handle. Pass it to Scaffold.run() and keep it to stop the run."""

    run_id: str = field(default_factory=new_run_id)
    token: CancellationToken = field(default_factory=CancellationToken)

    def stop(self) -> None:
        self.token.cancel()
        connections.abort(self.run_id)

    @property
    def stop_requested(self) -> bool:
        return self.token.cancelled
