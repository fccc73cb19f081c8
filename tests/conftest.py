import asyncio
import time
from typing import Dict, List

import pytest

from collabexec.core.errors import ExecutionError, ExecutionTimeout
from collabexec.core.models import RunOutput, UserIdentity
from collabexec.executor.base import ExecSpec, Executor, SandboxContext
from collabexec.services.broadcaster import Broadcaster, ExecutionEvent
from collabexec.services.engine import ExecutionEngine
from collabexec.services.result_store import ResultStore
from collabexec.settings import Settings


class FakeBackend(Executor):
    """Scriptable sandbox. The submitted code picks the behaviour:

    "# hold"    block until release(execution_id)
    "# hang"    never return (ignores its own deadline)
    "# fail"    exit status 3
    "# boom"    launch failure (ExecutionError)
    "# timeout" backend-side watchdog fires (ExecutionTimeout)
    anything else prints the code back and exits 0.
    """

    name = "fake"

    def __init__(self):
        self.started: List[str] = []
        self.torn_down: List[str] = []
        self.specs: Dict[str, ExecSpec] = {}
        self._gates: Dict[str, asyncio.Event] = {}

    def _gate(self, execution_id: str) -> asyncio.Event:
        return self._gates.setdefault(execution_id, asyncio.Event())

    def release(self, execution_id: str) -> None:
        self._gate(execution_id).set()

    def release_all(self) -> None:
        for execution_id in self.started:
            self.release(execution_id)

    async def allocate(self, spec: ExecSpec) -> SandboxContext:
        self.started.append(spec.execution_id)
        self.specs[spec.execution_id] = spec
        return SandboxContext(execution_id=spec.execution_id)

    async def execute(self, ctx: SandboxContext, spec: ExecSpec) -> RunOutput:
        code = spec.code
        if "# hold" in code:
            await self._gate(spec.execution_id).wait()
        if "# hang" in code:
            await asyncio.Event().wait()
        if "# boom" in code:
            raise ExecutionError("failed to start 'python3': no such file")
        if "# timeout" in code:
            raise ExecutionTimeout(spec.limits.wall_timeout_ms, stdout="partial")
        if "# fail" in code:
            return RunOutput(stdout="", stderr="Traceback: boom", exit_status=3)
        return RunOutput(stdout=f"ran:{code.strip()}", stderr="", exit_status=0)

    async def teardown(self, ctx: SandboxContext) -> None:
        self.torn_down.append(ctx.execution_id)


class RecordingBroadcaster(Broadcaster):
    def __init__(self):
        self.events: List[ExecutionEvent] = []

    async def publish(self, room_id: str, event: ExecutionEvent) -> None:
        self.events.append(event)

    def types(self, execution_id=None) -> List[str]:
        return [e.type for e in self.events if execution_id is None or e.execution_id == execution_id]

    def index(self, type: str, execution_id: str) -> int:
        for i, e in enumerate(self.events):
            if e.type == type and e.execution_id == execution_id:
                return i
        raise AssertionError(f"no {type} event for {execution_id}")


def user(n) -> UserIdentity:
    return UserIdentity(f"u{n}", f"User {n}", None)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def make_engine():
    def factory(broadcaster=None, **overrides) -> ExecutionEngine:
        settings = Settings(**overrides)
        return ExecutionEngine(
            settings,
            backend=FakeBackend(),
            broadcaster=broadcaster or RecordingBroadcaster(),
            store=ResultStore("sqlite://"),
        )

    return factory
