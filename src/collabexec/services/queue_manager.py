from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set

import structlog

from ..core.errors import (
    AdmissionError,
    ConcurrentExecutionLimit,
    ExecutionError,
    ExecutionNotFound,
    ExecutionTimeout,
    QueueFull,
)
from ..core.models import ExecutionRequest, ExecutionResult, Status, UserIdentity
from ..core.utils import elapsed_ms, new_execution_id, utc_now
from ..executor.base import ExecSpec, Executor
from ..settings import Settings
from ..validation.validator import CodeValidator
from .broadcaster import (
    CANCELLED,
    COMPLETED,
    FAILED,
    QUEUED,
    STARTED,
    Broadcaster,
    ExecutionEvent,
)
from .result_store import ResultStore

log = structlog.get_logger(__name__)


@dataclass
class RoomExecutionState:
    """Queue, active set and user index of one room. Mutated only under `lock`."""
    room_id: str
    queue: Deque[ExecutionRequest] = field(default_factory=deque)
    active: Dict[str, ExecutionRequest] = field(default_factory=dict)
    by_user: Dict[str, str] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def position_of(self, execution_id: str) -> Optional[int]:
        for i, req in enumerate(self.queue, 1):
            if req.id == execution_id:
                return i
        return None

    @property
    def idle(self) -> bool:
        return not self.queue and not self.active and not self.lock.locked()


@dataclass(frozen=True)
class Admission:
    execution_id: str
    status: Status
    position: int
    estimated_wait_ms: int
    complexity: float


@dataclass
class _Outcome:
    status: Status
    stdout: str = ""
    stderr: str = ""
    exit_status: Optional[int] = None
    error: Optional[str] = None
    truncated: bool = False


class ExecutionQueueManager:
    """Admission control and FIFO scheduling, one serialized coordinator per room.

    requestExecution -> admission checks -> validation -> enqueue -> drain.
    The drain starts queue heads while the room has free slots and re-runs
    after every admission, completion and cancellation. Once accepted, a
    request always ends in exactly one terminal status; failures after
    acceptance travel through the result/event path, never as exceptions.
    """

    def __init__(
        self,
        settings: Settings,
        backend: Executor,
        validator: CodeValidator,
        store: ResultStore,
        broadcaster: Broadcaster,
    ):
        self.settings = settings
        self.backend = backend
        self.validator = validator
        self.store = store
        self.broadcaster = broadcaster

        self._rooms: Dict[str, RoomExecutionState] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ------------ admission ------------

    def _room(self, room_id: str) -> RoomExecutionState:
        state = self._rooms.get(room_id)
        if state is None:
            state = self._rooms[room_id] = RoomExecutionState(room_id)
        return state

    async def request_execution(
        self,
        room_id: str,
        user: UserIdentity,
        language: str,
        code: str,
        input: str = "",
    ) -> Admission:
        while True:
            if self._closed:
                raise AdmissionError("Execution engine is shutting down", reason="shutting_down")
            state = self._room(room_id)
            async with state.lock:
                # evicted while we waited for the lock
                if self._rooms.get(room_id) is not state:
                    continue
                return await self._admit(state, user, language, code, input or "")

    async def _admit(self, state: RoomExecutionState, user: UserIdentity, language: str, code: str, input: str) -> Admission:
        cfg = self.settings
        if user.user_id in state.by_user:
            log.info("admission_rejected", room_id=state.room_id, user_id=user.user_id,
                     reason=ConcurrentExecutionLimit.reason)
            raise ConcurrentExecutionLimit(user.user_id, state.room_id)
        if len(state.queue) >= cfg.max_queue_size:
            log.info("admission_rejected", room_id=state.room_id, user_id=user.user_id,
                     reason=QueueFull.reason, queue_length=len(state.queue))
            raise QueueFull(state.room_id, cfg.max_queue_size)

        report = self.validator.validate(code, language, input)

        req = ExecutionRequest(
            id=new_execution_id(),
            room_id=state.room_id,
            user=user,
            language=language,
            code=code,
            input=input,
            submitted_at=utc_now(),
            complexity=report.complexity,
        )
        req.done = asyncio.get_running_loop().create_future()
        state.queue.append(req)
        state.by_user[user.user_id] = req.id
        self._waiters[req.id] = req.done

        position = len(state.queue)
        wait_ms = self.estimate_wait_ms(state, position)
        log.info("execution_queued", execution_id=req.id, room_id=state.room_id, user_id=user.user_id,
                 language=language, position=position, complexity=report.complexity)
        await self._publish(ExecutionEvent.for_request(QUEUED, req, position=position, estimated_wait_ms=wait_ms))

        await self._drain(state)
        return Admission(
            execution_id=req.id,
            status=req.status,
            position=state.position_of(req.id) or 0,
            estimated_wait_ms=wait_ms,
            complexity=report.complexity,
        )

    def estimate_wait_ms(self, state: RoomExecutionState, position: int) -> int:
        avg = self.settings.average_execution_ms
        busy = avg if len(state.active) >= self.settings.max_concurrent_executions else 0
        return position * avg + busy

    # ------------ scheduling ------------

    async def _drain(self, state: RoomExecutionState) -> None:
        while not self._closed and state.queue and len(state.active) < self.settings.max_concurrent_executions:
            req = state.queue.popleft()
            req.status = Status.EXECUTING
            req.started_at = utc_now()
            state.active[req.id] = req
            log.info("execution_started", execution_id=req.id, room_id=state.room_id,
                     user_id=req.user_id, active=len(state.active))
            await self._publish(ExecutionEvent.for_request(STARTED, req, timestamp=req.started_at))
            task = asyncio.ensure_future(self._run(state, req))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, state: RoomExecutionState, req: ExecutionRequest) -> None:
        try:
            outcome = await self._execute(req)
        except asyncio.CancelledError:
            outcome = _Outcome(Status.FAILED, error="Execution aborted: engine shutting down")
            async with state.lock:
                await self._finish(state, req, outcome)
            raise
        async with state.lock:
            await self._finish(state, req, outcome)
            await self._drain(state)

    async def _execute(self, req: ExecutionRequest) -> _Outcome:
        cfg = self.settings
        limits = cfg.limits_for(req.language)
        spec = ExecSpec(
            execution_id=req.id,
            language=req.language,
            policy=cfg.languages[req.language],
            code=req.code,
            input=req.input,
            limits=limits,
        )
        # outer watchdog: holds even if a backend ignores its own deadline
        budget_s = (limits.wall_timeout_ms + cfg.watchdog_grace_ms) / 1000
        try:
            output = await asyncio.wait_for(self.backend.run(spec), timeout=budget_s)
        except ExecutionTimeout as e:
            return _Outcome(Status.TIMEOUT, e.stdout, e.stderr, None, e.message, e.truncated)
        except asyncio.TimeoutError:
            log.error("watchdog_fired", execution_id=req.id, budget_ms=int(budget_s * 1000))
            return _Outcome(Status.TIMEOUT, error=ExecutionTimeout(limits.wall_timeout_ms).message)
        except ExecutionError as e:
            log.warning("execution_error", execution_id=req.id, error=e.message)
            return _Outcome(Status.FAILED, error=e.message)
        except Exception as e:
            log.error("execution_internal_error", execution_id=req.id, error=str(e), exc_info=True)
            return _Outcome(Status.FAILED, error=f"Internal execution error: {e}")

        if output.exit_status == 0:
            return _Outcome(Status.COMPLETED, output.stdout, output.stderr, 0, None, output.truncated)
        if output.stage == "compile":
            error = "Compilation failed"
        else:
            error = f"Process exited with status {output.exit_status}"
        return _Outcome(Status.FAILED, output.stdout, output.stderr, output.exit_status, error, output.truncated)

    async def _finish(self, state: RoomExecutionState, req: ExecutionRequest, outcome: _Outcome) -> None:
        """Terminal transition. Caller holds state.lock."""
        if req.status.terminal:
            return
        ended = utc_now()
        state.active.pop(req.id, None)
        if state.by_user.get(req.user_id) == req.id:
            del state.by_user[req.user_id]
        req.status = outcome.status

        result = ExecutionResult(
            id=req.id,
            room_id=req.room_id,
            user_id=req.user_id,
            display_name=req.user.display_name,
            avatar=req.user.avatar,
            language=req.language,
            status=outcome.status,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            started_at=req.started_at,
            ended_at=ended,
            duration_ms=elapsed_ms(req.started_at, ended),
            exit_status=outcome.exit_status,
            error=outcome.error,
            complexity=req.complexity,
            truncated=outcome.truncated,
        )
        try:
            await self.store.call(self.store.record, result)
        except Exception as e:
            log.error("result_store_failed", execution_id=req.id, error=str(e))

        log.info("execution_finished", execution_id=req.id, room_id=req.room_id, user_id=req.user_id,
                 status=outcome.status.value, duration_ms=result.duration_ms)

        if outcome.status is Status.COMPLETED:
            event = ExecutionEvent.for_request(COMPLETED, req, result=result, duration_ms=result.duration_ms)
        elif outcome.status is Status.CANCELLED:
            event = ExecutionEvent.for_request(CANCELLED, req, result=result, error=outcome.error)
        else:
            event = ExecutionEvent.for_request(FAILED, req, result=result, error=outcome.error,
                                               duration_ms=result.duration_ms)
        await self._publish(event)

        self._waiters.pop(req.id, None)
        if req.done is not None and not req.done.done():
            req.done.set_result(result)

    async def _publish(self, event: ExecutionEvent) -> None:
        try:
            await self.broadcaster.publish(event.room_id, event)
        except Exception as e:
            log.error("broadcast_failed", room_id=event.room_id, event=event.type,
                      execution_id=event.execution_id, error=str(e))

    # ------------ cancellation ------------

    async def cancel_execution(self, room_id: str, user_id: str) -> bool:
        """Drop the user's queued request. Executing requests are not cancellable."""
        state = self._rooms.get(room_id)
        if state is None:
            return False
        async with state.lock:
            execution_id = state.by_user.get(user_id)
            if execution_id is None:
                return False
            req = next((r for r in state.queue if r.id == execution_id), None)
            if req is None:
                log.info("cancel_rejected", room_id=room_id, user_id=user_id,
                         execution_id=execution_id, reason="already_executing")
                return False
            state.queue.remove(req)
            await self._finish(state, req, _Outcome(Status.CANCELLED, error="Cancelled by user"))
            await self._drain(state)
            return True

    # ------------ queries ------------

    def get_room_status(self, room_id: str) -> dict:
        state = self._rooms.get(room_id)
        queued: List[dict] = []
        active: List[dict] = []
        if state is not None:
            for i, req in enumerate(state.queue, 1):
                queued.append(_entry(req, position=i, submitted_at=req.submitted_at.isoformat()))
            for req in state.active.values():
                active.append(_entry(req, started_at=req.started_at.isoformat() if req.started_at else None))
        return {
            "queued": queued,
            "active": active,
            "queue_length": len(queued),
            "active_count": len(active),
            "max_concurrent": self.settings.max_concurrent_executions,
        }

    async def get_room_history(self, room_id: str, limit: Optional[int] = None) -> List[ExecutionResult]:
        limit = self.settings.history_limit if limit is None else limit
        return await self.store.call(self.store.history, room_id, limit)

    async def get_execution(self, execution_id: str) -> Optional[ExecutionResult]:
        return await self.store.call(self.store.get, execution_id)

    async def wait_for_result(self, execution_id: str) -> ExecutionResult:
        fut = self._waiters.get(execution_id)
        if fut is not None:
            return await asyncio.shield(fut)
        result = await self.get_execution(execution_id)
        if result is None:
            raise ExecutionNotFound(execution_id)
        return result

    def active_count(self) -> int:
        return sum(len(s.active) for s in self._rooms.values())

    def queued_count(self) -> int:
        return sum(len(s.queue) for s in self._rooms.values())

    # ------------ housekeeping ------------

    def evict_idle_rooms(self) -> int:
        idle = [room_id for room_id, s in self._rooms.items() if s.idle]
        for room_id in idle:
            del self._rooms[room_id]
        return len(idle)

    async def shutdown(self) -> None:
        """Cancel everything still queued, then let running executions finish."""
        self._closed = True
        for state in list(self._rooms.values()):
            async with state.lock:
                while state.queue:
                    req = state.queue.popleft()
                    await self._finish(state, req, _Outcome(Status.CANCELLED, error="Execution engine shutting down"))
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _entry(req: ExecutionRequest, **extra) -> dict:
    return {
        "execution_id": req.id,
        "user_id": req.user.user_id,
        "display_name": req.user.display_name,
        "avatar": req.user.avatar,
        "language": req.language,
        **extra,
    }
