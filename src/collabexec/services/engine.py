from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from ..core.models import ExecutionResult, Status, UserIdentity
from ..core.utils import utc_now
from ..executor.base import Executor
from ..settings import Settings, load_settings
from ..validation.validator import CodeValidator
from .broadcaster import Broadcaster, InMemoryBroadcaster
from .queue_manager import Admission, ExecutionQueueManager
from .result_store import ResultStore

log = structlog.get_logger(__name__)


def build_executor(settings: Settings) -> Executor:
    """Pick the sandbox backend named in settings."""
    backend = (settings.backend or "process").lower()
    if backend == "docker":
        from ..executor.docker import DockerExecutor
        return DockerExecutor(scratch_root=settings.scratch_root)
    if backend == "process":
        from ..executor.process import ProcessExecutor
        return ProcessExecutor(
            isolation=settings.isolation,
            allow_unsafe=settings.allow_unsafe_isolation,
            use_cgroups=settings.use_cgroups,
            rlimit_nproc=settings.rlimit_nproc,
            scratch_root=settings.scratch_root,
        )
    raise ValueError(f"unknown execution backend: {settings.backend}")


class ExecutionEngine:
    """
    Orchestrator: validator + per-room queues + sandbox backend + result
    store + broadcaster, plus the periodic retention sweep.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        backend: Optional[Executor] = None,
        broadcaster: Optional[Broadcaster] = None,
        store: Optional[ResultStore] = None,
    ):
        self.settings = settings or load_settings()
        self.backend = backend or build_executor(self.settings)
        self.broadcaster = broadcaster or InMemoryBroadcaster()
        self.store = store or ResultStore(self.settings.database_url)
        self.validator = CodeValidator(self.settings.languages)
        self.queues = ExecutionQueueManager(
            self.settings, self.backend, self.validator, self.store, self.broadcaster
        )
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------ lifecycle ------------

    async def start(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())
        log.info(
            "engine_started",
            backend=self.backend.name,
            max_concurrent=self.settings.max_concurrent_executions,
            max_queue=self.settings.max_queue_size,
            languages=sorted(self.settings.languages),
        )

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.queues.shutdown()
        await self.backend.close()
        self.store.dispose()
        log.info("engine_stopped")

    async def _cleanup_loop(self) -> None:
        interval = self.settings.cleanup_interval_ms / 1000
        while True:
            try:
                await asyncio.sleep(interval)
                await self.purge_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error("cleanup_failed", error=str(e))

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utc_now()) - timedelta(milliseconds=self.settings.retention_window_ms)
        removed = await self.store.call(self.store.purge_older_than, cutoff)
        evicted = self.queues.evict_idle_rooms()
        if removed or evicted:
            log.info("cleanup_done", results_removed=removed, rooms_evicted=evicted)
        return removed

    # ------------ operations ------------

    async def request_execution(
        self,
        room_id: str,
        user: UserIdentity,
        language: str,
        code: str,
        input: str = "",
    ) -> Admission:
        return await self.queues.request_execution(room_id, user, language, code, input)

    async def submit_execution(
        self,
        room_id: str,
        user: UserIdentity,
        language: str,
        code: str,
        input: str = "",
    ) -> ExecutionResult:
        """Admit, then wait for the terminal result. Rejections raise before anything is queued."""
        admission = await self.request_execution(room_id, user, language, code, input)
        return await self.wait_for_result(admission.execution_id)

    async def cancel_execution(self, room_id: str, user_id: str) -> bool:
        return await self.queues.cancel_execution(room_id, user_id)

    def get_status(self, room_id: str) -> dict:
        return self.queues.get_room_status(room_id)

    async def get_history(self, room_id: str, limit: Optional[int] = None) -> List[ExecutionResult]:
        return await self.queues.get_room_history(room_id, limit)

    async def get_execution(self, execution_id: str) -> Optional[ExecutionResult]:
        return await self.queues.get_execution(execution_id)

    async def wait_for_result(self, execution_id: str) -> ExecutionResult:
        return await self.queues.wait_for_result(execution_id)

    async def get_statistics(self) -> dict:
        counts = await self.store.call(self.store.counts_by_status)
        active = self.queues.active_count()
        queued = self.queues.queued_count()
        completed = counts.get(Status.COMPLETED, 0)
        failed = counts.get(Status.FAILED, 0) + counts.get(Status.TIMEOUT, 0)
        cancelled = counts.get(Status.CANCELLED, 0)
        total = sum(counts.values()) + active
        return {
            "total": total,
            "active": active,
            "queued": queued,
            "completed": completed,
            "failed": failed,
            "cancelled": cancelled,
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
        }

    # ------------ subscriptions ------------

    def subscribe(self, room_id: str) -> asyncio.Queue:
        if not isinstance(self.broadcaster, InMemoryBroadcaster):
            raise TypeError("subscriptions need the in-memory broadcaster")
        return self.broadcaster.subscribe(room_id)

    def unsubscribe(self, room_id: str, q: asyncio.Queue) -> None:
        if isinstance(self.broadcaster, InMemoryBroadcaster):
            self.broadcaster.unsubscribe(room_id, q)
