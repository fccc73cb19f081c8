import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..core.models import ExecutionResult, Status
from ..core.utils import as_naive_utc, as_utc


class ExecutionRecord(SQLModel, table=True):
    __tablename__ = "execution_results"

    id: str = Field(primary_key=True)
    room_id: str = Field(index=True)
    user_id: str = Field(index=True)
    display_name: str = ""
    avatar: Optional[str] = None
    language: str
    status: Status
    stdout: str = ""
    stderr: str = ""
    exit_status: Optional[int] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: datetime = Field(index=True)
    duration_ms: int = 0
    complexity: float = 0.0
    truncated: bool = False

    @classmethod
    def from_result(cls, r: ExecutionResult) -> "ExecutionRecord":
        return cls(
            id=r.id, room_id=r.room_id, user_id=r.user_id, display_name=r.display_name,
            avatar=r.avatar, language=r.language, status=r.status, stdout=r.stdout,
            stderr=r.stderr, exit_status=r.exit_status, error=r.error,
            started_at=as_naive_utc(r.started_at), ended_at=as_naive_utc(r.ended_at), duration_ms=r.duration_ms,
            complexity=r.complexity, truncated=r.truncated,
        )

    def to_result(self) -> ExecutionResult:
        return ExecutionResult(
            id=self.id, room_id=self.room_id, user_id=self.user_id,
            display_name=self.display_name, avatar=self.avatar, language=self.language,
            status=Status(self.status), stdout=self.stdout, stderr=self.stderr,
            started_at=as_utc(self.started_at), ended_at=as_utc(self.ended_at),
            duration_ms=self.duration_ms, exit_status=self.exit_status, error=self.error,
            complexity=self.complexity, truncated=self.truncated,
        )


class ResultStore:
    """Terminal results keyed by execution id. Insert-only; rows leave via purge."""

    def __init__(self, url: str = "sqlite://"):
        kwargs: dict = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)
        # one worker: calls reach the database in submission order, never concurrently
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="result-store")

    async def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking store method off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, partial(fn, *args, **kwargs))

    def record(self, result: ExecutionResult) -> None:
        with self.SessionLocal() as s:
            s.add(ExecutionRecord.from_result(result))
            s.commit()

    def get(self, execution_id: str) -> Optional[ExecutionResult]:
        with self.SessionLocal() as s:
            row = s.get(ExecutionRecord, execution_id)
            return row.to_result() if row else None

    def history(self, room_id: str, limit: int = 20) -> List[ExecutionResult]:
        stmt = (
            select(ExecutionRecord)
            .where(ExecutionRecord.room_id == room_id)
            .order_by(ExecutionRecord.ended_at.desc(), ExecutionRecord.id.desc())
            .limit(max(0, limit))
        )
        with self.SessionLocal() as s:
            return [row.to_result() for row in s.exec(stmt).all()]

    def purge_older_than(self, cutoff: datetime) -> int:
        cutoff = as_naive_utc(cutoff)
        with self.SessionLocal() as s:
            res = s.execute(delete(ExecutionRecord).where(ExecutionRecord.ended_at < cutoff))
            s.commit()
            return res.rowcount or 0

    def counts_by_status(self) -> Dict[Status, int]:
        stmt = select(ExecutionRecord.status, func.count()).group_by(ExecutionRecord.status)
        with self.SessionLocal() as s:
            return {Status(status): int(n) for status, n in s.exec(stmt).all()}

    def dispose(self) -> None:
        self._pool.shutdown(wait=True)
        self.engine.dispose()
