from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .core.errors import (
    AdmissionError,
    ConcurrentExecutionLimit,
    ExecutionEngineError,
    ExecutionNotFound,
    QueueFull,
    ValidationError,
)
from .core.models import ExecutionResult, UserIdentity
from .logging import setup_logging
from .services.engine import ExecutionEngine

# most specific first
_HTTP_STATUS = (
    (ConcurrentExecutionLimit, 409),
    (QueueFull, 429),
    (AdmissionError, 503),
    (ValidationError, 400),
    (ExecutionNotFound, 404),
)


def status_for(exc: ExecutionEngineError) -> int:
    for cls, code in _HTTP_STATUS:
        if isinstance(exc, cls):
            return code
    return 500


# --------- Schemas ---------
class UserReq(BaseModel):
    user_id: str
    display_name: str = ""
    avatar: Optional[str] = None


class ExecutionReq(BaseModel):
    user: UserReq
    language: str
    code: str
    input: str = ""
    wait: bool = False


class AdmissionRes(BaseModel):
    execution_id: str
    status: str
    position: int
    estimated_wait_ms: int
    complexity: float


class ResultRes(BaseModel):
    id: str
    room_id: str
    user_id: str
    display_name: str
    avatar: Optional[str] = None
    language: str
    status: str
    stdout: str
    stderr: str
    started_at: Optional[str] = None
    ended_at: str
    duration_ms: int
    exit_status: Optional[int] = None
    error: Optional[str] = None
    complexity: float = 0.0
    truncated: bool = False

    @classmethod
    def of(cls, result: ExecutionResult) -> "ResultRes":
        return cls(**result.to_dict())


class CancelRes(BaseModel):
    cancelled: bool


class StatisticsRes(BaseModel):
    total: int
    active: int
    queued: int
    completed: int
    failed: int
    cancelled: int
    success_rate: float


# --------- App ---------

def create_app(engine: Optional[ExecutionEngine] = None) -> FastAPI:
    engine = engine or ExecutionEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(engine.settings.log_level)
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(title="Collaborative Execution Engine", lifespan=lifespan)
    app.state.engine = engine
    # DEV: open CORS; whitelist front-end origins in production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ExecutionEngineError)
    async def engine_error(request: Request, exc: ExecutionEngineError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"ok": True, "backend": engine.backend.name}

    @app.post("/rooms/{room_id}/executions")
    async def request_execution(room_id: str, req: ExecutionReq):
        user = UserIdentity(req.user.user_id, req.user.display_name, req.user.avatar)
        admission = await engine.request_execution(room_id, user, req.language, req.code, req.input)
        if req.wait:
            return ResultRes.of(await engine.wait_for_result(admission.execution_id))
        return AdmissionRes(
            execution_id=admission.execution_id,
            status=admission.status.value,
            position=admission.position,
            estimated_wait_ms=admission.estimated_wait_ms,
            complexity=admission.complexity,
        )

    @app.delete("/rooms/{room_id}/users/{user_id}/execution", response_model=CancelRes)
    async def cancel_execution(room_id: str, user_id: str):
        return CancelRes(cancelled=await engine.cancel_execution(room_id, user_id))

    @app.get("/rooms/{room_id}/status")
    async def room_status(room_id: str):
        return engine.get_status(room_id)

    @app.get("/rooms/{room_id}/history", response_model=List[ResultRes])
    async def room_history(room_id: str, limit: Optional[int] = Query(default=None, ge=0, le=500)):
        return [ResultRes.of(r) for r in await engine.get_history(room_id, limit)]

    @app.get("/executions/{execution_id}", response_model=ResultRes)
    async def get_execution(execution_id: str):
        result = await engine.get_execution(execution_id)
        if result is None:
            raise ExecutionNotFound(execution_id)
        return ResultRes.of(result)

    @app.get("/statistics", response_model=StatisticsRes)
    async def statistics():
        return await engine.get_statistics()

    @app.websocket("/rooms/{room_id}/events")
    async def room_events(websocket: WebSocket, room_id: str):
        # subscribe before accepting so nothing published after the handshake is missed
        q = engine.subscribe(room_id)

        async def forward():
            while True:
                event = await q.get()
                await websocket.send_json(event.to_dict())

        await websocket.accept()
        sender = asyncio.ensure_future(forward())
        try:
            while True:
                # inbound frames are ignored; receiving only detects the disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            engine.unsubscribe(room_id, q)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
