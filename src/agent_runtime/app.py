"""FastAPI service hosting one-shot agent runs and long-lived sessions."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Final

import structlog
import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from agent_runtime.agent.agent import Agent
from agent_runtime.agent.dispatcher import LiteLLMDispatcher
from agent_runtime.agent.errors import AgentError, ExecutionCancelled, ModelError
from agent_runtime.agent.runner import AgentRunner
from agent_runtime.agent.session import SessionActor
from agent_runtime.agent.types import RunResult
from agent_runtime.infra.config import AppSettings, load_app_settings
from agent_runtime.infra.logging import configure_logging
from agent_runtime.tools.executor import ToolExecutor

LOGGER: Final = structlog.get_logger(__name__)


class QueryRequest(BaseModel):
    user_input: str = Field(..., min_length=1)


class QueryResponse(BaseModel):
    response: Any
    iterations: int
    usage: dict[str, int]


class SessionMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


class HistoryMessage(BaseModel):
    role: str
    content: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)


class HistoryResponse(BaseModel):
    session_id: str
    messages: list[HistoryMessage]


def build_agent_runner(settings: AppSettings) -> AgentRunner:
    dispatcher = LiteLLMDispatcher(timeout_seconds=settings.llm.timeout_seconds)
    executor = ToolExecutor(default_timeout=settings.run.tool_timeout_seconds)
    return AgentRunner(dispatcher=dispatcher, executor=executor)


def create_app(
    settings: AppSettings,
    runner: AgentRunner | None = None,
    agent: Agent | None = None,
) -> FastAPI:
    """Instantiate the service; ``runner``/``agent`` default to ones built from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        sessions: dict[str, SessionActor] = app.state.sessions
        await asyncio.gather(*(actor.close() for actor in sessions.values()))
        sessions.clear()

    app = FastAPI(
        title=settings.title or "Agent Runtime",
        description=settings.description,
        version=settings.version,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.agent_runner = runner or build_agent_runner(settings)
    app.state.agent = agent or Agent.from_settings(settings)
    app.state.sessions = {}
    register_routes(app, settings)
    return app


def register_routes(app: FastAPI, settings: AppSettings) -> None:
    @app.get("/", include_in_schema=False)
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    router = APIRouter(prefix=settings.api_prefix, tags=["agent_runtime"])

    @router.get("/ping")
    def ping() -> dict[str, str]:
        return {
            "message": "pong",
            "service": settings.service_name or "agent_runtime",
        }

    @router.post("/query", response_model=QueryResponse)
    async def query(payload: QueryRequest) -> QueryResponse:
        runner: AgentRunner = app.state.agent_runner
        result = await runner.run(app.state.agent, payload.user_input)
        return _query_response(_checked(result))

    @router.post("/sessions/{session_id}/messages", response_model=QueryResponse)
    async def session_message(session_id: str, payload: SessionMessageRequest) -> QueryResponse:
        actor = _session(app, session_id)
        result = await actor.ask(payload.content)
        return _query_response(_checked(result))

    @router.get("/sessions/{session_id}/history", response_model=HistoryResponse)
    async def session_history(session_id: str) -> HistoryResponse:
        actor = _existing_session(app, session_id)
        messages = [
            HistoryMessage(
                role=message.role,
                content=message.content,
                tool_call_id=message.tool_call_id,
                tool_calls=[call.to_dict() for call in message.tool_calls],
            )
            for message in actor.history()
        ]
        return HistoryResponse(session_id=session_id, messages=messages)

    @router.post("/sessions/{session_id}/cancel")
    async def session_cancel(session_id: str) -> dict[str, Any]:
        actor = _existing_session(app, session_id)
        return {"session_id": session_id, "cancelled": await actor.cancel()}

    app.include_router(router)


def _session(app: FastAPI, session_id: str) -> SessionActor:
    sessions: dict[str, SessionActor] = app.state.sessions
    actor = sessions.get(session_id)
    if actor is None:
        actor = SessionActor(runner=app.state.agent_runner, agent=app.state.agent, session_id=session_id)
        sessions[session_id] = actor
    return actor


def _existing_session(app: FastAPI, session_id: str) -> SessionActor:
    actor = app.state.sessions.get(session_id)
    if actor is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return actor


def _query_response(result: RunResult) -> QueryResponse:
    output = result.output
    if hasattr(output, "model_dump"):
        output = output.model_dump(mode="json")
    return QueryResponse(response=output, iterations=result.iterations, usage=result.usage.to_dict())


def _checked(result: RunResult) -> RunResult:
    error = result.error
    if error is None:
        if result.output in (None, ""):
            raise HTTPException(status_code=502, detail="Model response empty")
        return result
    if isinstance(error, ExecutionCancelled):
        raise HTTPException(status_code=409, detail=error.message)
    if isinstance(error, ModelError) and error.details.get("status_code") == 429:
        LOGGER.warning("agent_runtime.rate_limited", error=error.message)
        detail, headers = _rate_limit_response(error)
        raise HTTPException(status_code=429, detail=detail, headers=headers) from error
    LOGGER.error("agent_runtime.query_failed", error=error.message, error_type=type(error).__name__)
    raise HTTPException(status_code=502, detail=_failure_detail(error)) from error


def _failure_detail(error: AgentError) -> str:
    if isinstance(error, ModelError):
        return "Model request failed"
    return f"Agent run failed: {error.message}"


def _rate_limit_response(error: ModelError) -> tuple[str, dict[str, str]]:
    detail = "Model rate limit exceeded. Please retry later."
    headers: dict[str, str] = {}
    retry_after = error.details.get("retry_after")
    if retry_after is not None:
        detail = f"{detail} Retry after {retry_after} seconds."
        headers["Retry-After"] = str(retry_after)
    return detail, headers


def serve() -> None:
    settings = load_app_settings()

    configure_logging(settings.logging)
    application = create_app(settings)

    LOGGER.info(
        "agent_runtime.startup",
        host=settings.host,
        port=settings.port,
        service_name=settings.service_name,
        model=settings.llm.model,
        metadata=settings.metadata,
    )

    config = uvicorn.Config(
        app=application,
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
    )
    server = uvicorn.Server(config=config)
    asyncio.run(server.serve())


if __name__ == "__main__":  # pragma: no cover - import-time guard
    serve()
