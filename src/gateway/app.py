from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config.settings import get_settings
from src.delivery.coordinator import InvocationRequest
from src.gateway.protocol import (
    CommandIssued,
    CommandParams,
    ErrorData,
    ErrorResponse,
    InvocationAccepted,
    InvocationParams,
    RecordData,
    RecordList,
)
from src.host.runtime import HandoffRuntime, build_runtime
from src.infra.errors import (
    BackgroundTokenError,
    ConfigurationError,
    HandoffError,
    InputError,
)
from src.infra.logging import setup_logging

logger = structlog.get_logger()

_STATUS_BY_ERROR: dict[type[HandoffError], int] = {
    InputError: 400,
    ConfigurationError: 400,
    BackgroundTokenError: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the runtime, start host listeners, drain deliveries on shutdown."""
    settings = get_settings()
    setup_logging(json_output=False, log_level=settings.log_level)

    runtime = await build_runtime(settings)
    await runtime.start_host()
    app.state.runtime = runtime
    logger.info(
        "gateway_started",
        host=settings.gateway.host,
        port=settings.gateway.port,
        transport_configured=settings.openai.api_key != "",
    )

    yield

    await runtime.close(drain_timeout_s=settings.gateway.drain_timeout_s)
    logger.info("gateway_stopped")


def create_app(*, with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Handoff Gateway", version="0.1.0", lifespan=lifespan if with_lifespan else None
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(HandoffError, _handoff_error_handler)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/invocations", status_code=202, response_model=InvocationAccepted)
    async def create_invocation(params: InvocationParams, request: Request) -> InvocationAccepted:
        runtime = _runtime(request)
        handle = await runtime.coordinator.invoke(
            InvocationRequest(
                text=params.text,
                thumbnail_ref=params.thumbnail_ref,
                include_history=params.include_history,
            )
        )
        return InvocationAccepted(
            invocation_id=handle.invocation_id,
            originator_id=handle.originator_id,
            responder_id=handle.responder_id,
        )

    @app.get("/records", response_model=RecordList)
    async def list_records(
        request: Request, limit: int = Query(default=50, ge=1, le=500)
    ) -> RecordList:
        records = await _runtime(request).records.list_recent(limit)
        return RecordList(records=[RecordData.from_record(r) for r in records])

    @app.get("/records/{record_id}", response_model=RecordData)
    async def get_record(record_id: str, request: Request) -> RecordData | JSONResponse:
        record = await _runtime(request).records.get(record_id)
        if record is None:
            return _error_response(404, "NOT_FOUND", f"Record '{record_id}' not found")
        return RecordData.from_record(record)

    @app.post("/commands", status_code=202, response_model=CommandIssued)
    async def issue_command(params: CommandParams, request: Request) -> CommandIssued:
        pending = await _runtime(request).publisher.issue(params.command)
        return CommandIssued(command=pending.command, issued_at=pending.issued_at)

    return app


def _runtime(request: Request) -> HandoffRuntime:
    return request.app.state.runtime


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorData(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handoff_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HandoffError)
    status_code = next(
        (s for cls, s in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500
    )
    logger.warning("request_error", code=exc.code, error=str(exc), path=request.url.path)
    return _error_response(status_code, exc.code, str(exc))


app = create_app()
