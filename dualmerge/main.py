import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .availability import AvailabilityTracker
from .config import AppSettings, load_settings
from .errors import InvalidRequest
from .orchestrator import Orchestrator
from .providers import ChatCompletionsClient, GeminiClient, ProviderClient
from .schemas import PROVIDER_A, PROVIDER_B, MergeRequest
from .stage_log import StageLog, StageTracker


logger = logging.getLogger("uvicorn.error")

USAGE_HINT = {
    "message": "POST a JSON body to this endpoint to ask both providers and receive a merged answer.",
    "body": {
        "query": "string (required)",
        "settings": {"temperature": "number 0.0-1.0 (optional)", "systemPrompt": "string (optional)"},
    },
    "response": ["query", "providerAResponse", "providerBResponse", "mergedResponse", "sourceKind", "timestamp"],
}


def build_provider_a(settings: AppSettings) -> ProviderClient:
    return GeminiClient(
        PROVIDER_A,
        settings.provider_a.base_url,
        settings.provider_a.model_id,
        settings.provider_a.api_key,
        max_output_tokens=settings.max_output_tokens,
        timeout_s=settings.http_timeout_s,
        label=settings.provider_a.label,
    )


def build_provider_b(settings: AppSettings) -> ProviderClient:
    return ChatCompletionsClient(
        PROVIDER_B,
        settings.provider_b.base_url,
        settings.provider_b.model_id,
        settings.provider_b.api_key,
        max_output_tokens=settings.max_output_tokens,
        timeout_s=settings.http_timeout_s,
        label=settings.provider_b.label,
    )


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_availability(request: Request) -> AvailabilityTracker:
    return request.app.state.availability


def get_stage_tracker(request: Request) -> StageTracker:
    return request.app.state.stage_tracker


router = APIRouter()


@router.post("/api/merge")
async def merge_route(
    payload: Optional[MergeRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    payload = payload or MergeRequest()
    try:
        answer = await orchestrator.run(payload.query, payload.settings)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return answer.to_response().model_dump(by_alias=True)


@router.get("/api/merge")
async def merge_usage():
    return USAGE_HINT


@router.get("/api/availability")
async def availability_route(availability: AvailabilityTracker = Depends(get_availability)):
    return {"providers": availability.snapshot()}


@router.get("/api/stages")
async def stages_route(tracker: StageTracker = Depends(get_stage_tracker)):
    return {"stages": tracker.summary()}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


def describe_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        parts.append(f"{loc or 'body'}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts) or "malformed JSON"


async def validation_error_handler(request: Request, exc: RequestValidationError):
    # The merge endpoint reports malformed bodies as InvalidRequest (400) rather than 422.
    if request.url.path != "/api/merge":
        return await request_validation_exception_handler(request, exc)
    error = InvalidRequest(f"Invalid request body: {describe_validation_errors(exc)}")
    logger.info("Rejected /api/merge body: %s", error)
    return JSONResponse(status_code=400, content={"detail": str(error)})


def create_app(
    settings: AppSettings,
    *,
    provider_a: Optional[ProviderClient] = None,
    provider_b: Optional[ProviderClient] = None,
    availability: Optional[AvailabilityTracker] = None,
    stage_tracker: Optional[StageTracker] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "dualmerge ready: mode=%s dispatch=%s availability=%s",
            app.state.settings.orchestration_mode,
            app.state.settings.dispatch,
            app.state.availability.snapshot(),
        )
        try:
            yield
        finally:
            await app.state.provider_a.close()
            await app.state.provider_b.close()

    app = FastAPI(title="DualMerge Answer Service", lifespan=lifespan)
    if provider_a is None:
        provider_a = build_provider_a(settings)
    if provider_b is None:
        provider_b = build_provider_b(settings)
    app.state.settings = settings
    app.state.provider_a = provider_a
    app.state.provider_b = provider_b
    app.state.availability = availability or AvailabilityTracker(
        {
            PROVIDER_A: settings.provider_a.available_by_default,
            PROVIDER_B: settings.provider_b.available_by_default,
        }
    )
    app.state.stage_tracker = stage_tracker or StageTracker()
    app.state.orchestrator = Orchestrator(
        provider_a,
        provider_b,
        app.state.availability,
        settings,
        stage_log=StageLog(app.state.stage_tracker),
    )
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("DUALMERGE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "dualmerge.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        pass
