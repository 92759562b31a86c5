import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .agents import DEFAULT_INSTRUCTIONS, flatten_reference_tables
from .catalog import PriceCatalogClient
from .config import AppSettings, load_instructions, load_reference_tables, load_settings
from .errors import InputError
from .llm import ResponsesClient
from .orchestrator import ConversationDriver, stream_turn
from .schemas import PriceQueryRequest


logger = logging.getLogger("uvicorn.error")

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    # Disable proxy buffering so frames reach the client as they are produced.
    "X-Accel-Buffering": "no",
}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_driver(request: Request) -> ConversationDriver:
    return request.app.state.driver


def build_driver(settings: AppSettings, llm_client: Any, catalog_client: Any) -> ConversationDriver:
    return ConversationDriver(
        llm_client,
        catalog_client,
        model=settings.llm_deployment,
        instructions=load_instructions(settings, DEFAULT_INSTRUCTIONS),
        reference_text=flatten_reference_tables(load_reference_tables(settings)),
        max_tool_rounds=settings.max_tool_rounds,
        max_broaden_attempts=settings.max_broaden_attempts,
        tool_output_max_records=settings.tool_output_max_records,
        reasoning_effort=settings.reasoning_effort,
        reasoning_summary=settings.reasoning_summary,
        max_output_tokens=settings.max_output_tokens,
        reasoning_steps=settings.reasoning_steps,
    )


def validate_query(payload: PriceQueryRequest) -> str:
    prompt = (payload.prompt or "").strip()
    if not prompt:
        raise InputError("Prompt is required.")
    return prompt


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/prices")
async def query_prices(
    payload: PriceQueryRequest,
    settings: AppSettings = Depends(get_settings),
    driver: ConversationDriver = Depends(get_driver),
):
    try:
        prompt = validate_query(payload)
    except InputError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    frames = stream_turn(
        driver,
        prompt,
        payload.continuation_token,
        turn_timeout_s=settings.turn_timeout_s,
        keepalive_interval_s=settings.keepalive_interval_s,
        answer_chunk_chars=settings.answer_chunk_chars,
    )
    return StreamingResponse(frames, media_type="text/event-stream", headers=STREAM_HEADERS)


def create_app(
    settings: AppSettings,
    *,
    llm_client: Optional[Any] = None,
    catalog_client: Optional[Any] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not app.state.settings.llm_base_url():
            logger.warning("AZURE_OPENAI_ENDPOINT is not set; pricing questions will fail")
        try:
            yield
        finally:
            await app.state.llm_client.close()
            await app.state.catalog_client.close()

    app = FastAPI(title="Cloud Pricing Agent", lifespan=lifespan)
    app.state.settings = settings
    # One client per process, shared by every request.
    app.state.llm_client = llm_client or ResponsesClient(
        settings.llm_base_url(),
        api_key=settings.llm_api_key,
        timeout=settings.llm_timeout_s,
        max_output_tokens=settings.max_output_tokens,
    )
    app.state.catalog_client = catalog_client or PriceCatalogClient(
        settings.catalog_base_url,
        api_version=settings.catalog_api_version,
        page_timeout_s=settings.catalog_page_timeout_s,
        max_pages=settings.catalog_max_pages,
    )
    app.state.driver = build_driver(settings, app.state.llm_client, app.state.catalog_client)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("PRICING_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "pricing_agent.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        pass
