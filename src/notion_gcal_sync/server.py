import asyncio
import contextlib
import hmac
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import load_settings
from .errors import AuthError, NotFoundError, SyncError
from .sync_engine import SyncEngine
from .webhooks import (
    NOTION_SIGNATURE_HEADER, load_json_body, parse_google_headers, parse_notion_payload,
    verify_notion_signature
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Notion Google Calendar Sync", version="1.0.0")


class HistoricalRequest(BaseModel):
    # Validated by the orchestrator so bad values map to 400
    days: Any = None


class BackfillRequest(BaseModel):
    fields: Any = None


async def _renew_loop(engine: SyncEngine, interval_seconds: int) -> None:
    """Periodically renew the Google push channel before it expires."""
    while True:
        try:
            await engine.renew_google_channel_if_needed()
        except Exception as e:
            logger.error(f"Google channel renewal failed: {e}")
        await asyncio.sleep(interval_seconds)


@app.on_event("startup")
async def on_startup():
    # Tests may install a pre-built engine
    if getattr(app.state, 'engine', None) is None:
        settings = load_settings()
        app.state.engine = SyncEngine(settings)
        await app.state.engine.initialize()

    app.state.renew_task = None
    interval = app.state.engine.settings.google_renew_interval_minutes
    if interval > 0:
        app.state.renew_task = asyncio.create_task(_renew_loop(app.state.engine, interval * 60))


@app.on_event("shutdown")
async def on_shutdown():
    renew_task: Optional[asyncio.Task] = getattr(app.state, 'renew_task', None)
    if renew_task is not None:
        renew_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await renew_task
        app.state.renew_task = None

    engine: Optional[SyncEngine] = getattr(app.state, 'engine', None)
    if engine is not None:
        await engine.cleanup()
    app.state.engine = None


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def _engine(request: Request) -> SyncEngine:
    return request.app.state.engine


@app.get("/health")
async def health(request: Request):
    status = await _engine(request).activity.status()
    return {"ok": True, "healthy": status['healthy']}


@app.post("/webhooks/notion")
async def notion_webhook(request: Request):
    engine = _engine(request)
    body = await request.body()
    parsed = parse_notion_payload(load_json_body(body))

    # Subscription handshake: the first token signs later deliveries
    if isinstance(parsed, str):
        engine.store_notion_verification_token(parsed)
        return {"verified": True}

    verify_notion_signature(
        body, request.headers.get(NOTION_SIGNATURE_HEADER), engine.notion_verification_token()
    )
    engine.dispatch(parsed)
    return JSONResponse(status_code=202, content={"accepted": True})


@app.post("/webhooks/google")
async def google_webhook(request: Request):
    engine = _engine(request)
    notification = parse_google_headers(
        request.headers,
        expected_channel_id=engine.expected_google_channel_id(),
        expected_token=engine.settings.google_channel_token,
    )
    engine.dispatch(notification)
    # Google expects 2xx quickly
    return Response(status_code=204)


@app.post("/webhooks/google/renew")
async def google_renew(request: Request, force: bool = False):
    engine = _engine(request)
    secret = engine.settings.cron_secret
    supplied = request.headers.get("authorization", "")
    if secret and not hmac.compare_digest(supplied, f"Bearer {secret}"):
        raise AuthError("Invalid maintenance credentials")
    return await engine.renew_google_channel_if_needed(force=force)


@app.post("/sync/trigger")
async def trigger_sync(request: Request):
    return await _engine(request).trigger_sync()


@app.get("/logs")
async def logs(request: Request, limit: int = 50):
    entries = await _engine(request).activity.recent_logs(limit)
    return jsonable_encoder(entries)


@app.get("/logs/{entry_id}")
async def log_entry(request: Request, entry_id: str):
    entry = await _engine(request).activity.get_entry(entry_id)
    if entry is None:
        raise NotFoundError(f"Log entry {entry_id} not found")
    return jsonable_encoder(entry)


@app.get("/metrics")
async def metrics(request: Request, window: str = "24h"):
    return jsonable_encoder(await _engine(request).activity.metrics(window))


@app.get("/status")
async def status(request: Request):
    return jsonable_encoder(await _engine(request).get_status())


@app.get("/sync/historical")
async def historical_progress(request: Request):
    return jsonable_encoder(_engine(request).historical.progress())


@app.post("/sync/historical")
async def historical_start(request: Request, body: HistoricalRequest):
    progress = await _engine(request).historical.start(body.days)
    return JSONResponse(status_code=202, content=jsonable_encoder(progress))


@app.delete("/sync/historical")
async def historical_cancel(request: Request):
    return jsonable_encoder(_engine(request).historical.cancel())


@app.post("/sync/historical/preview")
async def historical_preview(request: Request, body: HistoricalRequest):
    return jsonable_encoder(await _engine(request).historical.preview(body.days))


@app.post("/sync/historical/reset")
async def historical_reset(request: Request, force: bool = False):
    return jsonable_encoder(_engine(request).historical.reset(force=force))


@app.get("/sync/backfill/fields")
async def backfill_progress(request: Request):
    return jsonable_encoder(_engine(request).backfill.progress())


@app.post("/sync/backfill/fields")
async def backfill_start(request: Request, body: BackfillRequest):
    progress = await _engine(request).backfill.start(body.fields)
    return JSONResponse(status_code=202, content=jsonable_encoder(progress))


@app.delete("/sync/backfill/fields")
async def backfill_cancel(request: Request):
    return jsonable_encoder(_engine(request).backfill.cancel())


@app.post("/sync/backfill/fields/reset")
async def backfill_reset(request: Request, force: bool = False):
    return jsonable_encoder(_engine(request).backfill.reset(force=force))
