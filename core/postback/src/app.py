"""
Postback receiver for conversion webhooks from the ad network.

GET /postback
  Access Guard → normalize params → store (last write wins) → audit → "1".
GET /check
  Read-only lookup of a conversion by offer ID.
GET /health
  Liveness: uptime, stored conversion count, process memory.

Conversions live in memory only and are lost on restart.  The two audit
files are append-only and never read back.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import psutil
import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .audit_log import AuditLogWriter
from .config import Settings, load_settings
from .guard import AccessGuard, strip_port
from .store import ConversionRecord, ConversionStore

logger = logging.getLogger(__name__)

# The network only counts a postback as delivered when the body is exactly "1".
POSTBACK_ACK = "1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _peer_host(request: Request) -> str:
    """Transport-layer peer address, port stripped."""
    if request.client is None or not request.client.host:
        return ""
    return strip_port(request.client.host)


def _process_uptime(request: Request) -> float:
    """Seconds since the OS started this process."""
    try:
        return max(0.0, time.time() - psutil.Process().create_time())
    except (psutil.Error, OSError):
        return time.monotonic() - request.app.state.started_at


def _memory_stats() -> dict[str, int]:
    """Current process memory in bytes.  Empty when the platform won't say."""
    try:
        info = psutil.Process().memory_info()
    except (psutil.Error, OSError):
        logger.warning("Memory stats unavailable", exc_info=True)
        return {}
    return {"rss": info.rss, "vms": info.vms}


# ---------------------------------------------------------------------------
# Access Guard dependency (postback route only)
# ---------------------------------------------------------------------------

def require_trusted_caller(request: Request) -> None:
    guard: AccessGuard = request.app.state.guard
    decision = guard.check(
        forwarded_for=request.headers.get("x-forwarded-for"),
        peer_host=request.client.host if request.client else None,
    )
    if not decision.allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


async def _plain_text_http_error(request: Request, exc: StarletteHTTPException):
    return PlainTextResponse(
        str(exc.detail), status_code=exc.status_code, headers=getattr(exc, "headers", None)
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def postback(
    request: Request,
    background_tasks: BackgroundTasks,
    aff_sub: Optional[str] = None,
    offer_id: Optional[str] = Query(default=None, alias="id"),
    payout: Optional[str] = None,
    ip: Optional[str] = None,
):
    """
    Record a conversion.  ``aff_sub`` (network naming) wins over ``id``.
    Empty values count as absent.
    """
    offer_id = aff_sub or offer_id
    if not offer_id:
        return PlainTextResponse("Missing offer ID", status_code=400)

    record = ConversionRecord(
        offer_id=offer_id,
        payout=payout or "0",
        ip=ip or _peer_host(request),
    )
    request.app.state.store.put(record)
    logger.info("Conversion recorded: offer=%s payout=%s", record.offer_id, record.payout)

    # Runs after the response is sent; failures are logged by the writer.
    audit: AuditLogWriter = request.app.state.audit
    background_tasks.add_task(audit.append_conversion, record.offer_id, record.payout, record.ip)

    return PlainTextResponse(POSTBACK_ACK, status_code=200)


async def check(
    request: Request,
    offer_id: Optional[str] = Query(default=None, alias="id"),
):
    if not offer_id:
        return PlainTextResponse("Missing ID", status_code=400)

    record = request.app.state.store.get(offer_id)
    return {
        "completed": record is not None,
        "data": record.model_dump() if record is not None else None,
    }


async def health(request: Request) -> dict[str, Any]:
    return {
        "status": "OK",
        "uptime": _process_uptime(request),
        "conversions": len(request.app.state.store),
        "memory": _memory_stats(),
    }


# ---------------------------------------------------------------------------
# FastAPI Application
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    """Ensure both audit files exist (with a start marker) before serving."""
    app_instance.state.audit.initialize()
    logger.info("Server running on port %s", app_instance.state.settings.port)
    yield


def create_app(
    settings: Settings | None = None,
    store: ConversionStore | None = None,
    audit: AuditLogWriter | None = None,
) -> FastAPI:
    """Build an isolated app.  Collaborators are held on ``app.state``."""
    if settings is None:
        settings = load_settings()
    if store is None:
        store = ConversionStore()
    if audit is None:
        audit = AuditLogWriter(settings.conversions_log, settings.security_log)

    app_instance = FastAPI(
        title="Postback Receiver",
        description="Records affiliate conversion postbacks and serves their status.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app_instance.state.settings = settings
    app_instance.state.store = store
    app_instance.state.audit = audit
    app_instance.state.guard = AccessGuard(settings.mode, settings.allowed_ips, audit)
    app_instance.state.started_at = time.monotonic()

    app_instance.add_exception_handler(StarletteHTTPException, _plain_text_http_error)
    app_instance.add_api_route(
        "/postback",
        postback,
        methods=["GET"],
        response_class=PlainTextResponse,
        dependencies=[Depends(require_trusted_caller)],
    )
    app_instance.add_api_route("/check", check, methods=["GET"])
    app_instance.add_api_route("/health", health, methods=["GET"])
    return app_instance


# Served by main() and by ``uvicorn core.postback.src.app:app``.
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Serve the module-level app so settings are loaded exactly once.
    settings: Settings = app.state.settings
    # A port that cannot be bound ends the process; there is no fallback port.
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
