"""
Form Relay API
FastAPI application that relays website form submissions to an inbox over SMTP.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, load_settings
from app.routers import forms
from app.services.mailer import ConfigMissing, build_transport
from app.services.uploads import UploadRejected

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


async def upload_rejected_handler(request: Request, exc: UploadRejected) -> JSONResponse:
    """Return upload policy violations in the same shape as send failures."""
    logger.warning(f"Upload rejected on {request.url.path}: {exc.message} ({exc.error_code})")
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.message},
    )


def _log_startup(settings: Settings) -> None:
    """
    Log where the API listens and whether mail can actually be sent.

    Missing SMTP settings are not fatal at startup: the health endpoint keeps
    working and each form submission fails with the configuration error.
    """
    logger.info("Form Relay API listening on http://localhost:%s", settings.port)
    try:
        build_transport(settings.smtp)
    except ConfigMissing as exc:
        logger.warning(f"{exc.message}; form submissions will fail until it is set")
        return
    logger.info(
        "Relaying submissions via %s:%s to %s",
        settings.smtp.host,
        settings.smtp.port,
        settings.recipient,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Settings are loaded from the environment once here (unless supplied) and
    shared read-only by every request through ``app.state.settings``.
    """
    if settings is None:
        settings = load_settings()

    application = FastAPI(
        title="Form Relay API",
        description="Relays Partner With Us and Apply Now submissions by email",
        version=API_VERSION,
    )
    application.state.settings = settings

    # Reflect the request origin when "*" is configured; no cookies are used
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(UploadRejected, upload_rejected_handler)
    application.include_router(forms.router, prefix="/api", tags=["forms"])

    @application.get("/api/health")
    async def health():
        return {"ok": True}

    @application.on_event("startup")
    async def log_startup() -> None:
        _log_startup(application.state.settings)

    return application


app = create_app()
