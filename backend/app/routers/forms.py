"""
Form relay router.

Each public form posts here; the submission is rendered into an HTML email
and sent over SMTP to the configured inbox.

Endpoints:
  POST /partner   — "Partner With Us" form, files under any field name
  POST /apply     — "Apply Now" form, files under four known field names

Both respond with {"ok": true, "id": <message id>} on success and
{"ok": false, "error": <message>} with HTTP 500 on any failure. Upload policy
violations are rejected by the upload layer before the handler body runs.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.config import Settings, get_settings
from app.models.submission import FieldMapping, MailMessage, UploadedFile
from app.services.attachments import files_to_attachments
from app.services.field_renderer import build_html_from_fields
from app.services.mailer import build_transport
from app.services.uploads import (
    APPLY_FILE_FIELDS,
    APPLY_UPLOAD_POLICY,
    PARTNER_UPLOAD_POLICY,
    ParsedForm,
    parse_submission,
)

logger = logging.getLogger(__name__)

router = APIRouter()

PARTNER_FORM_NAME = "Partner With Us"
APPLY_FORM_NAME = "Apply Now"

_PARTNER_FIELDS = ("name", "email", "organisation", "enquiry")


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """UTC timestamp with millisecond precision, e.g. 2025-01-01T12:00:00.000Z."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _client_ip(request: Request, settings: Settings) -> str:
    """
    Return the caller's IP address as seen by the server.

    With TRUST_PROXY enabled the left-most X-Forwarded-For entry wins.
    """
    if settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else ""


def _error_response(exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": str(exc) or "Send failed"},
    )


# ---------------------------------------------------------------------------
# Upload dependencies (one policy per endpoint)
# ---------------------------------------------------------------------------

async def partner_form(
    request: Request, settings: Settings = Depends(get_settings)
) -> ParsedForm:
    policy = PARTNER_UPLOAD_POLICY.with_max_file_size(settings.max_file_size)
    return await parse_submission(request, policy)


async def apply_form(
    request: Request, settings: Settings = Depends(get_settings)
) -> ParsedForm:
    policy = APPLY_UPLOAD_POLICY.with_max_file_size(settings.max_file_size)
    return await parse_submission(request, policy)


# ---------------------------------------------------------------------------
# Subject lines
# ---------------------------------------------------------------------------

def partner_subject(name: str, organisation: str, email: str) -> str:
    return f"Partner enquiry from {name or organisation or email or 'Unknown'}"


def apply_subject(form: ParsedForm) -> str:
    """
    Explicit ``subject`` wins; otherwise startup applications are titled by
    startup/organisation name and every other mode is "Individual".
    """
    explicit = form.first("subject")
    if explicit:
        return explicit
    mode = form.first("mode") or "startup"
    if mode == "startup":
        title = form.first("startupName") or form.first("organisation")
        return f"Application: {title}"
    return "Application: Individual"


def ordered_apply_files(form: ParsedForm) -> list[UploadedFile]:
    """Apply attachments in fixed field order, whatever order they arrived in."""
    files: list[UploadedFile] = []
    for field_name in APPLY_FILE_FIELDS:
        files.extend(form.files.get(field_name, []))
    return files


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/partner")
async def partner(
    request: Request,
    form: ParsedForm = Depends(partner_form),
    settings: Settings = Depends(get_settings),
):
    """Relay a "Partner With Us" enquiry, attaching every uploaded file."""
    try:
        transport = build_transport(settings.smtp)

        name, email, organisation, enquiry = (form.first(k) for k in _PARTNER_FIELDS)
        fields: FieldMapping = {
            "form": PARTNER_FORM_NAME,
            "name": name,
            "email": email,
            "organisation": organisation,
            "enquiry": enquiry,
            "submitted_at": _now_iso(),
            "ip": _client_ip(request, settings),
        }

        message = MailMessage(
            from_address=settings.sender,
            to_address=settings.recipient,
            subject=partner_subject(name, organisation, email),
            html=build_html_from_fields(fields),
            attachments=files_to_attachments(form.all_files()),
        )
        message_id = await transport.send(message)
    except Exception as exc:
        logger.exception(f"PARTNER SEND ERROR: {exc}")
        return _error_response(exc)

    return {"ok": True, "id": message_id}


@router.post("/apply")
async def apply(
    request: Request,
    form: ParsedForm = Depends(apply_form),
    settings: Settings = Depends(get_settings),
):
    """Relay an "Apply Now" application with its supporting documents."""
    try:
        transport = build_transport(settings.smtp)

        # Whole body verbatim, then the server-side fields
        fields: FieldMapping = dict(form.fields)
        fields["form"] = APPLY_FORM_NAME
        fields["submitted_at"] = form.first("submitted_at") or _now_iso()
        fields["ip"] = _client_ip(request, settings)

        message = MailMessage(
            from_address=settings.sender,
            to_address=settings.recipient,
            subject=apply_subject(form),
            html=build_html_from_fields(fields),
            attachments=files_to_attachments(ordered_apply_files(form)),
        )
        message_id = await transport.send(message)
    except Exception as exc:
        logger.exception(f"APPLY SEND ERROR: {exc}")
        return _error_response(exc)

    return {"ok": True, "id": message_id}
