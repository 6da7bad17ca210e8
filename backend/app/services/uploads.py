"""
Upload layer.

Parses a form submission into an ordered field mapping plus the uploaded
files, enforcing a per-endpoint UploadPolicy before any handler logic runs.

Policies
--------
PARTNER_UPLOAD_POLICY   any file field name, any number of files
APPLY_UPLOAD_POLICY     only pitch_deck (10), dpiit_certificate (10),
                        ip_files (20) and balance_sheets (10)

Both limit each file to MAX_FILE_SIZE bytes (10 MiB by default). Multipart
bodies are checked while they stream in: a file part is rejected as soon as
it passes the per-file limit, and the whole body is capped by the policy's
max_body_size (checked against Content-Length first). Accepted files stay
in memory; the spool threshold sits above the per-file limit.

Accepted bodies: multipart/form-data, application/x-www-form-urlencoded and
application/json (a top-level object, fields only). Anything else parses to
an empty submission.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Request
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException, MultiPartParser

from app.config import DEFAULT_MAX_FILE_SIZE
from app.models.submission import FieldMapping, UploadedFile

logger = logging.getLogger(__name__)

# Starlette's own default for both limits.
_MAX_PARTS = 1000

# Boundary and part headers per file, plus room for all scalar fields.
_PART_OVERHEAD = 1024
_FIELDS_ALLOWANCE = 1024 * 1024


class UploadRejected(Exception):
    """Raised when a submission violates its endpoint's upload policy."""

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code


@dataclass(frozen=True)
class UploadPolicy:
    """
    Per-endpoint upload rules.

    allowed_fields maps each accepted file field name to its maximum file
    count. None accepts files under any field name, without a count limit.
    """

    name: str
    allowed_fields: Optional[dict[str, int]] = None
    max_file_size: int = DEFAULT_MAX_FILE_SIZE

    def with_max_file_size(self, max_file_size: int) -> "UploadPolicy":
        return UploadPolicy(
            name=self.name,
            allowed_fields=self.allowed_fields,
            max_file_size=max_file_size,
        )

    @property
    def max_files(self) -> int:
        if self.allowed_fields is None:
            return _MAX_PARTS
        return sum(self.allowed_fields.values())

    @property
    def max_body_size(self) -> int:
        """Largest multipart body worth reading: every file at full size."""
        return self.max_files * (self.max_file_size + _PART_OVERHEAD) + _FIELDS_ALLOWANCE


PARTNER_UPLOAD_POLICY = UploadPolicy(name="partner")

# Field order here is the order attachments are added to the email.
APPLY_FILE_FIELDS = ("pitch_deck", "dpiit_certificate", "ip_files", "balance_sheets")

APPLY_UPLOAD_POLICY = UploadPolicy(
    name="apply",
    allowed_fields={
        "pitch_deck": 10,
        "dpiit_certificate": 10,
        "ip_files": 20,
        "balance_sheets": 10,
    },
)


@dataclass
class ParsedForm:
    """Scalar fields and uploaded files from one request, in arrival order."""

    fields: FieldMapping = field(default_factory=dict)
    files: dict[str, list[UploadedFile]] = field(default_factory=dict)

    def all_files(self) -> list[UploadedFile]:
        return [f for group in self.files.values() for f in group]

    def first(self, key: str, default: str = "") -> str:
        """Return a scalar field, taking the first value of a repeated key."""
        value = self.fields.get(key)
        if value is None:
            return default
        if isinstance(value, list):
            return value[0] if value else default
        return value


def _add_field(fields: FieldMapping, key: str, value: str) -> None:
    """Insert a value, turning a repeated key into a list in arrival order."""
    if key not in fields:
        fields[key] = value
        return
    existing = fields[key]
    if isinstance(existing, list):
        existing.append(value)
    else:
        fields[key] = [existing, value]


def _too_large(filename: str, policy: UploadPolicy) -> UploadRejected:
    limit_mb = policy.max_file_size / (1024 * 1024)
    return UploadRejected(
        f"File {filename!r} exceeds the {limit_mb:g} MB limit.",
        "file_too_large",
        status_code=413,
    )


async def _read_upload(
    field_name: str, upload: UploadFile, policy: UploadPolicy
) -> UploadedFile:
    filename = upload.filename or ""

    # Size check before reading, when the parser already knows it
    if upload.size is not None and upload.size > policy.max_file_size:
        raise _too_large(filename, policy)

    content = await upload.read(policy.max_file_size + 1)

    # Double-check after reading in case .size was not set
    if len(content) > policy.max_file_size:
        raise _too_large(filename, policy)

    return UploadedFile(
        field_name=field_name,
        original_name=filename,
        mime_type=upload.content_type or None,
        content=content,
    )


def _check_file_field(field_name: str, count: int, policy: UploadPolicy) -> None:
    if policy.allowed_fields is None:
        return
    if field_name not in policy.allowed_fields:
        raise UploadRejected(f"Unexpected file field {field_name!r}.", "unexpected_field")
    limit = policy.allowed_fields[field_name]
    if count > limit:
        raise UploadRejected(
            f"Too many files for {field_name!r} (maximum {limit}).",
            "too_many_files",
        )


async def _collect_form(form: FormData, policy: UploadPolicy) -> ParsedForm:
    parsed = ParsedForm()
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            # Browsers send an empty part for an unused <input type="file">
            if not value.filename and not value.size:
                continue
            group = parsed.files.setdefault(key, [])
            _check_file_field(key, len(group) + 1, policy)
            group.append(await _read_upload(key, value, policy))
        else:
            _add_field(parsed.fields, key, value)
    return parsed


def _json_field_value(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


async def _parse_json(request: Request) -> ParsedForm:
    try:
        body = await request.json()
    except ValueError as exc:
        raise UploadRejected(f"Malformed JSON body: {exc}", "malformed_body")
    if not isinstance(body, dict):
        raise UploadRejected("JSON body must be an object.", "malformed_body")
    return ParsedForm(fields={str(k): _json_field_value(v) for k, v in body.items()})


def _parser_error_message(exc: Exception) -> str:
    detail = getattr(exc, "detail", None) or getattr(exc, "message", None)
    return str(detail or exc)


class _LimitedMultiPartParser(MultiPartParser):
    """
    MultiPartParser that stops a file part as soon as it passes the policy's
    per-file limit, before the oversize bytes are written anywhere.
    """

    def __init__(self, headers, stream, policy: UploadPolicy):
        super().__init__(
            headers,
            stream,
            max_files=policy.max_files,
            max_fields=_MAX_PARTS,
        )
        self.policy = policy
        # Accepted files never reach the rollover threshold
        self.spool_max_size = policy.max_file_size + 1
        self._current_file_size = 0

    def on_part_begin(self) -> None:
        super().on_part_begin()
        self._current_file_size = 0

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        upload = self._current_part.file
        if upload is not None:
            self._current_file_size += end - start
            if self._current_file_size > self.policy.max_file_size:
                raise _too_large(upload.filename or "", self.policy)
        super().on_part_data(data, start, end)


def _body_too_large(policy: UploadPolicy) -> UploadRejected:
    return UploadRejected(
        f"Request body exceeds the {policy.max_body_size} byte limit.",
        "file_too_large",
        status_code=413,
    )


async def _limited_stream(request: Request, policy: UploadPolicy):
    """Yield the request body, failing once it grows past max_body_size."""
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > policy.max_body_size:
            raise _body_too_large(policy)
        yield chunk


def _check_content_length(request: Request, policy: UploadPolicy) -> None:
    raw = request.headers.get("content-length", "")
    if raw.isdigit() and int(raw) > policy.max_body_size:
        raise _body_too_large(policy)


async def _read_form(request: Request, content_type: str, policy: UploadPolicy) -> FormData:
    try:
        if content_type.startswith("multipart/form-data"):
            _check_content_length(request, policy)
            parser = _LimitedMultiPartParser(
                request.headers, _limited_stream(request, policy), policy
            )
            return await parser.parse()
        return await request.form(max_fields=_MAX_PARTS)
    except (MultiPartException, StarletteHTTPException) as exc:
        raise UploadRejected(
            f"Could not parse form body: {_parser_error_message(exc)}",
            "malformed_body",
        )


async def parse_submission(request: Request, policy: UploadPolicy) -> ParsedForm:
    """
    Parse the request body according to its content type and policy.

    Raises:
        UploadRejected: a file is too large, arrives under a field name the
            policy does not accept, exceeds the per-field count, or the body
            cannot be parsed.
    """
    content_type = request.headers.get("content-type", "").lower()

    if content_type.startswith("application/json"):
        return await _parse_json(request)

    if not (
        content_type.startswith("multipart/form-data")
        or content_type.startswith("application/x-www-form-urlencoded")
    ):
        return ParsedForm()

    form = await _read_form(request, content_type, policy)
    try:
        parsed = await _collect_form(form, policy)
    finally:
        await form.close()

    logger.debug(
        f"Parsed {policy.name} submission: {len(parsed.fields)} field(s), "
        f"{len(parsed.all_files())} file(s)"
    )
    return parsed
