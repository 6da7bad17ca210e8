"""
Attachment normalizer.

Converts uploaded files into mail attachments. Pure functions: an empty or
missing buffer produces an empty attachment rather than an error.
"""

from typing import Iterable

from app.models.submission import MailAttachment, UploadedFile

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def file_to_attachment(upload: UploadedFile) -> MailAttachment:
    """Map one UploadedFile to a MailAttachment, keeping name, bytes and type."""
    return MailAttachment(
        filename=upload.original_name,
        content=upload.content or b"",
        content_type=upload.mime_type or DEFAULT_CONTENT_TYPE,
    )


def files_to_attachments(files: Iterable[UploadedFile]) -> list[MailAttachment]:
    return [file_to_attachment(f) for f in files]
