"""
Models for a relayed form submission.

A submission lives only for the duration of one request: the upload layer
produces UploadedFile objects, the handlers turn them into MailAttachment
objects and assemble one MailMessage, and the mailer sends it. Nothing here
is ever persisted.
"""

from typing import Optional, Union

from pydantic import BaseModel

# Submitted form values are either a single string or, for repeated keys,
# the ordered list of strings. Handlers may also insert None.
FieldValue = Optional[Union[str, list[str]]]
FieldMapping = dict[str, FieldValue]


class UploadedFile(BaseModel):
    """A file received in a multipart body, held entirely in memory."""

    field_name: str
    original_name: str
    mime_type: Optional[str] = None
    content: bytes = b""


class MailAttachment(BaseModel):
    """A named, typed byte payload embedded in an outbound email."""

    filename: str
    content: bytes
    content_type: str


class MailMessage(BaseModel):
    """One outbound email, built once per request."""

    from_address: str
    to_address: str
    subject: str
    html: str
    attachments: list[MailAttachment] = []
