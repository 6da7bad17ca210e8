"""
Mail dispatcher.

Builds an SMTP transport from SmtpConfig and sends MailMessage objects through
it with aiosmtplib. Each send() opens one connection and transmits one
message; nothing is queued or retried, and transport failures are wrapped in
SendFailed and re-raised for the caller to report.
"""

import logging
import re
from email.message import EmailMessage
from email.utils import formatdate, make_msgid, parseaddr

import aiosmtplib

from app.config import SmtpConfig
from app.models.submission import MailAttachment, MailMessage

logger = logging.getLogger(__name__)

CONFIG_MISSING_MESSAGE = (
    "SMTP configuration missing. Please set SMTP_HOST, SMTP_USER, SMTP_PASS in .env"
)


class ConfigMissing(Exception):
    """Raised when the SMTP host, username or password is not configured."""

    def __init__(self, message: str = CONFIG_MISSING_MESSAGE):
        super().__init__(message)
        self.message = message


class SendFailed(Exception):
    """Raised when the SMTP exchange fails (connection, auth, protocol)."""

    def __init__(self, cause: BaseException):
        # aiosmtplib response errors keep the server text in .message
        message = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(message)
        self.message = message
        self.cause = cause


def _split_content_type(content_type: str) -> tuple[str, str]:
    """Return (maintype, subtype), falling back to application/octet-stream."""
    maintype, sep, subtype = (content_type or "").partition("/")
    subtype = subtype.split(";", 1)[0].strip()
    maintype = maintype.strip()
    if not sep or not maintype or not subtype:
        return "application", "octet-stream"
    return maintype.lower(), subtype.lower()


_LINE_BREAKS = re.compile(r"[\r\n]+")


def _single_line(value: str) -> str:
    """Collapse CR/LF runs to one space; header values must stay on one line."""
    return _LINE_BREAKS.sub(" ", value)


def _sender_domain(address: str) -> str | None:
    _, addr = parseaddr(address)
    if "@" not in addr:
        return None
    return addr.rsplit("@", 1)[1] or None


class SmtpTransport:
    """Sends composed messages to one configured SMTP server."""

    def __init__(self, config: SmtpConfig):
        self.config = config

    def build_email(self, message: MailMessage) -> EmailMessage:
        """Compose the MIME message: HTML body plus one part per attachment."""
        msg = EmailMessage()
        msg["From"] = message.from_address
        msg["To"] = message.to_address
        msg["Subject"] = _single_line(message.subject)
        msg["Date"] = formatdate(localtime=False, usegmt=True)
        msg["Message-ID"] = make_msgid(domain=_sender_domain(message.from_address))
        msg.set_content(message.html, subtype="html")

        for attachment in message.attachments:
            self._attach(msg, attachment)
        return msg

    @staticmethod
    def _attach(msg: EmailMessage, attachment: MailAttachment) -> None:
        maintype, subtype = _split_content_type(attachment.content_type)
        msg.add_attachment(
            attachment.content,
            maintype=maintype,
            subtype=subtype,
            filename=attachment.filename,
        )

    async def send(self, message: MailMessage) -> str:
        """
        Send one message and return its Message-ID.

        Raises:
            SendFailed: on any SMTP or network error. The original exception
                is available as ``.cause``.
        """
        email = self.build_email(message)
        message_id = email["Message-ID"]

        try:
            await aiosmtplib.send(
                email,
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username,
                password=self.config.password,
                use_tls=self.config.secure,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error(
                f"SMTP send to {self.config.host}:{self.config.port} failed: {exc}"
            )
            raise SendFailed(exc) from exc

        logger.info(
            f"Sent {message_id} to {message.to_address} "
            f"with {len(message.attachments)} attachment(s)"
        )
        return message_id


def build_transport(config: SmtpConfig) -> SmtpTransport:
    """
    Validate the SMTP configuration and return a transport for it.

    Port and secure flag are not validated; only host, username and password
    are required.

    Raises:
        ConfigMissing: if host, username or password is empty or absent.
    """
    required = (config.host, config.username, config.password)
    if any(not (value or "").strip() for value in required):
        raise ConfigMissing()
    return SmtpTransport(config)
