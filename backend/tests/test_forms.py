"""
Form relay endpoint tests.

Tests mock aiosmtplib.send; no SMTP server is contacted. Each test builds its
own app via create_app() with explicit Settings, so the process environment
is never consulted.

Coverage:
  - POST /api/partner   (fields, subject precedence, attachments, failures)
  - POST /api/apply     (open-ended fields, subject rules, attachment order)
  - GET  /api/health
"""

import re
import pytest
from unittest.mock import AsyncMock, patch

import aiosmtplib
from fastapi.testclient import TestClient

from app.config import Settings, SmtpConfig
from app.services.mailer import CONFIG_MISSING_MESSAGE

_ISO_MS_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")
_ROW_RE = re.compile(r"<tr><td[^>]*>(.*?)</td><td[^>]*>(.*?)</td></tr>")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_settings(**overrides) -> Settings:
    values = {
        "smtp": SmtpConfig(
            host="smtp.example.com",
            port=587,
            username="relay@example.com",
            password="secret",
        ),
        "mail_to": "team@example.com",
    }
    values.update(overrides)
    return Settings(**values)


def _client(settings: Settings | None = None) -> TestClient:
    from app.main import create_app
    return TestClient(create_app(settings or _make_settings()))


def _pdf(name: str, body: bytes = b"%PDF-1.4") -> tuple:
    return (name, body, "application/pdf")


def _sent_email(mock_send):
    """The EmailMessage handed to aiosmtplib.send."""
    return mock_send.call_args.args[0]


def _html_rows(email) -> list[tuple[str, str]]:
    html = email.get_body(preferencelist=("html",)).get_content()
    return _ROW_RE.findall(html)


def _attachment_names(email) -> list[str]:
    return [part.get_filename() for part in email.iter_attachments()]


@pytest.fixture()
def client():
    return _client()


@pytest.fixture()
def mock_send():
    with patch("app.services.mailer.aiosmtplib.send", new_callable=AsyncMock) as mock:
        yield mock


# ===========================================================================
# GET /api/health
# ===========================================================================

class TestHealth:
    def test_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_ok_without_smtp_configuration(self):
        response = _client(Settings()).get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}


# ===========================================================================
# POST /api/partner
# ===========================================================================

class TestPartnerSubject:
    """Subject uses the first non-empty of name, organisation, email."""

    def test_name_wins(self, client, mock_send):
        client.post("/api/partner", data={"name": "Acme"})
        assert _sent_email(mock_send)["Subject"] == "Partner enquiry from Acme"

    def test_organisation_when_name_empty(self, client, mock_send):
        client.post("/api/partner", data={"name": "", "organisation": "Beta"})
        assert _sent_email(mock_send)["Subject"] == "Partner enquiry from Beta"

    def test_email_when_name_and_organisation_empty(self, client, mock_send):
        client.post("/api/partner", data={"email": "c@example.com"})
        assert _sent_email(mock_send)["Subject"] == "Partner enquiry from c@example.com"

    def test_unknown_when_all_empty(self, client, mock_send):
        client.post("/api/partner", data={"name": "", "organisation": "", "email": ""})
        assert _sent_email(mock_send)["Subject"] == "Partner enquiry from Unknown"

    def test_newline_in_name_still_sends(self, client, mock_send):
        response = client.post("/api/partner", data={"name": "Acme\nCorp"})

        assert response.status_code == 200
        assert response.json()["ok"] is True
        mock_send.assert_awaited_once()
        assert _sent_email(mock_send)["Subject"] == "Partner enquiry from Acme Corp"

    def test_header_injection_in_name_sends_single_subject(self, client, mock_send):
        response = client.post("/api/partner", json={"name": "Acme\r\nBcc: x@evil.test"})

        assert response.status_code == 200
        email = _sent_email(mock_send)
        assert email["Subject"] == "Partner enquiry from Acme Bcc: x@evil.test"
        assert email["Bcc"] is None


class TestPartnerSubmission:
    def test_success_response_is_ok_and_message_id(self, client, mock_send):
        response = client.post("/api/partner", data={"name": "Acme"})

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"ok", "id"}
        assert body["ok"] is True
        assert body["id"] == _sent_email(mock_send)["Message-ID"]

    def test_field_table_rows_in_fixed_order(self, client, mock_send):
        client.post(
            "/api/partner",
            data={
                "enquiry": "Let's talk",
                "organisation": "Acme Ltd",
                "email": "a@acme.test",
                "name": "Ada",
                "ignored_extra": "not rendered",
            },
        )

        rows = _html_rows(_sent_email(mock_send))
        assert [k for k, _ in rows] == [
            "form", "name", "email", "organisation", "enquiry", "submitted_at", "ip",
        ]
        values = dict(rows)
        assert values["form"] == "Partner With Us"
        assert values["name"] == "Ada"
        assert values["enquiry"] == "Let&#x27;s talk"
        assert _ISO_MS_RE.match(values["submitted_at"])
        assert values["ip"] == "testclient"

    def test_missing_fields_default_to_empty(self, client, mock_send):
        response = client.post("/api/partner")

        assert response.status_code == 200
        values = dict(_html_rows(_sent_email(mock_send)))
        assert values["name"] == values["email"] == ""
        assert values["organisation"] == values["enquiry"] == ""

    def test_accepts_files_under_any_field_name_in_order(self, client, mock_send):
        response = client.post(
            "/api/partner",
            data={"name": "Acme"},
            files=[
                ("brochure", _pdf("brochure.pdf")),
                ("attachments", ("notes.txt", b"hello", "text/plain")),
                ("whatever", _pdf("terms.pdf")),
            ],
        )

        assert response.status_code == 200
        assert _attachment_names(_sent_email(mock_send)) == [
            "brochure.pdf", "notes.txt", "terms.pdf",
        ]

    def test_sender_falls_back_to_smtp_user(self, client, mock_send):
        client.post("/api/partner", data={"name": "Acme"})
        email = _sent_email(mock_send)
        assert email["From"] == "relay@example.com"
        assert email["To"] == "team@example.com"

    def test_recipient_falls_back_to_smtp_user(self, mock_send):
        _client(_make_settings(mail_to=None, mail_from="forms@example.com")).post(
            "/api/partner", data={"name": "Acme"}
        )
        email = _sent_email(mock_send)
        assert email["From"] == "forms@example.com"
        assert email["To"] == "relay@example.com"

    def test_trusted_proxy_header_sets_ip(self, mock_send):
        _client(_make_settings(trust_proxy=True)).post(
            "/api/partner",
            data={"name": "Acme"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )
        assert dict(_html_rows(_sent_email(mock_send)))["ip"] == "203.0.113.7"

    def test_forwarded_header_ignored_without_trust_proxy(self, client, mock_send):
        client.post(
            "/api/partner",
            data={"name": "Acme"},
            headers={"X-Forwarded-For": "203.0.113.7"},
        )
        assert dict(_html_rows(_sent_email(mock_send)))["ip"] == "testclient"


class TestPartnerFailures:
    def test_missing_smtp_config_returns_500(self, mock_send):
        response = _client(Settings()).post("/api/partner", data={"name": "Acme"})

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": CONFIG_MISSING_MESSAGE}
        mock_send.assert_not_awaited()

    def test_send_failure_returns_500_with_message(self, client, mock_send):
        mock_send.side_effect = aiosmtplib.SMTPAuthenticationError(535, "Bad credentials")

        response = client.post("/api/partner", data={"name": "Acme"})

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "Bad credentials"}

    def test_send_failure_is_logged_with_tag(self, client, mock_send, caplog):
        mock_send.side_effect = ConnectionRefusedError("Connection refused")

        client.post("/api/partner", data={"name": "Acme"})

        assert any("PARTNER SEND ERROR" in r.getMessage() for r in caplog.records)

    def test_oversize_file_rejected_before_send(self, mock_send):
        small = _client(_make_settings(max_file_size=16))

        response = small.post(
            "/api/partner",
            data={"name": "Acme"},
            files=[("attachments", _pdf("big.pdf", b"x" * 17))],
        )

        assert response.status_code == 413
        assert response.json()["ok"] is False
        mock_send.assert_not_awaited()

    def test_file_at_limit_accepted(self, mock_send):
        small = _client(_make_settings(max_file_size=16))

        response = small.post(
            "/api/partner",
            files=[("attachments", _pdf("exact.pdf", b"x" * 16))],
        )

        assert response.status_code == 200


# ===========================================================================
# POST /api/apply
# ===========================================================================

class TestApplySubject:
    def test_individual_mode(self, client, mock_send):
        client.post("/api/apply", data={"mode": "individual", "name": "Ada"})
        assert _sent_email(mock_send)["Subject"] == "Application: Individual"

    def test_any_non_startup_mode_is_individual(self, client, mock_send):
        client.post("/api/apply", data={"mode": "mentor"})
        assert _sent_email(mock_send)["Subject"] == "Application: Individual"

    def test_startup_mode_uses_startup_name(self, client, mock_send):
        client.post("/api/apply", data={"mode": "startup", "startupName": "Foo"})
        assert _sent_email(mock_send)["Subject"] == "Application: Foo"

    def test_mode_defaults_to_startup(self, client, mock_send):
        client.post("/api/apply", data={"startupName": "Foo"})
        assert _sent_email(mock_send)["Subject"] == "Application: Foo"

    def test_startup_falls_back_to_organisation(self, client, mock_send):
        client.post("/api/apply", data={"mode": "startup", "organisation": "Bar Inc"})
        assert _sent_email(mock_send)["Subject"] == "Application: Bar Inc"

    def test_explicit_subject_wins(self, client, mock_send):
        client.post(
            "/api/apply",
            data={"mode": "startup", "startupName": "Foo", "subject": "Custom"},
        )
        assert _sent_email(mock_send)["Subject"] == "Custom"

    def test_newline_in_startup_name_still_sends(self, client, mock_send):
        response = client.post("/api/apply", data={"startupName": "Foo\nBar"})

        assert response.status_code == 200
        mock_send.assert_awaited_once()
        assert _sent_email(mock_send)["Subject"] == "Application: Foo Bar"

    def test_newline_in_explicit_subject_still_sends(self, client, mock_send):
        response = client.post("/api/apply", json={"subject": "Hello\r\nWorld"})

        assert response.status_code == 200
        assert _sent_email(mock_send)["Subject"] == "Hello World"


class TestApplySubmission:
    def test_success_response(self, client, mock_send):
        response = client.post("/api/apply", data={"startupName": "Foo"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "id": _sent_email(mock_send)["Message-ID"]}

    def test_whole_body_rendered_then_server_fields(self, client, mock_send):
        client.post(
            "/api/apply",
            data={"startupName": "Foo", "stage": "Seed", "sectors": ["fintech", "health"]},
        )

        rows = _html_rows(_sent_email(mock_send))
        assert [k for k, _ in rows] == [
            "startupName", "stage", "sectors", "form", "submitted_at", "ip",
        ]
        values = dict(rows)
        assert values["sectors"] == "fintech, health"
        assert values["form"] == "Apply Now"
        assert _ISO_MS_RE.match(values["submitted_at"])

    def test_submitted_at_kept_when_provided(self, client, mock_send):
        client.post(
            "/api/apply",
            data={"submitted_at": "2025-01-01T00:00:00.000Z", "startupName": "Foo"},
        )

        rows = _html_rows(_sent_email(mock_send))
        assert rows[0] == ("submitted_at", "2025-01-01T00:00:00.000Z")

    def test_repeated_submitted_at_keeps_first_value(self, client, mock_send):
        client.post(
            "/api/apply",
            data={"submitted_at": ["2025-01-01T00:00:00.000Z", "2025-02-02T00:00:00.000Z"]},
        )
        assert dict(_html_rows(_sent_email(mock_send)))["submitted_at"] == "2025-01-01T00:00:00.000Z"

    def test_client_supplied_form_value_overwritten(self, client, mock_send):
        client.post("/api/apply", data={"form": "spoofed"})
        assert dict(_html_rows(_sent_email(mock_send)))["form"] == "Apply Now"

    def test_attachments_in_fixed_field_order(self, client, mock_send):
        response = client.post(
            "/api/apply",
            data={"startupName": "Foo"},
            files=[
                ("balance_sheets", _pdf("fy24.pdf")),
                ("ip_files", _pdf("patent-1.pdf")),
                ("dpiit_certificate", _pdf("dpiit.pdf")),
                ("ip_files", _pdf("patent-2.pdf")),
                ("pitch_deck", _pdf("deck.pdf")),
            ],
        )

        assert response.status_code == 200
        assert _attachment_names(_sent_email(mock_send)) == [
            "deck.pdf", "dpiit.pdf", "patent-1.pdf", "patent-2.pdf", "fy24.pdf",
        ]

    def test_json_body_accepted(self, client, mock_send):
        response = client.post(
            "/api/apply",
            json={"mode": "individual", "name": "Ada", "skills": ["python", "go"]},
        )

        assert response.status_code == 200
        email = _sent_email(mock_send)
        assert email["Subject"] == "Application: Individual"
        assert dict(_html_rows(email))["skills"] == "python, go"
        assert _attachment_names(email) == []


class TestApplyUploadPolicy:
    def test_unknown_file_field_rejected(self, client, mock_send):
        response = client.post(
            "/api/apply",
            data={"startupName": "Foo"},
            files=[("resume", _pdf("cv.pdf"))],
        )

        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        assert "resume" in body["error"]
        mock_send.assert_not_awaited()

    def test_too_many_ip_files_rejected(self, client, mock_send):
        files = [("ip_files", _pdf(f"p{i}.pdf")) for i in range(21)]

        response = client.post("/api/apply", data={"startupName": "Foo"}, files=files)

        assert response.status_code == 400
        assert response.json()["ok"] is False
        mock_send.assert_not_awaited()

    def test_max_ip_files_accepted(self, client, mock_send):
        files = [("ip_files", _pdf(f"p{i}.pdf")) for i in range(20)]

        response = client.post("/api/apply", data={"startupName": "Foo"}, files=files)

        assert response.status_code == 200
        assert len(_attachment_names(_sent_email(mock_send))) == 20

    def test_too_many_pitch_decks_rejected(self, client, mock_send):
        files = [("pitch_deck", _pdf(f"d{i}.pdf")) for i in range(11)]

        response = client.post("/api/apply", files=files)

        assert response.status_code == 400
        mock_send.assert_not_awaited()


class TestApplyFailures:
    def test_missing_smtp_config_returns_500(self, mock_send):
        response = _client(Settings()).post("/api/apply", data={"startupName": "Foo"})

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": CONFIG_MISSING_MESSAGE}
        mock_send.assert_not_awaited()

    def test_send_failure_returns_500(self, client, mock_send, caplog):
        mock_send.side_effect = aiosmtplib.SMTPServerDisconnected("Server disconnected")

        response = client.post("/api/apply", data={"startupName": "Foo"})

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "Server disconnected"}
        assert any("APPLY SEND ERROR" in r.getMessage() for r in caplog.records)
