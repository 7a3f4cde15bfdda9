"""
tests/test_contact.py -- POST /api/contact.

Covers:
  - 201 with a reference; message forwarded to the operator inbox when set
  - Validation failures use the field-error envelope
  - Line breaks in name or subject are refused before any mail is built
  - Transport failure surfaces as 502
  - Contact rate limit is separate from the auth limit
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from api.limiter import CONTACT_LIMIT_MESSAGE
from api.routes import contact as contact_module
from core.config import Settings, get_settings
from core.errors import DeliveryError
from core.notifier import Notifier

MESSAGE = {
    "name": "Dilani",
    "email": "dilani@farmassist.io",
    "subject": "Seed prices",
    "message": "When will the paddy seed subsidy open?",
}


@pytest.fixture
def inbox(monkeypatch):
    monkeypatch.setattr(contact_module._settings, "contact_inbox", "ops@farmassist.io")
    return "ops@farmassist.io"


class TestContact:
    def test_forwarded_to_inbox(self, api_client, inbox) -> None:
        resp = api_client.client.post("/api/contact", json=MESSAGE)
        assert resp.status_code == 201
        reference = resp.json()["data"]["reference"]
        assert len(reference) == 12

        mail = api_client.notifier.last_email_to(inbox)
        assert mail is not None
        assert reference in mail[1]
        assert "paddy seed subsidy" in mail[2]
        assert "dilani@farmassist.io" in mail[2]

    def test_without_inbox_still_accepted(self, api_client, monkeypatch) -> None:
        monkeypatch.setattr(contact_module._settings, "contact_inbox", "")
        monkeypatch.setattr(contact_module._settings, "smtp_from", "")
        sent = len(api_client.notifier.emails)
        resp = api_client.client.post("/api/contact", json=MESSAGE)
        assert resp.status_code == 201
        assert len(api_client.notifier.emails) == sent

    def test_validation(self, api_client) -> None:
        resp = api_client.client.post("/api/contact", json={"name": "", "email": "not-an-email"})
        assert resp.status_code == 400
        fields = {e["field"] for e in resp.json()["errors"]}
        assert {"name", "email", "message"} <= fields

    def test_line_break_in_subject_refused(self, api_client, inbox, monkeypatch) -> None:
        smtp_settings = Settings(
            _env_file=None,
            environment="test",
            secret_key="k" * 32,
            smtp_host="smtp.farmassist.io",
            smtp_user="bot",
            smtp_pass="pw",
            smtp_from="no-reply@farmassist.io",
        )
        monkeypatch.setattr(api_client.client.app.state, "notifier", Notifier(smtp_settings))
        with patch("core.notifier.smtplib.SMTP") as smtp_cls:
            smtp = smtp_cls.return_value.__enter__.return_value
            bad = api_client.client.post("/api/contact", json={**MESSAGE, "subject": "Seed prices\nBcc: evil@x.io"})
            good = api_client.client.post("/api/contact", json=MESSAGE)

        assert bad.status_code == 400
        assert "subject" in {e["field"] for e in bad.json()["errors"]}
        assert good.status_code == 201
        smtp.send_message.assert_called_once()

    def test_delivery_failure_is_502(self, api_client, inbox, monkeypatch) -> None:
        def broken(to, subject, text):
            raise DeliveryError("Email delivery failed", detail="connection refused")

        monkeypatch.setattr(api_client.notifier, "send_email", broken)
        resp = api_client.client.post("/api/contact", json=MESSAGE)
        assert resp.status_code == 502
        assert resp.json()["message"] == "Email delivery failed"

    def test_rate_limited(self, api_client) -> None:
        allowance = int(get_settings().contact_rate_limit.split("/", 1)[0])
        for _ in range(allowance):
            assert api_client.client.post("/api/contact", json=MESSAGE).status_code == 201
        resp = api_client.client.post("/api/contact", json=MESSAGE)
        assert resp.status_code == 429
        assert resp.json()["message"] == CONTACT_LIMIT_MESSAGE
