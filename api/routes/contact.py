"""
api/routes/contact.py -- Public contact form.

Routes:
  POST /api/contact -- forward a visitor message to the operator inbox

Security:
  Shares the CONTACT_RATE_LIMIT bucket (scope "contact") per IP.
  Body strings arrive already markup-escaped by the hardening pipeline.
"""

import logging
import uuid

from fastapi import APIRouter, Request

from api.limiter import contact_limit
from api.models import ContactRequest
from core.config import get_settings
from core.notifier import Notifier

logger = logging.getLogger("farmassist.api.contact")

_settings = get_settings()

router = APIRouter()


@router.post("/contact", status_code=201)
@contact_limit
def submit_contact(request: Request, body: ContactRequest) -> dict:
    """Accept a contact message and mail it to CONTACT_INBOX when configured."""
    reference = uuid.uuid4().hex[:12]
    inbox = _settings.contact_inbox or _settings.smtp_from
    notifier: Notifier = request.app.state.notifier
    if inbox:
        notifier.send_email(
            inbox,
            f"[FarmAssist contact {reference}] {body.subject or 'New message'}",
            f"From: {body.name} <{body.email}>\n\n{body.message}\n",
        )
    else:
        logger.warning("CONTACT_INBOX not configured; contact message %s not forwarded", reference)
    request.app.state.audit.data_write(request, "contact", reference)
    return {"success": True, "message": "Message received", "data": {"reference": reference}}
