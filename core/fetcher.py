"""
fetcher.py -- All outbound HTTP calls.

Two upstreams: the identity provider's JWKS document and the Twilio SMS API.
Every call carries an explicit timeout so a slow upstream cannot pin a
worker thread.
"""

import logging
from typing import Any, Optional

import requests

from core.errors import DeliveryError

logger = logging.getLogger("farmassist.fetcher")

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

# Module-level session shared across calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- both upstreams are
# fixed endpoints, a long redirect chain is a sign of tampering.
_session = requests.Session()
_session.max_redirects = 3


def jwks_uri(issuer: str) -> str:
    """Return the JWKS document location for an issuer."""
    return f"{issuer.rstrip('/')}/.well-known/jwks.json"


def fetch_jwks(issuer: str, timeout: float) -> Optional[dict[str, Any]]:
    """Fetch the issuer's JSON Web Key Set.

    Returns None on any network or decoding failure. Callers treat None as
    "no keys available" and reject the token being verified.
    """
    url = jwks_uri(issuer)
    try:
        resp = _session.get(url, timeout=timeout)
        resp.raise_for_status()
        document = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("JWKS fetch failed for %s: %s", url, e)
        return None
    if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
        logger.warning("JWKS document at %s has no key list", url)
        return None
    return document


def send_twilio_sms(sid: str, token: str, sender: str, to: str, body: str, timeout: float) -> str:
    """Send one SMS through Twilio's REST API and return the message SID.

    Raises DeliveryError when the request fails or Twilio rejects it.
    """
    try:
        resp = _session.post(
            TWILIO_MESSAGES_URL.format(sid=sid),
            data={"From": sender, "To": to, "Body": body},
            auth=(sid, token),
            timeout=timeout,
        )
        resp.raise_for_status()
        return resp.json().get("sid", "")
    except (requests.RequestException, ValueError) as e:
        logger.warning("SMS delivery to %s failed: %s", to, e)
        raise DeliveryError("SMS delivery failed", detail=str(e)) from e
