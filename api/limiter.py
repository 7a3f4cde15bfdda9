"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply group limits with @auth_limit / @contact_limit).

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.

Limits (all keyed by client address, moving window, per-process memory):
  application: GENERAL_RATE_LIMIT on every route
  auth group:  AUTH_RATE_LIMIT shared by every /api/auth route
  contact:     CONTACT_RATE_LIMIT shared by every /api/contact route
Health checks are exempt.

SlowAPIMiddleware skips any route that carries its own decorator, so a group
decorator also attaches the general limit under slowapi's application scope
("global"). Both hit the same counter, and a request to a group route counts
against the general window as well as its group window.

Decorator order: @router.<method>(...) must sit ABOVE @auth_limit /
@contact_limit so FastAPI registers the limited wrapper. Limited endpoints
need a `request: Request` parameter.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

GENERAL_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."
AUTH_LIMIT_MESSAGE = "Too many auth attempts from this IP, please try again later."
CONTACT_LIMIT_MESSAGE = "Too many contact requests from this IP, please try again later."

# The scope slowapi files application_limits under.
APPLICATION_SCOPE = "global"

limiter = Limiter(
    key_func=get_remote_address,
    application_limits=[_settings.general_rate_limit],
    storage_uri="memory://",
    strategy="moving-window",
)


def group_limit(limit_value: str, scope: str, error_message: str):
    """Build a decorator applying a shared group limit on top of the general limit."""
    general = limiter.shared_limit(
        _settings.general_rate_limit, scope=APPLICATION_SCOPE, error_message=GENERAL_LIMIT_MESSAGE
    )
    group = limiter.shared_limit(limit_value, scope=scope, error_message=error_message)

    def decorate(func):
        return group(general(func))

    return decorate


auth_limit = group_limit(_settings.auth_rate_limit, "auth", AUTH_LIMIT_MESSAGE)
contact_limit = group_limit(_settings.contact_rate_limit, "contact", CONTACT_LIMIT_MESSAGE)
