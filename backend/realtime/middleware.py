"""WebSocket authentication: JWT from the query string or Authorization header, session as fallback."""

import logging
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

logger = logging.getLogger(__name__)


def _token_from_scope(scope):
    params = parse_qs(scope.get("query_string", b"").decode())
    token_list = params.get("token")
    if token_list:
        return token_list[0]
    headers = dict(scope.get("headers", []))
    authorization = headers.get(b"authorization", b"").decode()
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


@database_sync_to_async
def _user_for_token(raw_token):
    User = get_user_model()
    try:
        access = AccessToken(raw_token)
        return User.objects.get(id=access["user_id"], is_active=True)
    except (TokenError, KeyError, User.DoesNotExist) as exc:
        logger.debug("JWT auth failed: %s", exc)
        return AnonymousUser()


class JWTOrCookieAuthMiddleware(BaseMiddleware):
    """
    Authenticate WebSocket connections using either:
    1. JWT in querystring (?token=...) or an Authorization: Bearer header
    2. The session user already resolved by AuthMiddlewareStack (browser use)

    An invalid token never falls back to the session.
    """

    async def __call__(self, scope, receive, send):
        scope = dict(scope)
        token = _token_from_scope(scope)
        if token:
            scope["user"] = await _user_for_token(token)
        elif "user" not in scope:
            scope["user"] = AnonymousUser()
        return await super().__call__(scope, receive, send)
