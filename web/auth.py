"""
Request attribution from Azure App Service Easy Auth.

Easy Auth authenticates in front of the app and forwards the signed-in user
as ``X-MS-CLIENT-PRINCIPAL``: base64 JSON holding a ``claims`` list of
``{"typ": ..., "val": ...}`` pairs. Imports only need to know who previewed,
committed or cancelled, so the principal is reduced to an actor
(id, name, email) for the audit trail and the import run metadata.
"""
import base64
import binascii
import json
import logging
from dataclasses import asdict, dataclass
from functools import wraps
from typing import Any, Dict, Iterable, Optional

from flask import current_app, g, jsonify, request

logger = logging.getLogger(__name__)

PRINCIPAL_HEADER = 'X-MS-CLIENT-PRINCIPAL'

# First claim present wins; claim types are matched on their last path segment
NAME_CLAIMS = ('name', 'displayname')
EMAIL_CLAIMS = ('emailaddress', 'email', 'upn', 'preferred_username')


@dataclass(frozen=True)
class Actor:
    user_id: str
    name: str
    email: str
    identity_provider: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


DEV_ACTOR = Actor(user_id='local-dev-user', name='Local Developer', email='dev@localhost',
                  identity_provider='local')


def _first_claim(claims: Dict[str, str], names: Iterable[str]) -> str:
    return next((claims[n] for n in names if claims.get(n)), '')


def decode_principal(header_value: Optional[str]) -> Optional[Actor]:
    """
    Turn an ``X-MS-CLIENT-PRINCIPAL`` value into an ``Actor``.

    Returns None for a missing header or one that is not base64 JSON.
    """
    if not header_value:
        return None
    try:
        principal = json.loads(base64.b64decode(header_value, validate=True).decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"[AUTH] Unreadable client principal: {e}")
        return None
    if not isinstance(principal, dict):
        return None

    claims = {
        str(c.get('typ', '')).rsplit('/', 1)[-1].lower(): str(c.get('val', ''))
        for c in principal.get('claims') or ()
        if isinstance(c, dict)
    }
    return Actor(
        user_id=str(principal.get('user_id') or claims.get('nameidentifier', '')),
        name=_first_claim(claims, NAME_CLAIMS) or 'Unknown User',
        email=_first_claim(claims, EMAIL_CLAIMS),
        identity_provider=str(principal.get('identity_provider') or principal.get('auth_typ') or 'aad'),
    )


def request_actor() -> Optional[Actor]:
    """The Easy Auth actor of the current request, if any."""
    return decode_principal(request.headers.get(PRINCIPAL_HEADER))


def get_current_user() -> Optional[Dict[str, Any]]:
    """Actor dict stored by ``require_auth``; None outside a guarded route."""
    return getattr(g, 'user', None)


def require_auth(f):
    """
    Guard a route with Easy Auth.

    With ``REQUIRE_AUTH`` off every request runs as the local development
    actor. Otherwise a missing or unreadable principal answers 401.
    """
    @wraps(f)
    def guarded(*args, **kwargs):
        if not current_app.config.get('REQUIRE_AUTH', True):
            actor = DEV_ACTOR
        else:
            actor = request_actor()
            if actor is None:
                logger.warning(f"[AUTH] Unauthenticated request to {request.path}")
                return jsonify({
                    'success': False,
                    'error': {'code': 'UNAUTHORIZED', 'message': 'Authentication required'},
                }), 401
        g.user = actor.to_dict()
        return f(*args, **kwargs)

    return guarded
