"""Authentication and request-identity helpers."""

import re

SESSION_HEADER = 'X-Session-ID'
SESSION_COOKIE = 'consent_session'
SESSION_ID_RE = re.compile(r'^[A-Za-z0-9_-]{6,80}$')


def verify_firebase_token(request, auth_module, logger):
    """Return decoded Firebase token dict, or None when invalid/missing."""
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    token = auth_header.split('Bearer ', 1)[1]
    if auth_module is None:
        return None
    try:
        return auth_module.verify_id_token(token)
    except Exception as exc:
        if logger is not None:
            logger.info(f"Token verification failed: {exc}")
        return None


def sanitize_session_id(raw_session_id):
    session_id = str(raw_session_id or '').strip()
    if not SESSION_ID_RE.match(session_id):
        return ''
    return session_id


def request_session_id(request):
    """Session id from the ``X-Session-ID`` header or the consent cookie."""
    return sanitize_session_id(
        request.headers.get(SESSION_HEADER, '') or request.cookies.get(SESSION_COOKIE, '')
    )
