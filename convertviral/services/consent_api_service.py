"""Business logic handlers for the consent record API."""

import logging

from convertviral.errors import SerializationError, StoreUnavailableError, ValidationError
from convertviral.logging_config import log_event
from convertviral.services import consent_service
from convertviral.services.auth_service import SESSION_COOKIE

SESSION_COOKIE_MAX_AGE = 365 * 24 * 60 * 60
TRUTHY_VALUES = {'1', 'true', 'yes', 'on'}


def _request_context(request):
    return consent_service.RequestContext(
        ip=consent_service.client_ip(
            request.headers.get('X-Forwarded-For', ''),
            request.headers.get('X-Real-IP', ''),
            request.remote_addr or '',
        ),
        user_agent=str(request.headers.get('User-Agent', '') or '').strip()[:512] or 'unknown',
    )


def _authenticated_owner(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token or not decoded_token.get('uid'):
        return None
    session_id = app_ctx.request_session_id(request) or consent_service.ANONYMOUS_SESSION_ID
    return consent_service.Owner(user_id=decoded_token['uid'], session_id=session_id)


def record_consent(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    user_id = decoded_token.get('uid') if decoded_token else None
    context = _request_context(request)

    allowed, retry_after = app_ctx.check_rate_limit(
        key=f"consent:{app_ctx.normalize_rate_limit_key_part(user_id or context.ip, fallback='anon_ip')}",
        limit=app_ctx.config.consent_rate_limit_max_requests,
        window_seconds=app_ctx.config.consent_rate_limit_window_seconds,
    )
    if not allowed:
        return app_ctx.build_rate_limited_response(
            'Too many consent updates right now. Please wait and try again.',
            retry_after,
        )

    session_id = app_ctx.request_session_id(request)
    issued_session = False
    if not session_id:
        if user_id:
            session_id = consent_service.ANONYMOUS_SESSION_ID
        else:
            session_id = app_ctx.new_session_id()
            issued_session = True
    owner = consent_service.Owner(user_id=user_id, session_id=session_id)

    try:
        result = app_ctx.record_consent(owner, request.get_json(silent=True), context)
    except ValidationError as exc:
        return app_ctx.jsonify({'error': str(exc)}), 400
    except StoreUnavailableError as exc:
        log_event(
            app_ctx.security_logger,
            logging.ERROR,
            'CONSENT_RECORD_ERROR',
            error=str(exc),
            user_id=user_id,
            session_id=session_id,
            ip=context.ip,
        )
        return app_ctx.jsonify({'error': 'Failed to record consent'}), 500

    response = app_ctx.jsonify({
        'success': True,
        'consentId': result.entry.id,
        'action': result.action.value,
        'timestamp': result.entry.timestamp,
        'sessionId': session_id,
        'partial': result.outcome.partial,
    })
    if issued_session:
        response.set_cookie(
            SESSION_COOKIE,
            session_id,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            samesite='Lax',
            secure=request.is_secure,
        )
    return response


def get_consent_record(app_ctx, request):
    owner = _authenticated_owner(app_ctx, request)
    if owner is None:
        return app_ctx.jsonify({'error': 'Authentication required'}), 401
    try:
        history = app_ctx.get_consent_history(owner)
    except (StoreUnavailableError, SerializationError) as exc:
        app_ctx.logger.error(f"Failed to read consent history for user {owner.user_id}: {exc}")
        return app_ctx.jsonify({'error': 'Failed to retrieve consent history'}), 500
    history['withdrawalAvailable'] = True
    history['dataSubjectRights'] = dict(consent_service.DATA_SUBJECT_RIGHTS)
    return app_ctx.jsonify(history)


def delete_consent_record(app_ctx, request):
    owner = _authenticated_owner(app_ctx, request)
    if owner is None:
        return app_ctx.jsonify({'error': 'Authentication required'}), 401

    if str(request.args.get('erase', '') or '').strip().lower() in TRUTHY_VALUES:
        try:
            erased = app_ctx.erase_consent_data(owner)
        except StoreUnavailableError as exc:
            app_ctx.logger.error(f"Failed to erase consent data for user {owner.user_id}: {exc}")
            return app_ctx.jsonify({'error': 'Failed to erase consent data'}), 500
        return app_ctx.jsonify({'success': True, 'erased': erased})

    try:
        result = app_ctx.withdraw_consent(owner, _request_context(request))
    except StoreUnavailableError as exc:
        log_event(
            app_ctx.security_logger,
            logging.ERROR,
            'CONSENT_RECORD_ERROR',
            error=str(exc),
            user_id=owner.user_id,
            action='withdrawn',
        )
        return app_ctx.jsonify({'error': 'Failed to withdraw consent'}), 500
    return app_ctx.jsonify({
        'success': True,
        'withdrawalId': result.entry.id,
        'timestamp': result.entry.timestamp,
        'message': 'Consent withdrawn successfully',
        'partial': result.outcome.partial,
    })
