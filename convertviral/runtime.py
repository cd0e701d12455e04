"""Process-wide collaborators and request handlers.

Everything the blueprints need lives at module level so tests can swap
collaborators with ``monkeypatch.setattr(runtime, ...)``.
"""

import json
import logging
import os
import sys
import threading
import time
import uuid

import firebase_admin
import sentry_sdk
from dotenv import load_dotenv
from firebase_admin import auth, credentials
from flask import g, jsonify, request
from sentry_sdk.integrations.flask import FlaskIntegration

from convertviral.config import load_config
from convertviral.logging_config import configure_logging, get_security_logger
from convertviral.repositories import kv_repo
from convertviral.services import (
    auth_service,
    consent_api_service,
    consent_service,
    convert_api_service,
    rate_limit_service,
)
from convertviral.services.cache_service import LayeredCache
from convertviral.services.storage_service import ObjectStorage, build_s3_client

load_dotenv()
config = load_config()
configure_logging(config.log_level)
logger = logging.getLogger('convertviral')
security_logger = get_security_logger()

MAX_CONTENT_LENGTH = 510 * 1024 * 1024
SENTRY_ENABLED = False
if config.sentry_dsn:
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=config.sentry_traces_sample_rate,
        send_default_pii=False,
        environment=config.sentry_environment,
        release=config.sentry_release,
    )
    SENTRY_ENABLED = True


def parse_cors_allowed_origins():
    raw = (os.getenv('CORS_ALLOWED_ORIGINS', '') or '').strip()
    if raw:
        return {part.strip().lower() for part in raw.split(',') if part.strip()}
    return {
        'http://127.0.0.1:3000',
        'http://localhost:3000',
        'http://127.0.0.1:5000',
        'http://localhost:5000',
        'https://convertviral.com',
        'https://www.convertviral.com',
    }


CORS_ALLOWED_ORIGINS = parse_cors_allowed_origins()

# --- Firebase Setup (token verification only) ---
firebase_init_error = ''
try:
    if os.path.exists('firebase-credentials.json'):
        cred = credentials.Certificate('firebase-credentials.json')
    else:
        firebase_creds_raw = (os.getenv('FIREBASE_CREDENTIALS', '') or '').strip()
        if not firebase_creds_raw:
            raise ValueError("FIREBASE_CREDENTIALS is not set and firebase-credentials.json was not found.")
        cred = credentials.Certificate(json.loads(firebase_creds_raw))
    if not firebase_admin._apps:
        firebase_admin.initialize_app(cred)
except Exception as e:
    firebase_init_error = str(e)
    logger.info(f"Firebase initialization skipped: {firebase_init_error}")

# --- Stores ---
kv_client = kv_repo.build_client(config.redis_url, config.redis_socket_timeout)
cache = LayeredCache(
    kv_client,
    default_ttl=config.cache_default_ttl,
    sweep_interval=config.cache_sweep_interval,
    logger=logger,
)
storage = ObjectStorage(
    build_s3_client(config.aws_region, config.aws_s3_endpoint_url),
    config.aws_bucket_name,
    region=config.aws_region,
    cloudfront_domain=config.aws_cloudfront_domain,
    download_expiration=config.signed_url_expiration_seconds,
    logger=logger,
)

RATE_LIMIT_EVENTS = {}
RATE_LIMIT_LOCK = threading.Lock()


# =============================================
# HELPER FUNCTIONS
# =============================================

def verify_firebase_token(request):
    return auth_service.verify_firebase_token(request, auth_module=auth, logger=logger)


def request_session_id(request):
    return auth_service.request_session_id(request)


def new_session_id():
    return f"sess_{uuid.uuid4().hex}"


def check_rate_limit(key, limit, window_seconds):
    return rate_limit_service.check_rate_limit(
        key,
        limit,
        window_seconds,
        client=kv_client,
        in_memory_events=RATE_LIMIT_EVENTS,
        in_memory_lock=RATE_LIMIT_LOCK,
        time_module=time,
    )


def build_rate_limited_response(message, retry_after):
    response = jsonify({
        'error': message,
        'retry_after_seconds': int(max(1, retry_after)),
    })
    response.status_code = 429
    response.headers['Retry-After'] = str(int(max(1, retry_after)))
    return response


def normalize_rate_limit_key_part(value, fallback='anon', max_len=120):
    return rate_limit_service.normalize_key_part(value, fallback=fallback, max_len=max_len)


def record_consent(owner, payload, context):
    return consent_service.record_consent(
        owner,
        payload,
        context,
        client=kv_client,
        time_module=time,
        logger=logger,
        security_logger=security_logger,
        retention_seconds=config.consent_retention_seconds,
        audit_log_max=config.consent_audit_log_max_entries,
    )


def withdraw_consent(owner, context):
    return consent_service.withdraw_consent(
        owner,
        context,
        client=kv_client,
        time_module=time,
        logger=logger,
        security_logger=security_logger,
        retention_seconds=config.consent_retention_seconds,
        audit_log_max=config.consent_audit_log_max_entries,
    )


def get_consent_history(owner):
    return consent_service.get_consent_history(
        owner,
        client=kv_client,
        logger=logger,
        limit=config.consent_history_limit,
    )


def erase_consent_data(owner):
    return consent_service.erase_consent_data(
        owner,
        client=kv_client,
        logger=logger,
        security_logger=security_logger,
    )


def get_cache():
    return cache


# =============================================
# REQUEST HOOKS
# =============================================

def apply_cors_headers(response):
    origin = str(request.headers.get('Origin', '') or '').strip()
    if not origin:
        return response
    if not request.path.startswith('/api/'):
        return response
    if origin.lower() not in CORS_ALLOWED_ORIGINS:
        return response
    response.headers['Access-Control-Allow-Origin'] = origin
    response.headers['Vary'] = 'Origin'
    response.headers['Access-Control-Allow-Headers'] = 'Authorization, Content-Type, X-Session-ID'
    response.headers['Access-Control-Allow-Credentials'] = 'true'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, DELETE, OPTIONS'
    return response


def register_request_hooks(app):
    @app.before_request
    def handle_api_options_preflight():
        if request.method == 'OPTIONS' and request.path.startswith('/api/'):
            return apply_cors_headers(app.make_default_options_response())
        return None

    @app.before_request
    def attach_request_context():
        request_id = str(request.headers.get('X-Request-ID', '') or '').strip()[:120] or uuid.uuid4().hex
        g.request_id = request_id
        if not SENTRY_ENABLED:
            return
        sentry_sdk.set_tag('request.id', request_id)
        sentry_sdk.set_tag('route.path', request.path)
        sentry_sdk.set_tag('route.method', request.method)
        sentry_sdk.set_tag('route.auth_header_present', 'true' if request.headers.get('Authorization') else 'false')

    @app.after_request
    def attach_response_context(response):
        request_id = str(getattr(g, 'request_id', '') or '').strip()
        if request_id:
            response.headers['X-Request-ID'] = request_id
        if SENTRY_ENABLED:
            sentry_sdk.set_tag('route.status_code', str(response.status_code))
        return apply_cors_headers(response)


def handle_request_entity_too_large(_error):
    return jsonify({'error': 'Upload too large. Maximum upload size is 500MB.'}), 413


# =============================================
# ROUTE HANDLERS
# =============================================

def _app_ctx():
    return sys.modules[__name__]


def record_consent_impl():
    return consent_api_service.record_consent(_app_ctx(), request)


def get_consent_record_impl():
    return consent_api_service.get_consent_record(_app_ctx(), request)


def delete_consent_record_impl():
    return consent_api_service.delete_consent_record(_app_ctx(), request)


def list_formats_impl():
    return convert_api_service.list_formats(_app_ctx(), request)


def conversion_matrix_impl():
    return convert_api_service.get_conversion_matrix(_app_ctx(), request)


def upload_file_impl():
    return convert_api_service.upload_file(_app_ctx(), request)


def create_conversion_impl():
    return convert_api_service.create_conversion(_app_ctx(), request)


def get_conversion_status_impl():
    return convert_api_service.get_conversion_status(_app_ctx(), request)


def get_download_url_impl():
    return convert_api_service.get_download_url(_app_ctx(), request)
