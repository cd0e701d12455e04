import os
from dataclasses import dataclass, field

DEV_ENV_NAMES = {'development', 'dev', 'local', 'test'}
SEVEN_YEARS_SECONDS = 7 * 365 * 24 * 60 * 60


def safe_int_env(name, default=0, minimum=1, maximum=100000):
    raw = str(os.getenv(name, str(default)) or '').strip()
    try:
        value = int(raw)
    except Exception:
        value = int(default)
    return min(max(value, minimum), maximum)


def safe_float_env(name, default=0.0, minimum=0.0, maximum=1.0):
    raw = str(os.getenv(name, str(default)) or '').strip()
    try:
        value = float(raw)
    except Exception:
        return default
    return min(max(value, minimum), maximum)


def _env_str(name, default=''):
    return lambda: (os.getenv(name, default) or default).strip()


def runtime_environment():
    return (
        os.getenv('SENTRY_ENVIRONMENT')
        or os.getenv('FLASK_ENV')
        or os.getenv('ENV')
        or ('production' if os.getenv('RENDER') else 'development')
    ).strip().lower()


@dataclass(frozen=True)
class AppConfig:
    """Central config object, read from the environment at load time."""

    flask_secret_key: str = field(default_factory=_env_str('FLASK_SECRET_KEY'))
    log_level: str = field(default_factory=lambda: (os.getenv('LOG_LEVEL', 'INFO') or 'INFO').strip().upper())
    sentry_dsn: str = field(default_factory=_env_str('SENTRY_DSN_BACKEND'))
    sentry_environment: str = field(default_factory=lambda: (os.getenv('SENTRY_ENVIRONMENT', os.getenv('FLASK_ENV', 'production')) or 'production').strip())
    sentry_release: str = field(default_factory=_env_str('SENTRY_RELEASE', 'convertviral'))
    sentry_traces_sample_rate: float = field(default_factory=lambda: safe_float_env('SENTRY_TRACES_SAMPLE_RATE', 0.0))

    redis_url: str = field(default_factory=_env_str('REDIS_URL', 'redis://localhost:6379/0'))
    redis_socket_timeout: int = field(default_factory=lambda: safe_int_env('REDIS_SOCKET_TIMEOUT_SECONDS', 2, minimum=1, maximum=30))

    cache_default_ttl: int = field(default_factory=lambda: safe_int_env('CACHE_TTL', 3600, minimum=1, maximum=30 * 86400))
    cache_sweep_interval: int = field(default_factory=lambda: safe_int_env('CACHE_SWEEP_INTERVAL_SECONDS', 60, minimum=1, maximum=3600))

    consent_retention_seconds: int = field(default_factory=lambda: safe_int_env('CONSENT_RETENTION_SECONDS', SEVEN_YEARS_SECONDS, minimum=86400, maximum=10 * SEVEN_YEARS_SECONDS))
    consent_audit_log_max_entries: int = field(default_factory=lambda: safe_int_env('CONSENT_AUDIT_LOG_MAX_ENTRIES', 10000, minimum=100, maximum=1000000))
    consent_history_limit: int = field(default_factory=lambda: safe_int_env('CONSENT_HISTORY_LIMIT', 50, minimum=1, maximum=500))
    consent_rate_limit_window_seconds: int = field(default_factory=lambda: safe_int_env('CONSENT_RATE_LIMIT_WINDOW_SECONDS', 60, minimum=10, maximum=3600))
    consent_rate_limit_max_requests: int = field(default_factory=lambda: safe_int_env('CONSENT_RATE_LIMIT_MAX_REQUESTS', 30, minimum=1, maximum=1000))
    upload_rate_limit_window_seconds: int = field(default_factory=lambda: safe_int_env('UPLOAD_RATE_LIMIT_WINDOW_SECONDS', 600, minimum=10, maximum=86400))
    upload_rate_limit_max_requests: int = field(default_factory=lambda: safe_int_env('UPLOAD_RATE_LIMIT_MAX_REQUESTS', 20, minimum=1, maximum=1000))

    aws_region: str = field(default_factory=_env_str('AWS_REGION', 'us-east-1'))
    aws_bucket_name: str = field(default_factory=_env_str('AWS_BUCKET_NAME'))
    aws_cloudfront_domain: str = field(default_factory=_env_str('AWS_CLOUDFRONT_DOMAIN'))
    aws_s3_endpoint_url: str = field(default_factory=_env_str('AWS_S3_ENDPOINT_URL'))
    signed_url_expiration_seconds: int = field(default_factory=lambda: safe_int_env('SIGNED_URL_EXPIRATION_SECONDS', 86400, minimum=60, maximum=7 * 86400))
    file_deletion_delay_hours: int = field(default_factory=lambda: safe_int_env('FILE_DELETION_DELAY_HOURS', 24, minimum=1, maximum=24 * 30))

    @property
    def is_dev_like(self):
        return runtime_environment() in DEV_ENV_NAMES


def load_config() -> AppConfig:
    config = AppConfig()
    if not config.is_dev_like and not config.flask_secret_key:
        raise RuntimeError('FLASK_SECRET_KEY must be set in non-development environments.')
    return config
