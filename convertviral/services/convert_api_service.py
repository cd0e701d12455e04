"""Business logic handlers for format, upload, conversion and download APIs."""

import logging
from urllib.parse import quote

from convertviral.errors import FileTooLargeError, StorageError, StoreUnavailableError, ValidationError
from convertviral.logging_config import log_event
from convertviral.repositories import conversion_repo
from convertviral.services import cache_service, file_service
from convertviral.services.storage_service import owner_prefix

JOB_STATUS_PENDING = 'pending'


def _caller_uid(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return None
    return decoded_token.get('uid') or None


def _check_upload_rate_limit(app_ctx, request, uid, bucket):
    caller = uid or request.remote_addr
    return app_ctx.check_rate_limit(
        key=f"{bucket}:{app_ctx.normalize_rate_limit_key_part(caller, fallback='anon_ip')}",
        limit=app_ctx.config.upload_rate_limit_max_requests,
        window_seconds=app_ctx.config.upload_rate_limit_window_seconds,
    )


def _validation_error_response(app_ctx, exc, is_premium):
    if isinstance(exc, FileTooLargeError):
        return app_ctx.jsonify({
            'error': 'File size exceeds limit',
            'limit': f"{exc.limit_bytes // file_service.MB}MB",
            'upgrade': not is_premium,
        }), 400
    return app_ctx.jsonify({'error': str(exc)}), 400


def build_format_catalog():
    return {
        'categories': file_service.get_all_categories(),
        'formatsByCategory': {
            category['id']: file_service.get_formats_by_category(category['id'])
            for category in file_service.get_all_categories()
        },
    }


def list_formats(app_ctx, request):
    source_format = str(request.args.get('sourceFormat', '') or '').strip()
    if source_format:
        return app_ctx.jsonify({
            'sourceFormat': source_format,
            'compatibleFormats': file_service.get_compatible_target_formats(source_format),
        })
    category = str(request.args.get('category', '') or '').strip()
    if category:
        return app_ctx.jsonify({
            'category': category,
            'formats': file_service.get_formats_by_category(category),
        })

    catalog = cache_service.get_cached_formats(app_ctx.cache)
    if catalog is None:
        catalog = build_format_catalog()
        cache_service.cache_formats(app_ctx.cache, catalog)
    return app_ctx.jsonify(catalog)


def get_conversion_matrix(app_ctx, request):
    payload = request.get_json(silent=True)
    formats = payload.get('formats') if isinstance(payload, dict) else None
    if not isinstance(formats, list) or not formats:
        formats = None
    return app_ctx.jsonify({'conversionMatrix': file_service.conversion_matrix(formats)})


def upload_file(app_ctx, request):
    uid = _caller_uid(app_ctx, request)
    allowed, retry_after = _check_upload_rate_limit(app_ctx, request, uid, 'upload')
    if not allowed:
        return app_ctx.build_rate_limited_response(
            'Too many upload attempts right now. Please wait and try again.',
            retry_after,
        )

    uploaded = request.files.get('file')
    if uploaded is None or not uploaded.filename:
        return app_ctx.jsonify({'error': 'No file provided'}), 400
    data = uploaded.read()
    content_type = uploaded.mimetype or 'application/octet-stream'
    is_premium = bool(uid)
    try:
        fmt = file_service.validate_upload(uploaded.filename, content_type, data, is_premium=is_premium)
    except ValidationError as exc:
        return _validation_error_response(app_ctx, exc, is_premium)

    try:
        stored = app_ctx.storage.upload_file(data, uploaded.filename, content_type, owner_id=uid)
    except StorageError:
        return app_ctx.jsonify({'error': 'Failed to upload file'}), 500
    app_ctx.storage.schedule_file_deletion(stored['key'], app_ctx.config.file_deletion_delay_hours)

    file_id = str(app_ctx.uuid.uuid4())
    record = {
        'id': file_id,
        'originalName': uploaded.filename,
        'key': stored['key'],
        'fileSize': len(data),
        'mimeType': content_type,
        'extension': fmt['extension'],
        'uploadedAt': int(app_ctx.time.time() * 1000),
        'userId': uid,
        'isPremium': is_premium,
    }
    try:
        conversion_repo.set_file_record(app_ctx.kv_client, file_id, record)
    except StoreUnavailableError as exc:
        log_event(app_ctx.logger, logging.ERROR, 'upload_record_failed', file_id=file_id, key=stored['key'], error=str(exc))
        return app_ctx.jsonify({'error': 'Failed to record upload'}), 500

    return app_ctx.jsonify({
        'fileId': file_id,
        'filename': uploaded.filename,
        'size': len(data),
        'mimetype': content_type,
        'extension': fmt['extension'],
        'key': stored['key'],
        'url': f"/api/download?key={quote(stored['key'], safe='')}",
        'compatibleTargetFormats': [
            target['extension'] for target in file_service.get_compatible_target_formats(fmt['extension'])
        ],
    })


def create_conversion(app_ctx, request):
    uid = _caller_uid(app_ctx, request)
    allowed, retry_after = _check_upload_rate_limit(app_ctx, request, uid, 'convert')
    if not allowed:
        return app_ctx.build_rate_limited_response(
            'Too many conversion requests right now. Please wait and try again.',
            retry_after,
        )

    uploaded = request.files.get('file')
    if uploaded is None or not uploaded.filename:
        return app_ctx.jsonify({'error': 'No file provided'}), 400
    data = uploaded.read()
    content_type = uploaded.mimetype or 'application/octet-stream'
    is_premium = bool(uid)
    try:
        fmt = file_service.validate_upload(uploaded.filename, content_type, data, is_premium=is_premium)
    except ValidationError as exc:
        return _validation_error_response(app_ctx, exc, is_premium)

    target_format = file_service.normalize_extension(request.form.get('targetFormat', ''))
    compatible = [target['extension'] for target in file_service.get_compatible_target_formats(fmt['extension'])]
    if target_format not in compatible:
        return app_ctx.jsonify({'error': 'Invalid target format', 'compatibleFormats': compatible}), 400

    job_id = str(app_ctx.uuid.uuid4())
    job = {
        'jobId': job_id,
        'userId': uid or '',
        'sourceFormat': fmt['extension'],
        'targetFormat': target_format,
        'sourceSize': len(data),
        'sourceFile': '',
        'status': JOB_STATUS_PENDING,
        'createdAt': int(app_ctx.time.time() * 1000),
        'priority': 'normal',
        'isPremium': is_premium,
        'estimatedSeconds': file_service.estimate_conversion_seconds(len(data), fmt['extension'], target_format),
    }
    try:
        conversion_repo.set_job(app_ctx.kv_client, job_id, job)
    except StoreUnavailableError as exc:
        log_event(app_ctx.logger, logging.ERROR, 'conversion_job_store_failed', job_id=job_id, error=str(exc))
        return app_ctx.jsonify({'error': 'Failed to create conversion job'}), 500

    return app_ctx.jsonify({
        'jobId': job_id,
        'status': JOB_STATUS_PENDING,
        'message': 'Conversion job created successfully',
    })


def get_conversion_status(app_ctx, request):
    job_id = str(request.args.get('jobId', '') or '').strip()
    if not job_id:
        return app_ctx.jsonify({'error': 'Job ID is required'}), 400
    try:
        job = conversion_repo.get_job(app_ctx.kv_client, job_id)
    except (StoreUnavailableError, ValueError) as exc:
        app_ctx.logger.error(f"Failed to read conversion job {job_id}: {exc}")
        return app_ctx.jsonify({'error': 'Internal server error'}), 500
    if not job:
        return app_ctx.jsonify({'error': 'Conversion job not found'}), 404
    return app_ctx.jsonify({
        'jobId': job.get('jobId', job_id),
        'status': job.get('status'),
        'sourceFormat': job.get('sourceFormat'),
        'targetFormat': job.get('targetFormat'),
        'createdAt': job.get('createdAt'),
    })


def get_download_url(app_ctx, request):
    key = str(request.args.get('key', '') or '').strip()
    if not key:
        return app_ctx.jsonify({'error': 'File key is required'}), 400
    uid = _caller_uid(app_ctx, request)
    if not key.startswith(owner_prefix(uid)) or '..' in key:
        return app_ctx.jsonify({'error': 'Access denied'}), 403

    expires_in = app_ctx.config.signed_url_expiration_seconds
    try:
        url = app_ctx.storage.get_signed_download_url(key, expires_in)
    except StorageError:
        return app_ctx.jsonify({'error': 'Failed to generate download URL'}), 500
    return app_ctx.jsonify({
        'url': url,
        'filename': key.rsplit('/', 1)[-1],
        'expiresIn': expires_in,
    })
