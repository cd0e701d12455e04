"""S3 object storage with presigned URLs and delayed deletion."""

import logging
import re
import threading
import time
import uuid
from datetime import datetime, timezone

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from convertviral.errors import StorageError
from convertviral.logging_config import log_event

DEFAULT_DOWNLOAD_EXPIRATION = 24 * 60 * 60
DEFAULT_UPLOAD_EXPIRATION = 60 * 60
ANONYMOUS_OWNER = 'anonymous'
_UNSAFE_NAME_CHARS = re.compile(r'[^a-zA-Z0-9.-]')


def build_s3_client(region, endpoint_url=''):
    kwargs = {
        'region_name': region or 'us-east-1',
        'config': Config(signature_version='s3v4', retries={'max_attempts': 3}),
    }
    if endpoint_url:
        kwargs['endpoint_url'] = endpoint_url
    return boto3.client('s3', **kwargs)


def owner_prefix(owner_id=None):
    return f"uploads/{owner_id or ANONYMOUS_OWNER}/"


def sanitize_file_name(file_name):
    return _UNSAFE_NAME_CHARS.sub('_', str(file_name or ''))


class ObjectStorage:
    """Keys look like ``uploads/<owner>/<ms>-<uuid>-<name>``.

    Scheduled deletions are in-process timers: they are lost when the
    process exits and ``cancel_scheduled_deletions()`` drops them on shutdown.
    """

    def __init__(
        self,
        client,
        bucket_name,
        *,
        region='us-east-1',
        cloudfront_domain='',
        download_expiration=DEFAULT_DOWNLOAD_EXPIRATION,
        logger=None,
        time_module=time,
        timer_factory=threading.Timer,
    ):
        self.client = client
        self.bucket_name = bucket_name
        self.region = region
        self.cloudfront_domain = cloudfront_domain
        self.download_expiration = download_expiration
        self._logger = logger or logging.getLogger(__name__)
        self._time = time_module
        self._timer_factory = timer_factory
        self._timers = {}
        self._timers_lock = threading.Lock()

    def generate_file_key(self, file_name, owner_id=None):
        timestamp = int(self._time.time() * 1000)
        return f"{owner_prefix(owner_id)}{timestamp}-{uuid.uuid4()}-{sanitize_file_name(file_name)}"

    def public_url(self, key):
        if self.cloudfront_domain:
            return f"https://{self.cloudfront_domain}/{key}"
        return f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"

    def _metadata(self, file_name, owner_id):
        return {
            'originalname': sanitize_file_name(file_name),
            'uploadedby': owner_id or ANONYMOUS_OWNER,
            'uploadedat': datetime.now(timezone.utc).isoformat(),
        }

    def upload_file(self, data, file_name, content_type, owner_id=None):
        key = self.generate_file_key(file_name, owner_id)
        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=self._metadata(file_name, owner_id),
            )
        except (BotoCoreError, ClientError) as exc:
            log_event(self._logger, logging.ERROR, 'storage_upload_failed', key=key, error=str(exc))
            raise StorageError('Failed to upload file') from exc
        return {'key': key, 'url': self.public_url(key)}

    def get_signed_download_url(self, key, expires_in=None):
        try:
            return self.client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': key},
                ExpiresIn=int(expires_in or self.download_expiration),
            )
        except (BotoCoreError, ClientError) as exc:
            log_event(self._logger, logging.ERROR, 'storage_sign_download_failed', key=key, error=str(exc))
            raise StorageError('Failed to generate download URL') from exc

    def get_signed_upload_url(self, file_name, content_type, owner_id=None, expires_in=DEFAULT_UPLOAD_EXPIRATION):
        key = self.generate_file_key(file_name, owner_id)
        try:
            url = self.client.generate_presigned_url(
                'put_object',
                Params={
                    'Bucket': self.bucket_name,
                    'Key': key,
                    'ContentType': content_type,
                    'Metadata': self._metadata(file_name, owner_id),
                },
                ExpiresIn=int(expires_in),
            )
        except (BotoCoreError, ClientError) as exc:
            log_event(self._logger, logging.ERROR, 'storage_sign_upload_failed', key=key, error=str(exc))
            raise StorageError('Failed to generate upload URL') from exc
        return {'key': key, 'url': url}

    def delete_file(self, key):
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except (BotoCoreError, ClientError) as exc:
            log_event(self._logger, logging.ERROR, 'storage_delete_failed', key=key, error=str(exc))
            raise StorageError('Failed to delete file') from exc
        return True

    def _run_scheduled_deletion(self, key, delay_hours):
        with self._timers_lock:
            self._timers.pop(key, None)
        try:
            self.delete_file(key)
            self._logger.info(f"File {key} deleted after {delay_hours} hours")
        except StorageError as exc:
            self._logger.error(f"Failed to delete file {key}: {exc}")

    def schedule_file_deletion(self, key, delay_hours=24):
        timer = self._timer_factory(float(delay_hours) * 3600, self._run_scheduled_deletion, args=(key, delay_hours))
        timer.daemon = True
        with self._timers_lock:
            previous = self._timers.pop(key, None)
            self._timers[key] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        return timer

    def pending_deletions(self):
        with self._timers_lock:
            return sorted(self._timers.keys())

    def cancel_scheduled_deletions(self):
        with self._timers_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        return len(timers)
