"""Redis accessors for conversion jobs and uploaded file records."""

import json

from . import kv_repo

RECORD_TTL_SECONDS = 24 * 60 * 60


def job_key(job_id):
    return f"conversion:{job_id}"


def file_key(file_id):
    return f"file:{file_id}"


def set_job(client, job_id, payload, ttl_seconds=RECORD_TTL_SECONDS):
    return kv_repo.set_value(client, job_key(job_id), json.dumps(payload), ttl_seconds)


def get_job(client, job_id):
    raw = kv_repo.get_value(client, job_key(job_id))
    return json.loads(raw) if raw else None


def set_file_record(client, file_id, payload, ttl_seconds=RECORD_TTL_SECONDS):
    return kv_repo.set_value(client, file_key(file_id), json.dumps(payload), ttl_seconds)
