from urllib.parse import parse_qs, urlparse

import pytest
from moto import mock_aws

from convertviral.errors import StorageError
from convertviral.services.storage_service import ObjectStorage, build_s3_client, owner_prefix, sanitize_file_name

BUCKET = "convertviral-test-uploads"


class _ManualTimer:
    created = []

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        _ManualTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


@pytest.fixture()
def s3():
    with mock_aws():
        client = build_s3_client("us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield client


@pytest.fixture()
def storage(s3, clock):
    _ManualTimer.created = []
    return ObjectStorage(s3, BUCKET, region="us-east-1", time_module=clock, timer_factory=_ManualTimer)


def test_generate_file_key_is_owner_scoped_and_sanitized(storage, clock):
    key = storage.generate_file_key("my report (final).pdf", "user-9")

    assert key.startswith(f"uploads/user-9/{int(clock.now * 1000)}-")
    assert key.endswith("-my_report__final_.pdf")
    assert storage.generate_file_key("a.pdf").startswith("uploads/anonymous/")


def test_upload_file_writes_object_with_metadata(storage, s3):
    result = storage.upload_file(b"%PDF-1.7", "notes.pdf", "application/pdf", owner_id="user-1")

    obj = s3.get_object(Bucket=BUCKET, Key=result["key"])
    assert obj["Body"].read() == b"%PDF-1.7"
    assert obj["ContentType"] == "application/pdf"
    assert obj["Metadata"]["uploadedby"] == "user-1"
    assert result["url"] == f"https://{BUCKET}.s3.us-east-1.amazonaws.com/{result['key']}"


def test_public_url_prefers_cloudfront(s3):
    storage = ObjectStorage(s3, BUCKET, cloudfront_domain="cdn.example.test")

    assert storage.public_url("uploads/a/b.pdf") == "https://cdn.example.test/uploads/a/b.pdf"


def test_signed_download_url_carries_expiry(storage):
    key = storage.upload_file(b"data", "a.txt", "text/plain")["key"]

    url = storage.get_signed_download_url(key, expires_in=600)

    parsed = urlparse(url)
    assert parsed.path.endswith(key)
    query = parse_qs(parsed.query)
    assert query["X-Amz-Expires"] == ["600"]


def test_signed_upload_url_generates_fresh_key(storage):
    result = storage.get_signed_upload_url("photo.png", "image/png", owner_id="user-2")

    assert result["key"].startswith(owner_prefix("user-2"))
    assert result["key"] in result["url"]


def test_delete_file_returns_true(storage, s3):
    key = storage.upload_file(b"x", "a.txt", "text/plain")["key"]

    assert storage.delete_file(key) is True
    assert s3.list_objects_v2(Bucket=BUCKET).get("KeyCount") == 0


def test_upload_to_missing_bucket_raises_storage_error(s3):
    storage = ObjectStorage(s3, "no-such-bucket")

    with pytest.raises(StorageError):
        storage.upload_file(b"x", "a.txt", "text/plain")


def test_scheduled_deletion_removes_object_when_timer_fires(storage, s3):
    key = storage.upload_file(b"x", "a.txt", "text/plain")["key"]

    timer = storage.schedule_file_deletion(key, delay_hours=2)

    assert timer.interval == 7200
    assert timer.daemon is True and timer.started
    assert storage.pending_deletions() == [key]
    timer.fire()
    assert storage.pending_deletions() == []
    assert s3.list_objects_v2(Bucket=BUCKET).get("KeyCount") == 0


def test_rescheduling_replaces_pending_timer(storage):
    first = storage.schedule_file_deletion("uploads/anonymous/a.txt", delay_hours=1)
    second = storage.schedule_file_deletion("uploads/anonymous/a.txt", delay_hours=3)

    assert first.cancelled
    assert not second.cancelled
    assert storage.pending_deletions() == ["uploads/anonymous/a.txt"]


def test_cancel_scheduled_deletions(storage):
    storage.schedule_file_deletion("uploads/anonymous/a.txt")
    storage.schedule_file_deletion("uploads/anonymous/b.txt")

    assert storage.cancel_scheduled_deletions() == 2
    assert all(timer.cancelled for timer in _ManualTimer.created)
    assert storage.pending_deletions() == []


def test_sanitize_file_name():
    assert sanitize_file_name("über file?.pdf") == "_ber_file_.pdf"
