import importlib.util
import logging
from pathlib import Path

from convertviral.repositories import consent_repo
from convertviral.services import consent_service
from convertviral.services.consent_service import Owner, RequestContext

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "backfill_consent_owner_index.py"
LOGGER = logging.getLogger("tests.backfill")


def _load_script():
    spec = importlib.util.spec_from_file_location("backfill_consent_owner_index", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _submit(fake_redis, clock, owner, consents):
    clock.advance(1)
    return consent_service.record_consent(
        owner,
        {"consents": consents, "timestamp": 1000, "version": "1.0"},
        RequestContext(ip="198.51.100.4", user_agent="backfill-test"),
        client=fake_redis,
        time_module=clock,
        logger=LOGGER,
        security_logger=LOGGER,
    )


def test_backfill_rebuilds_missing_owner_indexes(fake_redis, clock):
    script = _load_script()
    user = Owner(user_id="u-old", session_id="sess_oldsession")
    visitor = Owner(session_id="sess_visitor")
    first = _submit(fake_redis, clock, user, {"essential": True, "analytics": True})
    second = _submit(fake_redis, clock, user, {"essential": True})
    third = _submit(fake_redis, clock, visitor, {"essential": True})
    fake_redis.delete(user.index_key, visitor.index_key)

    scanned, plan = script.plan_backfill(fake_redis)

    assert scanned == 3
    assert plan == {
        user.index_key: [first.entry.id, second.entry.id],
        visitor.index_key: [third.entry.id],
    }
    assert script.apply_backfill(fake_redis, plan, 3600) == 3
    assert consent_repo.list_owner_entries(fake_redis, user.index_key) == [second.entry.id, first.entry.id]
    assert fake_redis.ttl(user.index_key) == 3600


def test_backfill_skips_ids_already_indexed(fake_redis, clock):
    script = _load_script()
    owner = Owner(session_id="sess_indexed")
    _submit(fake_redis, clock, owner, {"essential": True})

    _, plan = script.plan_backfill(fake_redis)

    assert script.apply_backfill(fake_redis, plan, 3600) == 0
    assert len(consent_repo.list_owner_entries(fake_redis, owner.index_key)) == 1
