"""Key layout for consent records and the consent audit trail."""

from . import kv_repo

AUDIT_LOG_KEY = 'consent_audit_log'


def user_consent_key(user_id):
    return f"user_consent:{user_id}"


def session_consent_key(session_id):
    return f"session_consent:{session_id}"


def audit_entry_key(entry_id):
    return f"consent_audit:{entry_id}"


def owner_index_key(owner_kind, owner_id):
    return f"consent_owner_log:{owner_kind}:{owner_id}"


def get_current(client, key):
    return kv_repo.get_value(client, key)


def set_current(client, key, payload, ttl_seconds):
    return kv_repo.set_value(client, key, payload, ttl_seconds)


def delete_current(client, key):
    return kv_repo.delete_key(client, key)


def get_audit_entry(client, entry_id):
    return kv_repo.get_value(client, audit_entry_key(entry_id))


def set_audit_entry(client, entry_id, payload, ttl_seconds):
    return kv_repo.set_value(client, audit_entry_key(entry_id), payload, ttl_seconds)


def delete_audit_entry(client, entry_id):
    return kv_repo.delete_key(client, audit_entry_key(entry_id))


def push_audit_id(client, entry_id):
    return kv_repo.push_front(client, AUDIT_LOG_KEY, entry_id)


def trim_audit_log(client, max_entries):
    return kv_repo.trim_list(client, AUDIT_LOG_KEY, 0, int(max_entries) - 1)


def list_audit_ids(client):
    return kv_repo.list_range(client, AUDIT_LOG_KEY, 0, -1)


def remove_audit_id(client, entry_id):
    return kv_repo.remove_from_list(client, AUDIT_LOG_KEY, entry_id)


def push_owner_entry(client, index_key, entry_id, ttl_seconds):
    kv_repo.push_front(client, index_key, entry_id)
    return kv_repo.expire_key(client, index_key, ttl_seconds)


def list_owner_entries(client, index_key):
    return kv_repo.list_range(client, index_key, 0, -1)


def delete_owner_index(client, index_key):
    return kv_repo.delete_key(client, index_key)
