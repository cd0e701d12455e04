"""GDPR consent records and their append-only audit trail.

Layout in the key/value store:

* the current decision per owner (``user_consent:<id>`` or
  ``session_consent:<id>``), kept for the retention window;
* one immutable audit entry per decision (``consent_audit:<id>``);
* a per-owner index of audit ids, so an owner's full history stays
  enumerable for the whole retention window;
* a global list of recent audit ids, capped at ``audit_log_max`` entries.
  It is a recent-activity feed, not the compliance record.

The current-state write is the primary write. Everything after it is
best-effort and reported through ``WriteOutcome``.

Writes are not transactional across keys. Two concurrent submissions for the
same owner may both read the same previous record, so one audit entry can
carry a stale ``previousConsents`` snapshot.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from convertviral.config import SEVEN_YEARS_SECONDS
from convertviral.errors import SerializationError, StoreUnavailableError, ValidationError
from convertviral.logging_config import log_event
from convertviral.outcomes import WriteOutcome
from convertviral.repositories import consent_repo

CONSENT_RETENTION_SECONDS = SEVEN_YEARS_SECONDS
AUDIT_LOG_MAX_ENTRIES = 10000
HISTORY_LIMIT = 50

ESSENTIAL_CATEGORY = 'essential'
CONTROL_FLAGS = {'none', 'all'}
ANONYMOUS_SESSION_ID = 'anonymous'
WITHDRAWAL_SESSION_ID = 'withdrawal'
WITHDRAWAL_VERSION = '2.0'
WITHDRAWAL_CONSENTS = {
    'essential': True,
    'functional': False,
    'analytics': False,
    'personalization': False,
    'marketing': False,
    'data_transfer': False,
    'all': False,
    'none': True,
}
DATA_SUBJECT_RIGHTS = {
    'access': True,
    'rectification': True,
    'erasure': True,
    'portability': True,
    'objection': True,
}


class ConsentAction(str, Enum):
    GRANTED = 'granted'
    UPDATED = 'updated'
    WITHDRAWN = 'withdrawn'


@dataclass(frozen=True)
class Owner:
    """A consent owner: an authenticated user, or an anonymous session."""

    user_id: Optional[str] = None
    session_id: str = ANONYMOUS_SESSION_ID

    @property
    def kind(self):
        return 'user' if self.user_id else 'session'

    @property
    def identity(self):
        return self.user_id if self.user_id else self.session_id

    @property
    def current_key(self):
        if self.user_id:
            return consent_repo.user_consent_key(self.user_id)
        return consent_repo.session_consent_key(self.session_id)

    @property
    def index_key(self):
        return consent_repo.owner_index_key(self.kind, self.identity)

    def owns(self, entry):
        if self.user_id:
            return entry.user_id == self.user_id
        return not entry.user_id and entry.session_id == self.session_id


@dataclass(frozen=True)
class RequestContext:
    ip: str = 'unknown'
    user_agent: str = 'unknown'


@dataclass
class ConsentRecord:
    consents: Dict[str, bool]
    timestamp: float
    version: str
    ip: str = 'unknown'
    user_agent: str = 'unknown'
    withdrawal_mechanism: bool = False
    data_transfer_consent: bool = False

    def to_dict(self):
        return {
            'consents': dict(self.consents),
            'timestamp': self.timestamp,
            'version': self.version,
            'ip': self.ip,
            'userAgent': self.user_agent,
            'withdrawalMechanism': self.withdrawal_mechanism,
            'dataTransferConsent': self.data_transfer_consent,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict) or not isinstance(data.get('consents'), dict):
            raise SerializationError('Stored consent record is malformed')
        return cls(
            consents={str(k): bool(v) for k, v in data['consents'].items()},
            timestamp=data.get('timestamp', 0),
            version=str(data.get('version', '')),
            ip=str(data.get('ip', 'unknown')),
            user_agent=str(data.get('userAgent', 'unknown')),
            withdrawal_mechanism=bool(data.get('withdrawalMechanism', False)),
            data_transfer_consent=bool(data.get('dataTransferConsent', False)),
        )


@dataclass(frozen=True)
class AuditEntry:
    id: str
    session_id: str
    ip: str
    user_agent: str
    consent_record: ConsentRecord
    timestamp: int
    action: ConsentAction
    user_id: Optional[str] = None
    previous_consents: Optional[Dict[str, bool]] = None

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'sessionId': self.session_id,
            'ip': self.ip,
            'userAgent': self.user_agent,
            'consentRecord': self.consent_record.to_dict(),
            'timestamp': self.timestamp,
            'action': self.action.value,
            'previousConsents': self.previous_consents,
        }

    def to_history_item(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'action': self.action.value,
            'consents': dict(self.consent_record.consents),
            'dataTransferConsent': self.consent_record.data_transfer_consent,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise SerializationError('Stored audit entry is malformed')
        try:
            action = ConsentAction(data.get('action'))
        except ValueError as exc:
            raise SerializationError(f"Unknown audit action: {data.get('action')!r}") from exc
        previous = data.get('previousConsents')
        return cls(
            id=str(data.get('id', '')),
            user_id=data.get('userId') or None,
            session_id=str(data.get('sessionId', '')),
            ip=str(data.get('ip', 'unknown')),
            user_agent=str(data.get('userAgent', 'unknown')),
            consent_record=ConsentRecord.from_dict(data.get('consentRecord')),
            timestamp=int(data.get('timestamp', 0) or 0),
            action=action,
            previous_consents=dict(previous) if isinstance(previous, dict) else None,
        )


@dataclass
class ConsentResult:
    entry: AuditEntry
    outcome: WriteOutcome = field(default_factory=WriteOutcome)

    @property
    def action(self):
        return self.entry.action


def client_ip(forwarded_for='', real_ip='', remote_addr=''):
    """First address of a possibly comma-separated forwarded-for chain."""
    raw = str(forwarded_for or real_ip or remote_addr or '').strip()
    first = raw.split(',')[0].strip()
    return first or 'unknown'


def validate_consent_payload(payload):
    if not isinstance(payload, dict):
        raise ValidationError('Invalid consent record format')
    consents = payload.get('consents')
    if not isinstance(consents, dict):
        raise ValidationError('Invalid consent record format: consents is required')
    for key, value in consents.items():
        if not isinstance(key, str) or not isinstance(value, bool):
            raise ValidationError('Invalid consent record format: consents must map names to booleans')
    timestamp = payload.get('timestamp')
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or timestamp <= 0:
        raise ValidationError('Invalid consent record format: timestamp is required')
    version = payload.get('version')
    if not isinstance(version, str) or not version.strip():
        raise ValidationError('Invalid consent record format: version is required')
    data_transfer = payload.get('dataTransferConsent', False)
    if not isinstance(data_transfer, bool):
        raise ValidationError('Invalid consent record format: dataTransferConsent must be a boolean')


def non_essential_granted(consents):
    return any(
        value is True
        for key, value in (consents or {}).items()
        if key != ESSENTIAL_CATEGORY and key not in CONTROL_FLAGS
    )


def is_withdrawal_request(consents):
    return not non_essential_granted(consents) and (consents or {}).get('none') is True


def derive_action(previous: Optional[ConsentRecord], new_consents) -> ConsentAction:
    """Classify a submission against the owner's current record.

    The client never supplies the action; it follows from the diff.
    """
    if previous is None:
        return ConsentAction.GRANTED
    if is_withdrawal_request(new_consents):
        return ConsentAction.WITHDRAWN
    previously_withdrawn = previous.withdrawal_mechanism or not non_essential_granted(previous.consents)
    if previously_withdrawn and non_essential_granted(new_consents):
        return ConsentAction.GRANTED
    return ConsentAction.UPDATED


def new_entry_id(prefix, now_ms):
    return f"{prefix}_{int(now_ms)}_{uuid.uuid4().hex[:9]}"


def _now_ms(time_module):
    return int(time_module.time() * 1000)


def read_current_record(owner, *, client):
    raw = consent_repo.get_current(client, owner.current_key)
    if not raw:
        return None
    try:
        return ConsentRecord.from_dict(json.loads(raw))
    except ValueError as exc:
        raise SerializationError(f'Corrupt consent record for {owner.kind} owner: {exc}') from exc


def build_record(payload, context, *, withdrawal_mechanism=False):
    return ConsentRecord(
        consents=dict(payload['consents']),
        timestamp=payload['timestamp'],
        version=payload['version'].strip(),
        ip=context.ip,
        user_agent=context.user_agent,
        withdrawal_mechanism=withdrawal_mechanism,
        data_transfer_consent=bool(payload.get('dataTransferConsent', False)),
    )


def _secondary(outcome, step, fn, logger, **log_fields):
    try:
        fn()
    except StoreUnavailableError as exc:
        outcome.record_failure(step)
        log_event(logger, logging.ERROR, 'consent_secondary_write_failed', step=step, error=str(exc), **log_fields)


def record_consent(
    owner,
    payload,
    context,
    *,
    client,
    time_module,
    logger,
    security_logger,
    retention_seconds=CONSENT_RETENTION_SECONDS,
    audit_log_max=AUDIT_LOG_MAX_ENTRIES,
    forced_action=None,
    id_prefix='consent',
):
    """Validate, classify and persist one consent decision.

    Raises ``ValidationError`` before any write, and ``StoreUnavailableError``
    when the owner's current-state record could not be written.
    """
    validate_consent_payload(payload)

    previous = None
    try:
        previous = read_current_record(owner, client=client)
    except (StoreUnavailableError, SerializationError) as exc:
        log_event(logger, logging.WARNING, 'consent_previous_read_failed', owner_kind=owner.kind, error=str(exc))

    record = build_record(payload, context, withdrawal_mechanism=forced_action == ConsentAction.WITHDRAWN)
    action = forced_action or derive_action(previous, record.consents)
    now_ms = _now_ms(time_module)
    entry = AuditEntry(
        id=new_entry_id(id_prefix, now_ms),
        user_id=owner.user_id,
        session_id=owner.session_id,
        ip=record.ip,
        user_agent=record.user_agent,
        consent_record=record,
        timestamp=now_ms,
        action=action,
        previous_consents=dict(previous.consents) if previous else None,
    )

    record_json = json.dumps(record.to_dict())
    consent_repo.set_current(client, owner.current_key, record_json, retention_seconds)

    outcome = WriteOutcome()
    if owner.user_id and owner.session_id not in (ANONYMOUS_SESSION_ID, WITHDRAWAL_SESSION_ID):
        _secondary(outcome, 'session_mirror', lambda: consent_repo.set_current(
            client, consent_repo.session_consent_key(owner.session_id), record_json, retention_seconds,
        ), logger, consent_id=entry.id)
    _secondary(outcome, 'audit_entry', lambda: consent_repo.set_audit_entry(
        client, entry.id, json.dumps(entry.to_dict()), retention_seconds,
    ), logger, consent_id=entry.id)
    _secondary(outcome, 'owner_index', lambda: consent_repo.push_owner_entry(
        client, owner.index_key, entry.id, retention_seconds,
    ), logger, consent_id=entry.id)
    _secondary(outcome, 'audit_log_push', lambda: consent_repo.push_audit_id(client, entry.id), logger, consent_id=entry.id)
    _secondary(outcome, 'audit_log_trim', lambda: consent_repo.trim_audit_log(client, audit_log_max), logger, consent_id=entry.id)

    log_event(
        security_logger,
        logging.INFO,
        'CONSENT_WITHDRAWN' if action == ConsentAction.WITHDRAWN and forced_action else 'CONSENT_RECORDED',
        action=action.value,
        user_id=owner.user_id,
        session_id=owner.session_id,
        ip=record.ip,
        user_agent=record.user_agent,
        consent_id=entry.id,
        consents=record.consents,
        data_transfer_consent=record.data_transfer_consent,
        partial=outcome.partial,
    )
    return ConsentResult(entry=entry, outcome=outcome)


def withdraw_consent(owner, context, *, time_module, **kwargs):
    payload = {
        'consents': dict(WITHDRAWAL_CONSENTS),
        'timestamp': _now_ms(time_module),
        'version': WITHDRAWAL_VERSION,
        'dataTransferConsent': False,
    }
    return record_consent(
        owner,
        payload,
        context,
        time_module=time_module,
        forced_action=ConsentAction.WITHDRAWN,
        id_prefix='withdrawal',
        **kwargs,
    )


def _load_entries(entry_ids, *, client, logger):
    entries = []
    for entry_id in entry_ids:
        try:
            raw = consent_repo.get_audit_entry(client, entry_id)
            if not raw:
                continue
            entries.append(AuditEntry.from_dict(json.loads(raw)))
        except (ValueError, SerializationError) as exc:
            log_event(logger, logging.WARNING, 'consent_audit_entry_unreadable', consent_id=entry_id, error=str(exc))
    return entries


def list_owner_entries(owner, *, client, logger) -> List[AuditEntry]:
    """Every readable audit entry for ``owner``, newest first."""
    entry_ids = consent_repo.list_owner_entries(client, owner.index_key)
    if not entry_ids:
        # Entries written before the owner index existed are only reachable
        # through the global feed.
        entry_ids = consent_repo.list_audit_ids(client)
    entries = [entry for entry in _load_entries(entry_ids, client=client, logger=logger) if owner.owns(entry)]
    entries.sort(key=lambda entry: entry.timestamp, reverse=True)
    return entries


def get_consent_history(owner, *, client, logger, limit=HISTORY_LIMIT):
    current = read_current_record(owner, client=client)
    entries = list_owner_entries(owner, client=client, logger=logger)
    return {
        'currentConsent': current.to_dict() if current else None,
        'history': [entry.to_history_item() for entry in entries[:limit]],
    }


def _holds_owned_record(client, key, owned_records):
    raw = consent_repo.get_current(client, key)
    if not raw:
        return False
    try:
        stored = ConsentRecord.from_dict(json.loads(raw)).to_dict()
    except (ValueError, SerializationError):
        return False
    return stored in owned_records


def erase_consent_data(owner, *, client, logger, security_logger):
    """Remove everything stored about ``owner``: current state, audit entries, indexes.

    Session records are shared with whoever used the same browser later, so a
    session key is only deleted while it still holds one of the owner's own
    records.
    """
    erased = {'current_records': 0, 'audit_entries': 0, 'audit_log_ids': 0}
    entries = list_owner_entries(owner, client=client, logger=logger)
    owned_records = [entry.consent_record.to_dict() for entry in entries]

    session_keys = set()
    for entry in entries:
        if entry.session_id and entry.session_id not in (ANONYMOUS_SESSION_ID, WITHDRAWAL_SESSION_ID):
            session_keys.add(consent_repo.session_consent_key(entry.session_id))

    keys = [key for key in sorted(session_keys) if _holds_owned_record(client, key, owned_records)]
    if owner.user_id or not entries:
        keys.append(owner.current_key)
    for key in keys:
        erased['current_records'] += consent_repo.delete_current(client, key)

    for entry in entries:
        erased['audit_entries'] += consent_repo.delete_audit_entry(client, entry.id)
        erased['audit_log_ids'] += consent_repo.remove_audit_id(client, entry.id)
    consent_repo.delete_owner_index(client, owner.index_key)

    log_event(
        security_logger,
        logging.INFO,
        'CONSENT_ERASED',
        owner_kind=owner.kind,
        user_id=owner.user_id,
        **erased,
    )
    return erased
