#!/usr/bin/env python3
"""Build per-owner consent indexes from the global audit list.

Audit entries written before per-owner indexes existed are only listed in
``consent_audit_log``. This walks that list oldest first and pushes each entry
id onto its owner's index, skipping ids the index already holds.
"""
import argparse
import json
from typing import Dict, List, Tuple

from convertviral.config import AppConfig
from convertviral.repositories import consent_repo, kv_repo


def plan_backfill(client) -> Tuple[int, Dict[str, List[str]]]:
    scanned = 0
    plan: Dict[str, List[str]] = {}
    for entry_id in reversed(consent_repo.list_audit_ids(client)):
        scanned += 1
        raw = consent_repo.get_audit_entry(client, entry_id)
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        if data.get('userId'):
            index_key = consent_repo.owner_index_key('user', data['userId'])
        elif data.get('sessionId'):
            index_key = consent_repo.owner_index_key('session', data['sessionId'])
        else:
            continue
        plan.setdefault(index_key, []).append(entry_id)
    return scanned, plan


def apply_backfill(client, plan, ttl_seconds) -> int:
    written = 0
    for index_key, entry_ids in plan.items():
        existing = set(consent_repo.list_owner_entries(client, index_key))
        for entry_id in entry_ids:
            if entry_id in existing:
                continue
            consent_repo.push_owner_entry(client, index_key, entry_id, ttl_seconds)
            written += 1
    return written


def main():
    parser = argparse.ArgumentParser(description="Backfill per-owner consent audit indexes.")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Apply changes. Without this flag, the script runs in dry-run mode.",
    )
    parser.add_argument("--redis-url", default="", help="Defaults to REDIS_URL.")
    args = parser.parse_args()

    config = AppConfig()
    client = kv_repo.build_client(args.redis_url or config.redis_url, config.redis_socket_timeout)
    scanned, plan = plan_backfill(client)
    planned = sum(len(ids) for ids in plan.values())
    mode = "APPLY" if args.apply else "DRY-RUN"
    written = apply_backfill(client, plan, config.consent_retention_seconds) if args.apply else 0
    print(f"[{mode}] scanned={scanned} audit ids, owners={len(plan)}, entries={planned}, written={written}")
    if not args.apply:
        print("No changes were written. Re-run with --apply to persist.")


if __name__ == "__main__":
    main()
