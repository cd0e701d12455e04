#!/usr/bin/env python3
"""Lightweight smoke checks for the consent, format and storage routes.

Usage:
  ./venv/bin/python scripts/smoke_test.py
  ./venv/bin/python scripts/smoke_test.py --base-url https://api.convertviral.com
"""

from __future__ import annotations

import argparse
import json
import os
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Optional, Tuple


def _request(
    method: str,
    url: str,
    *,
    json_body: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10.0,
) -> Tuple[int, str, Dict[str, str]]:
    payload = None
    request_headers: Dict[str, str] = dict(headers or {})
    if json_body is not None:
        payload = json.dumps(json_body).encode("utf-8")
        request_headers.setdefault("Content-Type", "application/json")
    req = urllib.request.Request(url=url, data=payload, method=method.upper(), headers=request_headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            body = response.read().decode("utf-8", errors="replace")
            return int(response.getcode()), body, dict(response.getheaders())
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        return int(exc.code), body, dict(exc.headers.items())


class SmokeRunner:
    def __init__(self, base_url: str, timeout: float, bearer_token: str = "") -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.bearer_token = bearer_token.strip()
        self.failures = 0
        self.total = 0

    def _print_result(self, ok: bool, label: str, detail: str = "") -> None:
        print(f"[{'PASS' if ok else 'FAIL'}] {label}")
        if detail:
            print(f"       {detail}")
        if not ok:
            self.failures += 1

    def _expect_status(self, label: str, method: str, path: str, expected_status: int, **kwargs: Any) -> Tuple[int, str, Dict[str, str]]:
        self.total += 1
        started = time.time()
        try:
            status, body, headers = _request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except Exception as exc:
            self._print_result(False, label, f"request error: {exc}")
            return 0, "", {}
        elapsed_ms = int((time.time() - started) * 1000)
        detail = f"expected {expected_status}, got {status} ({elapsed_ms}ms)"
        body_preview = body.strip().replace("\n", " ")[:140]
        if body_preview:
            detail += f" | body: {body_preview}"
        self._print_result(status == expected_status, label, detail)
        return status, body, headers

    def _expect_json(self, label: str, body: str, predicate) -> None:
        self.total += 1
        try:
            self._print_result(bool(predicate(json.loads(body or "{}"))), label)
        except Exception as exc:
            self._print_result(False, label, f"invalid json: {exc}")

    def run(self) -> int:
        print(f"Running smoke tests against: {self.base_url}")
        print(f"Timeout per request: {self.timeout:.1f}s")
        print("")

        _status, body, _headers = self._expect_status("Format catalog reachable", "GET", "/api/formats", 200)
        self._expect_json("Format catalog lists categories", body, lambda parsed: parsed.get("categories"))
        _status, body, _headers = self._expect_status(
            "Conversion matrix reachable",
            "POST",
            "/api/formats",
            200,
            json_body={"formats": ["pdf"]},
        )
        self._expect_json("PDF converts to DOCX", body, lambda parsed: "docx" in parsed["conversionMatrix"]["pdf"])

        self._expect_status(
            "Consent record rejects malformed body",
            "POST",
            "/api/consent/record",
            400,
            json_body={"consents": "yes"},
        )
        session_headers = {"X-Session-ID": f"smoke_{int(time.time())}"}
        _status, body, _headers = self._expect_status(
            "Anonymous consent can be recorded",
            "POST",
            "/api/consent/record",
            200,
            json_body={"consents": {"essential": True}, "timestamp": int(time.time() * 1000), "version": "1.0"},
            headers=session_headers,
        )
        self._expect_json("Consent response carries an id", body, lambda parsed: parsed.get("consentId"))

        self._expect_status("Consent history requires auth", "GET", "/api/consent/record", 401)
        self._expect_status("Consent withdrawal requires auth", "DELETE", "/api/consent/record", 401)
        self._expect_status("Conversion status requires jobId", "GET", "/api/convert", 400)
        self._expect_status("Unknown conversion job is 404", "GET", "/api/convert?jobId=smoke-missing", 404)
        self._expect_status("Foreign download key is rejected", "GET", "/api/download?key=uploads/someone-else/x.pdf", 403)

        if self.bearer_token:
            auth_headers = {"Authorization": f"Bearer {self.bearer_token}"}
            self._expect_status("Authenticated consent history", "GET", "/api/consent/record", 200, headers=auth_headers)
        else:
            print("")
            print("Note: Skipped authenticated smoke checks (set FIREBASE_TEST_BEARER to enable).")

        print("")
        passed = self.total - self.failures
        print(f"Summary: {passed}/{self.total} checks passed.")
        if self.failures:
            print("Smoke test status: FAILED")
            return 1
        print("Smoke test status: PASSED")
        return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run launch smoke tests.")
    parser.add_argument("--base-url", default="http://127.0.0.1:5000", help="Base URL for the app (default: http://127.0.0.1:5000)")
    parser.add_argument("--timeout", default=10.0, type=float, help="Request timeout in seconds")
    parser.add_argument("--bearer-token", default="", help="Optional Firebase bearer token for authenticated checks")
    args = parser.parse_args()

    token = args.bearer_token.strip() or os.getenv("FIREBASE_TEST_BEARER", "").strip()
    return SmokeRunner(base_url=args.base_url, timeout=args.timeout, bearer_token=token).run()


if __name__ == "__main__":
    raise SystemExit(main())
