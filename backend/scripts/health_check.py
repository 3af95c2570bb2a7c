"""Liveness check for a deployed booking server.

Intended to run from cron every few minutes; exits 0 when /health reports
"ok" and 1 otherwise. When ALERT_WEBHOOK is set, failures are also POSTed
there as JSON.

Examples (from repo root):
  python backend/scripts/health_check.py
  python backend/scripts/health_check.py --url https://booking.example.com/health
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import UTC, datetime
from typing import Any, Dict

import httpx

DEFAULT_URL = "http://localhost:8000/health"


class HealthCheckFailed(Exception):
    pass


def check_health(url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> Dict[str, Any]:
    """Fetch `url` and return the decoded body when the server is healthy."""
    owns_client = client is None
    client = client or httpx.Client(timeout=timeout)
    try:
        resp = client.get(url)
    except httpx.HTTPError as exc:
        raise HealthCheckFailed(f"Request failed: {exc.__class__.__name__}") from exc
    finally:
        if owns_client:
            client.close()
    try:
        data = resp.json()
    except ValueError as exc:
        raise HealthCheckFailed(f"Invalid JSON response: {resp.text[:200]}") from exc
    if resp.status_code != 200 or data.get("status") != "ok":
        raise HealthCheckFailed(f"Unexpected response: {data}")
    return data


def _send_alert(webhook: str, url: str, error: str) -> None:
    try:
        httpx.post(webhook, json={"url": url, "error": error}, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"   Alert webhook failed: {exc.__class__.__name__}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--url", default=os.getenv("HEALTH_URL", DEFAULT_URL))
    parser.add_argument("--timeout", type=float, default=10.0)
    args = parser.parse_args(argv)

    timestamp = datetime.now(UTC).isoformat()
    try:
        data = check_health(args.url, timeout=args.timeout)
    except HealthCheckFailed as exc:
        print(f"[{timestamp}] Health check FAILED", file=sys.stderr)
        print(f"   Error: {exc}", file=sys.stderr)
        webhook = os.getenv("ALERT_WEBHOOK")
        if webhook:
            _send_alert(webhook, args.url, str(exc))
        return 1

    print(f"[{timestamp}] Server healthy")
    print(f"   Services: {data.get('services')}")
    return 0


if __name__ == "__main__":  # pragma: no cover - manual entrypoint
    raise SystemExit(main())
