#!/usr/bin/env python3
"""Quick health check for KnockBites loyalty observability endpoints.

Usage:
    python tooling/scripts/check_observability.py \
        --base-url https://staging-loyalty.example.com \
        --api-key "$OPERATOR_API_KEY"

The script validates:
  * Readiness: the database probe is ready and no worker is in error.
  * Loyalty observability: reconciliation drift stays within threshold.
  * Order tracking observability: transport failures have not exceeded limits.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="KnockBites loyalty observability checker")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the loyalty API service.",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Operator API key (required when the service enforces one).",
    )
    parser.add_argument(
        "--max-reconciliation-drift",
        type=int,
        default=0,
        help="Maximum accounts allowed to drift from the ledger before failing (default: 0).",
    )
    parser.add_argument(
        "--max-bulk-award-failures",
        type=int,
        default=None,
        help="Maximum failed bulk award items before failing (default: unlimited).",
    )
    parser.add_argument(
        "--max-transport-errors",
        type=int,
        default=10,
        help="Maximum order tracking transport failures before failing (default: 10).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="HTTP request timeout in seconds.",
    )
    return parser.parse_args()


async def _get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


def _fail(message: str) -> None:
    print(f"[check-observability] ❌ {message}")
    sys.exit(1)


def _log_ok(message: str) -> None:
    print(f"[check-observability] ✅ {message}")


def _operator_headers(api_key: Optional[str]) -> Dict[str, str]:
    return {"X-API-Key": api_key} if api_key else {}


async def validate_readiness(client: httpx.AsyncClient) -> None:
    payload = await _get_json(client, "/api/v1/readyz")
    components = payload.get("components", {})
    errored = sorted(name for name, item in components.items() if item.get("status") == "error")
    if errored:
        _fail(f"Readiness components in error: {', '.join(errored)}")
    _log_ok(f"Readiness OK (status={payload.get('status')})")


async def validate_loyalty(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    max_drift: int,
    max_bulk_failures: Optional[int],
) -> None:
    payload = await _get_json(
        client,
        "/api/v1/observability/loyalty",
        headers=_operator_headers(api_key),
    )
    reconciliation = payload.get("reconciliation", {}) or {}
    bulk = payload.get("bulk_awards", {}) or {}
    rejections = payload.get("rejections", {}) or {}

    drifted = int(reconciliation.get("drifted", 0))
    bulk_failed = int(bulk.get("failed", 0))

    if drifted > max_drift:
        _fail(f"Ledger drift on {drifted} accounts exceeds threshold {max_drift}")
    if max_bulk_failures is not None and bulk_failed > max_bulk_failures:
        _fail(f"Bulk award failures {bulk_failed} exceed threshold {max_bulk_failures}")

    _log_ok(
        f"Loyalty observability OK (checked={reconciliation.get('checked', 0)}, "
        f"drifted={drifted}, bulk_failed={bulk_failed}, rejections={sum(rejections.values())})"
    )


async def validate_order_tracking(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    max_transport_errors: int,
) -> None:
    payload = await _get_json(
        client,
        "/api/v1/observability/orders",
        headers=_operator_headers(api_key),
    )
    transport_errors = sum(int(value) for value in (payload.get("transport_errors") or {}).values())
    merges = payload.get("merges", {}) or {}

    if transport_errors > max_transport_errors:
        _fail(f"Order tracking transport errors {transport_errors} exceed threshold {max_transport_errors}")

    _log_ok(
        f"Order tracking observability OK (accepted={merges.get('accepted', 0)}, "
        f"stale={merges.get('stale', 0)}, transport_errors={transport_errors})"
    )


async def main() -> None:
    args = parse_args()

    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        await validate_readiness(client)
        await validate_loyalty(
            client,
            api_key=args.api_key,
            max_drift=args.max_reconciliation_drift,
            max_bulk_failures=args.max_bulk_award_failures,
        )
        await validate_order_tracking(
            client,
            api_key=args.api_key,
            max_transport_errors=args.max_transport_errors,
        )

    _log_ok("Observability checks completed successfully")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except httpx.HTTPStatusError as exc:
        _fail(f"HTTP {exc.response.status_code} while calling {exc.request.url}")
    except httpx.HTTPError as exc:
        _fail(f"Request failed: {exc}")
