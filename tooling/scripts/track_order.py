#!/usr/bin/env python3
"""Follow an order's pickup status from the command line until it is terminal.

Usage:
    python tooling/scripts/track_order.py --order-id <uuid> \
        --base-url http://localhost:8000 --poll-interval 5

Live updates arrive over the SSE stream; the poll loop backs it up when the
stream drops. Exits 0 on completed, 2 on cancelled, 1 when tracking gives up.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import UUID


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[2] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from knockbites_loyalty.app import APP_VERSION  # noqa: E402
from knockbites_loyalty.core.logging import configure_logging  # noqa: E402
from knockbites_loyalty.core.settings import settings  # noqa: E402
from knockbites_loyalty.models.order import OrderStatus  # noqa: E402
from knockbites_loyalty.services.orders import (  # noqa: E402
    HttpOrderTrackingTransport,
    OrderStatusSynchronizer,
    OrderTrackingState,
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="KnockBites order tracker")
    parser.add_argument("--order-id", required=True, type=UUID, help="Order to follow.")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the loyalty API service.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between fallback polls (defaults to the service setting).",
    )
    parser.add_argument(
        "--max-missed-polls",
        type=int,
        default=None,
        help="Consecutive not-found polls before giving up.",
    )
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    failures: list[Exception] = []

    async def on_update(state: OrderTrackingState) -> None:
        print(f"[track-order] {state.updated_at.isoformat()} {state.status.value}")

    async def on_error(exc: Exception) -> None:
        failures.append(exc)
        print(f"[track-order] ❌ {exc}")

    transport = HttpOrderTrackingTransport(args.base_url)
    synchronizer = OrderStatusSynchronizer(
        args.order_id,
        transport,
        on_update=on_update,
        on_error=on_error,
        poll_interval_seconds=args.poll_interval,
        max_missed_polls=args.max_missed_polls,
    )
    try:
        synchronizer.start()
        await synchronizer.wait_closed()
    finally:
        await synchronizer.stop()
        await transport.aclose()

    if failures or synchronizer.state is None:
        return 1
    return 0 if synchronizer.state.status == OrderStatus.COMPLETED else 2


def main() -> None:
    configure_logging(
        service_name="knockbites-track-order",
        environment=settings.environment,
        version=APP_VERSION,
    )
    args = parse_args()
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
