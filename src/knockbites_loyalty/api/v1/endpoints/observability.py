"""Observability snapshots and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from knockbites_loyalty.api.dependencies.security import require_operator_api_key
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.observability.orders import get_order_tracking_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_operator_api_key)],
)


@router.get("/loyalty", summary="Loyalty ledger and referral counters")
async def get_loyalty_snapshot() -> dict[str, object]:
    return get_loyalty_store().snapshot().as_dict()


@router.get("/orders", summary="Order tracking merge and transport counters")
async def get_order_tracking_snapshot() -> dict[str, object]:
    return get_order_tracking_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


def _split_key(key: str) -> tuple[str, str]:
    prefix, _, rest = key.partition(":")
    return prefix, rest


@router.get(
    "/prometheus",
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    loyalty = get_loyalty_store().snapshot()
    orders = get_order_tracking_store().snapshot()
    lines: list[str] = []

    for key, value in sorted(loyalty.ledger.items()):
        bucket, transaction_type = _split_key(key)
        lines.extend(
            _format_metric(
                f"knockbites_loyalty_ledger_{bucket}_total",
                f"Loyalty ledger {bucket} grouped by transaction type",
                value,
                labels={"transaction_type": transaction_type},
            )
        )
    for kind, value in sorted(loyalty.rejections.items()):
        lines.extend(
            _format_metric(
                "knockbites_loyalty_rejections_total",
                "Rejected ledger appends grouped by error kind",
                value,
                labels={"kind": kind},
            )
        )
    for key in ("batches", "succeeded", "failed"):
        lines.extend(
            _format_metric(
                f"knockbites_loyalty_bulk_awards_{key}_total",
                f"Bulk award {key}",
                loyalty.bulk_awards.get(key, 0),
            )
        )
    for key, value in sorted(loyalty.tier_changes.items()):
        if key.startswith("to:"):
            continue
        lines.extend(
            _format_metric(
                "knockbites_loyalty_tier_changes_total",
                "Tier changes grouped by direction",
                value,
                labels={"direction": key},
            )
        )
    for event, value in sorted(loyalty.referrals.items()):
        lines.extend(
            _format_metric(
                "knockbites_loyalty_referral_events_total",
                "Referral lifecycle events",
                value,
                labels={"event": event},
            )
        )
    lines.extend(
        _format_metric(
            "knockbites_loyalty_reconciliation_checked_total",
            "Accounts reconciled against the ledger",
            loyalty.reconciliation.get("checked", 0),
        )
    )
    lines.extend(
        _format_metric(
            "knockbites_loyalty_reconciliation_drifted_total",
            "Accounts whose projection drifted from the ledger",
            loyalty.reconciliation.get("drifted", 0),
        )
    )

    for outcome, value in sorted(orders.merges.items()):
        lines.extend(
            _format_metric(
                "knockbites_order_tracking_merges_total",
                "Order tracking merge decisions",
                value,
                labels={"outcome": outcome},
            )
        )
    for source, value in sorted(orders.transport_errors.items()):
        lines.extend(
            _format_metric(
                "knockbites_order_tracking_transport_errors_total",
                "Order tracking transport failures",
                value,
                labels={"source": source},
            )
        )
    for status_value, value in sorted(orders.transitions.items()):
        lines.extend(
            _format_metric(
                "knockbites_order_transitions_total",
                "Order status transitions applied by fulfillment",
                value,
                labels={"status": status_value},
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")
