from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    rejections: Dict[str, int]
    bulk_awards: Dict[str, int]
    tier_changes: Dict[str, int]
    referrals: Dict[str, int]
    reconciliation: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "rejections": dict(self.rejections),
            "bulk_awards": dict(self.bulk_awards),
            "tier_changes": dict(self.tier_changes),
            "referrals": dict(self.referrals),
            "reconciliation": dict(self.reconciliation),
        }


class LoyaltyObservabilityStore:
    """Counters for ledger appends, awards, tier movement and referral flow."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._rejections: Dict[str, int] = defaultdict(int)
        self._bulk: Dict[str, int] = defaultdict(int)
        self._tier_changes: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._reconciliation: Dict[str, int] = defaultdict(int)

    def record_append(self, transaction_type: str, points: int) -> None:
        with self._lock:
            self._ledger[f"entries:{transaction_type}"] += 1
            self._ledger[f"points:{transaction_type}"] += points

    def record_replay(self, transaction_type: str) -> None:
        with self._lock:
            self._ledger[f"replays:{transaction_type}"] += 1

    def record_rejection(self, kind: str) -> None:
        with self._lock:
            self._rejections[kind] += 1

    def record_bulk_outcome(self, succeeded: int, failed: int) -> None:
        with self._lock:
            self._bulk["batches"] += 1
            self._bulk["succeeded"] += succeeded
            self._bulk["failed"] += failed

    def record_tier_change(self, direction: str, tier_name: str | None) -> None:
        with self._lock:
            self._tier_changes[direction] += 1
            self._tier_changes[f"to:{tier_name or 'none'}"] += 1

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_reconciliation(self, *, drifted: bool) -> None:
        with self._lock:
            self._reconciliation["checked"] += 1
            if drifted:
                self._reconciliation["drifted"] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                ledger=dict(self._ledger),
                rejections=dict(self._rejections),
                bulk_awards=dict(self._bulk),
                tier_changes=dict(self._tier_changes),
                referrals=dict(self._referrals),
                reconciliation=dict(self._reconciliation),
            )

    def reset(self) -> None:
        with self._lock:
            for counters in (
                self._ledger,
                self._rejections,
                self._bulk,
                self._tier_changes,
                self._referrals,
                self._reconciliation,
            ):
                counters.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
