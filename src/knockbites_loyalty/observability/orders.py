from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class OrderTrackingSnapshot:
    merges: Dict[str, int]
    sources: Dict[str, int]
    transport_errors: Dict[str, int]
    transitions: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "merges": dict(self.merges),
            "sources": dict(self.sources),
            "transport_errors": dict(self.transport_errors),
            "transitions": dict(self.transitions),
        }


class OrderTrackingObservabilityStore:
    """Merge outcomes and transport health for order tracking."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._merges: Dict[str, int] = defaultdict(int)
        self._sources: Dict[str, int] = defaultdict(int)
        self._transport_errors: Dict[str, int] = defaultdict(int)
        self._transitions: Dict[str, int] = defaultdict(int)

    def record_merge(self, outcome: str, source: str) -> None:
        with self._lock:
            self._merges[outcome] += 1
            self._sources[f"{source}:{outcome}"] += 1

    def record_transport_error(self, source: str) -> None:
        with self._lock:
            self._transport_errors[source] += 1

    def record_transition(self, status: str) -> None:
        with self._lock:
            self._transitions[status] += 1

    def snapshot(self) -> OrderTrackingSnapshot:
        with self._lock:
            return OrderTrackingSnapshot(
                merges=dict(self._merges),
                sources=dict(self._sources),
                transport_errors=dict(self._transport_errors),
                transitions=dict(self._transitions),
            )

    def reset(self) -> None:
        with self._lock:
            self._merges.clear()
            self._sources.clear()
            self._transport_errors.clear()
            self._transitions.clear()


_STORE = OrderTrackingObservabilityStore()


def get_order_tracking_store() -> OrderTrackingObservabilityStore:
    return _STORE


__all__ = [
    "get_order_tracking_store",
    "OrderTrackingObservabilityStore",
    "OrderTrackingSnapshot",
]
