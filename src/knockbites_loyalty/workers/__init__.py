"""Background workers supporting loyalty maintenance."""

from .ledger_reconciliation import LedgerReconciliationWorker
from .referral_expiration import ReferralExpirationWorker

__all__ = [
    "LedgerReconciliationWorker",
    "ReferralExpirationWorker",
]
