"""KnockBites loyalty ledger, tier engine and order tracking service."""
