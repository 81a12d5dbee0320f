"""Per-user credit balances and their append-only transaction log."""

from content_factory.ledger.ledger import CreditLedger, prorated_credits
from content_factory.ledger.models import EntityType, TransactionType

__all__ = ["CreditLedger", "EntityType", "TransactionType", "prorated_credits"]
