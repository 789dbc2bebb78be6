"""
Persistence Layer for the Credit Ledger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    BalanceRecord,
    TransactionRecord,
    TransactionType,
    RelatedEntity,
    UsageCounterRecord,
)
from .repository import BalanceRepository, TransactionRepository, UsageCounterRepository

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "BalanceRecord",
    "TransactionRecord",
    "TransactionType",
    "RelatedEntity",
    "UsageCounterRecord",
    "BalanceRepository",
    "TransactionRepository",
    "UsageCounterRepository",
]
