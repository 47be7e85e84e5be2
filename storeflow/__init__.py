"""StoreFlow inventory package."""
from __future__ import annotations

from .inventory import InventoryStore, Product, Transaction, TransactionType

__all__ = ["create_app", "InventoryStore", "Product", "Transaction", "TransactionType"]


def create_app(*args, **kwargs):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)
