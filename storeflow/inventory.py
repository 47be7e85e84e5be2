"""Product master list and stock movement log for the StoreFlow service."""
from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock, RLock
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from .storage import LocalStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SCHEMA_KEY = "schemaVersion"
PRODUCTS_KEY = "products"
TRANSACTIONS_KEY = "transactions"

DEFAULT_MIN_LEVEL = 5
DEFAULT_CATEGORY = "General"
UNKNOWN_PRODUCT_NAME = "Unknown"
PLACEHOLDER_IMAGE_URL = "https://picsum.photos/200/200?random={seed}"
RECENT_MOVEMENT_WINDOW = 50


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_number(value: Any) -> Optional[float]:
    """Parse form or spreadsheet input as a finite number, ``None`` when it is not one."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    else:
        text = str(value).strip()
        if text == "":
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def coerce_quantity(value: Any) -> int:
    """Non-numeric input becomes ``0``; negative input clamps to ``0``."""

    parsed = parse_number(value)
    if parsed is None:
        return 0
    return max(0, int(parsed))


def coerce_price(value: Any) -> float:
    parsed = parse_number(value)
    if parsed is None:
        return 0.0
    return max(0.0, parsed)


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def generate_sku() -> str:
    return f"SKU-{random.randint(0, 9999)}"


class TransactionType(str, Enum):
    IN = "IN"
    OUT = "OUT"

    @classmethod
    def parse(cls, value: Union["TransactionType", str]) -> "TransactionType":
        if isinstance(value, cls):
            return value
        candidate = str(value or "").strip().upper()
        try:
            return cls(candidate)
        except ValueError:
            raise ValueError(f"Unknown transaction type '{value}'") from None


def apply_movement(quantity: int, direction: TransactionType, amount: int) -> int:
    """Return the quantity after a movement; outward movements never go below zero."""

    if direction is TransactionType.IN:
        return quantity + amount
    return max(0, quantity - amount)


class _IdGenerator:
    """Time-derived identifiers that stay strictly increasing within the process."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = Lock()

    def next(self) -> str:
        with self._lock:
            candidate = max(_now_ms(), self._last + 1)
            self._last = candidate
            return str(candidate)


@dataclass
class Product:
    """Represents one inventory master-list entry."""

    id: str
    name: str
    sku: str = ""
    category: str = DEFAULT_CATEGORY
    quantity: int = 0
    min_level: int = DEFAULT_MIN_LEVEL
    price: float = 0.0
    image_url: str = ""

    @property
    def low_stock(self) -> bool:
        return self.quantity <= self.min_level

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "category": self.category,
            "quantity": self.quantity,
            "minLevel": self.min_level,
            "price": self.price,
            "imageUrl": self.image_url,
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = self.to_record()
        payload["lowStock"] = self.low_stock
        return payload

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Product":
        product_id = _clean_text(record.get("id"))
        if not product_id:
            raise ValueError("Product record missing id")
        min_level_raw = record.get("minLevel", record.get("min_level"))
        return cls(
            id=product_id,
            name=_clean_text(record.get("name")),
            sku=_clean_text(record.get("sku")),
            category=_clean_text(record.get("category")) or DEFAULT_CATEGORY,
            quantity=coerce_quantity(record.get("quantity")),
            min_level=(
                DEFAULT_MIN_LEVEL
                if parse_number(min_level_raw) is None
                else coerce_quantity(min_level_raw)
            ),
            price=coerce_price(record.get("price")),
            image_url=_clean_text(record.get("imageUrl", record.get("image_url"))),
        )


@dataclass(frozen=True)
class Transaction:
    """One immutable stock movement record."""

    id: str
    product_id: str
    product_name: str
    type: TransactionType
    quantity: int
    timestamp: int
    notes: str = field(default="")

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": self.id,
            "productId": self.product_id,
            "productName": self.product_name,
            "type": self.type.value,
            "quantity": self.quantity,
            "timestamp": self.timestamp,
        }
        if self.notes:
            record["notes"] = self.notes
        return record

    def to_dict(self) -> Dict[str, Any]:
        payload = self.to_record()
        payload.setdefault("notes", "")
        payload["createdAt"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Transaction":
        transaction_id = _clean_text(record.get("id"))
        if not transaction_id:
            raise ValueError("Transaction record missing id")
        timestamp = parse_number(record.get("timestamp"))
        if timestamp is None:
            raise ValueError("Invalid timestamp in transaction record")
        return cls(
            id=transaction_id,
            product_id=_clean_text(record.get("productId")),
            product_name=_clean_text(record.get("productName")) or UNKNOWN_PRODUCT_NAME,
            type=TransactionType.parse(record.get("type")),
            quantity=coerce_quantity(record.get("quantity")),
            timestamp=int(timestamp),
            notes=_clean_text(record.get("notes")),
        )


def upgrade_records(
    products_raw: Any, transactions_raw: Any
) -> Tuple[bool, List[Product], List[Transaction]]:
    """Normalize stored collections, reporting whether anything had to change."""

    changed = False
    products: List[Product] = []
    if not isinstance(products_raw, list):
        changed = changed or products_raw is not None
        products_raw = []
    seen_ids = set()
    for record in products_raw:
        if not isinstance(record, dict):
            changed = True
            continue
        try:
            product = Product.from_record(record)
        except ValueError:
            changed = True
            continue
        if product.id in seen_ids:
            changed = True
            continue
        seen_ids.add(product.id)
        if product.to_record() != record:
            changed = True
        products.append(product)

    transactions: List[Transaction] = []
    if not isinstance(transactions_raw, list):
        changed = changed or transactions_raw is not None
        transactions_raw = []
    for record in transactions_raw:
        if not isinstance(record, dict):
            changed = True
            continue
        try:
            transactions.append(Transaction.from_record(record))
        except ValueError:
            changed = True
    return changed, products, transactions


class InventoryStore:
    """Owns the product collection and the transaction log, persisting every change."""

    def __init__(self, storage: "LocalStore") -> None:
        self.storage = storage
        self.unsaved_changes = False
        self._lock = RLock()
        self._ids = _IdGenerator()
        self._products: Dict[str, Product] = {}
        self._transactions: List[Transaction] = []
        with self._lock:
            self._load_locked()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_products(self) -> List[Product]:
        with self._lock:
            return list(self._products.values())

    def get_product(self, product_id: str) -> Product:
        with self._lock:
            if product_id not in self._products:
                raise KeyError(f"Product '{product_id}' not found")
            return self._products[product_id]

    def search_products(self, term: str, *, limit: Optional[int] = None) -> List[Product]:
        needle = (term or "").strip().lower()
        matches = [
            product
            for product in self.list_products()
            if not needle
            or needle in product.name.lower()
            or needle in product.category.lower()
            or needle in product.sku.lower()
        ]
        if limit is not None and limit >= 0:
            return matches[:limit]
        return matches

    def list_transactions(
        self,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Transaction]:
        with self._lock:
            entries = list(reversed(self._transactions))
        offset = max(0, offset)
        if limit is not None and limit >= 0:
            return entries[offset : offset + limit]
        return entries[offset:]

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            products = list(self._products.values())
            newest_first = list(reversed(self._transactions))
        inbound = [t for t in newest_first if t.type is TransactionType.IN]
        outbound = [t for t in newest_first if t.type is TransactionType.OUT]
        return {
            "total_products": len(products),
            "total_stock": sum(product.quantity for product in products),
            "low_stock": sum(1 for product in products if product.low_stock),
            "inventory_value": round(
                sum(product.quantity * product.price for product in products), 2
            ),
            "recent_in": sum(t.quantity for t in inbound[:RECENT_MOVEMENT_WINDOW]),
            "recent_out": sum(t.quantity for t in outbound[:RECENT_MOVEMENT_WINDOW]),
            "transactions": len(newest_first),
            "stock_chart": [
                {"name": product.name[:15], "qty": product.quantity}
                for product in products[:10]
            ],
        }

    # ------------------------------------------------------------------
    # Product mutations
    # ------------------------------------------------------------------
    def add_product(
        self,
        name: Optional[str],
        *,
        sku: Optional[str] = None,
        category: Optional[str] = None,
        price: Any = None,
        quantity: Any = None,
        image_url: Optional[str] = None,
    ) -> Optional[Product]:
        candidate = _clean_text(name)
        if not candidate:
            return None
        with self._lock:
            product_id = self._ids.next()
            product = Product(
                id=product_id,
                name=candidate,
                sku=_clean_text(sku) or generate_sku(),
                category=_clean_text(category) or DEFAULT_CATEGORY,
                quantity=coerce_quantity(quantity),
                min_level=DEFAULT_MIN_LEVEL,
                price=coerce_price(price),
                image_url=_clean_text(image_url)
                or PLACEHOLDER_IMAGE_URL.format(seed=product_id),
            )
            products = dict(self._products)
            products[product.id] = product
            self._commit_locked(products)
            return product

    def update_product(self, product_id: str, **patch: Any) -> Optional[Product]:
        allowed = {"name", "category", "price", "quantity", "sku", "image_url"}
        unknown = set(patch) - allowed
        if unknown:
            raise TypeError(f"Unsupported product fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._products.get(product_id)
            if current is None:
                return None
            changes: Dict[str, Any] = {}
            if "name" in patch and _clean_text(patch["name"]):
                changes["name"] = _clean_text(patch["name"])
            if "category" in patch:
                changes["category"] = _clean_text(patch["category"]) or DEFAULT_CATEGORY
            if "price" in patch:
                changes["price"] = coerce_price(patch["price"])
            if "quantity" in patch:
                changes["quantity"] = coerce_quantity(patch["quantity"])
            if "sku" in patch:
                changes["sku"] = _clean_text(patch["sku"])
            if "image_url" in patch:
                changes["image_url"] = _clean_text(patch["image_url"])
            updated = replace(current, **changes)
            products = dict(self._products)
            products[product_id] = updated
            self._commit_locked(products)
            return updated

    def delete_product(self, product_id: str) -> bool:
        with self._lock:
            if product_id not in self._products:
                return False
            products = dict(self._products)
            del products[product_id]
            self._commit_locked(products)
            return True

    def clear_all(self) -> None:
        with self._lock:
            self._commit_locked({})

    def replace_all(self, products: Iterable[Product]) -> List[Product]:
        with self._lock:
            replacement: Dict[str, Product] = {}
            for product in products:
                if product.id in replacement:
                    fresh_id = self._ids.next()
                    logger.warning(
                        "Duplicate product id %s re-keyed as %s", product.id, fresh_id
                    )
                    product = replace(product, id=fresh_id)
                replacement[product.id] = product
            self._commit_locked(replacement)
            return list(replacement.values())

    def apply_stock_movement(
        self,
        product_id: str,
        direction: Union[TransactionType, str],
        amount: int,
    ) -> Optional[Product]:
        movement = TransactionType.parse(direction)
        with self._lock:
            current = self._products.get(product_id)
            if current is None:
                return None
            updated = replace(
                current, quantity=apply_movement(current.quantity, movement, int(amount))
            )
            products = dict(self._products)
            products[product_id] = updated
            self._commit_locked(products)
            return updated

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def record_transaction(
        self,
        product_id: str,
        type: Union[TransactionType, str],
        quantity: int,
        *,
        notes: str = "",
    ) -> Transaction:
        """Move stock and append the matching log entry in a single write.

        The amount is expected to be a positive integer; callers reject zero
        or negative input before getting here.
        """

        movement = TransactionType.parse(type)
        amount = int(quantity)
        with self._lock:
            current = self._products.get(product_id)
            products: Optional[Dict[str, Product]] = None
            if current is not None:
                products = dict(self._products)
                products[product_id] = replace(
                    current, quantity=apply_movement(current.quantity, movement, amount)
                )
            transaction = Transaction(
                id=self._ids.next(),
                product_id=product_id,
                product_name=current.name if current is not None else UNKNOWN_PRODUCT_NAME,
                type=movement,
                quantity=amount,
                timestamp=_now_ms(),
                notes=_clean_text(notes),
            )
            transactions = self._transactions + [transaction]
            if products is not None:
                self._commit_locked(products, transactions=transactions)
            else:
                self.storage.set(
                    TRANSACTIONS_KEY, [entry.to_record() for entry in transactions]
                )
                self._transactions = transactions
            return transaction

    def mark_saved(self) -> None:
        with self._lock:
            self.unsaved_changes = False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load_locked(self) -> None:
        version = self.storage.get(SCHEMA_KEY, 0)
        changed, products, transactions = upgrade_records(
            self.storage.get(PRODUCTS_KEY), self.storage.get(TRANSACTIONS_KEY)
        )
        self._products = {product.id: product for product in products}
        self._transactions = transactions
        if changed or version != SCHEMA_VERSION:
            logger.info(
                "Upgrading stored inventory from schema %s to %s", version, SCHEMA_VERSION
            )
            self.storage.set_many(
                {
                    SCHEMA_KEY: SCHEMA_VERSION,
                    PRODUCTS_KEY: [product.to_record() for product in products],
                    TRANSACTIONS_KEY: [entry.to_record() for entry in transactions],
                }
            )
        logger.info(
            "Loaded %d products and %d transactions", len(products), len(transactions)
        )

    def _commit_locked(
        self,
        products: Dict[str, Product],
        *,
        transactions: Optional[List[Transaction]] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            PRODUCTS_KEY: [product.to_record() for product in products.values()],
        }
        if transactions is not None:
            payload[TRANSACTIONS_KEY] = [entry.to_record() for entry in transactions]
        self.storage.set_many(payload)
        self._products = products
        if transactions is not None:
            self._transactions = transactions
        self.unsaved_changes = True
