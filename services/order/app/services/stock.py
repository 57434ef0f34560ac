"""Stock lookups and reservations for recurring deliveries.

Two backends: the local ``inventory`` table, which shares the order
database transaction, and the catalog service reached over HTTP.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence
import logging

import httpx
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import PersistenceError
from app.db.models import Inventory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: int
    qty: int


@dataclass(frozen=True)
class ProductInfo:
    product_id: int
    sku: str
    title: str
    price_cents: int


class ProductStore:
    # True when reservations roll back together with the order transaction
    transactional = False

    def find_stock(self, product_id: int) -> int:
        raise NotImplementedError

    def find_product(self, product_id: int) -> Optional[ProductInfo]:
        """Current sku, title and price, or None for an unknown product."""
        raise NotImplementedError

    def adjust_stock(self, product_id: int, delta: int) -> None:
        raise NotImplementedError

    def reserve(self, lines: Sequence[StockLine]) -> bool:
        """Take every line out of stock, or none of them. Returns False on shortfall."""
        raise NotImplementedError

    def release(self, lines: Sequence[StockLine]) -> None:
        for line in lines:
            self.adjust_stock(line.product_id, line.qty)


class SqlProductStore(ProductStore):
    transactional = True

    def __init__(self, db: Session):
        self.db = db

    def find_stock(self, product_id: int) -> int:
        inv = self.db.get(Inventory, product_id)
        return inv.in_stock if inv else 0

    def find_product(self, product_id: int) -> Optional[ProductInfo]:
        inv = self.db.get(Inventory, product_id)
        if not inv:
            return None
        return ProductInfo(product_id, inv.sku or "", inv.title or "", inv.price_cents or 0)

    def adjust_stock(self, product_id: int, delta: int) -> None:
        res = self.db.execute(
            update(Inventory)
            .where(Inventory.product_id == product_id)
            .values(in_stock=Inventory.in_stock + delta)
        )
        if res.rowcount == 0:
            self.db.add(Inventory(product_id=product_id, in_stock=max(0, delta)))
        self.db.flush()

    def describe(self, product_id: int, sku: Optional[str] = None, title: Optional[str] = None, price_cents: Optional[int] = None) -> None:
        """Set the product fields the local store answers ``find_product`` with."""
        inv = self.db.get(Inventory, product_id)
        if inv is None:
            inv = Inventory(product_id=product_id, in_stock=0)
            self.db.add(inv)
        if sku is not None: inv.sku = sku
        if title is not None: inv.title = title
        if price_cents is not None: inv.price_cents = price_cents
        self.db.flush()

    def reserve(self, lines: Sequence[StockLine]) -> bool:
        taken: List[StockLine] = []
        for line in lines:
            res = self.db.execute(
                update(Inventory)
                .where(Inventory.product_id == line.product_id, Inventory.in_stock >= line.qty)
                .values(in_stock=Inventory.in_stock - line.qty)
            )
            if res.rowcount != 1:
                logger.info("Reservation short on product_id %s, undoing %d line(s)", line.product_id, len(taken))
                self.release(taken)
                return False
            taken.append(line)
        return True


class CatalogProductStore(ProductStore):
    def __init__(self, base_url: str = settings.CATALOG_BASE, internal_key: str = settings.SVC_INTERNAL_KEY,
                 timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-Internal-Key": internal_key}
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _post(self, path: str, lines: Sequence[StockLine]) -> httpx.Response:
        body = {"items": [{"product_id": l.product_id, "qty": l.qty} for l in lines]}
        try:
            with self._client() as client:
                return client.post(f"{self.base_url}/catalog/v1/inventory/{path}", json=body, headers=self.headers)
        except httpx.RequestError as exc:
            raise PersistenceError(f"Catalog unavailable: {exc}") from exc

    def _product(self, product_id: int) -> Optional[dict]:
        try:
            with self._client() as client:
                resp = client.get(f"{self.base_url}/catalog/v1/products/{product_id}")
        except httpx.RequestError as exc:
            raise PersistenceError(f"Catalog unavailable: {exc}") from exc
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise PersistenceError(f"Catalog product lookup failed ({resp.status_code})")
        return resp.json()

    def find_stock(self, product_id: int) -> int:
        product = self._product(product_id)
        if product is None:
            return 0
        inv = product.get("inventory") or {}
        return int(inv.get("in_stock") or 0) - int(inv.get("reserved") or 0)

    def find_product(self, product_id: int) -> Optional[ProductInfo]:
        product = self._product(product_id)
        if product is None:
            return None
        return ProductInfo(product_id, str(product.get("sku") or ""), str(product.get("title") or ""),
                           int(product.get("price_cents") or 0))

    def adjust_stock(self, product_id: int, delta: int) -> None:
        if delta == 0:
            return
        line = StockLine(product_id, abs(delta))
        if delta > 0:
            resp = self._post("restock", [line])
            if resp.status_code != 200:
                raise PersistenceError(f"Catalog restock failed ({resp.status_code})")
        elif not self.reserve([line]):
            raise PersistenceError(f"Insufficient stock for product_id {product_id}")

    def reserve(self, lines: Sequence[StockLine]) -> bool:
        resp = self._post("reserve", lines)
        if resp.status_code == 409:
            return False
        if resp.status_code != 200:
            raise PersistenceError(f"Catalog reserve failed ({resp.status_code})")
        try:
            resp = self._post("commit", lines)
        except PersistenceError:
            self._log_stuck(lines, "unreachable")
            raise
        if resp.status_code != 200:
            self._log_stuck(lines, resp.status_code)
            raise PersistenceError(f"Catalog commit failed ({resp.status_code})")
        return True

    def _log_stuck(self, lines: Sequence[StockLine], reason) -> None:
        # the catalog has no unreserve call; these stay held until fixed by hand
        logger.error(
            "Stuck catalog reservation after failed commit (%s): %s",
            reason, ", ".join(f"product_id={l.product_id} qty={l.qty}" for l in lines),
        )


def get_product_store(db: Session) -> ProductStore:
    if settings.PRODUCT_STORE == "catalog":
        return CatalogProductStore()
    return SqlProductStore(db)
