import logging
from typing import Iterable

from app.core.documents import DocumentStore, utcnow
from app.core.errors import InsufficientStock, ProductNotFound
from app.models.order_model import OrderItem
from app.models.product_model import Product

logger = logging.getLogger("mlfor.stock")


def _quantities(items: Iterable[OrderItem]) -> dict[str, int]:
    """Merge line items per product (same shirt in two sizes is one stock counter)."""
    wanted: dict[str, int] = {}
    for item in items:
        wanted[item.product_id] = wanted.get(item.product_id, 0) + item.qty
    return wanted


class StockAdjuster:
    def __init__(self, products: DocumentStore):
        self.products = products

    def reserve(self, items: Iterable[OrderItem]) -> None:
        """
        Decrement stock for every product, all or nothing.

        Each product is a single check-and-decrement so two checkouts can never
        both take the last unit. If any product fails, the ones already taken
        are put back before the error propagates.
        """
        reserved: list[tuple[str, int]] = []
        try:
            for product_id, qty in _quantities(items).items():
                self._take(product_id, qty)
                reserved.append((product_id, qty))
        except Exception:
            for product_id, qty in reversed(reserved):
                self._put_back(product_id, qty)
            raise

    def release(self, items: Iterable[OrderItem]) -> None:
        for product_id, qty in _quantities(items).items():
            self._put_back(product_id, qty)

    def _take(self, product_id: str, qty: int) -> None:
        updated = self.products.update_if(
            product_id,
            lambda doc: doc is not None and doc.get("count_in_stock", 0) >= qty,
            lambda doc: {"count_in_stock": doc["count_in_stock"] - qty, "updated_at": utcnow()},
        )
        if updated is not None:
            logger.debug(f"Reserved {qty} × {product_id} → {updated['count_in_stock']} left")
            return

        current = self.products.get(product_id)
        if current is None:
            raise ProductNotFound(product_id)
        product = Product.model_validate({**current, "id": product_id})
        logger.info(f"Insufficient stock for {product_id}: wanted {qty}, have {product.count_in_stock}")
        raise InsufficientStock(product_id, product.name, qty, product.count_in_stock)

    def _put_back(self, product_id: str, qty: int) -> None:
        updated = self.products.update_if(
            product_id,
            lambda doc: doc is not None,
            lambda doc: {"count_in_stock": doc.get("count_in_stock", 0) + qty, "updated_at": utcnow()},
        )
        if updated is None:
            logger.warning(f"Cannot restore {qty} × {product_id}: product no longer exists")
