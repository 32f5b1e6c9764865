"""
Order placement and order queries

OrderBuilder turns requested lines into a frozen Order document: prices are
snapshotted into the embedded items and the total is never recomputed.
"""
import logging
import math
from typing import Iterable, List, Optional

from bson import ObjectId

from auth import Permission, Principal
from database import Store
from errors import Forbidden, InsufficientStock, NotFound
from schemas import Order, OrderItem, OrderLine

logger = logging.getLogger(__name__)

PRODUCT_SUMMARY = {"name": 1, "price": 1, "image_url": 1, "stock": 1}


class OrderBuilder:
    def __init__(self, store: Store, reserve_stock: bool = False):
        self.store = store
        self.reserve_stock = reserve_stock

    def create_order(self, user_id: str, lines: Iterable[OrderLine]) -> dict:
        items: List[OrderItem] = []
        for line in lines:
            product = self.store.get_document_by_id("product", line.product_id)
            if not product:
                raise NotFound(f"Product {line.product_id} not found")
            if product.get("stock", 0) < line.quantity:
                raise InsufficientStock(f"Insufficient stock for product {line.product_id}")
            items.append(OrderItem(
                id=str(ObjectId()),
                product_id=line.product_id,
                quantity=line.quantity,
                price=float(product["price"]),
            ))

        if self.reserve_stock:
            self._reserve(items)

        total = round(sum(i.price * i.quantity for i in items), 2)
        order = Order(user_id=user_id, items=items, total=total, status="pending")
        try:
            order_id = self.store.create_document("order", order)
        except Exception:
            if self.reserve_stock:
                self._release(items)
            raise
        logger.info(f"Order {order_id} created for user {user_id}: {len(items)} item(s), total {total}")
        return self.store.get_document_by_id("order", order_id)

    def _reserve(self, items: List[OrderItem]):
        reserved: List[OrderItem] = []
        for item in items:
            ok = self.store.increment("product", item.product_id, "stock", -item.quantity,
                                      where={"stock": {"$gte": item.quantity}})
            if not ok:
                self._release(reserved)
                raise InsufficientStock(f"Insufficient stock for product {item.product_id}")
            reserved.append(item)

    def _release(self, items: List[OrderItem]):
        for item in items:
            self.store.increment("product", item.product_id, "stock", item.quantity)


def with_products(store: Store, order: dict) -> dict:
    """Attach a product summary to each order line."""
    out = dict(order)
    out["items"] = [
        {**item, "product": store.get_document_by_id("product", item["product_id"], PRODUCT_SUMMARY)}
        for item in order.get("items", [])
    ]
    return out


def list_user_orders(store: Store, user_id: str) -> List[dict]:
    orders = store.get_documents("order", {"user_id": user_id}, sort=[("created_at", -1)])
    return [with_products(store, o) for o in orders]


def get_visible_order(store: Store, principal: Principal, order_id: str) -> dict:
    order = store.get_document_by_id("order", order_id)
    if not order:
        raise NotFound("Order not found")
    if not principal.owns(order) and not principal.can(Permission.VIEW_ALL_ORDERS):
        raise Forbidden("Unauthorized")
    return with_products(store, order)


def set_order_status(store: Store, order_id: str, status: str) -> dict:
    order = store.update_and_get("order", order_id, {"status": status})
    if not order:
        raise NotFound("Order not found")
    logger.info(f"Order {order_id} status set to {status}")
    return order


def list_orders(store: Store, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
    where = {"status": status} if status else {}
    skip = (page - 1) * limit
    orders = store.get_documents("order", where, sort=[("created_at", -1)], skip=skip, limit=limit)
    total = store.count_documents("order", where)
    users = {}
    result = []
    for order in orders:
        uid = order.get("user_id")
        if uid not in users:
            users[uid] = store.get_document_by_id("user", uid, {"name": 1, "email": 1})
        result.append({**with_products(store, order), "user": users[uid]})
    return {
        "orders": result,
        "metadata": {
            "total": total,
            "page": page,
            "totalPages": math.ceil(total / limit) if limit else 0,
        },
    }
