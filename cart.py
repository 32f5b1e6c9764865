"""
Shopping cart

Every item lookup is scoped to the requesting user's cart, so another user's
item id behaves exactly like a missing one.
"""
import logging
from typing import Optional

from database import Store, to_object_id
from errors import InsufficientStock, NotFound
from schemas import Cart, CartItem
from orders import PRODUCT_SUMMARY

logger = logging.getLogger(__name__)


class CartManager:
    def __init__(self, store: Store):
        self.store = store

    def _cart(self, user_id: str) -> Optional[dict]:
        return self.store.find_one("cart", {"user_id": user_id})

    def _get_or_create_cart(self, user_id: str) -> dict:
        cart = self._cart(user_id)
        if cart:
            return cart
        cart_id = self.store.create_document("cart", Cart(user_id=user_id))
        return self.store.get_document_by_id("cart", cart_id)

    def _owned_item(self, user_id: str, item_id: str) -> dict:
        cart = self._cart(user_id)
        oid = to_object_id(item_id)
        item = None
        if cart and oid is not None:
            item = self.store.find_one("cartitem", {"_id": oid, "cart_id": cart["_id"]})
        if not item:
            raise NotFound("Cart item not found")
        return item

    def add_item(self, user_id: str, product_id: str, quantity: int) -> dict:
        product = self.store.get_document_by_id("product", product_id)
        if not product:
            raise NotFound("Product not found")
        if product.get("stock", 0) < quantity:
            raise InsufficientStock()

        cart = self._get_or_create_cart(user_id)
        existing = self.store.find_one("cartitem", {"cart_id": cart["_id"], "product_id": product_id})
        if existing:
            stock = product.get("stock", 0)
            if not self.store.increment("cartitem", existing["_id"], "quantity", quantity,
                                        where={"quantity": {"$lte": stock - quantity}}):
                raise InsufficientStock()
        else:
            self.store.create_document("cartitem", CartItem(cart_id=cart["_id"], product_id=product_id, quantity=quantity))
        return {"message": "Item added to cart"}

    def get_cart(self, user_id: str) -> dict:
        cart = self._cart(user_id)
        if not cart:
            return {"items": []}
        items = self.store.get_documents("cartitem", {"cart_id": cart["_id"]}, sort=[("created_at", 1)])
        for item in items:
            item["product"] = self.store.get_document_by_id("product", item["product_id"], PRODUCT_SUMMARY)
        return {**cart, "items": items}

    def update_quantity(self, user_id: str, item_id: str, quantity: int) -> dict:
        item = self._owned_item(user_id, item_id)
        product = self.store.get_document_by_id("product", item["product_id"])
        if not product:
            raise NotFound("Product not found")
        if product.get("stock", 0) < quantity:
            raise InsufficientStock()
        updated = self.store.update_and_get("cartitem", item["_id"], {"quantity": quantity})
        updated["product"] = self.store.get_document_by_id("product", item["product_id"], PRODUCT_SUMMARY)
        return updated

    def remove_item(self, user_id: str, item_id: str):
        item = self._owned_item(user_id, item_id)
        self.store.delete_document("cartitem", item["_id"])

    def clear(self, user_id: str) -> int:
        cart = self._cart(user_id)
        if not cart:
            return 0
        removed = self.store.delete_documents("cartitem", {"cart_id": cart["_id"]})
        logger.info(f"Cleared {removed} item(s) from cart of user {user_id}")
        return removed
