"""
Shopping cart: one cart per user holding live product references.

Totals are derived from current catalog prices on every read and are
never stored on the cart document.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import CARTS, PRODUCTS, canonical_id, create_document, store_call, to_object_id, utcnow
from errors import NotFoundError, ValidationError
from log import get_logger
from schemas import Cart, CartLineRef, CartTotals

logger = get_logger(__name__)

# ----------------------------------------------------------------------------
# Pricing
# ----------------------------------------------------------------------------

TAX_RATE = 0.08
FREE_SHIPPING_THRESHOLD = 100.0
FLAT_SHIPPING = 15.0


def calc_shipping(subtotal: float) -> float:
    return 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING


def compute_totals(items: Iterable[CartLineRef], prices: Mapping[str, float]) -> CartTotals:
    """Subtotal, tax, shipping, total and item count for `items` at `prices`.

    Lines whose product has no price (deleted from the catalog) are left out.
    """
    subtotal = 0.0
    item_count = 0
    for item in items:
        if item.product_id not in prices:
            continue
        subtotal += float(prices[item.product_id]) * item.quantity
        item_count += item.quantity

    tax = subtotal * TAX_RATE
    shipping = calc_shipping(subtotal)
    total = subtotal + tax + shipping
    return CartTotals(
        subtotal=round(subtotal, 2),
        tax=round(tax, 2),
        shipping=round(shipping, 2),
        total=round(total, 2),
        item_count=item_count,
    )


def _product_oids(product_ids: Iterable[str]) -> List[ObjectId]:
    oids = []
    for pid in product_ids:
        try:
            oids.append(ObjectId(pid))
        except (InvalidId, TypeError):
            continue
    return oids


# ----------------------------------------------------------------------------
# Cart store
# ----------------------------------------------------------------------------

class CartService:
    def __init__(self, db: Database):
        self.db = db

    def get_or_create(self, user_id: str) -> Dict[str, Any]:
        """Fetch the user's cart, creating an empty one on first access."""
        with store_call("load cart"):
            cart = self.db[CARTS].find_one({"user_id": user_id})
            if cart:
                return cart
            try:
                return create_document(self.db, CARTS, Cart(user_id=user_id).model_dump())
            except DuplicateKeyError:
                # created concurrently by another request
                return self.db[CARTS].find_one({"user_id": user_id})

    def lines(self, cart: Dict[str, Any]) -> List[CartLineRef]:
        return [CartLineRef(**item) for item in cart.get("items", [])]

    def products_for(self, lines: Iterable[CartLineRef]) -> Dict[str, Dict[str, Any]]:
        oids = _product_oids(line.product_id for line in lines)
        if not oids:
            return {}
        with store_call("load cart products"):
            return {str(p["_id"]): p for p in self.db[PRODUCTS].find({"_id": {"$in": oids}})}

    def view(self, user_id: str, cart: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """The cart's lines joined with live product data, plus computed totals."""
        cart = cart or self.get_or_create(user_id)
        lines = self.lines(cart)
        products = self.products_for(lines)
        items = []
        for line in lines:
            product = products.get(line.product_id)
            if not product:
                logger.info("cart_line_product_missing", user_id=user_id, product_id=line.product_id)
                continue
            images = product.get("images") or []
            items.append(
                {
                    "product_id": line.product_id,
                    "name": product.get("name"),
                    "price": product.get("price", 0),
                    "image": images[0] if images else None,
                    "collection": product.get("collection"),
                    "quantity": line.quantity,
                }
            )
        totals = compute_totals(lines, {pid: p.get("price", 0) for pid, p in products.items()})
        return {"items": items, "totals": totals.model_dump()}

    def _save(self, cart: Dict[str, Any], lines: List[CartLineRef]) -> Dict[str, Any]:
        items = [line.model_dump() for line in lines]
        with store_call("save cart"):
            self.db[CARTS].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": utcnow()}})
        cart["items"] = items
        return cart

    def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        if quantity is None or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        product_id = canonical_id(product_id, "Product")
        with store_call("load product"):
            product = self.db[PRODUCTS].find_one({"_id": to_object_id(product_id, "Product")})
        if not product:
            raise NotFoundError("Product not found")

        cart = self.get_or_create(user_id)
        lines = self.lines(cart)
        for line in lines:
            if line.product_id == product_id:
                line.quantity += quantity
                break
        else:
            lines.append(CartLineRef(product_id=product_id, quantity=quantity))
        return self._save(cart, lines)

    def update_quantity(self, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
        if quantity is None or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        product_id = canonical_id(product_id, "Item")
        cart = self.get_or_create(user_id)
        lines = self.lines(cart)
        for line in lines:
            if line.product_id == product_id:
                line.quantity = quantity
                return self._save(cart, lines)
        raise NotFoundError("Item not found in cart")

    def remove_item(self, user_id: str, product_id: str) -> Dict[str, Any]:
        product_id = canonical_id(product_id, "Item")
        cart = self.get_or_create(user_id)
        lines = self.lines(cart)
        remaining = [line for line in lines if line.product_id != product_id]
        if len(remaining) == len(lines):
            raise NotFoundError("Item not found in cart")
        return self._save(cart, remaining)

    def clear(self, user_id: str) -> Dict[str, Any]:
        cart = self.get_or_create(user_id)
        return self._save(cart, [])
