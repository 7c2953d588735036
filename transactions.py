"""
Transactions: the order ledger.

Orders are recorded (not charged) in state "pending" with a frozen
snapshot of every line. Status changes are committed first; the customer
notification runs afterwards and its outcome is returned as metadata.
"""

from typing import Any, Dict, List, Optional

import pydantic
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from cart import CartService, compute_totals
from database import TRANSACTIONS, create_document, get_documents, store_call, to_object_id, utcnow
from errors import NotFoundError, ValidationError
from log import get_logger
from notifications import OrderNotifier
from schemas import OrderLineSnapshot, StatusUpdate, Transaction, TransactionStatus

logger = get_logger(__name__)


def _validation_message(err: pydantic.ValidationError) -> Dict[str, Any]:
    return {"fields": [".".join(str(p) for p in e["loc"]) for e in err.errors()]}


class TransactionService:
    def __init__(self, db: Database, notifier: OrderNotifier, carts: Optional[CartService] = None):
        self.db = db
        self.notifier = notifier
        self.carts = carts or CartService(db)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        email: str,
        items: List[Dict[str, Any]],
        subtotal: float = 0,
        tax: float = 0,
        shipping: float = 0,
        total: float = 0,
    ) -> Dict[str, Any]:
        """Record a new pending transaction from client-supplied lines and totals."""
        if not user_id or not email or not items:
            raise ValidationError("User id, email, and items are required")
        try:
            tx = Transaction(
                user_id=str(user_id),
                email=email,
                items=[item if isinstance(item, OrderLineSnapshot) else OrderLineSnapshot(**item) for item in items],
                subtotal=subtotal or 0,
                tax=tax or 0,
                shipping=shipping or 0,
                total=total or 0,
            )
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid transaction", _validation_message(e))

        data = {**tx.model_dump(mode="json"), "status": TransactionStatus.PENDING.value, "completed_at": None}
        with store_call("create transaction"):
            doc = create_document(self.db, TRANSACTIONS, data)
        logger.info("transaction_created", transaction_id=str(doc["_id"]), user_id=tx.user_id, total=tx.total)
        return doc

    def checkout(self, user_id: str, email: str) -> Dict[str, Any]:
        """Freeze the user's cart into a pending transaction and empty the cart."""
        cart = self.carts.get_or_create(user_id)
        lines = self.carts.lines(cart)
        if not lines:
            raise ValidationError("Cart is empty")

        products = self.carts.products_for(lines)
        snapshots = []
        for line in lines:
            product = products.get(line.product_id)
            if not product:
                raise NotFoundError("Product in cart no longer exists", {"product_id": line.product_id})
            images = product.get("images") or []
            snapshots.append(
                OrderLineSnapshot(
                    product_id=line.product_id,
                    name=product.get("name", ""),
                    price=float(product.get("price", 0)),
                    quantity=line.quantity,
                    image=images[0] if images else None,
                    collection=product.get("collection"),
                )
            )

        totals = compute_totals(lines, {s.product_id: s.price for s in snapshots})
        doc = self.create(
            user_id,
            email,
            snapshots,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping=totals.shipping,
            total=totals.total,
        )
        self.carts.clear(user_id)
        return doc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, transaction_id: str) -> Dict[str, Any]:
        with store_call("load transaction"):
            doc = self.db[TRANSACTIONS].find_one({"_id": to_object_id(transaction_id, "Transaction")})
        if not doc:
            raise NotFoundError("Transaction not found")
        return doc

    def _find(self, query: Dict[str, Any], limit: int = 0) -> List[Dict[str, Any]]:
        with store_call("list transactions"):
            return get_documents(self.db, TRANSACTIONS, query, sort=[("created_at", DESCENDING)], limit=limit)

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self._find({"user_id": str(user_id)})

    def list_by_email(self, email: str) -> List[Dict[str, Any]]:
        return self._find({"email": email})

    def list_all(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = {}
        if status:
            if status not in TransactionStatus.values():
                raise ValidationError("Invalid status", {"valid_statuses": TransactionStatus.values()})
            query["status"] = status
        return self._find(query, limit=max(1, limit))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update_status(self, transaction_id: str, new_status: str) -> StatusUpdate:
        """Move a transaction to `new_status`, then notify the customer if it changed.

        Every status is reachable from every other. completed_at is stamped
        on each entry into "completed" and left alone otherwise.
        """
        if new_status not in TransactionStatus.values():
            raise ValidationError("Invalid status", {"valid_statuses": TransactionStatus.values()})
        oid = to_object_id(transaction_id, "Transaction")

        now = utcnow()
        changes: Dict[str, Any] = {"status": new_status, "updated_at": now}
        if new_status == TransactionStatus.COMPLETED.value:
            changes["completed_at"] = now

        with store_call("update transaction status"):
            before = self.db[TRANSACTIONS].find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.BEFORE
            )
        if before is None:
            raise NotFoundError("Transaction not found")

        previous = before.get("status", TransactionStatus.PENDING.value)
        transaction = {**before, **changes}
        logger.info("transaction_status_changed", transaction_id=str(oid), previous=previous, status=new_status)

        notification = None
        if previous != new_status:
            notification = self.notifier.notify(transaction)
            if not notification.sent:
                logger.warning(
                    "transaction_notification_not_sent",
                    transaction_id=str(oid),
                    status=notification.status,
                    error=notification.error,
                )
        return StatusUpdate(transaction=transaction, previous_status=previous, notification=notification)

    def delete(self, transaction_id: str) -> Dict[str, Any]:
        oid = to_object_id(transaction_id, "Transaction")
        with store_call("delete transaction"):
            doc = self.db[TRANSACTIONS].find_one_and_delete({"_id": oid})
        if not doc:
            raise NotFoundError("Transaction not found")
        logger.info("transaction_deleted", transaction_id=str(oid))
        return doc
