"""
Product catalog.

Rating fields on a product belong to the review aggregator; catalog
writes never touch them.
"""

import re
from typing import Any, Dict, List, Optional

import pydantic
from pymongo.database import Database

from database import CARTS, PRODUCTS, REVIEWS, create_document, store_call, to_object_id, utcnow
from errors import NotFoundError, ValidationError
from images import ImageStore
from log import get_logger
from schemas import Product

logger = get_logger(__name__)

SORT_MAP = {
    "price_asc": ("price", 1),
    "price_desc": ("price", -1),
    "rating_desc": ("average_rating", -1),
    "rating_asc": ("average_rating", 1),
    "newest": ("created_at", -1),
}

EDITABLE_FIELDS = ("name", "description", "notes", "price", "collection", "category", "volume", "stock")


class ProductCatalog:
    def __init__(self, db: Database, images: Optional[ImageStore] = None):
        self.db = db
        self.images = images or ImageStore()

    def list_products(
        self,
        collection: Optional[str] = None,
        q: Optional[str] = None,
        sort: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if q:
            pattern = re.escape(q)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
                {"notes": {"$regex": pattern, "$options": "i"}},
            ]
        if collection:
            query["collection"] = collection
        field, direction = SORT_MAP.get(sort or "newest", SORT_MAP["newest"])
        with store_call("list products"):
            return list(self.db[PRODUCTS].find(query).sort(field, direction))

    def list_by_collection(self, collection: str) -> List[Dict[str, Any]]:
        return self.list_products(collection=collection)

    def collections(self) -> List[str]:
        with store_call("list collections"):
            return sorted(self.db[PRODUCTS].distinct("collection"))

    def get(self, product_id: str) -> Dict[str, Any]:
        with store_call("load product"):
            doc = self.db[PRODUCTS].find_one({"_id": to_object_id(product_id, "Product")})
        if not doc:
            raise NotFoundError("Product not found")
        return doc

    def create(self, data: Dict[str, Any], uploads=None) -> Dict[str, Any]:
        fields = {k: v for k, v in data.items() if k in EDITABLE_FIELDS and v is not None}
        image_urls = list(data.get("images") or [])
        try:
            product = Product(**fields, images=image_urls)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid product", {"fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]}
            )

        saved = self.images.save_all(uploads or [])
        payload = product.model_dump()
        payload.update(images=image_urls + saved, average_rating=0, review_count=0)
        try:
            with store_call("create product"):
                doc = create_document(self.db, PRODUCTS, payload)
        except Exception:
            self.images.delete(saved)
            raise
        logger.info("product_created", product_id=str(doc["_id"]), name=doc["name"])
        return doc

    def update(
        self,
        product_id: str,
        changes: Dict[str, Any],
        existing_images: Optional[List[str]] = None,
        uploads=None,
    ) -> Dict[str, Any]:
        """Apply the provided fields.

        `existing_images`, when given, is the list of current images to keep;
        dropped local files are removed from disk. New uploads are appended.
        """
        product = self.get(product_id)
        update = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
        if "price" in update and float(update["price"]) < 0:
            raise ValidationError("Price must be zero or more")
        if "stock" in update and int(update["stock"]) < 0:
            raise ValidationError("Stock must be zero or more")

        current = product.get("images") or []
        kept = current if existing_images is None else [img for img in current if img in existing_images]
        saved = self.images.save_all(uploads or [])
        update["images"] = kept + saved
        update["updated_at"] = utcnow()

        try:
            with store_call("update product"):
                self.db[PRODUCTS].update_one({"_id": product["_id"]}, {"$set": update})
        except Exception:
            self.images.delete(saved)
            raise
        self.images.delete([img for img in current if img not in kept])
        product.update(update)
        logger.info("product_updated", product_id=product_id, fields=sorted(update))
        return product

    def delete(self, product_id: str) -> Dict[str, Any]:
        """Remove the product with its images, its reviews and any cart lines for it."""
        product = self.get(product_id)
        pid = str(product["_id"])
        with store_call("delete product"):
            self.db[PRODUCTS].delete_one({"_id": product["_id"]})
            removed = self.db[REVIEWS].delete_many({"product_id": pid}).deleted_count
            self.db[CARTS].update_many({"items.product_id": pid}, {"$pull": {"items": {"product_id": pid}}})
        self.images.delete(product.get("images") or [])
        logger.info("product_deleted", product_id=pid, reviews_removed=removed)
        return product
