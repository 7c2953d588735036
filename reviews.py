"""
Product reviews: purchase-gated submission, owner edits, and the rating
aggregate kept on each product.

A review may only be written by a user holding a completed transaction
that contains the product. After every review write the product's
average_rating/review_count are recomputed from scratch.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import (
    PRODUCTS,
    REVIEWS,
    TRANSACTIONS,
    canonical_id,
    create_document,
    store_call,
    to_object_id,
    utcnow,
)
from errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from log import get_logger
from schemas import Review, TransactionStatus
from text_filter import TextFilter

logger = get_logger(__name__)

SORT_OPTIONS = {
    "newest": [("created_at", DESCENDING)],
    "oldest": [("created_at", ASCENDING)],
    "highest": [("rating", DESCENDING), ("created_at", DESCENDING)],
    "lowest": [("rating", ASCENDING), ("created_at", DESCENDING)],
    "helpful": [("helpful_count", DESCENDING), ("created_at", DESCENDING)],
}


def coerce_rating(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Rating must be a whole number between 1 and 5")
    try:
        rating = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Rating must be a whole number between 1 and 5")
    if rating != value and not isinstance(value, str):
        # reject 4.5 rather than truncating it
        raise ValidationError("Rating must be a whole number between 1 and 5")
    if not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    return rating


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def round_rating(average: float) -> float:
    """One decimal place, halves rounded up (4.25 -> 4.3)."""
    return float(Decimal(str(average)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


# ----------------------------------------------------------------------------
# Eligibility
# ----------------------------------------------------------------------------

class EligibilityChecker:
    def __init__(self, db: Database):
        self.db = db

    def can_review(self, user_id: str, product_id: str) -> bool:
        """True when any completed transaction of the user contains the product."""
        if not user_id or not product_id:
            return False
        try:
            purchase = self.db[TRANSACTIONS].find_one(
                {
                    "user_id": str(user_id),
                    "status": TransactionStatus.COMPLETED.value,
                    "items.product_id": str(product_id),
                },
                projection={"_id": 1},
            )
        except PyMongoError as e:
            logger.warning("eligibility_lookup_failed", user_id=user_id, product_id=product_id, error=str(e))
            return False
        return purchase is not None

    def has_reviewed(self, user_id: str, product_id: str) -> Optional[Dict[str, Any]]:
        with store_call("look up review"):
            return self.db[REVIEWS].find_one({"user_id": str(user_id), "product_id": str(product_id)})


# ----------------------------------------------------------------------------
# Aggregation
# ----------------------------------------------------------------------------

class RatingAggregator:
    def __init__(self, db: Database):
        self.db = db

    def recompute_rating(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Rewrite the product's rating fields from every review it has.

        Returns the written fields, or None when the recompute failed. A
        failure is logged and never propagated to the review operation.
        """
        try:
            ratings = [r["rating"] for r in self.db[REVIEWS].find({"product_id": str(product_id)}, {"rating": 1})]
            if ratings:
                average = round_rating(sum(ratings) / len(ratings))
                fields = {"average_rating": average, "review_count": len(ratings)}
            else:
                fields = {"average_rating": 0, "review_count": 0}
            self.db[PRODUCTS].update_one({"_id": to_object_id(product_id, "Product")}, {"$set": fields})
        except (PyMongoError, NotFoundError) as e:
            logger.warning("rating_recompute_failed", product_id=product_id, error=str(e))
            return None
        logger.debug("rating_recomputed", product_id=product_id, **fields)
        return fields


# ----------------------------------------------------------------------------
# Reviews
# ----------------------------------------------------------------------------

class ReviewService:
    def __init__(
        self,
        db: Database,
        text_filter: TextFilter,
        eligibility: Optional[EligibilityChecker] = None,
        aggregator: Optional[RatingAggregator] = None,
    ):
        self.db = db
        self.text_filter = text_filter
        self.eligibility = eligibility or EligibilityChecker(db)
        self.aggregator = aggregator or RatingAggregator(db)

    def get(self, review_id: str) -> Dict[str, Any]:
        with store_call("load review"):
            review = self.db[REVIEWS].find_one({"_id": to_object_id(review_id, "Review")})
        if not review:
            raise NotFoundError("Review not found")
        return review

    def list_for_product(
        self, product_id: str, sort_by: str = "newest", filter_rating: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        if sort_by not in SORT_OPTIONS:
            raise ValidationError("Unknown sort option", {"valid_sort_options": list(SORT_OPTIONS)})
        query: Dict[str, Any] = {"product_id": str(product_id)}
        if filter_rating is not None:
            query["rating"] = coerce_rating(filter_rating)
        with store_call("list reviews"):
            return list(self.db[REVIEWS].find(query).sort(SORT_OPTIONS[sort_by]))

    def list_all(self, limit: int = 200) -> List[Dict[str, Any]]:
        """Every review, newest first, annotated with its product's name."""
        with store_call("list reviews"):
            reviews = list(self.db[REVIEWS].find({}).sort("created_at", DESCENDING).limit(limit))
            product_oids = {to_object_id(r["product_id"], "Product") for r in reviews if r.get("product_id")}
            names = {
                str(p["_id"]): p.get("name")
                for p in self.db[PRODUCTS].find({"_id": {"$in": list(product_oids)}}, {"name": 1})
            }
        for review in reviews:
            review["product_name"] = names.get(review.get("product_id"))
        return reviews

    def rating_stats(self, product_id: str) -> Dict[str, Any]:
        with store_call("load review stats"):
            ratings = [r["rating"] for r in self.db[REVIEWS].find({"product_id": str(product_id)}, {"rating": 1})]
        distribution = {str(star): 0 for star in (5, 4, 3, 2, 1)}
        for rating in ratings:
            distribution[str(rating)] += 1
        average = round_rating(sum(ratings) / len(ratings)) if ratings else 0
        return {"average_rating": average, "total_reviews": len(ratings), "rating_distribution": distribution}

    def check(self, user_id: str, product_id: str) -> Dict[str, Any]:
        existing = self.eligibility.has_reviewed(user_id, product_id)
        purchased = self.eligibility.can_review(user_id, product_id)
        return {
            "has_reviewed": existing is not None,
            "review": existing,
            "can_review": purchased and existing is None,
            "has_completed_purchase": purchased,
        }

    def create(
        self,
        product_id: str,
        user_id: str,
        name: str,
        rating: Any,
        title: str,
        comment: str,
    ) -> Dict[str, Any]:
        fields = {
            "product_id": product_id,
            "user_id": user_id,
            "name": name,
            "rating": rating,
            "title": title,
            "comment": comment,
        }
        missing = [k for k, v in fields.items() if _blank(v)]
        if missing:
            raise ValidationError("All fields are required", {"missing": missing})
        rating = coerce_rating(rating)
        product_id, user_id = canonical_id(product_id, "Product"), str(user_id)

        # An existing review is reported as a conflict even if the purchase
        # that allowed it has since been cancelled.
        if self.eligibility.has_reviewed(user_id, product_id):
            raise ConflictError("You have already reviewed this product, update your review instead")
        if not self.eligibility.can_review(user_id, product_id):
            raise PermissionDeniedError("You can only review products from a completed purchase")
        with store_call("load product"):
            product = self.db[PRODUCTS].find_one({"_id": to_object_id(product_id, "Product")}, {"_id": 1})
        if not product:
            raise NotFoundError("Product not found")

        title, title_filtered = self.text_filter.apply(title)
        comment, comment_filtered = self.text_filter.apply(comment)
        data = Review(
            product_id=product_id,
            user_id=user_id,
            name=name.strip(),
            rating=rating,
            title=title,
            comment=comment,
            verified_purchase=True,
        ).model_dump()
        with store_call("save review", "You have already reviewed this product, update your review instead"):
            review = create_document(self.db, REVIEWS, data)
        logger.info("review_created", review_id=str(review["_id"]), product_id=product_id, user_id=user_id)

        self.aggregator.recompute_rating(product_id)
        review["text_filtered"] = title_filtered and comment_filtered
        return review

    def update(
        self,
        review_id: str,
        user_id: str,
        rating: Any = None,
        title: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        review = self.get(review_id)
        if review.get("user_id") != str(user_id):
            raise PermissionDeniedError("You can only update your own reviews")

        changes: Dict[str, Any] = {}
        text_filtered = True
        if rating is not None:
            changes["rating"] = coerce_rating(rating)
        for field, value in (("title", title), ("comment", comment)):
            if not _blank(value):
                changes[field], filtered = self.text_filter.apply(value)
                text_filtered = text_filtered and filtered
        changes["updated_at"] = utcnow()

        with store_call("update review"):
            self.db[REVIEWS].update_one({"_id": review["_id"]}, {"$set": changes})
        review.update(changes)
        logger.info("review_updated", review_id=str(review["_id"]), fields=sorted(changes))

        self.aggregator.recompute_rating(review["product_id"])
        review["text_filtered"] = text_filtered
        return review

    def delete(self, review_id: str, user_id: Optional[str], is_admin: bool = False) -> Dict[str, Any]:
        review = self.get(review_id)
        is_owner = user_id is not None and review.get("user_id") == str(user_id)
        if not (is_owner or is_admin):
            raise PermissionDeniedError("Permission denied")

        with store_call("delete review"):
            self.db[REVIEWS].delete_one({"_id": review["_id"]})
        logger.info("review_deleted", review_id=str(review["_id"]), by_admin=is_admin and not is_owner)

        self.aggregator.recompute_rating(review["product_id"])
        return review
