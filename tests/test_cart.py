import pytest

from cart import CartService, compute_totals
from database import CARTS, PRODUCTS
from errors import NotFoundError, ValidationError
from schemas import CartLineRef
from tests.conftest import make_product


class TestComputeTotals:
    def test_free_shipping_over_threshold(self):
        lines = [CartLineRef(product_id="a", quantity=2), CartLineRef(product_id="b", quantity=1)]
        totals = compute_totals(lines, {"a": 30, "b": 50})
        assert totals.subtotal == 110.00
        assert totals.tax == 8.80
        assert totals.shipping == 0
        assert totals.total == 118.80
        assert totals.item_count == 3

    def test_flat_shipping_under_threshold(self):
        totals = compute_totals([CartLineRef(product_id="a", quantity=1)], {"a": 20})
        assert totals.subtotal == 20.00
        assert totals.tax == 1.60
        assert totals.shipping == 15.00
        assert totals.total == 36.60
        assert totals.item_count == 1

    def test_exactly_threshold_still_pays_shipping(self):
        totals = compute_totals([CartLineRef(product_id="a", quantity=4)], {"a": 25})
        assert totals.subtotal == 100.00
        assert totals.shipping == 15.00

    def test_lines_without_price_are_left_out(self):
        lines = [CartLineRef(product_id="a", quantity=1), CartLineRef(product_id="gone", quantity=3)]
        totals = compute_totals(lines, {"a": 20})
        assert totals.subtotal == 20.00
        assert totals.item_count == 1


class TestCartService:
    @pytest.fixture()
    def carts(self, db):
        return CartService(db)

    def test_cart_created_lazily_once(self, carts, db):
        first = carts.get_or_create("user-1")
        second = carts.get_or_create("user-1")
        assert first["_id"] == second["_id"]
        assert db[CARTS].count_documents({"user_id": "user-1"}) == 1

    def test_add_new_item_defaults_to_quantity_one(self, carts, db):
        product = make_product(db)
        cart = carts.add_item("user-1", str(product["_id"]))
        assert cart["items"] == [{"product_id": str(product["_id"]), "quantity": 1}]

    def test_adding_same_product_increments_quantity(self, carts, db):
        product = make_product(db)
        pid = str(product["_id"])
        carts.add_item("user-1", pid, 2)
        cart = carts.add_item("user-1", pid, 3)
        assert len(cart["items"]) == 1
        assert cart["items"][0]["quantity"] == 5
        stored = db[CARTS].find_one({"user_id": "user-1"})
        assert [i["product_id"] for i in stored["items"]] == [pid]

    def test_product_id_spelling_does_not_split_lines(self, carts, db):
        pid = str(make_product(db, price=40)["_id"])
        carts.add_item("user-1", pid)
        cart = carts.add_item("user-1", pid.upper())
        assert cart["items"] == [{"product_id": pid, "quantity": 2}]
        carts.update_quantity("user-1", pid.upper(), 3)
        view = carts.view("user-1")
        assert [i["quantity"] for i in view["items"]] == [3]
        assert view["totals"]["subtotal"] == 120.00
        cart = carts.remove_item("user-1", pid.upper())
        assert cart["items"] == []

    def test_add_rejects_quantity_below_one(self, carts, db):
        product = make_product(db)
        with pytest.raises(ValidationError):
            carts.add_item("user-1", str(product["_id"]), 0)

    def test_add_unknown_product(self, carts, db):
        with pytest.raises(NotFoundError):
            carts.add_item("user-1", "64b000000000000000000000")
        with pytest.raises(NotFoundError):
            carts.add_item("user-1", "not-an-id")

    def test_update_quantity_sets_value(self, carts, db):
        pid = str(make_product(db)["_id"])
        carts.add_item("user-1", pid, 2)
        cart = carts.update_quantity("user-1", pid, 7)
        assert cart["items"][0]["quantity"] == 7

    def test_update_quantity_zero_does_not_remove(self, carts, db):
        pid = str(make_product(db)["_id"])
        carts.add_item("user-1", pid, 2)
        with pytest.raises(ValidationError):
            carts.update_quantity("user-1", pid, 0)
        assert db[CARTS].find_one({"user_id": "user-1"})["items"][0]["quantity"] == 2

    def test_update_missing_line(self, carts):
        with pytest.raises(NotFoundError):
            carts.update_quantity("user-1", "64b000000000000000000000", 2)

    def test_remove_item(self, carts, db):
        a = str(make_product(db)["_id"])
        b = str(make_product(db, name="Fleur")["_id"])
        carts.add_item("user-1", a)
        carts.add_item("user-1", b)
        cart = carts.remove_item("user-1", a)
        assert [i["product_id"] for i in cart["items"]] == [b]
        with pytest.raises(NotFoundError):
            carts.remove_item("user-1", a)

    def test_clear_keeps_cart_document(self, carts, db):
        pid = str(make_product(db)["_id"])
        carts.add_item("user-1", pid)
        carts.clear("user-1")
        stored = db[CARTS].find_one({"user_id": "user-1"})
        assert stored is not None
        assert stored["items"] == []

    def test_view_uses_live_prices(self, carts, db):
        product = make_product(db, price=20.0)
        carts.add_item("user-1", str(product["_id"]))
        assert carts.view("user-1")["totals"]["subtotal"] == 20.0

        db[PRODUCTS].update_one({"_id": product["_id"]}, {"$set": {"price": 60.0}})
        view = carts.view("user-1")
        assert view["items"][0]["price"] == 60.0
        assert view["totals"]["subtotal"] == 60.0
        assert view["totals"]["total"] == 79.8

    def test_view_skips_deleted_products(self, carts, db):
        kept = make_product(db, price=20.0)
        gone = make_product(db, name="Gone", price=50.0)
        carts.add_item("user-1", str(kept["_id"]))
        carts.add_item("user-1", str(gone["_id"]))
        db[PRODUCTS].delete_one({"_id": gone["_id"]})
        view = carts.view("user-1")
        assert [i["name"] for i in view["items"]] == ["Oud Nocturne"]
        assert view["totals"]["item_count"] == 1
