from io import BytesIO

import pytest
from starlette.datastructures import Headers, UploadFile

from cart import CartService
from catalog import ProductCatalog
from database import CARTS, PRODUCTS, REVIEWS
from errors import NotFoundError, ValidationError
from tests.conftest import make_product


def upload(name="bottle.png", content=b"\x89PNG fake", content_type="image/png"):
    return UploadFile(file=BytesIO(content), filename=name, headers=Headers({"content-type": content_type}))


@pytest.fixture()
def catalog(db, image_store):
    return ProductCatalog(db, image_store)


BASE = {"name": "Vetiver Ancien", "price": 112.0, "collection": "Heritage", "stock": 5}


class TestCreate:
    def test_create_ignores_client_rating_fields(self, catalog, db):
        doc = catalog.create({**BASE, "average_rating": 5, "review_count": 99})
        stored = db[PRODUCTS].find_one({"_id": doc["_id"]})
        assert stored["average_rating"] == 0
        assert stored["review_count"] == 0
        assert stored["volume"] == "100ml"

    def test_create_rejects_negative_price(self, catalog):
        with pytest.raises(ValidationError):
            catalog.create({**BASE, "price": -1})

    def test_create_requires_collection(self, catalog):
        with pytest.raises(ValidationError):
            catalog.create({"name": "X", "price": 10})

    def test_create_with_uploads(self, catalog, image_store):
        doc = catalog.create(BASE, [upload(), upload("b.webp", content_type="image/webp")])
        assert len(doc["images"]) == 2
        for path in doc["images"]:
            assert path.startswith("/uploads/products/")
            assert (image_store.products_dir / path.rsplit("/", 1)[1]).exists()

    def test_rejects_non_images(self, catalog, db, image_store):
        with pytest.raises(ValidationError):
            catalog.create(BASE, [upload(), upload("notes.txt", content_type="text/plain")])
        assert db[PRODUCTS].count_documents({}) == 0
        assert not image_store.products_dir.exists() or list(image_store.products_dir.iterdir()) == []

    def test_rejects_oversized_upload(self, db, tmp_path):
        from images import ImageStore

        small = ProductCatalog(db, ImageStore(root=str(tmp_path / "u"), max_bytes=4))
        with pytest.raises(ValidationError):
            small.create(BASE, [upload(content=b"0123456789")])


class TestUpdate:
    def test_partial_update(self, catalog, db):
        product = make_product(db)
        catalog.update(str(product["_id"]), {"price": 45.5, "name": None})
        stored = db[PRODUCTS].find_one({"_id": product["_id"]})
        assert stored["price"] == 45.5
        assert stored["name"] == "Oud Nocturne"
        assert stored["images"] == ["/uploads/products/oud.jpg"]

    def test_existing_images_controls_what_is_kept(self, catalog, image_store):
        doc = catalog.create(BASE, [upload("a.png"), upload("b.png")])
        first, second = doc["images"]
        updated = catalog.update(str(doc["_id"]), {}, existing_images=[second], uploads=[upload("c.png")])
        assert updated["images"][0] == second
        assert len(updated["images"]) == 2
        assert not (image_store.products_dir / first.rsplit("/", 1)[1]).exists()

    def test_rating_fields_not_editable(self, catalog, db):
        product = make_product(db)
        catalog.update(str(product["_id"]), {"average_rating": 5, "review_count": 10})
        stored = db[PRODUCTS].find_one({"_id": product["_id"]})
        assert (stored["average_rating"], stored["review_count"]) == (0, 0)

    def test_negative_stock(self, catalog, db):
        product = make_product(db)
        with pytest.raises(ValidationError):
            catalog.update(str(product["_id"]), {"stock": -3})

    def test_missing_product(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.update("64b000000000000000000000", {"price": 1})


class TestDeleteAndQueries:
    def test_delete_cascades(self, catalog, db):
        product = make_product(db)
        other = make_product(db, name="Fleur")
        pid = str(product["_id"])
        db[REVIEWS].insert_one({"product_id": pid, "user_id": "u1", "rating": 5})
        db[REVIEWS].insert_one({"product_id": str(other["_id"]), "user_id": "u1", "rating": 4})
        carts = CartService(db)
        carts.add_item("u1", pid)
        carts.add_item("u1", str(other["_id"]))

        catalog.delete(pid)
        assert db[PRODUCTS].find_one({"_id": product["_id"]}) is None
        assert db[REVIEWS].count_documents({"product_id": pid}) == 0
        assert db[REVIEWS].count_documents({}) == 1
        assert [i["product_id"] for i in db[CARTS].find_one({"user_id": "u1"})["items"]] == [str(other["_id"])]

        with pytest.raises(NotFoundError):
            catalog.get(pid)

    def test_list_filters(self, catalog, db):
        make_product(db, name="Oud Nocturne", collection="Noir", price=145)
        make_product(db, name="Fleur de Sel", collection="Riviera", price=89)
        make_product(db, name="Petit Musc", collection="Riviera", price=48)
        assert sorted(p["name"] for p in catalog.list_by_collection("Riviera")) == ["Fleur de Sel", "Petit Musc"]
        assert [p["price"] for p in catalog.list_products(sort="price_asc")] == [48, 89, 145]
        assert [p["name"] for p in catalog.list_products(q="fleur")] == ["Fleur de Sel"]
        assert catalog.collections() == ["Noir", "Riviera"]

    def test_search_matches_text_literally(self, catalog, db):
        make_product(db, name="Oud (Intense)", description="Dark", notes="Oud")
        make_product(db, name="Fleur de Sel", description="Salt", notes="Iris")
        assert [p["name"] for p in catalog.list_products(q="(intense")] == ["Oud (Intense)"]
        assert catalog.list_products(q=".*") == []
