import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import PRODUCTS, TRANSACTIONS, USERS, create_document, ensure_indexes, get_db
from images import ImageStore
from notifications import Mailer, OrderNotifier
from receipts import ReceiptRenderer
from text_filter import PassThroughFilter, TextFilter


class FakeMailer(Mailer):
    """Records messages in memory for test assertions."""

    def __init__(self):
        self.sent_emails = []
        self.should_succeed = True
        self.failure_reason = "Email delivery failed"

    def configure(self, should_succeed=True, failure_reason="Email delivery failed"):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def send(self, to, subject, html_body, text_body, attachments=None):
        if not self.should_succeed:
            return {"message_id": None, "status": "failed", "error": self.failure_reason}
        message_id = f"email-{len(self.sent_emails) + 1}"
        self.sent_emails.append(
            {
                "message_id": message_id,
                "to": to,
                "subject": subject,
                "html_body": html_body,
                "text_body": text_body,
                "attachments": attachments or [],
            }
        )
        return {"message_id": message_id, "status": "sent"}


class ShoutingFilter(TextFilter):
    def filter(self, text):
        return text.replace("awful", "*****")


class BrokenFilter(TextFilter):
    def filter(self, text):
        raise RuntimeError("word list not loaded")


@pytest.fixture()
def db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture()
def mailer():
    return FakeMailer()


@pytest.fixture()
def notifier(mailer):
    return OrderNotifier(mailer, ReceiptRenderer(store_name="Test Parfum"), store_name="Test Parfum")


@pytest.fixture()
def image_store(tmp_path):
    return ImageStore(root=str(tmp_path / "uploads"))


@pytest.fixture()
def client(db, mailer, image_store):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_mailer] = lambda: mailer
    main.app.dependency_overrides[main.get_text_filter] = lambda: PassThroughFilter()
    main.app.dependency_overrides[main.get_image_store] = lambda: image_store
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


# ----------------------------------------------------------------------------
# Data helpers
# ----------------------------------------------------------------------------

def make_product(db, **overrides):
    data = {
        "name": "Oud Nocturne",
        "description": "Smoky oud",
        "notes": "Oud, rose",
        "price": 30.0,
        "collection": "Noir",
        "category": "fragrance",
        "volume": "100ml",
        "stock": 10,
        "images": ["/uploads/products/oud.jpg"],
        "average_rating": 0,
        "review_count": 0,
    }
    data.update(overrides)
    return create_document(db, PRODUCTS, data)


def make_user(db, name="Ada", email="ada@example.com", is_admin=False):
    user = create_document(
        db, USERS, {"name": name, "email": email, "password_hash": None, "is_admin": is_admin, "is_active": True}
    )
    token = main.create_access_token({"sub": str(user["_id"])})
    return user, {"Authorization": f"Bearer {token}"}


def make_transaction(db, user_id, product_ids, status="completed", email="ada@example.com"):
    items = [
        {"product_id": str(pid), "name": "Item", "price": 30.0, "quantity": 1, "image": None, "collection": "Noir"}
        for pid in product_ids
    ]
    return create_document(
        db,
        TRANSACTIONS,
        {
            "user_id": str(user_id),
            "email": email,
            "items": items,
            "subtotal": 30.0 * len(items),
            "tax": 0,
            "shipping": 0,
            "total": 30.0 * len(items),
            "status": status,
            "completed_at": None,
        },
    )
