import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level stores open their database at import time.
_DATA_DIR = tempfile.mkdtemp(prefix="companion-tests-")
os.environ["COMPANION_DB_PATH"] = os.path.join(_DATA_DIR, "companion.sqlite3")
os.environ.setdefault("SAFETY_WEBHOOK_URL", "")
os.environ.pop("FIREBASE_CREDENTIALS_PATH", None)

from app.models import Actor, BookingCreateRequest  # noqa: E402
from app.services.booking_store import BookingStore  # noqa: E402
from app.services.document_store import DocumentStore  # noqa: E402
from app.services.payments import LocalPaymentGateway  # noqa: E402
from app.services.profile_store import ProfileStore  # noqa: E402

REQUESTER = Actor(user_id="user_1")
FRIEND = Actor(user_id="friend_1")
STRANGER = Actor(user_id="user_2")
ADMIN = Actor(user_id="admin_1", role="admin")


def booking_request(friend_id="friend_1", package_id="pkg_1", hours=3, start=None) -> BookingCreateRequest:
    start = start or datetime(2026, 11, 20, 18, 0, tzinfo=timezone.utc)
    return BookingCreateRequest(
        friend_id=friend_id,
        package_id=package_id,
        situation={
            "description": "Cousin's wedding reception, need a plus-one who can dance",
            "category": "wedding",
            "urgency": "soon",
        },
        start_time=start,
        end_time=start + timedelta(hours=hours),
        location={"address": "Leela Palace, Bengaluru"},
    )


@pytest.fixture
def stores(tmp_path):
    documents = DocumentStore(db_path=str(tmp_path / "companion.sqlite3"))
    profiles = ProfileStore(documents)
    gateway = LocalPaymentGateway(secret="test-secret", webhook_secret="test-webhook-secret")
    bookings = BookingStore(documents, profiles, gateway)
    return SimpleNamespace(documents=documents, profiles=profiles, gateway=gateway, bookings=bookings)


def advance(bookings: BookingStore, booking_id: str, *statuses: str):
    booking = None
    for status in statuses:
        booking = bookings.update_status(FRIEND, booking_id, status)
    return booking
