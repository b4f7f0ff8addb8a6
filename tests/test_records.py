import re
from datetime import timedelta

import pytest

from conftest import ADDRESS, make_user
from database import to_dict, utcnow
from errors import ConflictError, NotFoundError
from models import EmailVerifications, Sessions, Users
from schemas import EmailVerification, Order, OrderItem, generate_order_number


def _verification(**kwargs):
    data = {"email": "Eve@Shopper.io", "token": "t" * 64, "user_id": "u1"}
    data.update(kwargs)
    return EmailVerification(**data)


def test_verification_defaults():
    record = _verification()
    assert record.email == "eve@shopper.io"
    assert timedelta(hours=23) < record.expires_at - utcnow() <= timedelta(hours=24)

    reset = _verification(type="password-reset")
    assert reset.expires_at - utcnow() <= timedelta(hours=1)


def test_verification_validity():
    now = utcnow()
    assert _verification().is_valid()
    assert not _verification(is_used=True).is_valid()
    assert not _verification(expires_at=now - timedelta(seconds=1)).is_valid()
    assert not _verification(attempts=3).is_valid()
    assert _verification(attempts=2).is_valid()
    # expiry is inclusive
    assert _verification(expires_at=now).is_expired(now)


def test_issuing_replaces_live_token(db):
    EmailVerifications.save(db, _verification(token="first"))
    EmailVerifications.save(db, _verification(token="second"))
    EmailVerifications.save(db, _verification(token="reset", type="password-reset"))

    assert EmailVerifications.find_by_token(db, "first") is None
    assert EmailVerifications.find_by_token(db, "second").token == "second"
    assert EmailVerifications.find_by_token(db, "reset") is None
    assert EmailVerifications.find_by_token(db, "reset", "password-reset") is not None


def test_used_token_is_never_valid_again(db):
    record = EmailVerifications.save(db, _verification())

    assert EmailVerifications.mark_as_used(db, record) is True
    assert EmailVerifications.mark_as_used(db, record) is False
    assert EmailVerifications.find_by_token(db, record.token) is None
    assert EmailVerifications.find_by_email(db, "eve@shopper.io") is None


def test_attempts_exhaust_token(db):
    record = EmailVerifications.save(db, _verification())
    for _ in range(3):
        EmailVerifications.increment_attempts(db, record)

    stored = EmailVerifications.find_by_user_id(db, "u1")
    assert stored.attempts == 3
    assert not stored.is_valid()


def test_cleanup_expired_tokens(db):
    EmailVerifications.save(db, _verification(token="live"))
    EmailVerifications.save(db, _verification(token="stale", type="password-reset",
                                              expires_at=utcnow() - timedelta(minutes=1)))
    used = EmailVerifications.save(db, _verification(token="used", email="old@shopper.io"))
    EmailVerifications.mark_as_used(db, used)
    db["emailverification"].update_one({"token": "used"}, {"$set": {"updated_at": utcnow() - timedelta(days=8)}})

    assert EmailVerifications.cleanup_expired(db) == 2
    assert [d["token"] for d in db["emailverification"].find()] == ["live"]


def test_verification_statistics_and_history(db):
    EmailVerifications.save(db, _verification(token="a"))
    used = EmailVerifications.save(db, _verification(token="b", email="two@shopper.io"))
    EmailVerifications.mark_as_used(db, used)
    EmailVerifications.save(db, _verification(token="c", type="password-reset",
                                              expires_at=utcnow() - timedelta(minutes=1)))

    stats = EmailVerifications.get_statistics(db)
    assert (stats["total"], stats["verified"], stats["expired"], stats["pending"]) == (3, 1, 1, 1)
    assert stats["verification_rate"] == 33.33
    assert stats["type_breakdown"]["password-reset"]["expired"] == 1

    history = EmailVerifications.get_user_history(db, "u1")
    assert {h.token for h in history} == {"a", "b", "c"}


def test_resend_window(db):
    assert EmailVerifications.can_resend(db, "eve@shopper.io")
    EmailVerifications.save(db, _verification())
    assert not EmailVerifications.can_resend(db, "eve@shopper.io")
    assert EmailVerifications.can_resend(db, "eve@shopper.io", "password-reset")


def test_user_create_hashes_password(db):
    user, _ = make_user(db, "  Frank@Shopper.io ")

    assert user["email"] == "frank@shopper.io"
    assert "password" not in user
    assert user["password_hash"] != "secret123"
    with pytest.raises(ConflictError):
        Users.create(db, {"name": "Frank", "email": "frank@shopper.io", "password": "another1"})


def test_lock_counts_and_statistics(db):
    user, _ = make_user(db, "gina@shopper.io")
    attempts = [Users.increment_login_attempts(db, "gina@shopper.io") for _ in range(5)]

    assert attempts == [1, 2, 3, 4, 5]
    assert Users.is_account_locked(db, "gina@shopper.io")
    assert Users.increment_login_attempts(db, "nobody@shopper.io") is None
    assert Users.get_statistics(db)["locked_users"] == 1


def test_user_updates(db):
    user, _ = make_user(db, "hal@shopper.io")

    updated = Users.update_by_id(db, user["_id"], {"password": "changed1", "phone": "+1 555 0100"})
    assert "password" not in updated
    assert updated["password_hash"] != user["password_hash"]
    assert "password_hash" not in Users.get_profile(db, user["_id"])

    with pytest.raises(NotFoundError):
        Users.update_by_id(db, "0123456789abcdef01234567", {"name": "Ghost"})
    with pytest.raises(NotFoundError):
        Users.delete_by_id(db, "bad-id")


def test_sessions_expire(db):
    user, _ = make_user(db, "ivy@shopper.io")
    token = Sessions.create(db, user["_id"], ttl_days=1)
    assert Sessions.get_user(db, token)["email"] == "ivy@shopper.io"

    db["session"].update_one({"token": token}, {"$set": {"expires_at": utcnow() - timedelta(seconds=1)}})
    assert Sessions.get_user(db, token) is None
    assert Sessions.cleanup_expired(db) == 1
    assert Sessions.delete_for_user(db, user["_id"]) == 1


def test_order_number_format():
    numbers = {generate_order_number() for _ in range(50)}
    assert len(numbers) == 50
    assert all(re.fullmatch(r"ORD-\d{6}[A-Z0-9]{6}", n) for n in numbers)


def test_order_defaults():
    item = OrderItem(product_id="p1", name="Cap", price=10, quantity=1)
    order = Order(user_id="u1", items=[item], subtotal=10, total=10, shipping_address=ADDRESS, payment_method="card")

    assert order.billing_address == order.shipping_address
    assert [(h.status, h.note) for h in order.status_history] == [("pending", "Order created")]
    assert order.payment_status == "pending"


def test_to_dict_stringifies_ids(db):
    user, _ = make_user(db, "jo@shopper.io")
    data = to_dict({"_id": user["_id"], "nested": [{"ref": user["_id"]}]})

    assert data == {"id": str(user["_id"]), "nested": [{"ref": str(user["_id"])}]}
