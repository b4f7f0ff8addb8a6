"""
Query and update helpers for each collection.

Every helper takes the database handle explicitly. Helpers raise the errors
from ``errors`` instead of returning status flags.
"""
import logging
import math
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, parse_object_id, utcnow
from errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from schemas import (
    EmailVerification as EmailVerificationSchema,
    Order as OrderSchema,
    Product as ProductSchema,
    Session as SessionSchema,
    StatusEntry,
    User as UserSchema,
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MAX_LOGIN_ATTEMPTS = 5
LOCK_TIME = timedelta(minutes=30)
RESEND_INTERVAL = timedelta(minutes=5)
USED_TOKEN_RETENTION = timedelta(days=7)

# forward order of fulfilment; cancelled sits outside it
STATUS_FLOW = ("pending", "processing", "shipped", "delivered")
CANCELLABLE_STATUSES = ("pending", "processing")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def _paginate(collection, query: dict, page: int, limit: int, sort: List[tuple],
              projection: Optional[dict] = None) -> Tuple[List[dict], Dict[str, int]]:
    skip = (page - 1) * limit
    docs = list(collection.find(query, projection).sort(sort).skip(skip).limit(limit))
    total = collection.count_documents(query)
    return docs, {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def _regex(term: str) -> dict:
    return {"$regex": re.escape(term), "$options": "i"}


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> dict:
    rng = {}
    if start:
        rng["$gte"] = start
    if end:
        rng["$lte"] = end
    return rng


class Users:
    collection = "user"

    @staticmethod
    def create(db: Database, data: Dict[str, Any]) -> dict:
        data = dict(data)
        password = data.pop("password")
        user = UserSchema(**data, password_hash=hash_password(password))
        if db[Users.collection].find_one({"email": user.email}):
            raise ConflictError("User with this email already exists")
        try:
            user_id = create_document(db, Users.collection, user)
        except DuplicateKeyError:
            raise ConflictError("User with this email already exists")
        return db[Users.collection].find_one({"_id": parse_object_id(user_id)})

    @staticmethod
    def find_by_email(db: Database, email: str) -> Optional[dict]:
        return db[Users.collection].find_one({"email": email.strip().lower(), "is_active": True})

    @staticmethod
    def find_by_id(db: Database, user_id: Any) -> Optional[dict]:
        oid = parse_object_id(user_id)
        if oid is None:
            return None
        return db[Users.collection].find_one({"_id": oid, "is_active": True})

    @staticmethod
    def update_by_id(db: Database, user_id: Any, data: Dict[str, Any]) -> Optional[dict]:
        data = dict(data)
        password = data.pop("password", None)
        if password:
            data["password_hash"] = hash_password(password)
        data["updated_at"] = utcnow()
        oid = parse_object_id(user_id)
        res = db[Users.collection].update_one({"_id": oid}, {"$set": data}) if oid else None
        if res is None or res.matched_count == 0:
            raise NotFoundError("User not found")
        return Users.find_by_id(db, oid)

    @staticmethod
    def get_profile(db: Database, user_id: Any) -> dict:
        user = Users.find_by_id(db, user_id)
        if not user:
            raise NotFoundError("User not found")
        user.pop("password_hash", None)
        return user

    @staticmethod
    def delete_by_id(db: Database, user_id: Any) -> None:
        oid = parse_object_id(user_id)
        res = db[Users.collection].update_one(
            {"_id": oid}, {"$set": {"is_active": False, "updated_at": utcnow()}}
        ) if oid else None
        if res is None or res.matched_count == 0:
            raise NotFoundError("User not found")

    @staticmethod
    def mark_email_verified(db: Database, user_id: Any) -> Optional[dict]:
        now = utcnow()
        return Users.update_by_id(db, user_id, {"is_email_verified": True, "email_verified_at": now})

    @staticmethod
    def update_last_login(db: Database, user_id: Any) -> None:
        db[Users.collection].update_one(
            {"_id": parse_object_id(user_id)},
            {"$set": {"last_login_at": utcnow(), "login_attempts": 0, "lock_until": None, "updated_at": utcnow()}},
        )

    @staticmethod
    def increment_login_attempts(db: Database, email: str) -> Optional[int]:
        user = Users.find_by_email(db, email)
        if not user:
            return None
        doc = db[Users.collection].find_one_and_update(
            {"_id": user["_id"]},
            {"$inc": {"login_attempts": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        attempts = doc["login_attempts"]
        if attempts >= MAX_LOGIN_ATTEMPTS:
            db[Users.collection].update_one(
                {"_id": user["_id"]}, {"$set": {"lock_until": utcnow() + LOCK_TIME}}
            )
            logger.warning("Account %s locked after %d failed logins", user["_id"], attempts)
        return attempts

    @staticmethod
    def is_account_locked(db: Database, email: str) -> bool:
        user = Users.find_by_email(db, email)
        if not user:
            return False
        lock_until = user.get("lock_until")
        if not lock_until:
            return False
        if lock_until > utcnow():
            return True
        # expired lock: clear it now rather than waiting for the sweep
        db[Users.collection].update_one(
            {"_id": user["_id"]},
            {"$set": {"login_attempts": 0, "lock_until": None, "updated_at": utcnow()}},
        )
        return False

    @staticmethod
    def get_all(db: Database, page: int = 1, limit: int = 10, search: str = "") -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_active": True}
        if search:
            query["$or"] = [{"name": _regex(search)}, {"email": _regex(search)}]
        users, pagination = _paginate(
            db[Users.collection], query, page, limit, [("created_at", -1)], {"password_hash": 0}
        )
        return {"users": users, "pagination": pagination}

    @staticmethod
    def get_statistics(db: Database) -> Dict[str, Any]:
        col = db[Users.collection]
        active = col.count_documents({"is_active": True})
        verified = col.count_documents({"is_active": True, "is_email_verified": True})
        return {
            "total_users": col.count_documents({}),
            "active_users": active,
            "verified_users": verified,
            "locked_users": col.count_documents({"lock_until": {"$gt": utcnow()}}),
            "verification_rate": round(verified / active * 100, 2) if active else 0,
        }


class Products:
    collection = "product"

    @staticmethod
    def create(db: Database, data: Dict[str, Any]) -> dict:
        product = ProductSchema(**data)
        product_id = create_document(db, Products.collection, product)
        return db[Products.collection].find_one({"_id": parse_object_id(product_id)})

    @staticmethod
    def find_by_id(db: Database, product_id: Any) -> Optional[dict]:
        oid = parse_object_id(product_id)
        if oid is None:
            return None
        return db[Products.collection].find_one({"_id": oid, "is_active": True})

    @staticmethod
    def get_all(db: Database, page: int = 1, limit: int = 12, category: Optional[str] = None,
                subcategory: Optional[str] = None, brand: Optional[str] = None,
                min_price: Optional[float] = None, max_price: Optional[float] = None,
                search: Optional[str] = None, sort_by: str = "created_at", sort_order: int = -1,
                featured: Optional[bool] = None, is_new: Optional[bool] = None,
                is_sale: Optional[bool] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_active": True}
        if category:
            query["category"] = category
        if subcategory:
            query["subcategory"] = subcategory
        if brand:
            query["brand"] = brand
        if featured is not None:
            query["is_featured"] = featured
        if is_new is not None:
            query["is_new"] = is_new
        if is_sale is not None:
            query["is_sale"] = is_sale
        if min_price is not None or max_price is not None:
            query["price"] = {}
            if min_price is not None:
                query["price"]["$gte"] = min_price
            if max_price is not None:
                query["price"]["$lte"] = max_price
        if search:
            query["$or"] = [{f: _regex(search)} for f in ("name", "description", "brand", "category")]

        products, pagination = _paginate(db[Products.collection], query, page, limit, [(sort_by, sort_order)])
        return {"products": products, "pagination": pagination}

    @staticmethod
    def _flagged(db: Database, flag: str, limit: int, sort: List[tuple]) -> List[dict]:
        return list(db[Products.collection].find({"is_active": True, flag: True}).sort(sort).limit(limit))

    @staticmethod
    def get_featured(db: Database, limit: int = 8) -> List[dict]:
        return Products._flagged(db, "is_featured", limit, [("created_at", -1)])

    @staticmethod
    def get_new_arrivals(db: Database, limit: int = 8) -> List[dict]:
        return Products._flagged(db, "is_new", limit, [("created_at", -1)])

    @staticmethod
    def get_sale_products(db: Database, limit: int = 8) -> List[dict]:
        return Products._flagged(db, "is_sale", limit, [("sale_percentage", -1)])

    @staticmethod
    def get_related(db: Database, product_id: Any, category: str, limit: int = 4) -> List[dict]:
        query = {"is_active": True, "category": category, "_id": {"$ne": parse_object_id(product_id)}}
        return list(db[Products.collection].find(query).sort([("rating", -1)]).limit(limit))

    @staticmethod
    def update_by_id(db: Database, product_id: Any, data: Dict[str, Any]) -> dict:
        data = dict(data)
        data["updated_at"] = utcnow()
        oid = parse_object_id(product_id)
        res = db[Products.collection].update_one({"_id": oid}, {"$set": data}) if oid else None
        if res is None or res.matched_count == 0:
            raise NotFoundError("Product not found")
        return db[Products.collection].find_one({"_id": oid})

    @staticmethod
    def delete_by_id(db: Database, product_id: Any) -> None:
        Products.update_by_id(db, product_id, {"is_active": False})

    @staticmethod
    def get_categories(db: Database) -> List[str]:
        return sorted(c for c in db[Products.collection].distinct("category", {"is_active": True}) if c)

    @staticmethod
    def get_brands(db: Database) -> List[str]:
        return sorted(b for b in db[Products.collection].distinct("brand", {"is_active": True}) if b)

    @staticmethod
    def search(db: Database, term: str, page: int = 1, limit: int = 12) -> Dict[str, Any]:
        return Products.get_all(db, page=page, limit=limit, search=term)

    @staticmethod
    def adjust_stock(db: Database, product_id: Any, quantity: int, direction: str = "decrease") -> int:
        """Change stock by ``quantity`` and return the new level.

        The availability check and the write are one conditional update, so
        concurrent decrements can never drive stock below zero.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        oid = parse_object_id(product_id)
        if oid is None:
            raise NotFoundError("Product not found")
        col = db[Products.collection]
        now = utcnow()

        if direction == "decrease":
            doc = col.find_one_and_update(
                {"_id": oid, "is_active": True, "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                current = col.find_one({"_id": oid, "is_active": True})
                if current is None:
                    raise NotFoundError("Product not found")
                available = current.get("stock", 0)
                raise InsufficientStockError(
                    f"Insufficient stock for {current.get('name')}. Available: {available}",
                    product_id=str(oid), available=available,
                )
        elif direction == "increase":
            # restocking soft-deleted products is allowed
            doc = col.find_one_and_update(
                {"_id": oid},
                {"$inc": {"stock": quantity}, "$set": {"updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                raise NotFoundError("Product not found")
        else:
            raise ValidationError("Operation must be 'decrease' or 'increase'")
        return doc["stock"]


class Orders:
    collection = "order"

    @staticmethod
    def save(db: Database, order: OrderSchema) -> dict:
        order_id = create_document(db, Orders.collection, order)
        return Orders.find_by_id(db, order_id)

    @staticmethod
    def find_by_id(db: Database, order_id: Any) -> Optional[dict]:
        oid = parse_object_id(order_id)
        if oid is None:
            return None
        return db[Orders.collection].find_one({"_id": oid})

    @staticmethod
    def find_by_order_number(db: Database, order_number: str) -> Optional[dict]:
        return db[Orders.collection].find_one({"order_number": order_number})

    @staticmethod
    def get_by_user_id(db: Database, user_id: str, page: int = 1, limit: int = 10,
                       status: Optional[str] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": str(user_id)}
        if status:
            query["status"] = status
        orders, pagination = _paginate(db[Orders.collection], query, page, limit, [("created_at", -1)])
        return {"orders": orders, "pagination": pagination}

    @staticmethod
    def get_all(db: Database, page: int = 1, limit: int = 20, status: Optional[str] = None,
                payment_status: Optional[str] = None, start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None, search: Optional[str] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if payment_status:
            query["payment_status"] = payment_status
        created = _date_range(start_date, end_date)
        if created:
            query["created_at"] = created
        if search:
            query["$or"] = [
                {"order_number": _regex(search)},
                {"shipping_address.email": _regex(search)},
                {"shipping_address.first_name": _regex(search)},
                {"shipping_address.last_name": _regex(search)},
            ]
        orders, pagination = _paginate(db[Orders.collection], query, page, limit, [("created_at", -1)])
        return {"orders": orders, "pagination": pagination}

    @staticmethod
    def transition(db: Database, order_id: Any, status: str, note: str,
                   allowed_from: List[str]) -> Optional[dict]:
        """Move an order to ``status`` if it is currently in ``allowed_from``.

        Returns the updated order, or None when the order is missing or in
        another state. History entries are only ever appended.
        """
        oid = parse_object_id(order_id)
        if oid is None:
            return None
        entry = StatusEntry(status=status, note=note or "")
        return db[Orders.collection].find_one_and_update(
            {"_id": oid, "status": {"$in": list(allowed_from)}},
            {"$set": {"status": status, "updated_at": utcnow()},
             "$push": {"status_history": entry.model_dump()}},
            return_document=ReturnDocument.AFTER,
        )

    @staticmethod
    def update_status(db: Database, order_id: Any, status: str, note: str = "") -> dict:
        if status not in STATUS_FLOW:
            raise ValidationError(f"Invalid order status: {status}")
        allowed_from = STATUS_FLOW[:STATUS_FLOW.index(status)]
        doc = Orders.transition(db, order_id, status, note, allowed_from)
        if doc is None:
            current = Orders.find_by_id(db, order_id)
            if current is None:
                raise NotFoundError("Order not found")
            raise ConflictError(f"Cannot change order status from {current['status']} to {status}")
        return doc

    @staticmethod
    def cancel(db: Database, order_id: Any, reason: str = "") -> dict:
        doc = Orders.transition(db, order_id, "cancelled", reason or "Order cancelled", CANCELLABLE_STATUSES)
        if doc is None:
            current = Orders.find_by_id(db, order_id)
            if current is None:
                raise NotFoundError("Order not found")
            if current["status"] == "cancelled":
                raise ConflictError("Order is already cancelled")
            raise ConflictError("Cannot cancel order that has been shipped or delivered")
        return doc

    @staticmethod
    def _set(db: Database, order_id: Any, data: Dict[str, Any]) -> dict:
        data["updated_at"] = utcnow()
        oid = parse_object_id(order_id)
        doc = db[Orders.collection].find_one_and_update(
            {"_id": oid}, {"$set": data}, return_document=ReturnDocument.AFTER
        ) if oid else None
        if doc is None:
            raise NotFoundError("Order not found")
        return doc

    @staticmethod
    def update_payment_status(db: Database, order_id: Any, payment_status: str,
                              payment_id: Optional[str] = None) -> dict:
        data: Dict[str, Any] = {"payment_status": payment_status}
        if payment_id:
            data["payment_id"] = payment_id
        return Orders._set(db, order_id, data)

    @staticmethod
    def add_tracking(db: Database, order_id: Any, tracking_number: str,
                     estimated_delivery: Optional[datetime] = None) -> dict:
        data: Dict[str, Any] = {"tracking_number": tracking_number}
        if estimated_delivery:
            data["estimated_delivery"] = estimated_delivery
        return Orders._set(db, order_id, data)

    @staticmethod
    def delete_by_id(db: Database, order_id: Any) -> None:
        db[Orders.collection].delete_one({"_id": parse_object_id(order_id)})

    @staticmethod
    def get_statistics(db: Database, start_date: Optional[datetime] = None,
                       end_date: Optional[datetime] = None) -> Dict[str, Any]:
        match: Dict[str, Any] = {}
        created = _date_range(start_date, end_date)
        if created:
            match["created_at"] = created
        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$total"}}},
        ]
        rows = list(db[Orders.collection].aggregate(pipeline))
        total_orders = sum(r["count"] for r in rows)
        total_revenue = round(sum(r["revenue"] for r in rows), 2)
        stats = {
            "total_orders": total_orders,
            "total_revenue": total_revenue,
            "average_order_value": round(total_revenue / total_orders, 2) if total_orders else 0,
        }
        by_status = {r["_id"]: r["count"] for r in rows}
        for status in STATUS_FLOW + ("cancelled",):
            stats[f"{status}_orders"] = by_status.get(status, 0)
        return stats


class EmailVerifications:
    collection = "emailverification"

    @staticmethod
    def _from_doc(doc: Optional[dict]) -> Optional[EmailVerificationSchema]:
        if not doc:
            return None
        return EmailVerificationSchema(**doc, id=str(doc["_id"]))

    @staticmethod
    def save(db: Database, record: EmailVerificationSchema) -> EmailVerificationSchema:
        """Store a token, dropping any other live one for the same email and type."""
        col = db[EmailVerifications.collection]
        col.delete_many({"email": record.email, "type": record.type, "is_used": False})
        record.id = create_document(db, EmailVerifications.collection, record)
        return record

    @staticmethod
    def _find_live(db: Database, query: dict) -> Optional[EmailVerificationSchema]:
        query = dict(query, is_used=False, expires_at={"$gt": utcnow()})
        return EmailVerifications._from_doc(db[EmailVerifications.collection].find_one(query))

    @staticmethod
    def find_by_token(db: Database, token: str, type: str = "verification") -> Optional[EmailVerificationSchema]:
        return EmailVerifications._find_live(db, {"token": token, "type": type})

    @staticmethod
    def find_by_email(db: Database, email: str, type: str = "verification") -> Optional[EmailVerificationSchema]:
        return EmailVerifications._find_live(db, {"email": email.strip().lower(), "type": type})

    @staticmethod
    def find_by_user_id(db: Database, user_id: Any, type: str = "verification") -> Optional[EmailVerificationSchema]:
        return EmailVerifications._find_live(db, {"user_id": str(user_id), "type": type})

    @staticmethod
    def mark_as_used(db: Database, record: EmailVerificationSchema) -> bool:
        """Consume the token. False if someone else consumed it first."""
        res = db[EmailVerifications.collection].update_one(
            {"_id": parse_object_id(record.id), "is_used": False},
            {"$set": {"is_used": True, "updated_at": utcnow()}},
        )
        record.is_used = True
        return res.modified_count == 1

    # no route counts attempts; operator scripts use this to burn a token
    @staticmethod
    def increment_attempts(db: Database, record: EmailVerificationSchema) -> EmailVerificationSchema:
        db[EmailVerifications.collection].update_one(
            {"_id": parse_object_id(record.id)},
            {"$inc": {"attempts": 1}, "$set": {"updated_at": utcnow()}},
        )
        record.attempts += 1
        return record

    @staticmethod
    def delete(db: Database, record: EmailVerificationSchema) -> None:
        db[EmailVerifications.collection].delete_one({"_id": parse_object_id(record.id)})

    @staticmethod
    def can_resend(db: Database, email: str, type: str = "verification") -> bool:
        recent = db[EmailVerifications.collection].find_one({
            "email": email.strip().lower(),
            "type": type,
            "created_at": {"$gt": utcnow() - RESEND_INTERVAL},
        })
        return recent is None

    @staticmethod
    def cleanup_expired(db: Database) -> int:
        now = utcnow()
        result = db[EmailVerifications.collection].delete_many({
            "$or": [
                {"expires_at": {"$lt": now}},
                {"is_used": True, "updated_at": {"$lt": now - USED_TOKEN_RETENTION}},
            ]
        })
        return result.deleted_count

    @staticmethod
    def get_statistics(db: Database, start_date: Optional[datetime] = None,
                       end_date: Optional[datetime] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        created = _date_range(start_date, end_date)
        if created:
            query["created_at"] = created
        now = utcnow()
        totals = {"total": 0, "verified": 0, "expired": 0, "pending": 0}
        by_type: Dict[str, Dict[str, int]] = {}
        for doc in db[EmailVerifications.collection].find(query, {"type": 1, "is_used": 1, "expires_at": 1}):
            if doc.get("is_used"):
                bucket = "verified"
            elif doc["expires_at"] < now:
                bucket = "expired"
            else:
                bucket = "pending"
            entry = by_type.setdefault(doc["type"], {"total": 0, "verified": 0, "expired": 0, "pending": 0})
            for counts in (totals, entry):
                counts["total"] += 1
                counts[bucket] += 1
        rate = round(totals["verified"] / totals["total"] * 100, 2) if totals["total"] else 0
        return {**totals, "verification_rate": rate, "type_breakdown": by_type}

    @staticmethod
    def get_user_history(db: Database, user_id: Any, limit: int = 10) -> List[EmailVerificationSchema]:
        cursor = db[EmailVerifications.collection].find({"user_id": str(user_id)}).sort([("created_at", -1)]).limit(limit)
        return [EmailVerifications._from_doc(doc) for doc in cursor]


class Sessions:
    collection = "session"

    @staticmethod
    def create(db: Database, user_id: Any, ttl_days: int = 7) -> str:
        token = secrets.token_urlsafe(32)
        session = SessionSchema(user_id=str(user_id), token=token, expires_at=utcnow() + timedelta(days=ttl_days))
        create_document(db, Sessions.collection, session)
        return token

    @staticmethod
    def get_user(db: Database, token: str) -> Optional[dict]:
        session = db[Sessions.collection].find_one({"token": token})
        if not session or session["expires_at"] < utcnow():
            return None
        return Users.find_by_id(db, session["user_id"])

    @staticmethod
    def delete(db: Database, token: str) -> None:
        db[Sessions.collection].delete_one({"token": token})

    @staticmethod
    def delete_for_user(db: Database, user_id: Any, keep: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"user_id": str(user_id)}
        if keep:
            query["token"] = {"$ne": keep}
        return db[Sessions.collection].delete_many(query).deleted_count

    @staticmethod
    def cleanup_expired(db: Database) -> int:
        return db[Sessions.collection].delete_many({"expires_at": {"$lt": utcnow()}}).deleted_count
