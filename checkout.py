"""
Order placement and cancellation.

Both workflows touch several documents without a database transaction.
Placement undoes its own writes when a later step fails; cancellation flips
the order status with a conditional update first, so stock is only ever
restored once per order.
"""
import logging
from collections import OrderedDict
from typing import Dict, List

from pymongo.database import Database

from errors import ConflictError
from models import Orders, Products
from schemas import Order as OrderSchema, OrderItem
from validation import CreateOrderRequest

logger = logging.getLogger(__name__)


def _requested_quantities(request: CreateOrderRequest) -> Dict[str, int]:
    totals: Dict[str, int] = OrderedDict()
    for item in request.items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return totals


def _check_availability(db: Database, request: CreateOrderRequest) -> Dict[str, dict]:
    """Fetch every product in the cart, failing before any write if one is short."""
    products: Dict[str, dict] = {}
    labels = {item.product_id: item.name or item.product_id for item in request.items}
    for product_id, quantity in _requested_quantities(request).items():
        product = Products.find_by_id(db, product_id)
        if not product:
            raise ConflictError(f"Product {labels[product_id]} not found", errors={"product_id": product_id})
        available = product.get("stock", 0)
        if available < quantity:
            raise ConflictError(
                f"Insufficient stock for {product['name']}. Available: {available}",
                errors={"product_id": product_id, "available": available},
            )
        products[product_id] = product
    return products


def _snapshot_items(request: CreateOrderRequest, products: Dict[str, dict]) -> List[OrderItem]:
    items = []
    for item in request.items:
        product = products[item.product_id]
        images = product.get("images") or []
        items.append(OrderItem(
            product_id=item.product_id,
            name=product["name"],
            price=float(product["price"]),
            quantity=item.quantity,
            size=item.size,
            color=item.color,
            image=str(item.image) if item.image else (images[0] if images else None),
        ))
    return items


def place_order(db: Database, user: dict, request: CreateOrderRequest) -> dict:
    products = _check_availability(db, request)
    items = _snapshot_items(request, products)
    subtotal = round(sum(i.price * i.quantity for i in items), 2)
    total = round(subtotal + request.tax + request.shipping - request.discount, 2)
    if total < 0:
        raise ConflictError("Discount exceeds order value")

    order = Orders.save(db, OrderSchema(
        user_id=str(user["_id"]),
        items=items,
        subtotal=subtotal,
        tax=request.tax,
        shipping=request.shipping,
        discount=request.discount,
        total=total,
        currency=request.currency,
        shipping_address=request.shipping_address,
        billing_address=request.billing_address,
        payment_method=request.payment_method,
    ))

    applied = []
    try:
        for product_id, quantity in _requested_quantities(request).items():
            Products.adjust_stock(db, product_id, quantity, "decrease")
            applied.append((product_id, quantity))
    except Exception:
        _rollback(db, order, applied)
        raise

    logger.info("Order %s placed by user %s", order["order_number"], user["_id"])
    return order


def _rollback(db: Database, order: dict, applied: List[tuple]) -> None:
    logger.warning("Rolling back order %s after a failed stock update", order["order_number"])
    for product_id, quantity in applied:
        try:
            Products.adjust_stock(db, product_id, quantity, "increase")
        except Exception:
            logger.exception("Could not restore %d units of product %s", quantity, product_id)
    Orders.delete_by_id(db, order["_id"])


def cancel_order(db: Database, order_id: str, reason: str = "") -> dict:
    order = Orders.cancel(db, order_id, reason)
    for item in order["items"]:
        Products.adjust_stock(db, item["product_id"], item["quantity"], "increase")
    logger.info("Order %s cancelled, stock restored", order["order_number"])
    return order


def change_status(db: Database, order_id: str, status: str, note: str = "") -> dict:
    if status == "cancelled":
        return cancel_order(db, order_id, note)
    return Orders.update_status(db, order_id, status, note)
