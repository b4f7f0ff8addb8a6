import logging
import os
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import bearer_token, ensure_owner_or_admin, get_current_user, require_admin
from checkout import cancel_order, change_status, place_order
from cleanup_service import CleanupService
from config import configure_logging, get_settings
from database import connect, create_indexes, get_db, get_optional_db, health_check, to_dict
from email_service import EmailService
from errors import (
    AccountLockedError,
    AppError,
    AuthenticationError,
    EmailDeliveryError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from models import (
    EmailVerifications,
    Orders,
    Products,
    Sessions,
    Users,
    pwd_context,
    verify_password,
)
from schemas import EmailVerification as EmailVerificationSchema
from validation import (
    CancelOrderRequest,
    ChangePasswordRequest,
    CreateOrderRequest,
    ForgotPasswordRequest,
    LoginRequest,
    OrderFilters,
    OrderStatusUpdate,
    PaymentStatusUpdate,
    ProductCreate,
    ProductFilters,
    ProductUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    SearchQuery,
    StockUpdate,
    TrackingUpdate,
    UpdateProfileRequest,
    UserFilters,
    UserOrderFilters,
    VerifyEmailRequest,
)

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    pwd_context.update(bcrypt__rounds=settings.bcrypt_rounds)
    client, db = connect(settings)
    create_indexes(db)
    app.state.db = db
    app.state.email_service = EmailService(settings)
    app.state.cleanup = CleanupService(db)
    if settings.enable_maintenance:
        app.state.cleanup.start()
    try:
        yield
    finally:
        app.state.cleanup.stop()
        client.close()
        logger.info("Database connection closed")


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Envelope
def envelope(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _failure(status_code: int, message: str, errors=None) -> JSONResponse:
    content = {"success": False, "message": message}
    if errors is not None:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return _failure(exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header"))
        messages.append(f"{field}: {err['msg']}" if field else err["msg"])
    return _failure(400, "Validation error", ", ".join(messages))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _failure(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _failure(500, "Internal server error")


def get_email_service(request: Request) -> EmailService:
    service = getattr(request.app.state, "email_service", None)
    return service or EmailService(settings)


def get_cleanup_service(request: Request, db: Database = Depends(get_db)) -> CleanupService:
    service = getattr(request.app.state, "cleanup", None)
    return service or CleanupService(db)


def public_user(user: dict) -> dict:
    data = to_dict(user)
    data.pop("password_hash", None)
    return data


# Health
@app.get("/")
def read_root():
    return {"message": "Storefront backend running"}


@app.get("/test")
def test_database(db: Optional[Database] = Depends(get_optional_db)):
    status = health_check(db)
    result = {"backend": "ok", "db": status["status"] if db is not None else "not_configured"}
    if db is not None:
        try:
            result["collections"] = db.list_collection_names()
        except PyMongoError as e:
            result["db"] = f"error: {str(e)[:80]}"
    if "error" in status:
        result["error"] = status["error"]
    return result


# Auth
@app.post("/api/auth/register", status_code=201)
def register(body: RegisterRequest, db: Database = Depends(get_db),
             mailer: EmailService = Depends(get_email_service)):
    user = Users.create(db, body.model_dump())

    token = mailer.generate_verification_token()
    EmailVerifications.save(db, EmailVerificationSchema(
        user_id=str(user["_id"]), email=user["email"], token=token, type="verification",
    ))
    sent = True
    try:
        mailer.send_verification_email(user["email"], user["name"], token)
    except EmailDeliveryError:
        # registration stands; the user can ask for another link
        logger.warning("Verification email not sent for user %s", user["_id"])
        sent = False

    session = Sessions.create(db, user["_id"], settings.session_ttl_days)
    return envelope(
        {"user": public_user(user), "token": session, "email_verification_sent": sent},
        "User registered successfully. Please check your email to verify your account.",
    )


@app.post("/api/auth/login")
def login(body: LoginRequest, db: Database = Depends(get_db)):
    if Users.is_account_locked(db, body.email):
        raise AccountLockedError(
            "Account is temporarily locked due to too many failed login attempts. Please try again later."
        )
    user = Users.find_by_email(db, body.email)
    if not user:
        raise AuthenticationError("Invalid email or password")
    if not verify_password(body.password, user.get("password_hash")):
        Users.increment_login_attempts(db, body.email)
        raise AuthenticationError("Invalid email or password")

    Users.update_last_login(db, user["_id"])
    token = Sessions.create(db, user["_id"], settings.session_ttl_days)
    return envelope({"user": public_user(Users.find_by_id(db, user["_id"])), "token": token}, "Login successful")


@app.get("/api/auth/profile")
def get_profile(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope({"user": to_dict(Users.get_profile(db, user["_id"]))})


@app.put("/api/auth/profile")
def update_profile(body: UpdateProfileRequest, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No fields to update")
    updated = Users.update_by_id(db, user["_id"], changes)
    return envelope({"user": public_user(updated)}, "Profile updated successfully")


@app.put("/api/auth/change-password")
def change_password(body: ChangePasswordRequest, token: str = Depends(bearer_token),
                    user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not verify_password(body.current_password, user.get("password_hash")):
        raise ValidationError("Current password is incorrect")
    Users.update_by_id(db, user["_id"], {"password": body.new_password})
    Sessions.delete_for_user(db, user["_id"], keep=token)
    return envelope(message="Password changed successfully")


@app.post("/api/auth/verify-token")
def verify_token(user: dict = Depends(get_current_user)):
    return envelope(
        {"user_id": str(user["_id"]), "email": user["email"], "name": user["name"]},
        "Token is valid",
    )


@app.post("/api/auth/logout")
def logout(token: str = Depends(bearer_token), user: dict = Depends(get_current_user),
           db: Database = Depends(get_db)):
    Sessions.delete(db, token)
    return envelope(message="Logout successful")


@app.post("/api/auth/verify-email")
def verify_email(body: VerifyEmailRequest, db: Database = Depends(get_db),
                 mailer: EmailService = Depends(get_email_service)):
    record = EmailVerifications.find_by_token(db, body.token, "verification")
    if record is None or not record.is_valid():
        raise ValidationError("Invalid or expired verification token")
    if Users.find_by_id(db, record.user_id) is None:
        # account was deactivated after the token went out
        EmailVerifications.delete(db, record)
        raise ValidationError("Invalid or expired verification token")
    if not EmailVerifications.mark_as_used(db, record):
        raise ValidationError("Invalid or expired verification token")

    user = Users.mark_email_verified(db, record.user_id)
    try:
        mailer.send_welcome_email(user["email"], user["name"])
    except EmailDeliveryError:
        logger.warning("Welcome email not sent for user %s", user["_id"])
    return envelope({"user": public_user(user)}, "Email verified successfully!")


@app.post("/api/auth/resend-verification")
def resend_verification(user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                        mailer: EmailService = Depends(get_email_service)):
    if user.get("is_email_verified"):
        raise ValidationError("Email is already verified")
    if not EmailVerifications.can_resend(db, user["email"], "verification"):
        raise RateLimitError("Please wait 5 minutes before requesting another verification email")

    token = mailer.generate_verification_token()
    EmailVerifications.save(db, EmailVerificationSchema(
        user_id=str(user["_id"]), email=user["email"], token=token, type="verification",
    ))
    mailer.send_verification_email(user["email"], user["name"], token)
    return envelope(message="Verification email sent successfully")


RESET_REQUESTED = "If an account with that email exists, a password reset link has been sent"


@app.post("/api/auth/forgot-password")
def forgot_password(body: ForgotPasswordRequest, db: Database = Depends(get_db),
                    mailer: EmailService = Depends(get_email_service)):
    user = Users.find_by_email(db, body.email)
    if not user:
        return envelope(message=RESET_REQUESTED)
    if not EmailVerifications.can_resend(db, user["email"], "password-reset"):
        raise RateLimitError("Please wait 5 minutes before requesting another password reset")

    token = mailer.generate_reset_token()
    EmailVerifications.save(db, EmailVerificationSchema(
        user_id=str(user["_id"]), email=user["email"], token=token, type="password-reset",
    ))
    mailer.send_password_reset_email(user["email"], user["name"], token)
    return envelope(message=RESET_REQUESTED)


@app.post("/api/auth/reset-password")
def reset_password(body: ResetPasswordRequest, db: Database = Depends(get_db)):
    record = EmailVerifications.find_by_token(db, body.token, "password-reset")
    if record is None or not record.is_valid():
        raise ValidationError("Invalid or expired reset token")
    if Users.find_by_id(db, record.user_id) is None:
        EmailVerifications.delete(db, record)
        raise ValidationError("Invalid or expired reset token")
    if not EmailVerifications.mark_as_used(db, record):
        raise ValidationError("Invalid or expired reset token")

    Users.update_by_id(db, record.user_id, {
        "password": body.new_password, "login_attempts": 0, "lock_until": None,
    })
    revoked = Sessions.delete_for_user(db, record.user_id)
    logger.info("Password reset for user %s, %d sessions revoked", record.user_id, revoked)
    return envelope(message="Password reset successfully")


@app.get("/api/auth/email-status")
def email_status(user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                 mailer: EmailService = Depends(get_email_service)):
    verified = bool(user.get("is_email_verified"))
    pending = EmailVerifications.find_by_user_id(db, user["_id"], "verification")
    return envelope({
        "is_email_verified": verified,
        "email_verified_at": user.get("email_verified_at"),
        "has_pending_verification": pending is not None,
        "can_resend_verification": not verified and EmailVerifications.can_resend(db, user["email"]),
        "recent_verifications": [
            r.model_dump(include={"type", "is_used", "expires_at"})
            for r in EmailVerifications.get_user_history(db, user["_id"], limit=5)
        ],
        "email_service": mailer.get_status(),
    })


# Products
@app.get("/api/products")
def list_products(filters: Annotated[ProductFilters, Query()], db: Database = Depends(get_db)):
    result = Products.get_all(db, **filters.model_dump())
    return envelope({
        "products": [to_dict(p) for p in result["products"]],
        "pagination": result["pagination"],
    })


@app.get("/api/products/featured")
def featured_products(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    return envelope([to_dict(p) for p in Products.get_featured(db, limit)])


@app.get("/api/products/new-arrivals")
def new_arrivals(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    return envelope([to_dict(p) for p in Products.get_new_arrivals(db, limit)])


@app.get("/api/products/sale")
def sale_products(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    return envelope([to_dict(p) for p in Products.get_sale_products(db, limit)])


@app.get("/api/products/categories")
def product_categories(db: Database = Depends(get_db)):
    return envelope(Products.get_categories(db))


@app.get("/api/products/brands")
def product_brands(db: Database = Depends(get_db)):
    return envelope(Products.get_brands(db))


@app.get("/api/products/search")
def search_products(query: Annotated[SearchQuery, Query()], db: Database = Depends(get_db)):
    result = Products.search(db, query.q, query.page, query.limit)
    return envelope({
        "products": [to_dict(p) for p in result["products"]],
        "pagination": result["pagination"],
        "query": query.q,
    })


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = Products.find_by_id(db, product_id)
    if not product:
        raise NotFoundError("Product not found")
    related = Products.get_related(db, product["_id"], product["category"], 4)
    return envelope({"product": to_dict(product), "related_products": [to_dict(p) for p in related]})


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreate, admin: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    product = Products.create(db, body.model_dump(mode="json"))
    logger.info("Product %s created by %s", product["_id"], admin["_id"])
    return envelope(to_dict(product), "Product created successfully")


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, admin: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    changes = body.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise ValidationError("No fields to update")
    return envelope(to_dict(Products.update_by_id(db, product_id, changes)), "Product updated successfully")


@app.put("/api/products/{product_id}/stock")
def update_stock(product_id: str, body: StockUpdate, admin: dict = Depends(require_admin),
                 db: Database = Depends(get_db)):
    stock = Products.adjust_stock(db, product_id, body.quantity, body.operation)
    return envelope({"product_id": product_id, "stock": stock}, "Stock updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    Products.delete_by_id(db, product_id)
    return envelope(message="Product deleted successfully")


# Orders
@app.post("/api/orders", status_code=201)
def create_order(body: CreateOrderRequest, user: dict = Depends(get_current_user),
                 db: Database = Depends(get_db), mailer: EmailService = Depends(get_email_service)):
    order = place_order(db, user, body)
    try:
        mailer.send_order_confirmation_email(user["email"], user["name"], order)
    except EmailDeliveryError:
        logger.warning("Confirmation email not sent for order %s", order["order_number"])
    return envelope(to_dict(order), "Order created successfully")


@app.get("/api/orders")
def my_orders(filters: Annotated[UserOrderFilters, Query()], user: dict = Depends(get_current_user),
              db: Database = Depends(get_db)):
    result = Orders.get_by_user_id(db, str(user["_id"]), filters.page, filters.limit, filters.status)
    return envelope({"orders": [to_dict(o) for o in result["orders"]], "pagination": result["pagination"]})


@app.get("/api/orders/all")
def all_orders(filters: Annotated[OrderFilters, Query()], admin: dict = Depends(require_admin),
               db: Database = Depends(get_db)):
    result = Orders.get_all(db, **filters.model_dump())
    return envelope({"orders": [to_dict(o) for o in result["orders"]], "pagination": result["pagination"]})


@app.get("/api/orders/statistics")
def order_statistics(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return envelope(Orders.get_statistics(db))


@app.get("/api/orders/track/{order_number}")
def track_order(order_number: str, db: Database = Depends(get_db)):
    order = Orders.find_by_order_number(db, order_number)
    if not order:
        raise NotFoundError("Order not found")
    return envelope({
        "order_number": order["order_number"],
        "status": order["status"],
        "status_history": order.get("status_history", []),
        "tracking_number": order.get("tracking_number"),
        "estimated_delivery": order.get("estimated_delivery"),
        "created_at": order.get("created_at"),
    })


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = Orders.find_by_id(db, order_id)
    if not order:
        raise NotFoundError("Order not found")
    ensure_owner_or_admin(user, order["user_id"])
    return envelope(to_dict(order))


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusUpdate, admin: dict = Depends(require_admin),
                        db: Database = Depends(get_db)):
    order = change_status(db, order_id, body.status, body.note)
    return envelope(to_dict(order), "Order status updated successfully")


@app.put("/api/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, body: PaymentStatusUpdate, admin: dict = Depends(require_admin),
                          db: Database = Depends(get_db)):
    order = Orders.update_payment_status(db, order_id, body.payment_status, body.payment_id)
    return envelope(to_dict(order), "Payment status updated successfully")


@app.put("/api/orders/{order_id}/tracking")
def add_tracking(order_id: str, body: TrackingUpdate, admin: dict = Depends(require_admin),
                 db: Database = Depends(get_db)):
    order = Orders.add_tracking(db, order_id, body.tracking_number, body.estimated_delivery)
    return envelope(to_dict(order), "Tracking information added successfully")


@app.put("/api/orders/{order_id}/cancel")
def cancel_user_order(order_id: str, body: Optional[CancelOrderRequest] = None,
                      user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = Orders.find_by_id(db, order_id)
    if not order:
        raise NotFoundError("Order not found")
    ensure_owner_or_admin(user, order["user_id"])
    cancelled = cancel_order(db, order_id, body.reason if body else "")
    return envelope(to_dict(cancelled), "Order cancelled successfully")


# Users (admin)
@app.get("/api/users")
def list_users(filters: Annotated[UserFilters, Query()], admin: dict = Depends(require_admin),
               db: Database = Depends(get_db)):
    result = Users.get_all(db, filters.page, filters.limit, filters.search or "")
    return envelope({"users": [to_dict(u) for u in result["users"]], "pagination": result["pagination"]})


@app.get("/api/users/statistics")
def user_statistics(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return envelope(Users.get_statistics(db))


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    if str(admin["_id"]) == user_id:
        raise ValidationError("You cannot delete your own account")
    Users.delete_by_id(db, user_id)
    Sessions.delete_for_user(db, user_id)
    return envelope(message="User deleted successfully")


# Maintenance (admin)
@app.get("/api/maintenance/status")
def maintenance_status(admin: dict = Depends(require_admin),
                       cleanup: CleanupService = Depends(get_cleanup_service)):
    return envelope(cleanup.get_status())


@app.post("/api/maintenance/run")
def maintenance_run(admin: dict = Depends(require_admin),
                    cleanup: CleanupService = Depends(get_cleanup_service)):
    return envelope(cleanup.run_manual_cleanup(), "Manual cleanup completed")


@app.get("/api/maintenance/statistics")
def maintenance_statistics(days: int = Query(7, ge=1, le=365), admin: dict = Depends(require_admin),
                           cleanup: CleanupService = Depends(get_cleanup_service)):
    return envelope(cleanup.get_statistics(days))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.port))
    uvicorn.run(app, host="0.0.0.0", port=port)
