import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

import auth
import cart as cart_service
import config
import coupons
import orders
import payments
import products
import reviews
import users
from auth import ADMINS, EVERYONE, STAFF, USERS, allowed_to, get_current_user
from database import db, ensure_indexes, get_db, serialize_doc
from errors import register_exception_handlers
from schemas import Coupon, Product as ProductSchema, Role, ShippingAddress

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await run_in_threadpool(ensure_indexes, db)
    except Exception as exc:
        logger.warning("Unable to ensure indexes: %s", exc)
    yield


app = FastAPI(title="Shop API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


# Auth models
class SignupInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Optional[Dict[str, Any]] = None


class ForgotPasswordInput(BaseModel):
    email: EmailStr


class VerifyResetCodeInput(BaseModel):
    reset_code: str = Field(..., min_length=6, max_length=6)


class ResetPasswordInput(BaseModel):
    email: EmailStr
    new_password: str = Field(..., min_length=6)


# Routes
@app.get("/")
def read_root():
    return {"message": "Shop API"}


# Auth
@app.post("/auth/signup", response_model=TokenResponse, status_code=201)
def signup(payload: SignupInput, database: Database = Depends(get_db)):
    user, token = auth.signup(database, payload.name, payload.email, payload.password)
    return TokenResponse(access_token=token, user=users.public_user(user))


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginInput, database: Database = Depends(get_db)):
    user, token = auth.login(database, payload.email, payload.password)
    return TokenResponse(access_token=token, user=users.public_user(user))


@app.post("/auth/forgot-password")
def forgot_password(payload: ForgotPasswordInput, database: Database = Depends(get_db)):
    users.begin_password_reset(database, payload.email)
    return {"status": "success", "message": "Reset code sent to email"}


@app.post("/auth/verify-reset-code")
def verify_reset_code(payload: VerifyResetCodeInput, database: Database = Depends(get_db)):
    users.verify_reset_code(database, payload.reset_code)
    return {"status": "success"}


@app.put("/auth/reset-password", response_model=TokenResponse)
def reset_password(payload: ResetPasswordInput, database: Database = Depends(get_db)):
    token = users.complete_reset(database, payload.email, payload.new_password)
    return TokenResponse(access_token=token)


@app.get("/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return users.public_user(current_user)


# Users
class UpdateMeInput(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class ChangeMyPasswordInput(BaseModel):
    current_password: str
    password: str = Field(..., min_length=6)


class CreateUserInput(SignupInput):
    phone: Optional[str] = None
    role: Role = Role.USER


class UpdateUserInput(UpdateMeInput):
    role: Optional[Role] = None


class SetPasswordInput(BaseModel):
    password: str = Field(..., min_length=6)


@app.get("/users/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return users.public_user(current_user)


@app.put("/users/me")
def update_me(data: UpdateMeInput, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    user = users.update_user(database, str(current_user["_id"]), data.model_dump(exclude_unset=True))
    return users.public_user(user)


@app.put("/users/me/password", response_model=TokenResponse)
def change_my_password(data: ChangeMyPasswordInput, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    user_id = str(current_user["_id"])
    token = users.change_password(database, user_id, data.current_password, data.password)
    return TokenResponse(access_token=token, user=users.public_user(users.get_user(database, user_id)))


@app.delete("/users/me", status_code=204)
def deactivate_me(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    users.deactivate_me(database, str(current_user["_id"]))
    return Response(status_code=204)


@app.get("/users")
def list_users(page: int = 1, limit: int = 20, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return users.list_users(database, page=page, limit=limit)


@app.post("/users", status_code=201)
def create_user(data: CreateUserInput, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    user = users.create_user(database, data.name, data.email, data.password, role=data.role, phone=data.phone)
    return users.public_user(user)


@app.get("/users/{user_id}")
def get_user(user_id: str, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return users.public_user(users.get_user(database, user_id))


@app.put("/users/{user_id}")
def update_user(user_id: str, data: UpdateUserInput, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return users.public_user(users.update_user(database, user_id, data.model_dump(exclude_unset=True)))


@app.put("/users/{user_id}/password")
def set_user_password(user_id: str, data: SetPasswordInput, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return users.public_user(users.set_password(database, user_id, data.password))


@app.delete("/users/{user_id}")
def delete_user(user_id: str, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    users.delete_user(database, user_id)
    return {"ok": True}


# Products
class ProductUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    price_after_discount: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    quantity: Optional[int] = None


@app.post("/products", status_code=201)
def create_product(data: ProductSchema, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    # rating and sales counters are maintained by the service, not the client
    product = data.model_copy(update={"sold": 0, "ratings_average": 0, "ratings_quantity": 0})
    return serialize_doc(products.create_product(database, product))


@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, min_price: Optional[float] = None, max_price: Optional[float] = None, in_stock: Optional[bool] = None, sort: Optional[str] = None, limit: int = 20, page: int = 1, database: Database = Depends(get_db)):
    return products.list_products(database, q=q, category=category, min_price=min_price, max_price=max_price, in_stock=in_stock, sort=sort, limit=limit, page=page)


@app.get("/products/{product_id}")
def get_product(product_id: str, database: Database = Depends(get_db)):
    return serialize_doc(products.get_product(database, product_id))


@app.put("/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return serialize_doc(products.update_product(database, product_id, data.model_dump(exclude_unset=True)))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, _: dict = Depends(allowed_to(ADMINS)), database: Database = Depends(get_db)):
    products.delete_product(database, product_id)
    return {"ok": True}


# Reviews
class ReviewInput(BaseModel):
    title: Optional[str] = None
    ratings: float = Field(..., ge=1, le=5)


class ReviewUpdate(BaseModel):
    title: Optional[str] = None
    ratings: Optional[float] = Field(None, ge=1, le=5)


@app.get("/products/{product_id}/reviews")
def list_product_reviews(product_id: str, page: int = 1, limit: int = 20, database: Database = Depends(get_db)):
    return reviews.list_reviews(database, product_id=product_id, page=page, limit=limit)


@app.post("/products/{product_id}/reviews", status_code=201)
def create_review(product_id: str, data: ReviewInput, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    review = reviews.create_review(database, current_user, product_id, data.ratings, title=data.title)
    return serialize_doc(review)


@app.get("/reviews/{review_id}")
def get_review(review_id: str, database: Database = Depends(get_db)):
    return serialize_doc(reviews.get_review(database, review_id))


@app.put("/reviews/{review_id}")
def update_review(review_id: str, data: ReviewUpdate, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    review = reviews.update_review(database, current_user, review_id, ratings=data.ratings, title=data.title)
    return serialize_doc(review)


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(allowed_to(EVERYONE)), database: Database = Depends(get_db)):
    reviews.delete_review(database, current_user, review_id)
    return {"ok": True}


# Coupons
class CouponUpdate(BaseModel):
    name: Optional[str] = None
    discount: Optional[float] = Field(None, gt=0, le=100)
    expire: Optional[datetime] = None


@app.get("/coupons")
def list_coupons(_: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return coupons.list_coupons(database)


@app.post("/coupons", status_code=201)
def create_coupon(data: Coupon, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return serialize_doc(coupons.create_coupon(database, data))


@app.get("/coupons/{coupon_id}")
def get_coupon(coupon_id: str, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return serialize_doc(coupons.get_coupon(database, coupon_id))


@app.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, data: CouponUpdate, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return serialize_doc(coupons.update_coupon(database, coupon_id, data.model_dump(exclude_unset=True)))


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    coupons.delete_coupon(database, coupon_id)
    return {"ok": True}


# Cart
class CartItemInput(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    color: Optional[str] = None


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)
    color: Optional[str] = None


class ApplyCouponInput(BaseModel):
    coupon: str


@app.get("/cart")
def get_cart(current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    return serialize_doc(cart_service.get_cart(database, str(current_user["_id"])))


@app.post("/cart")
def add_to_cart(item: CartItemInput, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    updated = cart_service.add_item(database, str(current_user["_id"]), item.product_id, item.quantity, item.color)
    return serialize_doc(updated)


@app.put("/cart/items/{product_id}")
def update_cart_item(product_id: str, item: CartItemUpdate, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    updated = cart_service.update_item_quantity(database, str(current_user["_id"]), product_id, item.quantity, item.color)
    return serialize_doc(updated)


@app.delete("/cart/items/{product_id}")
def remove_cart_item(product_id: str, color: Optional[str] = None, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    return serialize_doc(cart_service.remove_item(database, str(current_user["_id"]), product_id, color))


@app.delete("/cart")
def clear_cart(current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    cart_service.clear_cart(database, str(current_user["_id"]))
    return {"ok": True}


@app.put("/cart/coupon")
def apply_coupon(data: ApplyCouponInput, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    return serialize_doc(cart_service.apply_coupon(database, str(current_user["_id"]), data.coupon))


# Orders
class CheckoutInput(BaseModel):
    shipping_address: Optional[ShippingAddress] = None


@app.get("/orders")
def list_orders(page: int = 1, limit: int = 20, current_user: dict = Depends(allowed_to(EVERYONE)), database: Database = Depends(get_db)):
    return orders.list_orders(database, current_user, page=page, limit=limit)


@app.get("/orders/checkout-session/{cart_id}")
def checkout_session(cart_id: str, request: Request, data: Optional[CheckoutInput] = None, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    address = data.shipping_address if data else None
    session = orders.create_checkout_session(database, current_user, cart_id, address, str(request.base_url))
    return {"status": "success", "session": session}


@app.get("/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(allowed_to(EVERYONE)), database: Database = Depends(get_db)):
    return serialize_doc(orders.get_order(database, current_user, order_id))


@app.post("/orders/{cart_id}", status_code=201)
def create_cash_order(cart_id: str, data: Optional[CheckoutInput] = None, current_user: dict = Depends(allowed_to(USERS)), database: Database = Depends(get_db)):
    address = data.shipping_address if data else None
    return serialize_doc(orders.create_cash_order(database, current_user, cart_id, address))


@app.put("/orders/{order_id}/pay")
def mark_order_paid(order_id: str, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return serialize_doc(orders.mark_paid(database, order_id))


@app.put("/orders/{order_id}/deliver")
def mark_order_delivered(order_id: str, _: dict = Depends(allowed_to(STAFF)), database: Database = Depends(get_db)):
    return serialize_doc(orders.mark_delivered(database, order_id))


@app.post("/webhook-checkout")
async def webhook_checkout(request: Request, stripe_signature: Optional[str] = Header(default=None), database: Database = Depends(get_db)):
    payload = await request.body()
    # SignatureInvalid becomes a 400 and nothing is processed
    event = payments.verify_webhook(payload, stripe_signature)

    if event.get("type") == payments.CHECKOUT_COMPLETED:
        session = event.get("data", {}).get("object", {})
        created = event.get("created")
        event_time = datetime.fromtimestamp(created, tz=timezone.utc) if created else None
        try:
            # acknowledge only once the order is written; a non-2xx makes Stripe redeliver
            await run_in_threadpool(orders.handle_checkout_completed, database, session, event_time)
        except Exception:
            logger.exception("Webhook processing failed for event %s", event.get("id"))
            return JSONResponse(status_code=500, content={"received": False})

    return {"received": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
