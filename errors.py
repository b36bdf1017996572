"""
API errors

Every failure the services raise is an ApiError: an HTTPException that also
carries a stable ``kind`` so clients can branch on it without parsing the
message.
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse


class ApiError(HTTPException):
    status_code = 500
    kind = "error"
    default_message = "Something went wrong"

    def __init__(self, message=None):
        super().__init__(status_code=self.status_code, detail=message or self.default_message)


# 404
class NotFound(ApiError):
    status_code = 404
    kind = "not_found"
    default_message = "Not found"


class CartNotFound(NotFound):
    kind = "cart_not_found"


class OrderNotFound(NotFound):
    kind = "order_not_found"


class UserNotFound(NotFound):
    kind = "user_not_found"


class ProductNotFound(NotFound):
    kind = "product_not_found"


class ReviewNotFound(NotFound):
    kind = "review_not_found"


class CouponNotFound(NotFound):
    kind = "coupon_not_found"


# 401
class Unauthenticated(ApiError):
    status_code = 401
    kind = "unauthenticated"
    default_message = "You are not logged in, please login to get access to this route"


class InvalidToken(Unauthenticated):
    kind = "invalid_token"
    default_message = "Invalid token, please login again"


class ExpiredToken(Unauthenticated):
    kind = "expired_token"
    default_message = "Your token has expired, please login again"


class PasswordChanged(InvalidToken):
    kind = "password_changed"
    default_message = "Your password has changed recently, please login again"


class AccountDeactivated(Unauthenticated):
    kind = "account_deactivated"
    default_message = "Your account has been deactivated"


class IncorrectCredentials(Unauthenticated):
    kind = "incorrect_credentials"
    default_message = "Incorrect email or password"


class TokenUserNotFound(Unauthenticated):
    kind = "user_not_found"
    default_message = "The user that belongs to this token no longer exists"


# 403
class Forbidden(ApiError):
    status_code = 403
    kind = "forbidden"
    default_message = "You are not allowed to access this route"


# 400
class BadRequest(ApiError):
    status_code = 400
    kind = "bad_request"
    default_message = "Bad request"


class InvalidId(BadRequest):
    kind = "invalid_id"


class DuplicateEmail(BadRequest):
    kind = "duplicate_email"
    default_message = "Email already registered"


class InvalidOrExpiredCode(BadRequest):
    kind = "invalid_or_expired_code"
    default_message = "Reset code invalid or expired"


class ResetNotVerified(BadRequest):
    kind = "reset_not_verified"
    default_message = "Reset code not verified"


class PasswordMismatch(BadRequest):
    kind = "password_mismatch"
    default_message = "Current password is incorrect"


class CouponExpired(BadRequest):
    kind = "coupon_expired"
    default_message = "Coupon is expired"


class DuplicateReview(BadRequest):
    kind = "duplicate_review"
    default_message = "You already reviewed this product"


class SignatureInvalid(BadRequest):
    kind = "signature_invalid"
    default_message = "Webhook signature verification failed"


# 409
class InsufficientStock(ApiError):
    status_code = 409
    kind = "insufficient_stock"
    default_message = "Not enough stock to complete the order"


# 5xx
class DeliveryFailed(ApiError):
    status_code = 500
    kind = "delivery_failed"
    default_message = "There was an error sending the email"


def error_body(exc: ApiError) -> dict:
    return {
        "status": "fail" if exc.status_code < 500 else "error",
        "kind": exc.kind,
        "detail": exc.detail,
    }


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
