"""
Cafe Amore — Shared API dependencies
"""
from fastapi import HTTPException, Request, status

from cafe_amore.core.config import get_settings
from cafe_amore.core.optimistic_lock import StaleDataError
from cafe_amore.db.stock_ops import InsufficientStockError
from cafe_amore.services.cart import CartError, CartLineNotFound, CartOwner
from cafe_amore.services.checkout import CheckoutError
from cafe_amore.services.lifecycle import InvalidTransitionError, OrderNotFoundError
from cafe_amore.services.paymongo import PaymentGatewayError

settings = get_settings()


def current_user(request: Request) -> dict:
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in required.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_staff(request: Request) -> dict:
    user = current_user(request)
    if user.get("role") not in settings.STAFF_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff access required.")
    return user


def cart_owner(request: Request) -> CartOwner:
    user = getattr(request.state, "user", None)
    if user:
        return CartOwner(user_id=user["uid"])
    guest_id = getattr(request.state, "guest_id", None)
    if not guest_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in or send an X-Guest-Id header.",
        )
    return CartOwner(guest_id=guest_id)


def http_error(exc: Exception) -> HTTPException:
    """Translate a domain exception into the matching HTTP error."""
    if isinstance(exc, (OrderNotFoundError, CartLineNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InsufficientStockError, InvalidTransitionError, StaleDataError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (CheckoutError, CartError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, PaymentGatewayError):
        code = status.HTTP_504_GATEWAY_TIMEOUT if exc.timeout else status.HTTP_502_BAD_GATEWAY
        return HTTPException(status_code=code, detail=f"Payment gateway error: {exc}")
    if isinstance(exc, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


DOMAIN_ERRORS = (
    OrderNotFoundError,
    CartLineNotFound,
    InsufficientStockError,
    InvalidTransitionError,
    StaleDataError,
    CheckoutError,
    CartError,
    PaymentGatewayError,
)
