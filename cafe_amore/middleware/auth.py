"""
Cafe Amore — JWT Authentication Middleware
Validates AuthProvider Bearer tokens; returns 401 on failure.

Catalog and cart routes also serve guests: without a token the request goes
through with request.state.user = None and the X-Guest-Id header as identity.
"""
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from jose import JWTError

from cafe_amore.core.config import get_settings
from cafe_amore.core.security import decode_token

settings = get_settings()

# Paths that do NOT require authentication
PUBLIC_PATHS = {
    "/health",
    "/metrics",
    "/",
    "/docs",
    "/openapi.json",
    "/payments/webhook",
}

# Paths where a token is optional (guests allowed)
GUEST_PREFIXES = ("/catalog", "/cart")


def normalize_claims(claims: dict) -> dict:
    """AuthProvider identity {uid, email, displayName} plus the app role."""
    return {
        "uid": claims.get("uid") or claims.get("sub"),
        "email": claims.get("email"),
        "name": claims.get("name") or claims.get("displayName"),
        "role": claims.get("role") or "customer",
    }


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """
    Intercepts every request. Validates JWT Bearer token.
    Attaches normalized claims to request.state.user on success.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request.state.user = None
        request.state.guest_id = request.headers.get("X-Guest-Id") or None

        if request.method == "OPTIONS":
            return await call_next(request)

        path = request.url.path
        if path in PUBLIC_PATHS or path.startswith("/metrics"):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        token = auth_header.split(" ", 1)[1] if auth_header.startswith("Bearer ") else None
        if token is None and path.startswith("/notifications/stream"):
            # EventSource cannot set headers
            token = request.query_params.get("token")

        if token is None:
            if path.startswith(GUEST_PREFIXES):
                return await call_next(request)
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing or invalid Authorization header. Expected: Bearer <token>"},
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            claims = normalize_claims(decode_token(token))
        except JWTError as exc:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Invalid or expired JWT: {str(exc)}"},
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not claims["uid"]:
            return JSONResponse(
                status_code=401,
                content={"detail": "Token has no subject."},
                headers={"WWW-Authenticate": "Bearer"},
            )

        request.state.user = claims
        return await call_next(request)
