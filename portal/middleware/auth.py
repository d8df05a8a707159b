from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional
from uuid import uuid4

from fastapi import Request, status
from fastapi.responses import JSONResponse
from jose import ExpiredSignatureError, JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from portal.core.config import settings
from portal.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)


def default_exempt_paths() -> list[str]:
    return [
        "/",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
        f"{settings.api_prefix}/webhooks/stripe",
    ]


class AuthMiddleware(BaseHTTPMiddleware):
    """Validate bearer JWTs and attach the caller to ``request.state.user``."""

    def __init__(
        self,
        app,
        exempt_paths: Optional[Iterable[str]] = None,
        exempt_prefixes: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.exempt_paths = set(exempt_paths if exempt_paths is not None else default_exempt_paths())
        self.exempt_prefixes = tuple(
            exempt_prefixes if exempt_prefixes is not None else ("/health", f"{settings.api_prefix}/health")
        )

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or self._is_exempt_path(request.url.path):
            return await call_next(request)

        token = self._extract_token(request)
        if not token:
            logger.warning("auth.missing_token", path=request.url.path, method=request.method)
            return self._reject(status.HTTP_401_UNAUTHORIZED, "missing_token", "Authentication token is required")

        try:
            payload = TokenManager.decode(token)
        except ExpiredSignatureError:
            logger.warning("auth.expired_token", path=request.url.path)
            return self._reject(status.HTTP_401_UNAUTHORIZED, "expired_token", "Token has expired")
        except JWTError as e:
            logger.warning("auth.invalid_token", error=str(e), path=request.url.path)
            return self._reject(status.HTTP_401_UNAUTHORIZED, "invalid_token", "Invalid authentication token")

        if not payload.get("sub"):
            return self._reject(status.HTTP_401_UNAUTHORIZED, "invalid_token", "Token has no subject")

        if not payload.get("active", True):
            logger.warning("auth.inactive_user", path=request.url.path, user_id=payload.get("sub"))
            return self._reject(status.HTTP_403_FORBIDDEN, "inactive_user", "User account is inactive")

        request.state.user = {
            "id": str(payload["sub"]),
            "email": payload.get("email"),
            "role": payload.get("role", "dealer"),
            "permissions": payload.get("permissions", []),
        }

        logger.debug(
            "auth.authenticated",
            user_id=payload.get("sub"),
            role=payload.get("role"),
            path=request.url.path,
        )

        return await call_next(request)

    def _is_exempt_path(self, path: str) -> bool:
        return path in self.exempt_paths or path.startswith(self.exempt_prefixes)

    def _extract_token(self, request: Request) -> Optional[str]:
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            return None

        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return None

        return parts[1]

    def _reject(self, status_code: int, code: str, message: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"code": code, "message": message})


class TokenManager:
    """Manager for JWT token operations."""

    @staticmethod
    def create_access_token(
        data: Dict,
        expires_delta: Optional[timedelta] = None
    ) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))

        to_encode.update({
            "exp": expire,
            "iat": now,
            "jti": str(uuid4()),
            "type": "access",
        })

        return jwt.encode(
            to_encode,
            settings.secret_key,
            algorithm=settings.algorithm,
        )

    @staticmethod
    def decode(token: str) -> Dict:
        """Decode and verify a token; expiry is enforced by jose."""
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"verify_aud": False},
        )
