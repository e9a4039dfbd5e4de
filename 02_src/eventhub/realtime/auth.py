"""Handshake credential validation."""

from datetime import timedelta
from typing import Any

from jose import JWTError, jwt

from ..errors import AuthenticationError
from ..models import ClientIdentity, utcnow


def _claim(payload: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


class TokenValidator:
    """Validates bearer JWTs presented when a client connects."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self._secret = secret
        self._algorithm = algorithm

    def decode(self, token: str | None) -> ClientIdentity:
        """Validate the token and extract the client identity."""
        if not token:
            raise AuthenticationError("Authentication required")

        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e

        user_id = _claim(payload, "userId", "user_id", "sub")
        tenant_id = _claim(payload, "tenantId", "tenant_id")
        if not user_id or not tenant_id:
            raise AuthenticationError("Token is missing user or tenant claims")

        known = {"userId", "user_id", "sub", "tenantId", "tenant_id", "role", "employeeId", "employee_id"}
        return ClientIdentity(
            user_id=str(user_id),
            tenant_id=str(tenant_id),
            role=str(payload.get("role") or "employee"),
            employee_id=_claim(payload, "employeeId", "employee_id"),
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def issue(
        self,
        user_id: str,
        tenant_id: str,
        role: str = "employee",
        employee_id: str | None = None,
        expires_in: int = 3600,
    ) -> str:
        """Create a signed token (used by tests and local tooling)."""
        now = utcnow()
        payload: dict[str, Any] = {
            "userId": user_id,
            "tenantId": tenant_id,
            "role": role,
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
        }
        if employee_id:
            payload["employeeId"] = employee_id
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer ...`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
