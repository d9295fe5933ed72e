"""Signed session credentials for returning anonymous customers.

A token is a JWT bound to a customer id, carrying the customer's visible
attributes (email, name, conversation id). Nothing is stored server side:
a token is valid iff its signature verifies and the clock is still before
its expiry. Expiry is checked against an injected clock rather than the
library's wall clock so behaviour is deterministic under test.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from jose import JWTError, jwt

from concierge.core.clock import Clock, utcnow

logger = structlog.get_logger(__name__)

_ISSUER = "concierge"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionIdentity:
    """The identity recovered from a valid token."""

    customer_id: uuid.UUID
    tenant_id: uuid.UUID | None
    attributes: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None


class SessionTokenService:
    """Issues, validates and refreshes session tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(days=30),
        refresh_window: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("session token secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = ttl
        self._refresh_window = refresh_window
        self._clock = clock

    def issue(
        self,
        customer_id: uuid.UUID,
        attributes: dict[str, Any] | None = None,
        tenant_id: uuid.UUID | None = None,
        ttl: timedelta | None = None,
    ) -> IssuedToken:
        """Sign a new token expiring at ``now + ttl``."""
        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self._ttl)
        claims = {
            "sub": str(customer_id),
            "tid": str(tenant_id) if tenant_id else None,
            "attr": dict(attributes or {}),
            "iss": _ISSUER,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(claims, self._secret, algorithm=self._algorithm)
        return IssuedToken(
            token=token,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )

    def validate(self, token: str | None) -> SessionIdentity | None:
        """Return the identity carried by ``token``, or None if it is invalid.

        Never raises: malformed, tampered, foreign-issuer and expired tokens
        all come back as None and the caller treats the visitor as anonymous.
        """
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=_ISSUER,
                options={"verify_exp": False, "verify_iat": False},
            )
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
            customer_id = uuid.UUID(claims["sub"])
            tenant_id = uuid.UUID(claims["tid"]) if claims.get("tid") else None
        except (JWTError, KeyError, TypeError, ValueError) as e:
            logger.debug("session_token_rejected", error=str(e))
            return None

        if self._clock() >= expires_at:
            logger.debug("session_token_expired", customer_id=str(customer_id))
            return None

        attributes = claims.get("attr") or {}
        return SessionIdentity(
            customer_id=customer_id,
            tenant_id=tenant_id,
            attributes=dict(attributes) if isinstance(attributes, dict) else {},
            expires_at=expires_at,
        )

    def refresh(
        self, token: str, attributes: dict[str, Any] | None = None
    ) -> IssuedToken | None:
        """Re-issue a currently valid token with a fresh expiry.

        Expired or invalid tokens are never resurrected: the result is None
        and a new identity has to be established.
        """
        identity = self.validate(token)
        if identity is None:
            return None
        merged = {**identity.attributes, **(attributes or {})}
        return self.issue(identity.customer_id, merged, tenant_id=identity.tenant_id)

    def expires_soon(self, token: str) -> bool:
        identity = self.validate(token)
        if identity is None or identity.expires_at is None:
            return False
        return identity.expires_at - self._clock() < self._refresh_window

    def refresh_if_needed(self, token: str) -> IssuedToken | None:
        """Refresh only when the token is valid and inside the refresh window."""
        if not self.expires_soon(token):
            return None
        return self.refresh(token)
