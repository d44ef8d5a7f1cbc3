"""Bearer-token authentication against the identity provider."""

import logging
from dataclasses import dataclass

import requests
from fastapi import Depends, Header, Request

from .errors import Forbidden, Unauthenticated

logger = logging.getLogger(__name__)

ROLES = ("admin", "manager", "customer")


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str | None = None
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class IdentityProvider:
    """Resolves a bearer credential to a Principal, or None when it isn't valid."""

    def verify(self, token: str):
        raise NotImplementedError


class HttpIdentityProvider(IdentityProvider):
    """
    Asks the identity service who a token belongs to.
    The service answers {"user_id", "email", "role"} for valid tokens and 401 otherwise.
    """

    def __init__(self, identity_url: str, timeout: float = 5.0):
        self.identity_url = identity_url
        self.timeout = timeout

    def verify(self, token: str):
        if not self.identity_url:
            logger.error("IDENTITY_URL is not configured; rejecting token")
            return None
        try:
            response = requests.get(
                self.identity_url,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
            if response.status_code in (401, 403):
                return None
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.error("Identity service lookup failed: %s", exc)
            return None

        user_id = data.get("user_id") or data.get("uid")
        if not user_id:
            return None
        role = data.get("role") if data.get("role") in ROLES else "customer"
        return Principal(user_id=str(user_id), email=data.get("email"), role=role)


# --- FastAPI dependencies ---

def get_current_principal(request: Request, authorization: str | None = Header(default=None)) -> Principal:
    """Resolves the caller from the Authorization header through app.state.identity."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated()
    token = authorization[7:].strip()
    if not token:
        raise Unauthenticated()

    principal = request.app.state.identity.verify(token)
    if principal is None:
        raise Unauthenticated("Invalid or expired token")
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Admin access required")
    return principal


def ensure_owner_or_admin(principal: Principal, user_id: str) -> None:
    if principal.user_id != user_id and not principal.is_admin:
        raise Forbidden("You do not have access to this order")
