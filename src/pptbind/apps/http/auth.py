"""Bearer token verification for the HTTP endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

import requests

from pptbind.core.errors import AuthenticationError
from pptbind.core.utils.config import AuthConfig

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10


@dataclass(frozen=True)
class User:
    id: str
    email: Optional[str] = None


class TokenVerifier(Protocol):
    def verify(self, token: str) -> User: ...


def bearer_token(header: Optional[str]) -> str:
    if not header or not header.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")
    token = header[len("Bearer "):].strip()
    if not token:
        raise AuthenticationError("Missing bearer token")
    return token


class StaticTokenVerifier:
    """Tokens configured up front, each mapped to a user id."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)

    def verify(self, token: str) -> User:
        user_id = self._tokens.get(token)
        if user_id is None:
            raise AuthenticationError("Unknown bearer token")
        return User(id=user_id)


class RemoteTokenVerifier:
    """Ask a Supabase-style identity endpoint (``GET {url}/auth/v1/user``) who owns the token."""

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url.rstrip("/") + "/auth/v1/user"
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def verify(self, token: str) -> User:
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key
        try:
            r = self.session.get(self.url, headers=headers, timeout=(CONNECT_TIMEOUT_S, self.timeout))
        except requests.RequestException as e:
            logger.warning("Identity endpoint unreachable: %s", e)
            raise AuthenticationError("Identity endpoint unreachable") from e
        if r.status_code != 200:
            raise AuthenticationError(f"Token rejected by identity endpoint ({r.status_code})")
        try:
            body = r.json()
        except ValueError as e:
            raise AuthenticationError("Identity endpoint returned invalid JSON") from e
        user = body.get("user", body) if isinstance(body, dict) else None
        if not isinstance(user, dict) or not user.get("id"):
            raise AuthenticationError("Identity endpoint returned no user")
        return User(id=str(user["id"]), email=user.get("email"))


def build_verifier(cfg: AuthConfig, *, timeout: float = 30.0, session: Optional[requests.Session] = None) -> TokenVerifier:
    if cfg.mode == "remote":
        return RemoteTokenVerifier(cfg.url or "", api_key=cfg.api_key, timeout=timeout, session=session)
    return StaticTokenVerifier(cfg.tokens)


def authenticate(verifier: TokenVerifier, header: Optional[str]) -> tuple[User, str]:
    """Return the user and raw token for an ``Authorization`` header value."""
    token = bearer_token(header)
    return verifier.verify(token), token
