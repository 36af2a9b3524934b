"""Bearer token verification for caller resolution."""

from __future__ import annotations

import time
from typing import Any, List, Mapping, Optional

import jwt
import requests

from ..config import IdentityConfig
from ..exceptions import UnauthorizedError


class TokenVerifier:
    """Validates agent bearer tokens.

    Tokens are checked against a shared secret when one is configured,
    otherwise against the signing keys published at ``jwks_url``.
    """

    _jwks_ttl = 300

    def __init__(self, config: IdentityConfig) -> None:
        self.config = config
        self._jwks_cache: List[Mapping] = []
        self._last_fetch: float = 0

    def _fetch_jwks(self) -> None:
        resp = requests.get(self.config.jwks_url, timeout=5)
        resp.raise_for_status()
        self._jwks_cache = resp.json().get("keys", [])
        self._last_fetch = time.time()

    def _signing_key(self, token: str) -> tuple[Any, str]:
        if self.config.secret:
            return self.config.secret, self.config.algorithm
        if not self.config.jwks_url:
            raise UnauthorizedError("No token verification key configured")

        now = time.time()
        if not self._jwks_cache or now - self._last_fetch > self._jwks_ttl:
            self._fetch_jwks()

        header = jwt.get_unverified_header(token)
        for key in self._jwks_cache:
            if key.get("kid") == header.get("kid"):
                return (
                    jwt.algorithms.RSAAlgorithm.from_jwk(key),
                    header.get("alg", "RS256"),
                )
        raise UnauthorizedError("No matching JWK found")

    def verify(self, token: Optional[str]) -> Mapping[str, Any]:
        """Validate ``token`` and return its claims."""
        if not token:
            raise UnauthorizedError("Missing bearer token")
        try:
            key, algorithm = self._signing_key(token)
            return jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=self.config.audience or None,
                issuer=self.config.issuer or None,
                leeway=self.config.leeway,
                options={"verify_aud": bool(self.config.audience)},
            )
        except jwt.PyJWTError as exc:
            raise UnauthorizedError(f"Invalid token: {exc}") from exc
