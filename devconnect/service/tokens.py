from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from devconnect.config import Settings
from devconnect.logging import get_logger
from devconnect.service.errors import TokenLifetimeError
from devconnect.service.sessions import SessionRegistry

logger = get_logger(__name__)


class TokenVerificationError(Exception):
    """Token could not be decoded, failed its signature or has expired."""


@dataclass
class Identity:
    id: str
    username: str


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime
    remaining_seconds: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Signs HS256 tokens and mirrors their lifetime into the session registry."""

    def __init__(
        self,
        settings: Settings,
        sessions: SessionRegistry,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def sign(self, identity: Identity) -> tuple[str, int]:
        """Sign a token for ``identity``; returns ``(token, exp)``."""
        issued_at = int(self._clock())
        expires = issued_at + self.settings.token_ttl_seconds
        payload = {
            "id": identity.id,
            "username": identity.username,
            "iat": issued_at,
            "exp": expires,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            # distinct per issue so a re-login within the same second still supersedes
            "jti": secrets.token_hex(8),
        }
        return self._encode(payload), expires

    async def issue(self, identity: Identity) -> IssuedToken:
        """Sign a token and register it as the user's only live session.

        Raises :class:`TokenLifetimeError` without touching the registry when
        the token would already be expired.
        """
        token, expires = self.sign(identity)
        remaining = int(expires - self._clock())
        if remaining <= 0:
            logger.error(
                "token_lifetime_exhausted",
                user_id=identity.id,
                ttl_seconds=self.settings.token_ttl_seconds,
            )
            raise TokenLifetimeError(
                "Token expiration is invalid", error="token has no remaining lifetime"
            )
        await self.sessions.set(identity.id, token, remaining)
        return IssuedToken(
            token=token,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
            remaining_seconds=remaining,
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Check signature, algorithm, issuer, audience and expiry.

        Returns the claims or raises :class:`TokenVerificationError` whose
        message names the failure.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenVerificationError("jwt malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenVerificationError("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenVerificationError("invalid algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # bytes, so a non-ASCII signature is a mismatch rather than a TypeError
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            raise TokenVerificationError("invalid signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenVerificationError("invalid token")
        if not isinstance(payload, dict):
            raise TokenVerificationError("invalid token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenVerificationError(
                f"jwt issuer invalid. expected: {self.settings.jwt_issuer}"
            )
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenVerificationError(
                f"jwt audience invalid. expected: {self.settings.jwt_audience}"
            )

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenVerificationError("invalid token")
        if exp_ts <= self._clock():
            raise TokenVerificationError("jwt expired")
        if not payload.get("id"):
            raise TokenVerificationError("invalid token")
        return payload

    def identity_from_claims(self, claims: dict[str, Any]) -> Identity:
        return Identity(id=str(claims["id"]), username=str(claims.get("username") or ""))
