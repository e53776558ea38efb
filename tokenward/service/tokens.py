from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from tokenward.config import Settings, parse_duration
from tokenward.logging import get_logger
from tokenward.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenTypeMismatchError,
)
from tokenward.storage.models import ClientMetadata

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_TOKEN_TYPES = frozenset({ACCESS, REFRESH})


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    token_type: str
    token_version: int
    jti: str
    iat: int
    exp: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)


def hash_token(token: str) -> str:
    """Stable digest of a token value used as the revocation key."""

    return hashlib.sha256(token.encode("utf-8", "surrogatepass")).hexdigest()


class TokenService:
    """Issue and verify HS256-signed access and refresh tokens.

    Holds no mutable state; every call reads only the immutable settings and
    the injected clock, so it is safe to share across concurrent requests.
    Verification never consults the revocation ledger or the credential store.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._secret = settings.jwt_secret.encode()
        self._access_ttl = parse_duration(settings.access_token_expires_in)
        self._refresh_ttl = parse_duration(settings.refresh_token_expires_in)
        self._leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(
        self,
        identity_id: str,
        token_version: int,
        token_type: str,
        lifetime: timedelta,
        metadata: Optional[ClientMetadata],
    ) -> Tuple[str, datetime, str]:
        now = self._now()
        expires_at = now + lifetime
        jti = secrets.token_hex(16)
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity_id,
            "token_type": token_type,
            "token_version": token_version,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if metadata is not None:
            if metadata.ip_address:
                payload["ip_address"] = metadata.ip_address
            if metadata.user_agent:
                payload["user_agent"] = metadata.user_agent
        token = self._encode_jwt(payload)
        return token, datetime.fromtimestamp(payload["exp"], tz=timezone.utc), jti

    def issue_access_token(
        self,
        identity_id: str,
        token_version: int,
        metadata: Optional[ClientMetadata] = None,
    ) -> Tuple[str, datetime]:
        token, expires_at, _ = self._issue(
            identity_id, token_version, ACCESS, self._access_ttl, metadata
        )
        return token, expires_at

    def issue_refresh_token(
        self,
        identity_id: str,
        token_version: int,
        metadata: Optional[ClientMetadata] = None,
    ) -> Tuple[str, datetime, str]:
        return self._issue(identity_id, token_version, REFRESH, self._refresh_ttl, metadata)

    def verify(self, token: str, expected_type: Optional[str] = None) -> TokenClaims:
        """Check structure, algorithm, signature, issuer, audience, expiry and type."""

        if not token or not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError()

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            token_version = int(payload["token_version"])
            sub = str(payload["sub"])
            jti = str(payload["jti"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        token_type = payload.get("token_type")
        if token_type not in _TOKEN_TYPES:
            raise InvalidTokenError()

        if exp <= (self._now() - self._leeway).timestamp():
            raise TokenExpiredError()
        if expected_type is not None and token_type != expected_type:
            raise TokenTypeMismatchError(expected_type, token_type)

        return TokenClaims(
            sub=sub,
            token_type=token_type,
            token_version=token_version,
            jti=jti,
            iat=iat,
            exp=exp,
            ip_address=payload.get("ip_address"),
            user_agent=payload.get("user_agent"),
        )


__all__ = ["ACCESS", "REFRESH", "TokenClaims", "TokenService", "hash_token"]
