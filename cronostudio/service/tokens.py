from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from cronostudio.config import Settings
from cronostudio.logging import get_logger
from cronostudio.storage.models import utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenError(Exception):
    """Access token could not be turned into an identity."""


class InvalidSignatureError(TokenError):
    """Malformed token, bad signature, or claims minted for someone else."""


class TokenExpiredError(TokenError):
    """Signature is valid but ``exp`` has passed."""


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    email: str
    role: str
    iat: int
    exp: int
    iss: str
    aud: str
    token_type: str = ACCESS_TOKEN_TYPE

    def as_payload(self) -> dict[str, Any]:
        return {
            "sub": self.sub,
            "email": self.email,
            "role": self.role,
            "iat": self.iat,
            "exp": self.exp,
            "iss": self.iss,
            "aud": self.aud,
            "token_type": self.token_type,
        }


class TokenService:
    """HS256 access tokens plus keyed hashing for opaque refresh/one-time tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._secret = settings.signing_secret.encode()
        self._now = now or utcnow

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def build_claims(self, *, user_id: str, email: str, role: str) -> AccessClaims:
        issued_at = self._now()
        expires_at = issued_at + timedelta(seconds=self.settings.access_token_ttl_seconds)
        return AccessClaims(
            sub=user_id,
            email=email,
            role=role,
            iat=int(issued_at.timestamp()),
            exp=int(expires_at.timestamp()),
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
        )

    def issue_access_token(self, claims: AccessClaims) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims.as_payload(), separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_access_token(self, token: str) -> AccessClaims:
        """Check signature, issuer, audience, type and expiry.

        Raises:
            InvalidSignatureError: the token is not one we minted.
            TokenExpiredError: the token was ours but ``exp`` has passed.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidSignatureError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise InvalidSignatureError("malformed header")
        if not isinstance(header, dict):
            raise InvalidSignatureError("malformed header")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignatureError("malformed payload")
        if not isinstance(payload, dict):
            raise InvalidSignatureError("malformed payload")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidSignatureError("issuer mismatch")
        if payload.get("aud") != self.settings.jwt_audience:
            raise InvalidSignatureError("audience mismatch")
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise InvalidSignatureError("wrong token type")

        try:
            claims = AccessClaims(
                sub=str(payload["sub"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                iss=payload["iss"],
                aud=payload["aud"],
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidSignatureError("missing claims")

        if claims.exp <= int(self._now().timestamp()):
            raise TokenExpiredError("token expired")
        return claims

    def hash_opaque_token(self, raw: str) -> str:
        return hmac.new(self._secret, raw.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def generate_opaque_token() -> str:
        return secrets.token_urlsafe(32)
