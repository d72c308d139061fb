from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from passgate.config import Settings
from passgate.logging import get_logger

logger = get_logger(__name__)

OPAQUE_TOKEN_BYTES = 32


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    email_verified: bool
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class SignedToken:
    token: str
    expires_at: datetime


class TokenCodec:
    """Opaque tokens, token digests, password hashing and signed access tokens.

    Pure computation: nothing here touches a store or the network. Password
    hashing is CPU-bound, so async callers should run it off the event loop.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._signing_key = settings.jwt_secret.encode()
        self._access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)
        # Verified against when a login names no usable account so the
        # failure costs the same as a wrong password.
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # opaque tokens

    @staticmethod
    def new_opaque_token() -> str:
        """256 bits of randomness, URL-safe, always 43 characters."""
        return secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)

    @staticmethod
    def hash_token(token: str) -> str:
        # Opaque tokens are high-entropy, so a fast digest is sufficient at rest.
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    # passwords

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            self.burn_password_check(password)
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn_password_check(self, password: str) -> None:
        """Spend the cost of one verification without any account behind it."""
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def password_needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    # signed access tokens

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._signing_key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign_access_token(
        self, user_id: str, email: str, email_verified: bool, *, now: Optional[datetime] = None
    ) -> SignedToken:
        issued = now or datetime.now(timezone.utc)
        expires = issued + self._access_ttl
        payload: dict[str, Any] = {
            "sub": user_id,
            "email": email,
            "email_verified": bool(email_verified),
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return SignedToken(token=token, expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc))

    def verify_access_token(self, token: str) -> Optional[AccessClaims]:
        """Return the claims of a valid access token, or None. Never raises."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm before anything else to rule out alg confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != "access":
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        sub = payload.get("sub")
        if not sub or not isinstance(sub, str):
            return None
        return AccessClaims(
            user_id=sub,
            email=str(payload.get("email") or ""),
            email_verified=bool(payload.get("email_verified", False)),
            jti=str(payload.get("jti") or ""),
            issued_at=datetime.fromtimestamp(iat_ts, timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, timezone.utc),
        )
