"""Signed access tokens.

Tokens are compact JWS strings signed with a keyed HMAC. The payload carries
``sub`` (username), ``uid`` (user id), ``tenantId``, ``iat`` and ``exp`` in
epoch seconds, plus ``iss`` and a random ``jti`` so two tokens minted in the
same second differ. A token is still valid at the instant ``exp`` names and
expired at any later one.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from idprovider.config import SigningAlgorithm
from idprovider.logging import get_logger
from idprovider.service.errors import (
    TokenBlacklistedError,
    TokenError,
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
    TokenUnsupportedAlgorithmError,
)
from idprovider.service.revocation import RevocationRegistry
from idprovider.storage.models import utcnow

logger = get_logger(__name__)

_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}


@dataclass(frozen=True)
class AccessTokenClaims:
    subject: str
    tenant_id: str
    issued_at: int
    expires_at: int
    issuer: Optional[str] = None
    jti: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    claims: Optional[AccessTokenClaims] = None


class TokenService:
    """Issue and validate tenant-scoped access tokens."""

    def __init__(
        self,
        secret: str,
        revocation: RevocationRegistry,
        *,
        ttl: timedelta = timedelta(minutes=15),
        issuer: str = "idprovider",
        algorithm: SigningAlgorithm = SigningAlgorithm.HS256,
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.revocation = revocation
        self.ttl = ttl
        self.issuer = issuer
        self.algorithm = SigningAlgorithm(algorithm)
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self._secret, signing_input.encode(), _DIGESTS[self.algorithm]
        ).digest()
        return self._encode_segment(digest)

    def issue_access_token(
        self,
        subject: str,
        tenant_id: str,
        now: Optional[datetime] = None,
        *,
        user_id: Optional[str] = None,
    ) -> str:
        issued_at = int((now or self._clock()).timestamp())
        payload = {
            "sub": subject,
            "tenantId": tenant_id,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
            "iss": self.issuer,
            "jti": str(uuid.uuid4()),
        }
        if user_id:
            payload["uid"] = user_id
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        logger.debug("access_token_issued", subject=subject, tenant_id=tenant_id)
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode_claims(self, token: str) -> AccessTokenClaims:
        """Verify header and signature and return the claims, ignoring expiry."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenMalformedError("token is not a compact JWS")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenMalformedError("token header is unreadable")
        if not isinstance(header, dict):
            raise TokenMalformedError("token header is unreadable")
        # Only the configured algorithm is accepted; no downgrade, no "none"
        if header.get("alg") != self.algorithm.value:
            raise TokenUnsupportedAlgorithmError(
                "unsupported signing algorithm", detail={"alg": header.get("alg")}
            )

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenSignatureError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenMalformedError("token payload is unreadable")
        return self._claims_from_payload(payload)

    def _claims_from_payload(self, payload: Any) -> AccessTokenClaims:
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload is not an object")
        subject = payload.get("sub")
        tenant_id = payload.get("tenantId")
        if not isinstance(subject, str) or not subject:
            raise TokenMalformedError("token subject missing")
        if not isinstance(tenant_id, str) or not tenant_id:
            raise TokenMalformedError("token tenant missing")
        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError("token timestamps missing")
        if payload.get("iss") != self.issuer:
            raise TokenMalformedError("token issuer mismatch")
        user_id = payload.get("uid")
        if user_id is not None and (not isinstance(user_id, str) or not user_id):
            raise TokenMalformedError("token user id is malformed")
        return AccessTokenClaims(
            subject=subject,
            tenant_id=tenant_id,
            issued_at=issued_at,
            expires_at=expires_at,
            issuer=payload.get("iss"),
            jti=payload.get("jti"),
            user_id=user_id,
        )

    async def inspect(
        self, token: str, now: Optional[datetime] = None
    ) -> AccessTokenClaims:
        """Validate ``token`` and raise the specific failure kind.

        Order: blacklist, then header and signature, then expiry.
        """
        current = now or self._clock()
        if await self.revocation.is_blacklisted(token, now=current):
            raise TokenBlacklistedError("token has been revoked")
        claims = self.decode_claims(token)
        if current.timestamp() > claims.expires_at + self.leeway_seconds:
            raise TokenExpiredError("token has expired")
        return claims

    async def validate(
        self, token: str, now: Optional[datetime] = None
    ) -> TokenValidation:
        try:
            claims = await self.inspect(token, now=now)
        except TokenError as exc:
            logger.info("access_token_rejected", reason=exc.error_code)
            return TokenValidation(valid=False)
        return TokenValidation(valid=True, claims=claims)
