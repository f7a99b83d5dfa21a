"""
Signed attestation tokens.

A token is ``<payload>.<signature>``, both base64url without padding. The
payload is the canonical JSON serialization of the claims (sorted keys, no
whitespace) and the signature is HMAC-SHA256 over the encoded payload
segment, so a relying party holding the key can check a token offline.
"""

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Optional

from config import Settings
from .errors import SignatureFailure, TokenVerificationError
from .models import DocumentType, ScoreBreakdown

TOKEN_VERSION = 1


def canonical_json(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def attestation_claims(session_id: str,
                       document_type: DocumentType,
                       scores: ScoreBreakdown,
                       timestamp: datetime,
                       verified: bool) -> Dict[str, Any]:
    return {
        "v": TOKEN_VERSION,
        "sessionId": session_id,
        "documentType": document_type.value,
        "scores": scores.model_dump(by_alias=True),
        "timestamp": timestamp.isoformat(),
        "verified": verified,
    }


class TokenIssuer:
    """
    Signs and verifies attestation tokens with a shared HMAC key
    """

    def __init__(self, signing_key: Optional[str], key_id: str = "default"):
        self.signing_key = signing_key
        self.key_id = key_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(settings.SIGNING_KEY, settings.SIGNING_KEY_ID)

    def _key(self) -> bytes:
        if not self.signing_key:
            raise SignatureFailure("Signing key unavailable")
        return self.signing_key.encode("utf-8")

    def _sign(self, segment: str) -> str:
        digest = hmac.new(self._key(), segment.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def issue(self, claims: Dict[str, Any]) -> str:
        if claims.get("verified") is not True:
            raise ValueError("Tokens are only issued for verified sessions")
        payload = dict(claims, kid=self.key_id)
        segment = _b64encode(canonical_json(payload))
        return f"{segment}.{self._sign(segment)}"

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the token payload; raises TokenVerificationError if it was altered"""
        try:
            segment, signature = token.split(".")
        except (AttributeError, ValueError):
            raise TokenVerificationError("Malformed token")
        if not token.isascii():
            raise TokenVerificationError("Malformed token")

        expected = self._sign(segment)
        if not hmac.compare_digest(expected, signature):
            raise TokenVerificationError("Invalid token signature")

        try:
            payload = json.loads(_b64decode(segment))
        except (binascii.Error, ValueError):
            raise TokenVerificationError("Malformed token payload")
        if not isinstance(payload, dict) or payload.get("kid") != self.key_id:
            raise TokenVerificationError("Unknown signing key")
        return payload
