from datetime import datetime, timezone

import pytest

from identity_pipeline.errors import SignatureFailure, TokenVerificationError
from identity_pipeline.models import DocumentType, ScoreBreakdown
from identity_pipeline.token import TokenIssuer, _b64decode, _b64encode, attestation_claims

pytestmark = pytest.mark.unit

TIMESTAMP = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def claims():
    scores = ScoreBreakdown(
        ocr_confidence=90, document_validation=92, liveness_score=85, face_match_score=88
    )
    return attestation_claims("abc123", DocumentType.PASSPORT, scores, TIMESTAMP, True)


@pytest.fixture
def issuer():
    return TokenIssuer("test-signing-key", key_id="k1")


def test_claims_bind_the_outcome(claims):
    assert claims["sessionId"] == "abc123"
    assert claims["documentType"] == "Passport"
    assert claims["verified"] is True
    assert claims["timestamp"] == TIMESTAMP.isoformat()
    assert claims["scores"] == {
        "ocrConfidence": 90, "documentValidation": 92, "livenessScore": 85, "faceMatchScore": 88,
    }


def test_issued_token_verifies(issuer, claims):
    payload = issuer.verify(issuer.issue(claims))

    assert payload["sessionId"] == "abc123"
    assert payload["scores"]["faceMatchScore"] == 88
    assert payload["kid"] == "k1"


def test_signing_is_deterministic(issuer, claims):
    assert issuer.issue(claims) == issuer.issue(dict(claims))


def test_any_payload_change_breaks_the_signature(issuer, claims):
    segment, signature = issuer.issue(claims).split(".")
    raw = bytearray(_b64decode(segment))

    for i in range(len(raw)):
        tampered = bytearray(raw)
        tampered[i] ^= 0x01
        forged = f"{_b64encode(bytes(tampered))}.{signature}"
        with pytest.raises(TokenVerificationError):
            issuer.verify(forged)


def test_forged_verdict_is_rejected(issuer, claims):
    token = issuer.issue(dict(claims, scores=dict(claims["scores"], faceMatchScore=40), verified=True))
    _, signature = token.split(".")
    original_segment, _ = issuer.issue(claims).split(".")

    with pytest.raises(TokenVerificationError):
        issuer.verify(f"{original_segment}.{signature}")


def test_other_key_cannot_verify(issuer, claims):
    token = issuer.issue(claims)

    with pytest.raises(TokenVerificationError):
        TokenIssuer("another-key", key_id="k1").verify(token)


@pytest.mark.parametrize("token", ["", "no-dot", "a.b.c", "!!!.???", "é.abc", "abc.é"])
def test_malformed_tokens_are_rejected(issuer, token):
    with pytest.raises(TokenVerificationError):
        issuer.verify(token)


def test_missing_key_is_a_signature_failure(claims):
    with pytest.raises(SignatureFailure):
        TokenIssuer("").issue(claims)


def test_no_token_for_unverified_outcome(issuer, claims):
    with pytest.raises(ValueError):
        issuer.issue(dict(claims, verified=False))
