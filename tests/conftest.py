"""
Shared fixtures for the verification service tests.

The classifier is replaced by MagicMock clients returning canned
chat-completion responses, so no network access is needed.
"""

import io
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app import create_app
from config import Settings
from identity_pipeline.audit import InMemoryAuditLog
from identity_pipeline.extractor import DocumentExtractor
from identity_pipeline.face_match import IdentityVerifier
from identity_pipeline.run_pipeline import VerificationPipeline
from identity_pipeline.storage import InMemoryStorage

PASSPORT_EXTRACTION = {
    "documentType": "Passport",
    "name": "Jane Doe",
    "idNumber": "P1234567",
    "dob": "1990-04-12",
    "address": "12 Main Street, Springfield",
    "confidence": 90,
    "hasPhoto": True,
    "photoLocation": "left-side",
}

PASSING_SCORES = {
    "livenessScore": 85,
    "faceMatchScore": 88,
    "documentValidation": 92,
    "notes": "Same person, clear capture",
}


def chat_response(content):
    message = SimpleNamespace(content=content, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def tool_response(arguments, name="verify_identity"):
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    call = SimpleNamespace(function=SimpleNamespace(name=name, arguments=arguments))
    message = SimpleNamespace(content=None, tool_calls=[call])
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fenced(payload: dict) -> str:
    return "Here is the extracted data:\n```json\n" + json.dumps(payload) + "\n```\nLet me know if you need more."


def make_image(size=(640, 640), seed_color=(120, 90, 60), fmt="JPEG") -> bytes:
    """Noisy image that passes the capture quality checks"""
    noise = Image.effect_noise(size, 80).convert("RGB")
    tint = Image.new("RGB", size, seed_color)
    img = Image.blend(noise, tint, 0.3)
    buffer = io.BytesIO()
    img.save(buffer, fmt)
    return buffer.getvalue()


class FlakyAuditLog(InMemoryAuditLog):
    """In-memory audit log whose first `failures` writes raise OSError"""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def _persist(self, entry):
        if self.failures:
            self.failures -= 1
            raise OSError("No space left on device")


@pytest.fixture
def settings():
    return Settings(
        CLASSIFIER_ENDPOINT="http://classifier.test/v1",
        CLASSIFIER_API_KEY="test-key",
        SIGNING_KEY="test-signing-key",
        STORAGE_ENDPOINT="memory://",
        SESSION_LOCK_TIMEOUT_SECONDS=5,
        AUDIT_LOG_PATH=None,
    )


@pytest.fixture
def document_image():
    return make_image(size=(800, 600), seed_color=(200, 180, 150))


@pytest.fixture
def live_image():
    return make_image(size=(640, 640), seed_color=(90, 60, 40))


@pytest.fixture
def extraction_client():
    client = MagicMock()
    client.chat.completions.create.return_value = chat_response(fenced(PASSPORT_EXTRACTION))
    return client


@pytest.fixture
def verification_client():
    client = MagicMock()
    client.chat.completions.create.return_value = tool_response(PASSING_SCORES)
    return client


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def pipeline(settings, extraction_client, verification_client, audit_log):
    return VerificationPipeline.from_settings(
        settings,
        storage=InMemoryStorage(),
        extractor=DocumentExtractor(settings, client=extraction_client),
        verifier=IdentityVerifier(settings, client=verification_client),
        audit_log=audit_log,
    )


@pytest.fixture
def client(settings, pipeline):
    with TestClient(create_app(settings, pipeline)) as test_client:
        yield test_client
