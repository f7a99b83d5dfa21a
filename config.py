from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Required collaborators: startup fails if any of these is missing or blank
    CLASSIFIER_ENDPOINT: str
    SIGNING_KEY: str
    STORAGE_ENDPOINT: str

    # Classifier (OpenAI-compatible gateway)
    CLASSIFIER_API_KEY: str = "unused"
    EXTRACTION_MODEL: str = "google/gemini-2.5-flash"
    VERIFICATION_MODEL: str = "google/gemini-2.5-flash"
    CLASSIFIER_TIMEOUT_SECONDS: float = 30.0

    # Storage
    STORAGE_TIMEOUT_SECONDS: float = 30.0

    # Sessions
    SESSION_LOCK_TIMEOUT_SECONDS: float = 60.0

    # Decision thresholds (inclusive lower bounds)
    OCR_CONFIDENCE_THRESHOLD: int = 75
    DOCUMENT_VALIDATION_THRESHOLD: int = 70
    LIVENESS_THRESHOLD: int = 70
    FACE_MATCH_THRESHOLD: int = 70

    # Attestation tokens
    SIGNING_KEY_ID: str = "default"

    # Audit trail; unset keeps records in memory
    AUDIT_LOG_PATH: Optional[str] = None

    # Uploads
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    # Live capture quality thresholds
    MIN_IMAGE_WIDTH: int = 480
    MIN_IMAGE_HEIGHT: int = 480
    BLUR_THRESHOLD: float = 100
    MIN_BRIGHTNESS: int = 50
    MAX_BRIGHTNESS: int = 200
    MIN_CONTRAST: int = 30
    QUALITY_THRESHOLD_PROCEED: float = 0.75
    QUALITY_THRESHOLD_CAUTION: float = 0.5

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("CLASSIFIER_ENDPOINT", "SIGNING_KEY", "STORAGE_ENDPOINT")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Fields the user can review and correct after extraction
EXTRACTED_FIELD_NAMES = ["name", "idNumber", "dob", "address"]

# Keys the extraction response must carry
EXTRACTION_REQUIRED_KEYS = [
    "documentType", "name", "idNumber", "dob", "address",
    "confidence", "hasPhoto", "photoLocation",
]

# Classifier document type labels, lowercased and stripped of punctuation
DOCUMENT_TYPE_ALIASES = {
    "aadhaar": "Aadhaar",
    "aadhaar card": "Aadhaar",
    "aadhar": "Aadhaar",
    "passport": "Passport",
    "drivers license": "DriversLicense",
    "driver license": "DriversLicense",
    "driving license": "DriversLicense",
    "driving licence": "DriversLicense",
    "driverslicense": "DriversLicense",
    "unknown": "Unknown",
}

# Accepted upload content, by file extension
SUPPORTED_UPLOAD_EXTS = {".jpg", ".jpeg", ".png", ".heic", ".pdf"}

# Date of birth as returned by the classifier and confirmed by the user
DOB_FORMAT = "%Y-%m-%d"
