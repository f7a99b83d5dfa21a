from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SessionState(str, Enum):
    CREATED = "Created"
    DOCUMENT_SUBMITTED = "DocumentSubmitted"
    EXTRACTED = "Extracted"
    FIELDS_CONFIRMED = "FieldsConfirmed"
    LIVE_CAPTURE_SUBMITTED = "LiveCaptureSubmitted"
    SCORED = "Scored"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def rank(self) -> int:
        # Failed sits past every stage so nothing can follow it
        return SESSION_ORDER.index(self) if self in SESSION_ORDER else len(SESSION_ORDER)


SESSION_ORDER = [
    SessionState.CREATED,
    SessionState.DOCUMENT_SUBMITTED,
    SessionState.EXTRACTED,
    SessionState.FIELDS_CONFIRMED,
    SessionState.LIVE_CAPTURE_SUBMITTED,
    SessionState.SCORED,
    SessionState.COMPLETED,
]


class DocumentType(str, Enum):
    AADHAAR = "Aadhaar"
    PASSPORT = "Passport"
    DRIVERS_LICENSE = "DriversLicense"
    UNKNOWN = "Unknown"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ExtractedFields(CamelModel):
    """Identity fields read from the document, correctable by the user."""

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    id_number: str = ""
    dob: str = ""
    address: str = ""


class ExtractionRecord(CamelModel):
    document_type: DocumentType
    extracted_fields: ExtractedFields
    ocr_confidence: int = Field(ge=0, le=100)
    has_photo: bool = False
    photo_location_hint: Optional[str] = None


class VerificationScores(CamelModel):
    liveness_score: int = Field(ge=0, le=100)
    face_match_score: int = Field(ge=0, le=100)
    document_validation: int = Field(ge=0, le=100)
    notes: str = ""


class ScoreBreakdown(CamelModel):
    """The four signals the decision is made on."""

    ocr_confidence: Optional[int] = None
    document_validation: Optional[int] = None
    liveness_score: Optional[int] = None
    face_match_score: Optional[int] = None


class AuditRecord(CamelModel):
    session_id: str
    ocr_confidence: Optional[int] = None
    document_validation: Optional[int] = None
    liveness_score: Optional[int] = None
    face_match_score: Optional[int] = None
    verified: bool = False
    token: Optional[str] = None
    timestamp: datetime
    document_type: Optional[DocumentType] = None
    error_kind: Optional[str] = None

    @property
    def scores(self) -> ScoreBreakdown:
        return ScoreBreakdown(
            ocr_confidence=self.ocr_confidence,
            document_validation=self.document_validation,
            liveness_score=self.liveness_score,
            face_match_score=self.face_match_score,
        )


class CaptureQuality(CamelModel):
    quality: str
    risk_score: float
    signals: List[str] = []
    recommended_action: str


class VerificationResult(CamelModel):
    """What the client gets back once a session is completed."""

    session_id: str
    verified: bool
    scores: ScoreBreakdown
    token: Optional[str] = None
    timestamp: datetime
    failed_checks: List[str] = []
    capture_quality: Optional[CaptureQuality] = None
