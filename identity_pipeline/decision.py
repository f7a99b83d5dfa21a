from dataclasses import dataclass
from typing import List, Optional

from config import Settings


@dataclass(frozen=True)
class Thresholds:
    """Inclusive lower bounds for each verification signal"""

    ocr_confidence: int = 75
    document_validation: int = 70
    liveness_score: int = 70
    face_match_score: int = 70

    @classmethod
    def from_settings(cls, settings: Settings) -> "Thresholds":
        return cls(
            ocr_confidence=settings.OCR_CONFIDENCE_THRESHOLD,
            document_validation=settings.DOCUMENT_VALIDATION_THRESHOLD,
            liveness_score=settings.LIVENESS_THRESHOLD,
            face_match_score=settings.FACE_MATCH_THRESHOLD,
        )


DEFAULT_THRESHOLDS = Thresholds()


def failed_checks(ocr_confidence: int,
                  document_validation: int,
                  liveness_score: int,
                  face_match_score: int,
                  thresholds: Thresholds = DEFAULT_THRESHOLDS) -> List[str]:
    """Names of the signals that fall below their threshold"""
    signals = [
        ("ocrConfidence", ocr_confidence, thresholds.ocr_confidence),
        ("documentValidation", document_validation, thresholds.document_validation),
        ("livenessScore", liveness_score, thresholds.liveness_score),
        ("faceMatchScore", face_match_score, thresholds.face_match_score),
    ]
    return [name for name, value, minimum in signals if value < minimum]


def decide(ocr_confidence: int,
           document_validation: int,
           liveness_score: int,
           face_match_score: int,
           thresholds: Thresholds = DEFAULT_THRESHOLDS) -> bool:
    """
    Verified only when every signal meets its threshold.

    A strict conjunction: no weighting and no partial credit, so any audit
    record can be re-decided from its four scores alone.
    """
    return not failed_checks(
        ocr_confidence, document_validation, liveness_score, face_match_score, thresholds
    )


class DecisionEngine:
    """
    Applies the configured thresholds to the four verification signals
    """

    def __init__(self, settings: Optional[Settings] = None, thresholds: Optional[Thresholds] = None):
        if thresholds is None:
            thresholds = Thresholds.from_settings(settings) if settings else DEFAULT_THRESHOLDS
        self.thresholds = thresholds

    def decide(self, ocr_confidence: int, document_validation: int,
               liveness_score: int, face_match_score: int) -> bool:
        return decide(ocr_confidence, document_validation, liveness_score,
                      face_match_score, self.thresholds)

    def failed_checks(self, ocr_confidence: int, document_validation: int,
                      liveness_score: int, face_match_score: int) -> List[str]:
        return failed_checks(ocr_confidence, document_validation, liveness_score,
                             face_match_score, self.thresholds)
