"""
Session state machine.

Owns every verification session and is the only code that mutates one.
Stages advance strictly in order:

    Created -> DocumentSubmitted -> Extracted -> FieldsConfirmed
            -> LiveCaptureSubmitted -> Scored -> Completed

An adapter failure moves the session to the terminal Failed state instead.
Completed and Failed sessions never change again.

Transition methods expect the caller to hold the session lock (see
``SessionStateMachine.locked``). Replaying a finished step with the same
payload is a no-op that returns False; replaying it with different data
raises ConcurrentModification.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .audit import AuditLog
from .checks import mask_fields
from .decision import DecisionEngine
from .errors import (
    ConcurrentModification, InvalidTransition, SessionNotFound, SignatureFailure,
    VerificationError,
)
from .models import (
    AuditRecord, CaptureQuality, DocumentType, ExtractedFields, ExtractionRecord,
    ScoreBreakdown, SessionState, VerificationResult, VerificationScores,
)
from .token import TokenIssuer, attestation_claims

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VerificationSession:
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.CREATED
    created_at: datetime = field(default_factory=utcnow)
    document_ref: Optional[str] = None
    extraction: Optional[ExtractionRecord] = None
    extracted_fields: Optional[ExtractedFields] = None
    live_photo_ref: Optional[str] = None
    capture_quality: Optional[CaptureQuality] = None
    scores: Optional[VerificationScores] = None
    scored_at: Optional[datetime] = None
    verified: Optional[bool] = None
    failed_checks: List[str] = field(default_factory=list)
    token: Optional[str] = None
    completed_at: Optional[datetime] = None
    failure: Optional[VerificationError] = None
    # Set while a failure's audit record has not been written yet
    pending_failure: Optional[VerificationError] = None
    version: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def document_type(self) -> Optional[DocumentType]:
        return self.extraction.document_type if self.extraction else None

    @property
    def ocr_confidence(self) -> Optional[int]:
        return self.extraction.ocr_confidence if self.extraction else None

    @property
    def score_breakdown(self) -> ScoreBreakdown:
        scores = self.scores
        return ScoreBreakdown(
            ocr_confidence=self.ocr_confidence,
            document_validation=scores.document_validation if scores else None,
            liveness_score=scores.liveness_score if scores else None,
            face_match_score=scores.face_match_score if scores else None,
        )

    def to_view(self) -> Dict[str, Any]:
        """Client-safe snapshot; identity fields are masked"""
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "version": self.version,
            "documentType": self.document_type.value if self.document_type else None,
            "ocrConfidence": self.ocr_confidence,
            "extractedFields": mask_fields(self.extracted_fields) if self.extracted_fields else None,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "failure": (
                {"error": self.failure.kind, "retry": self.failure.retry}
                if self.failure else None
            ),
        }


class SessionStateMachine:
    """
    Registry of sessions plus the legal transitions between their stages.

    The decision engine, token issuer and audit log are invoked from here so
    that scoring, completion and failure are each a single committed step.
    """

    def __init__(self,
                 engine: DecisionEngine,
                 issuer: TokenIssuer,
                 audit_log: AuditLog,
                 lock_timeout: float = 60.0):
        self.engine = engine
        self.issuer = issuer
        self.audit_log = audit_log
        self.lock_timeout = lock_timeout
        self._sessions: Dict[str, VerificationSession] = {}
        self._registry_lock = threading.Lock()

    # ------------------------
    # Registry
    # ------------------------
    def create(self) -> VerificationSession:
        session = VerificationSession()
        with self._registry_lock:
            self._sessions[session.session_id] = session
        logger.info(f"Session {session.session_id} created")
        return session

    def get(self, session_id: str) -> VerificationSession:
        with self._registry_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session {session_id}")
        return session

    @contextmanager
    def locked(self, session_id: str) -> Iterator[VerificationSession]:
        """
        Serialize work on one session; gives up with ConcurrentModification.

        A failure left unaudited by an earlier call is settled before the
        caller sees the session.
        """
        session = self.get(session_id)
        if not session.lock.acquire(timeout=self.lock_timeout):
            raise ConcurrentModification(f"Session {session_id} is busy")
        try:
            if session.pending_failure is not None:
                logger.info(f"Session {session_id}: retrying audit of pending failure")
                self.fail(session, session.pending_failure)
            yield session
        finally:
            session.lock.release()

    # ------------------------
    # Guards
    # ------------------------
    def _ensure_open(self, session: VerificationSession) -> None:
        failure = session.failure if session.state == SessionState.FAILED else session.pending_failure
        if session.state == SessionState.FAILED or failure is not None:
            raise InvalidTransition(
                f"Session {session.session_id} failed ({failure.kind if failure else 'unknown'})",
                retry=failure.retry if failure else None,
            )

    def _require(self, session: VerificationSession, expected: SessionState, action: str) -> None:
        self._ensure_open(session)
        if session.state != expected:
            raise InvalidTransition(
                f"Cannot {action} in state {session.state.value}; expected {expected.value}"
            )

    def _advance(self, session: VerificationSession, to: SessionState) -> None:
        if to.rank != session.state.rank + 1:
            raise InvalidTransition(f"Cannot move from {session.state.value} to {to.value}")
        logger.info(f"Session {session.session_id}: {session.state.value} -> {to.value}")
        session.state = to
        session.version += 1

    def _replay(self, session: VerificationSession, reached: SessionState,
                stored: Any, submitted: Any, action: str) -> bool:
        """
        Decide a call for a step that may already be done.
        True means the step still has to run.
        """
        self._ensure_open(session)
        if session.state.rank < reached.rank:
            raise InvalidTransition(
                f"Cannot {action} in state {session.state.value}; expected {reached.value}"
            )
        if session.state == reached:
            return True
        if stored == submitted:
            logger.info(f"Session {session.session_id}: replayed {action}")
            return False
        raise ConcurrentModification(f"Cannot {action} again with different data")

    # ------------------------
    # Transitions
    # ------------------------
    def document_pending(self, session: VerificationSession, document_ref: str) -> bool:
        """Check a document submission without applying it; False means a replay"""
        return self._replay(session, SessionState.CREATED, session.document_ref,
                            document_ref, "submit document")

    def submit_document(self, session: VerificationSession, document_ref: str) -> bool:
        if not self.document_pending(session, document_ref):
            return False
        session.document_ref = document_ref
        self._advance(session, SessionState.DOCUMENT_SUBMITTED)
        return True

    def record_extraction(self, session: VerificationSession, record: ExtractionRecord) -> None:
        self._require(session, SessionState.DOCUMENT_SUBMITTED, "record extraction")
        session.extraction = record
        session.extracted_fields = record.extracted_fields
        self._advance(session, SessionState.EXTRACTED)

    def confirm_fields(self, session: VerificationSession, fields: ExtractedFields) -> bool:
        if not self._replay(session, SessionState.EXTRACTED, session.extracted_fields,
                            fields, "confirm fields"):
            return False
        session.extracted_fields = fields
        self._advance(session, SessionState.FIELDS_CONFIRMED)
        return True

    def live_capture_pending(self, session: VerificationSession, live_photo_ref: str) -> bool:
        return self._replay(session, SessionState.FIELDS_CONFIRMED, session.live_photo_ref,
                            live_photo_ref, "submit live capture")

    def submit_live_capture(self, session: VerificationSession, live_photo_ref: str,
                            capture_quality: Optional[CaptureQuality] = None) -> bool:
        if not self.live_capture_pending(session, live_photo_ref):
            return False
        session.live_photo_ref = live_photo_ref
        session.capture_quality = capture_quality
        self._advance(session, SessionState.LIVE_CAPTURE_SUBMITTED)
        return True

    def record_scores(self, session: VerificationSession, scores: VerificationScores) -> bool:
        """Store the classifier scores and fuse them into the decision"""
        self._require(session, SessionState.LIVE_CAPTURE_SUBMITTED, "record scores")
        ocr = session.ocr_confidence
        session.scores = scores
        session.scored_at = utcnow()
        session.failed_checks = self.engine.failed_checks(
            ocr, scores.document_validation, scores.liveness_score, scores.face_match_score
        )
        session.verified = self.engine.decide(
            ocr, scores.document_validation, scores.liveness_score, scores.face_match_score
        )
        self._advance(session, SessionState.SCORED)
        logger.info(
            f"Session {session.session_id} decided verified={session.verified} "
            f"failed_checks={session.failed_checks}"
        )
        return session.verified

    def complete(self, session: VerificationSession) -> VerificationResult:
        """
        Issue the token (when verified), write the audit record, then complete.
        The token only becomes visible after its audit record is durable.
        """
        self._require(session, SessionState.SCORED, "complete")
        token = None
        if session.verified:
            claims = attestation_claims(
                session.session_id,
                session.document_type,
                session.score_breakdown,
                session.scored_at,
                session.verified,
            )
            try:
                token = self.issuer.issue(claims)
            except SignatureFailure as e:
                logger.error(f"Session {session.session_id}: token signing failed: {e}")
                self.fail(session, e)
                raise

        self.audit_log.record(self._audit_record(session, session.verified, token))
        session.token = token
        session.completed_at = utcnow()
        self._advance(session, SessionState.COMPLETED)
        return self.result(session)

    def fail(self, session: VerificationSession, error: VerificationError) -> None:
        """
        Terminate the session; the audit record carries whatever scores were obtained.

        If the audit write raises, the error is kept as pending and the
        session accepts no further step until ``locked`` retries the write.
        """
        if session.state in (SessionState.COMPLETED, SessionState.FAILED):
            raise InvalidTransition(f"Session {session.session_id} already {session.state.value}")
        session.pending_failure = error
        self.audit_log.record(self._audit_record(session, False, None, error.kind))
        session.pending_failure = None
        logger.warning(
            f"Session {session.session_id}: {session.state.value} -> Failed ({error.kind})"
        )
        session.failure = error
        session.completed_at = utcnow()
        session.state = SessionState.FAILED
        session.version += 1

    # ------------------------
    # Views
    # ------------------------
    def result(self, session: VerificationSession) -> VerificationResult:
        if session.state == SessionState.FAILED:
            failure = session.failure
            raise type(failure)(failure.message, retry=failure.retry)
        if session.state != SessionState.COMPLETED:
            raise InvalidTransition(
                f"Result not available in state {session.state.value}"
            )
        return VerificationResult(
            session_id=session.session_id,
            verified=session.verified,
            scores=session.score_breakdown,
            token=session.token,
            timestamp=session.scored_at,
            failed_checks=session.failed_checks,
            capture_quality=session.capture_quality,
        )

    def _audit_record(self, session: VerificationSession, verified: bool,
                      token: Optional[str], error_kind: Optional[str] = None) -> AuditRecord:
        breakdown = session.score_breakdown
        return AuditRecord(
            session_id=session.session_id,
            ocr_confidence=breakdown.ocr_confidence,
            document_validation=breakdown.document_validation,
            liveness_score=breakdown.liveness_score,
            face_match_score=breakdown.face_match_score,
            verified=verified,
            token=token,
            timestamp=session.scored_at if error_kind is None else utcnow(),
            document_type=session.document_type,
            error_kind=error_kind,
        )
