import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Type

from config import Settings
from .audit import AuditLog, build_audit_log
from .checks import normalize_fields, validate_fields
from .decision import DecisionEngine
from .errors import (
    TERMINAL_ERRORS, ExtractionFailed, InvalidTransition, VerificationAdapterFailed,
    VerificationError,
)
from .extractor import DocumentExtractor
from .face_match import IdentityVerifier
from .file_converter import convert_to_jpeg
from .models import AuditRecord, ExtractedFields, ExtractionRecord, SessionState, VerificationResult
from .quality import ImageQualityGate
from .session import SessionStateMachine, VerificationSession
from .storage import ObjectStorage, build_storage, content_ref
from .token import TokenIssuer

logger = logging.getLogger(__name__)


class VerificationPipeline:
    """
    Drives a session through its stages: stores uploads, calls the classifier
    adapters and hands every result to the state machine.

    Each stage runs under the session lock, classifier call included, so two
    racing requests for the same stage are serialized and the second one sees
    the committed state.
    """

    def __init__(self,
                 settings: Settings,
                 storage: ObjectStorage,
                 extractor: DocumentExtractor,
                 verifier: IdentityVerifier,
                 machine: SessionStateMachine,
                 quality_gate: ImageQualityGate):
        self.settings = settings
        self.storage = storage
        self.extractor = extractor
        self.verifier = verifier
        self.machine = machine
        self.quality_gate = quality_gate

    @classmethod
    def from_settings(cls,
                      settings: Settings,
                      storage: Optional[ObjectStorage] = None,
                      extractor: Optional[DocumentExtractor] = None,
                      verifier: Optional[IdentityVerifier] = None,
                      audit_log: Optional[AuditLog] = None) -> "VerificationPipeline":
        machine = SessionStateMachine(
            engine=DecisionEngine(settings),
            issuer=TokenIssuer.from_settings(settings),
            audit_log=audit_log or build_audit_log(settings.AUDIT_LOG_PATH),
            lock_timeout=settings.SESSION_LOCK_TIMEOUT_SECONDS,
        )
        return cls(
            settings=settings,
            storage=storage or build_storage(settings),
            extractor=extractor or DocumentExtractor(settings),
            verifier=verifier or IdentityVerifier(settings),
            machine=machine,
            quality_gate=ImageQualityGate(settings),
        )

    @property
    def audit_log(self) -> AuditLog:
        return self.machine.audit_log

    @property
    def issuer(self) -> TokenIssuer:
        return self.machine.issuer

    @contextmanager
    def _adapter_call(self, session: VerificationSession,
                      error_cls: Type[VerificationError], stage: str) -> Iterator[None]:
        """Any failure while talking to a collaborator terminates the session"""
        try:
            yield
        except TERMINAL_ERRORS as e:
            logger.warning(f"Session {session.session_id}: {stage} failed: {e.message} ({e.detail})")
            self.machine.fail(session, e)
            raise
        except Exception as e:
            logger.exception(f"Session {session.session_id}: {stage} failed unexpectedly")
            error = error_cls(f"{stage} failed", detail=str(e))
            self.machine.fail(session, error)
            raise error from e

    # ------------------------
    # Stages
    # ------------------------
    def create_session(self) -> VerificationSession:
        return self.machine.create()

    def get_session(self, session_id: str) -> Dict[str, Any]:
        # Read-only status, so it does not wait behind a running stage
        return self.machine.get(session_id).to_view()

    def submit_document(self, session_id: str, data: bytes, filename: Optional[str]) -> ExtractionRecord:
        """Store the document and run extraction on it"""
        image = convert_to_jpeg(data, filename, self.settings.MAX_UPLOAD_BYTES)

        with self.machine.locked(session_id) as session:
            if not self.machine.document_pending(session, content_ref(image)):
                if session.extraction is None:
                    raise InvalidTransition(f"Extraction for session {session_id} did not finish")
                return session.extraction

            ref = self.storage.put(image)
            self.machine.submit_document(session, ref)
            with self._adapter_call(session, ExtractionFailed, "Extraction"):
                record = self.extractor.extract(image)
            self.machine.record_extraction(session, record)
            return record

    def confirm_fields(self, session_id: str, fields: ExtractedFields) -> ExtractedFields:
        fields = normalize_fields(fields)
        with self.machine.locked(session_id) as session:
            if session.state == SessionState.EXTRACTED:
                fields = validate_fields(fields)
            self.machine.confirm_fields(session, fields)
            return session.extracted_fields

    def submit_live_capture(self, session_id: str, data: bytes, filename: Optional[str]) -> VerificationResult:
        """Store the live capture, score it against the document and finish the session"""
        image = convert_to_jpeg(data, filename, self.settings.MAX_UPLOAD_BYTES)
        capture_quality = self.quality_gate.evaluate(image)

        with self.machine.locked(session_id) as session:
            if not self.machine.live_capture_pending(session, content_ref(image)):
                return self._finish(session)

            ref = self.storage.put(image)
            self.machine.submit_live_capture(session, ref, capture_quality)
            with self._adapter_call(session, VerificationAdapterFailed, "Verification"):
                document = self.storage.get(session.document_ref)
                scores = self.verifier.verify(document, image)
            self.machine.record_scores(session, scores)
            return self._finish(session)

    def get_result(self, session_id: str) -> VerificationResult:
        with self.machine.locked(session_id) as session:
            return self._finish(session)

    def _finish(self, session: VerificationSession) -> VerificationResult:
        # A session left in Scored (e.g. the audit write failed) is completed on the next read
        if session.state == SessionState.SCORED:
            return self.machine.complete(session)
        return self.machine.result(session)

    # ------------------------
    # Relying parties / compliance
    # ------------------------
    def verify_token(self, token: str) -> Dict[str, Any]:
        return self.issuer.verify(token)

    def audit_for_session(self, session_id: str) -> Optional[AuditRecord]:
        return self.audit_log.get(session_id)

    def audit_between(self, start: Optional[datetime], end: Optional[datetime]) -> List[AuditRecord]:
        return self.audit_log.query(start, end)
