import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import Settings, get_settings
from identity_pipeline.checks import InvalidFields
from identity_pipeline.errors import (
    TERMINAL_ERRORS, ConcurrentModification, InvalidTransition, InvalidUpload,
    MalformedExtractionResponse, SessionNotFound, SignatureFailure, StorageError,
    TRY_AGAIN, TokenVerificationError, VerificationError,
)
from identity_pipeline.file_converter import UnsupportedUploadType, UploadTooLarge
from identity_pipeline.models import AuditRecord, ExtractedFields, ExtractionRecord, VerificationResult
from identity_pipeline.run_pipeline import VerificationPipeline

logger = logging.getLogger(__name__)


class TokenRequest(BaseModel):
    token: str


def error_status(exc: VerificationError) -> int:
    if isinstance(exc, SessionNotFound):
        return 404
    if isinstance(exc, (InvalidTransition, ConcurrentModification)):
        return 409
    if isinstance(exc, UploadTooLarge):
        return 413
    if isinstance(exc, UnsupportedUploadType):
        return 415
    if isinstance(exc, (InvalidUpload, TokenVerificationError)):
        return 400
    if isinstance(exc, (InvalidFields, MalformedExtractionResponse)):
        return 422
    if isinstance(exc, SignatureFailure):
        return 500
    if isinstance(exc, StorageError):
        return 503
    # Adapter failures: transient upstream problem vs. input the classifier rejected
    return 502 if exc.retry == TRY_AGAIN else 422


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_app(settings: Optional[Settings] = None,
               pipeline: Optional[VerificationPipeline] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    pipeline = pipeline or VerificationPipeline.from_settings(settings)

    app = FastAPI(
        title="Identity Verification Service",
        description="Document extraction and live biometric verification with signed attestations",
        version="1.0.0",
    )
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VerificationError)
    async def verification_error_handler(request: Request, exc: VerificationError):
        status = error_status(exc)
        # Classifier and storage details stay in the logs
        internal = isinstance(exc, TERMINAL_ERRORS + (StorageError,))
        if status >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.kind}: {exc.message} ({exc.detail})")
        return JSONResponse(
            status_code=status,
            content={
                "error": exc.kind,
                "message": exc.user_message if internal else exc.message,
                "retry": exc.retry,
            },
        )

    # ------------------------
    # Sessions
    # ------------------------
    @app.post("/sessions", status_code=201)
    def create_session():
        session = pipeline.create_session()
        return {"sessionId": session.session_id, "state": session.state.value}

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str):
        return pipeline.get_session(session_id)

    @app.post("/sessions/{session_id}/document", response_model=ExtractionRecord)
    def submit_document(session_id: str, file: UploadFile = File(...)):
        """
        Upload the identity document (JPG / PNG / HEIC / PDF) and extract its fields.
        The response is what the user reviews before confirming.
        """
        return pipeline.submit_document(session_id, file.file.read(), file.filename)

    @app.post("/sessions/{session_id}/fields", response_model=ExtractedFields)
    def confirm_fields(session_id: str, fields: ExtractedFields):
        return pipeline.confirm_fields(session_id, fields)

    @app.post("/sessions/{session_id}/live-capture", response_model=VerificationResult)
    def submit_live_capture(session_id: str, file: UploadFile = File(...)):
        return pipeline.submit_live_capture(session_id, file.file.read(), file.filename)

    @app.get("/sessions/{session_id}/result", response_model=VerificationResult)
    def get_result(session_id: str):
        return pipeline.get_result(session_id)

    # ------------------------
    # Relying parties / compliance
    # ------------------------
    @app.post("/tokens/verify")
    def verify_token(body: TokenRequest):
        try:
            payload = pipeline.verify_token(body.token)
        except TokenVerificationError as e:
            return {"valid": False, "payload": None, "reason": e.message}
        return {"valid": True, "payload": payload, "reason": None}

    @app.get("/audit", response_model=List[AuditRecord])
    def audit(session_id: Optional[str] = Query(None, alias="sessionId"),
              start: Optional[datetime] = None,
              end: Optional[datetime] = None):
        if session_id is not None:
            record = pipeline.audit_for_session(session_id)
            return [record] if record else []
        return pipeline.audit_between(_as_utc(start), _as_utc(end))

    # ------------------------
    # Health Check
    # ------------------------
    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "service": "identity-verification",
        }

    return app


# ------------------------
# Local Dev Entry
# ------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
