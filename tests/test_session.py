import threading

import pytest

from conftest import FlakyAuditLog
from identity_pipeline.audit import InMemoryAuditLog
from identity_pipeline.decision import DecisionEngine
from identity_pipeline.errors import (
    ConcurrentModification, ExtractionFailed, InvalidTransition, MalformedExtractionResponse,
    SessionNotFound, SignatureFailure, VerificationAdapterFailed,
)
from identity_pipeline.models import (
    DocumentType, ExtractedFields, ExtractionRecord, SESSION_ORDER, SessionState, VerificationScores,
)
from identity_pipeline.session import SessionStateMachine
from identity_pipeline.token import TokenIssuer

pytestmark = pytest.mark.unit

FIELDS = ExtractedFields(name="Jane Doe", id_number="P1234567", dob="1990-04-12", address="12 Main Street")
EXTRACTION = ExtractionRecord(
    document_type=DocumentType.PASSPORT,
    extracted_fields=FIELDS,
    ocr_confidence=90,
    has_photo=True,
    photo_location_hint="left-side",
)
GOOD_SCORES = VerificationScores(liveness_score=85, face_match_score=88, document_validation=92)
BAD_SCORES = VerificationScores(liveness_score=85, face_match_score=40, document_validation=92)


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def machine(audit_log):
    return SessionStateMachine(DecisionEngine(), TokenIssuer("secret"), audit_log, lock_timeout=0.5)


def advance_to(machine, session, state):
    steps = [
        lambda: machine.submit_document(session, "sha256:" + "a" * 64),
        lambda: machine.record_extraction(session, EXTRACTION),
        lambda: machine.confirm_fields(session, FIELDS),
        lambda: machine.submit_live_capture(session, "sha256:" + "b" * 64),
        lambda: machine.record_scores(session, GOOD_SCORES),
        lambda: machine.complete(session),
    ]
    for step in steps[:SESSION_ORDER.index(state)]:
        step()
    assert session.state == state
    return session


def test_unknown_session(machine):
    with pytest.raises(SessionNotFound):
        machine.get("nope")


def test_happy_path_walks_every_state_in_order(machine, audit_log):
    session = machine.create()
    seen = [session.state]

    machine.submit_document(session, "sha256:" + "a" * 64)
    seen.append(session.state)
    machine.record_extraction(session, EXTRACTION)
    seen.append(session.state)
    machine.confirm_fields(session, FIELDS)
    seen.append(session.state)
    machine.submit_live_capture(session, "sha256:" + "b" * 64)
    seen.append(session.state)
    assert machine.record_scores(session, GOOD_SCORES) is True
    seen.append(session.state)
    result = machine.complete(session)
    seen.append(session.state)

    assert seen == SESSION_ORDER
    assert session.version == len(SESSION_ORDER) - 1
    assert result.verified is True
    assert result.token and machine.issuer.verify(result.token)["sessionId"] == session.session_id
    assert audit_log.get(session.session_id).token == result.token


@pytest.mark.parametrize("state", SESSION_ORDER)
def test_no_step_can_be_skipped(machine, state):
    session = advance_to(machine, machine.create(), state)
    attempts = {
        "record_extraction": lambda: machine.record_extraction(session, EXTRACTION),
        "record_scores": lambda: machine.record_scores(session, GOOD_SCORES),
        "complete": lambda: machine.complete(session),
    }
    allowed = {
        SessionState.DOCUMENT_SUBMITTED: "record_extraction",
        SessionState.LIVE_CAPTURE_SUBMITTED: "record_scores",
        SessionState.SCORED: "complete",
    }.get(state)

    for name, attempt in attempts.items():
        if name == allowed:
            continue
        with pytest.raises(InvalidTransition):
            attempt()
    assert session.state == state


def test_live_capture_requires_confirmed_fields(machine):
    session = advance_to(machine, machine.create(), SessionState.EXTRACTED)

    with pytest.raises(InvalidTransition):
        machine.submit_live_capture(session, "sha256:" + "b" * 64)
    assert session.state == SessionState.EXTRACTED


def test_confirm_before_extraction_is_out_of_order(machine):
    session = advance_to(machine, machine.create(), SessionState.DOCUMENT_SUBMITTED)

    with pytest.raises(InvalidTransition):
        machine.confirm_fields(session, FIELDS)


def test_confirm_fields_overwrites_extraction_once(machine):
    session = advance_to(machine, machine.create(), SessionState.EXTRACTED)
    corrected = FIELDS.model_copy(update={"address": "14 Main Street"})

    assert machine.confirm_fields(session, corrected) is True
    assert session.extracted_fields == corrected
    assert session.extraction.extracted_fields == FIELDS


def test_confirm_fields_replay_with_same_data_is_a_noop(machine):
    session = advance_to(machine, machine.create(), SessionState.EXTRACTED)
    machine.confirm_fields(session, FIELDS)
    version = session.version

    assert machine.confirm_fields(session, FIELDS) is False
    assert session.state == SessionState.FIELDS_CONFIRMED
    assert session.version == version


def test_confirm_fields_replay_with_other_data_is_rejected(machine):
    session = advance_to(machine, machine.create(), SessionState.LIVE_CAPTURE_SUBMITTED)

    with pytest.raises(ConcurrentModification):
        machine.confirm_fields(session, FIELDS.model_copy(update={"name": "John Roe"}))
    assert session.extracted_fields == FIELDS


def test_document_replay(machine):
    session = advance_to(machine, machine.create(), SessionState.EXTRACTED)

    assert machine.submit_document(session, "sha256:" + "a" * 64) is False
    with pytest.raises(ConcurrentModification):
        machine.submit_document(session, "sha256:" + "c" * 64)


def test_racing_confirmations_only_commit_one(machine):
    session = advance_to(machine, machine.create(), SessionState.EXTRACTED)
    variants = [FIELDS.model_copy(update={"name": f"Name {i}"}) for i in range(8)]
    committed, rejected = [], []
    barrier = threading.Barrier(len(variants))

    def confirm(fields):
        barrier.wait()
        try:
            with machine.locked(session.session_id) as locked_session:
                machine.confirm_fields(locked_session, fields)
            committed.append(fields)
        except ConcurrentModification:
            rejected.append(fields)

    threads = [threading.Thread(target=confirm, args=(v,)) for v in variants]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(committed) == 1
    assert len(rejected) == len(variants) - 1
    assert session.extracted_fields == committed[0]


def test_busy_session_times_out(machine):
    session = machine.create()
    with machine.locked(session.session_id):
        outcome = []

        def contender():
            try:
                with machine.locked(session.session_id):
                    outcome.append("acquired")
            except ConcurrentModification:
                outcome.append("busy")

        t = threading.Thread(target=contender)
        t.start()
        t.join()

    assert outcome == ["busy"]


def test_failed_decision_completes_without_token(machine, audit_log):
    session = advance_to(machine, machine.create(), SessionState.LIVE_CAPTURE_SUBMITTED)

    assert machine.record_scores(session, BAD_SCORES) is False
    result = machine.complete(session)

    assert result.verified is False
    assert result.token is None
    assert result.failed_checks == ["faceMatchScore"]
    record = audit_log.get(session.session_id)
    assert (record.ocr_confidence, record.document_validation,
            record.liveness_score, record.face_match_score) == (90, 92, 85, 40)
    assert record.verified is False


def test_extraction_failure_is_terminal(machine, audit_log):
    session = advance_to(machine, machine.create(), SessionState.DOCUMENT_SUBMITTED)

    machine.fail(session, MalformedExtractionResponse("no JSON"))

    assert session.state == SessionState.FAILED
    record = audit_log.get(session.session_id)
    assert record.error_kind == "MalformedExtractionResponse"
    assert record.scores.model_dump() == {
        "ocr_confidence": None, "document_validation": None,
        "liveness_score": None, "face_match_score": None,
    }
    with pytest.raises(InvalidTransition):
        machine.record_extraction(session, EXTRACTION)
    with pytest.raises(MalformedExtractionResponse):
        machine.result(session)


def test_scoring_failure_keeps_only_the_ocr_signal(machine, audit_log):
    session = advance_to(machine, machine.create(), SessionState.LIVE_CAPTURE_SUBMITTED)

    machine.fail(session, VerificationAdapterFailed("timeout"))

    record = audit_log.get(session.session_id)
    assert record.ocr_confidence == 90
    assert record.liveness_score is None
    assert record.verified is False and record.token is None


def test_completed_session_is_immutable(machine, audit_log):
    session = advance_to(machine, machine.create(), SessionState.COMPLETED)
    token = session.token

    with pytest.raises(InvalidTransition):
        machine.fail(session, ExtractionFailed("late"))
    with pytest.raises(InvalidTransition):
        machine.complete(session)
    with pytest.raises(ConcurrentModification):
        machine.submit_live_capture(session, "sha256:" + "d" * 64)
    assert session.state == SessionState.COMPLETED
    assert session.token == token
    assert len(audit_log) == 1


def test_signing_failure_never_reports_a_verdict(audit_log):
    machine = SessionStateMachine(DecisionEngine(), TokenIssuer(None), audit_log)
    session = advance_to(machine, machine.create(), SessionState.SCORED)
    assert session.verified is True

    with pytest.raises(SignatureFailure):
        machine.complete(session)

    assert session.state == SessionState.FAILED
    assert session.token is None
    record = audit_log.get(session.session_id)
    assert record.error_kind == "SignatureFailure"
    assert record.token is None
    with pytest.raises(SignatureFailure):
        machine.result(session)


def test_session_view_masks_identity(machine):
    session = advance_to(machine, machine.create(), SessionState.EXTRACTED)

    view = session.to_view()

    assert view["state"] == "Extracted"
    assert view["documentType"] == "Passport"
    assert view["extractedFields"]["idNumber"] == "XXXX4567"
    assert view["extractedFields"]["name"] == "JXXXX Doe"


def test_advance_never_skips_a_stage(machine):
    session = machine.create()

    with pytest.raises(InvalidTransition):
        machine._advance(session, SessionState.EXTRACTED)
    assert session.state == SessionState.CREATED
    assert session.version == 0


def test_unaudited_failure_blocks_the_session_until_written():
    audit_log = FlakyAuditLog(failures=1)
    machine = SessionStateMachine(DecisionEngine(), TokenIssuer("secret"), audit_log, lock_timeout=0.5)
    session = advance_to(machine, machine.create(), SessionState.DOCUMENT_SUBMITTED)

    with pytest.raises(OSError):
        machine.fail(session, ExtractionFailed("timeout"))
    assert session.state == SessionState.DOCUMENT_SUBMITTED
    with pytest.raises(InvalidTransition):
        machine.record_extraction(session, EXTRACTION)

    with machine.locked(session.session_id) as settled:
        assert settled.state == SessionState.FAILED
    assert session.pending_failure is None
    assert audit_log.get(session.session_id).error_kind == "ExtractionFailed"
    with pytest.raises(ExtractionFailed):
        machine.result(session)
