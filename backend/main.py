import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from attendance_service import AttendanceService
from camera_manager import CameraType, OpenCVCaptureDevice
from config import (CAMERA_SOURCE, CAMERA_TYPE, CAPTURE_ACTOR, CAPTURE_COOLDOWN_SECONDS,
                    INSIGHTFACE_MODEL, MATCH_CONFIDENCE_THRESHOLD, MATCHER_TIMEOUT_SECONDS,
                    USE_GPU)
from database import SessionLocal, init_db
from domain import (AttendanceEntry, CaptureOutcome, CaptureStatus, CommitResult,
                    EnrollmentDecision, Outcome, OutcomeReason, RejectReason)
from logger_helper import create_logging_middleware, setup_logger
from matcher import VisualIdentityMatcher
from workflow import CaptureWorkflow

logger = logging.getLogger(__name__)

REJECT_STATUS_CODES = {
    RejectReason.UNKNOWN_IDENTITY: 404,
    RejectReason.ALREADY_MARKED: 409,
    RejectReason.DUPLICATE_FINGERPRINT: 409,
    RejectReason.IDENTITY_EXISTS: 409,
    RejectReason.INVALID_ENTRY: 400,
    RejectReason.DECODE_ERROR: 400,
    RejectReason.STORAGE_ERROR: 503,
    RejectReason.FORBIDDEN: 403,
}

CAPTURE_ERROR_STATUS_CODES = {
    OutcomeReason.UNKNOWN_IDENTITY: 404,
    OutcomeReason.MATCHER_ERROR: 502,
    OutcomeReason.STORAGE_ERROR: 503,
    OutcomeReason.FORBIDDEN: 403,
    OutcomeReason.CAMERA_ERROR: 503,
}


# Request/Response Models
class ManualCommitRequest(BaseModel):
    identity_id: str
    day: date
    outcome: Outcome
    leave_reason: Optional[str] = None
    actor: str


class CorrectionRequest(BaseModel):
    outcome: Outcome
    leave_reason: Optional[str] = None
    actor: str


def entry_to_dict(entry: AttendanceEntry) -> dict:
    return {
        "identity_id": entry.identity_id,
        "day": entry.day.isoformat(),
        "outcome": entry.outcome.value,
        "leave_reason": entry.leave_reason,
        "method": entry.method.value,
        "committed_by": entry.committed_by,
        "committed_at": entry.committed_at.isoformat(),
        "confidence": entry.confidence,
    }


def decision_response(decision: EnrollmentDecision, identity_id: str, created: bool = False):
    if not decision.accepted:
        raise HTTPException(
            status_code=REJECT_STATUS_CODES[decision.reason],
            detail={
                "reason": decision.reason.value,
                "existing_identity_id": decision.existing_identity_id,
            },
        )
    return JSONResponse(
        status_code=201 if created else 200,
        content={"accepted": True, "identity_id": identity_id, "fingerprint": decision.fingerprint},
    )


def commit_response(result: CommitResult) -> dict:
    if not result.committed:
        raise HTTPException(
            status_code=REJECT_STATUS_CODES[result.reason],
            detail={"reason": result.reason.value, "detail": result.detail},
        )
    return {"committed": True, "entry": entry_to_dict(result.entry)}


def capture_response(outcome: CaptureOutcome) -> JSONResponse:
    status_code = 200
    if outcome.status is CaptureStatus.ERROR:
        status_code = CAPTURE_ERROR_STATUS_CODES.get(outcome.reason, 500)
    return JSONResponse(status_code=status_code, content=outcome.to_dict())


def parse_day(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid day: {value}")


def build_matcher_service():
    """Load the InsightFace comparison service, GPU first with CPU fallback."""
    from recognition import InsightFaceMatcherService

    try:
        return InsightFaceMatcherService(model_name=INSIGHTFACE_MODEL, use_gpu=USE_GPU)
    except Exception as e:
        if not USE_GPU:
            raise
        logger.warning("GPU initialization failed: %s, falling back to CPU", e)
        return InsightFaceMatcherService(model_name=INSIGHTFACE_MODEL, use_gpu=False)


def create_app(service: Optional[AttendanceService] = None,
               workflow: Optional[CaptureWorkflow] = None) -> FastAPI:
    """
    Build the API. Without arguments the service and camera workflow are
    created on startup from configuration.
    """
    state = {"service": service, "workflow": workflow, "matcher_service": None}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logger()
        if state["service"] is None:
            init_db()
            logger.info("Database initialized")
            matcher_service = build_matcher_service()
            state["matcher_service"] = matcher_service
            matcher = VisualIdentityMatcher(matcher_service, MATCH_CONFIDENCE_THRESHOLD, MATCHER_TIMEOUT_SECONDS)
            state["service"] = AttendanceService.from_session_factory(SessionLocal, matcher)
        if state["workflow"] is None:
            camera = OpenCVCaptureDevice(CAMERA_SOURCE, CameraType(CAMERA_TYPE))
            state["workflow"] = CaptureWorkflow(state["service"], camera, actor=CAPTURE_ACTOR,
                                                cooldown=CAPTURE_COOLDOWN_SECONDS)

        yield

        await state["workflow"].close()
        logger.info("Shutting down...")

    app = FastAPI(
        title="Attendance Identity Service",
        description="Fingerprint and face-matched attendance marking, one entry per identity per day",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    create_logging_middleware(app, logging.getLogger("requests"))

    def get_service() -> AttendanceService:
        if state["service"] is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return state["service"]

    def get_workflow() -> CaptureWorkflow:
        if state["workflow"] is None:
            raise HTTPException(status_code=503, detail="Capture workflow not initialized")
        return state["workflow"]

    @app.get("/health")
    async def health_check():
        matcher_service = state["matcher_service"]
        info = matcher_service.get_provider_info() if matcher_service else None
        current = state["workflow"]
        return {
            "status": "running" if state["service"] else "starting",
            "threshold": state["service"].matcher.threshold if state["service"] else MATCH_CONFIDENCE_THRESHOLD,
            "matcher": info,
            "workflow_state": current.state.value if current else None,
        }

    # Enrollment

    @app.post("/identities/")
    async def enroll_identity(
        identity_id: str = Form(...),
        name: str = Form(""),
        file: UploadFile = File(...)
    ):
        """Enroll a new identity with its reference photo."""
        contents = await file.read()
        decision = await run_in_threadpool(get_service().enroll, identity_id, name, contents)
        return decision_response(decision, identity_id, created=True)

    @app.post("/identities/guard")
    async def guard_enrollment(
        identity_id: str = Form(...),
        file: UploadFile = File(...)
    ):
        """Check whether a photo may be enrolled under an identity, without writing."""
        contents = await file.read()
        decision = await run_in_threadpool(get_service().guard_enroll, identity_id, contents)
        return decision_response(decision, identity_id)

    @app.put("/identities/{identity_id}/photo")
    async def replace_photo(identity_id: str, file: UploadFile = File(...)):
        contents = await file.read()
        decision = await run_in_threadpool(get_service().replace_photo, identity_id, contents)
        if decision is None:
            raise HTTPException(status_code=404, detail=f"Identity {identity_id} not found")
        return decision_response(decision, identity_id)

    @app.delete("/identities/{identity_id}")
    def delete_identity(identity_id: str):
        if not get_service().registry.soft_delete(identity_id):
            raise HTTPException(status_code=404, detail=f"Identity {identity_id} not found")
        return {"message": f"Identity {identity_id} deleted"}

    # Attendance

    @app.post("/attendance/capture")
    async def capture_attendance(
        file: UploadFile = File(...),
        day: Optional[str] = Form(None),
        actor: str = Form(CAPTURE_ACTOR)
    ):
        """Resolve the person in an uploaded photo and mark them present."""
        contents = await file.read()
        outcome = await get_service().resolve_and_commit(contents, parse_day(day), actor)
        return capture_response(outcome)

    @app.post("/attendance/manual")
    def manual_attendance(request: ManualCommitRequest):
        result = get_service().manual_commit(
            request.identity_id, request.day, request.outcome, request.leave_reason, request.actor)
        return commit_response(result)

    @app.put("/attendance/{identity_id}/{day}")
    def correct_attendance(identity_id: str, day: date, request: CorrectionRequest):
        """Overwrite an identity's entry for a day, e.g. to clear or add a leave reason."""
        result = get_service().correct_entry(identity_id, day, request.outcome, request.leave_reason, request.actor)
        return commit_response(result)

    @app.get("/attendance/{day}")
    def list_attendance(day: date):
        entries = get_service().day_entries(day)
        return {"day": day.isoformat(), "attendance": [entry_to_dict(e) for e in entries]}

    @app.get("/attendance/{day}/{identity_id}/validate")
    def validate_attendance(day: date, identity_id: str):
        result = get_service().gate.validate(identity_id, day)
        return {"valid": result.valid, "reason": result.reason.value if result.reason else None}

    # Capture workflow

    @app.get("/workflow")
    async def workflow_state():
        return get_workflow().snapshot()

    @app.post("/workflow/trigger")
    async def workflow_trigger(day: Optional[str] = None):
        current = get_workflow()
        outcome = await current.trigger(parse_day(day) if day else None)
        if outcome is None:
            raise HTTPException(status_code=409, detail=f"Capture not started in state {current.state.value}")
        return capture_response(outcome)

    @app.post("/workflow/retry")
    async def workflow_retry():
        current = get_workflow()
        current.retry()
        return current.snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
