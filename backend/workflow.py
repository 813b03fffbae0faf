"""
Capture workflow state machine.

    IDLE -> CAPTURING -> PROCESSING -> SUCCESS | NO_MATCH | ALREADY_MARKED | ERROR -> IDLE

One cycle runs at a time per workflow; a trigger while a cycle is active is
ignored. Terminal states return to IDLE after a cooldown, or immediately on
retry. Every cycle carries a generation number: once the workflow is
cancelled or closed, a late result from an abandoned cycle neither commits
nor changes state. A commit already under way when the cycle is abandoned
is completed before the workflow returns to IDLE.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional

from camera_manager import CaptureDevice
from config import CAPTURE_ACTOR, CAPTURE_COOLDOWN_SECONDS
from domain import CaptureOutcome, CaptureStatus, OutcomeReason, utcnow
from errors import CameraError, InvariantViolation

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    SUCCESS = "success"
    NO_MATCH = "no_match"
    ALREADY_MARKED = "already_marked"
    ERROR = "error"


TERMINAL_STATES = {CaptureState.SUCCESS, CaptureState.NO_MATCH,
                   CaptureState.ALREADY_MARKED, CaptureState.ERROR}

_TERMINAL_STATE_FOR = {
    CaptureStatus.SUCCESS: CaptureState.SUCCESS,
    CaptureStatus.NO_MATCH: CaptureState.NO_MATCH,
    CaptureStatus.ALREADY_MARKED: CaptureState.ALREADY_MARKED,
    CaptureStatus.ERROR: CaptureState.ERROR,
}


@dataclass(frozen=True)
class WorkflowSession:
    """What the capture screen shows; never persisted."""
    state: CaptureState = CaptureState.IDLE
    status_message: str = "Ready to capture."
    captured_frame: Optional[bytes] = None
    resolved_identity_id: Optional[str] = None
    confidence: Optional[float] = None
    outcome: Optional[CaptureOutcome] = None
    entered_state_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "status_message": self.status_message,
            "has_frame": self.captured_frame is not None,
            "resolved_identity_id": self.resolved_identity_id,
            "confidence": self.confidence,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "entered_state_at": self.entered_state_at.isoformat(),
        }


class CaptureWorkflow:

    def __init__(self, service, camera: CaptureDevice, actor: str = CAPTURE_ACTOR,
                 cooldown: float = CAPTURE_COOLDOWN_SECONDS,
                 today: Callable[[], date] = date.today):
        """
        Args:
            service: AttendanceService used to resolve and commit each frame
            camera: Capture device, held only while a frame is being taken
            actor: Recorded as committed_by on camera-marked entries
            cooldown: Seconds a terminal state is shown before returning to IDLE
            today: Supplies the attendance day when trigger() gets none
        """
        self.service = service
        self.camera = camera
        self.actor = actor
        self.cooldown = cooldown
        self.today = today
        self.session = WorkflowSession()
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def state(self) -> CaptureState:
        return self.session.state

    def snapshot(self) -> dict:
        return self.session.to_dict()

    def _is_current(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    def _enter(self, state: CaptureState, message: str, **fields):
        self.session = replace(self.session, state=state, status_message=message,
                               entered_state_at=utcnow(), **fields)
        logger.debug("Capture workflow -> %s", state.value)

    def _reset(self):
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        self.session = WorkflowSession()

    async def trigger(self, day: Optional[date] = None) -> Optional[CaptureOutcome]:
        """
        Run one capture cycle. Returns its outcome, or None if the trigger
        was ignored or the cycle was abandoned by cancel()/close().
        """
        if self._closed or self.state is not CaptureState.IDLE:
            logger.info("Trigger ignored in state %s", self.state.value)
            return None

        self._generation += 1
        generation = self._generation
        self._enter(CaptureState.CAPTURING, "Capturing...")
        self._task = asyncio.ensure_future(self._run_cycle(generation, day or self.today()))
        try:
            return await self._task
        except asyncio.CancelledError:
            if generation != self._generation or self._closed:
                return None
            raise
        finally:
            if generation == self._generation:
                self._task = None

    async def _run_cycle(self, generation: int, day: date) -> Optional[CaptureOutcome]:
        try:
            try:
                async with self.camera.acquire() as capture:
                    frame = await capture.frame()
            except CameraError as e:
                logger.warning("Camera failure: %s", e)
                outcome = CaptureOutcome(CaptureStatus.ERROR, OutcomeReason.CAMERA_ERROR, detail=str(e))
            except Exception as e:
                logger.exception("Capture device failed")
                outcome = CaptureOutcome(CaptureStatus.ERROR, OutcomeReason.CAMERA_ERROR, detail=str(e))
            else:
                if not self._is_current(generation):
                    return None
                self._enter(CaptureState.PROCESSING, "Processing...", captured_frame=frame)
                outcome = await self.service.resolve_and_commit(
                    frame, day, self.actor, is_live=lambda: self._is_current(generation))
        except asyncio.CancelledError:
            if self._is_current(generation):
                self._reset()
            raise
        except InvariantViolation:
            logger.exception("Attendance ledger is inconsistent")
            if self._is_current(generation):
                self._finish(generation, CaptureOutcome(CaptureStatus.ERROR, OutcomeReason.INTERNAL_ERROR,
                                                        detail="Attendance ledger is inconsistent"))
            raise
        except Exception:
            logger.exception("Capture cycle failed")
            outcome = CaptureOutcome(CaptureStatus.ERROR, OutcomeReason.INTERNAL_ERROR,
                                     detail="Unexpected failure")

        if not self._is_current(generation):
            return None
        self._finish(generation, outcome)
        return outcome

    def _finish(self, generation: int, outcome: CaptureOutcome):
        self._enter(_TERMINAL_STATE_FOR[outcome.status], outcome.message,
                    resolved_identity_id=outcome.identity_id,
                    confidence=outcome.confidence,
                    outcome=outcome)
        loop = asyncio.get_running_loop()
        self._reset_handle = loop.call_later(self.cooldown, self._auto_reset, generation)

    def _auto_reset(self, generation: int):
        if generation == self._generation and self.state in TERMINAL_STATES:
            logger.debug("Cooldown elapsed, returning to idle")
            self._reset()

    def retry(self) -> bool:
        """Leave a terminal state now instead of waiting for the cooldown."""
        if self.state not in TERMINAL_STATES:
            return False
        self._reset()
        return True

    async def cancel(self):
        """
        Abandon any in-flight cycle and return to IDLE.

        A ledger write that already started is let through; IDLE is entered
        only once the cycle has fully unwound.
        """
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Cancelled capture cycle failed during teardown")
        self._reset()

    async def close(self):
        """Tear the workflow down; later triggers are ignored."""
        self._closed = True
        await self.cancel()
