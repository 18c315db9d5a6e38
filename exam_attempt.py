# exam_attempt.py
# -----------------------------------------------------------------------------
# Student-side exam attempt: start -> answer -> (auto) submit.
#   idle -> starting -> in_progress -> submitting -> idle
#   idle -> starting -> start_failed
# One controller per signed-in student; the countdown runs on its own thread,
# every state change goes through the controller lock.
# -----------------------------------------------------------------------------

import math
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from api_client import ApiClient, ApiError
from exam_catalog import ExamCatalog
from exam_models import Answer, Exam

STATE_IDLE = "idle"
STATE_STARTING = "starting"
STATE_IN_PROGRESS = "in_progress"
STATE_SUBMITTING = "submitting"
STATE_START_FAILED = "start_failed"

FAIL_NOT_STARTED = "not_started"
FAIL_ENDED = "ended"
FAIL_ERROR = "error"

# Structured codes sent by newer backends; older ones only send a message.
START_FAILURE_CODES = {
    "exam_not_started": FAIL_NOT_STARTED,
    "not_started": FAIL_NOT_STARTED,
    "exam_ended": FAIL_ENDED,
    "ended": FAIL_ENDED,
}
_NOT_STARTED_RE = re.compile(r"has not started", re.IGNORECASE)
_ENDED_RE = re.compile(r"has ended", re.IGNORECASE)

AUTO_SUBMIT_MESSAGE = "Time up. Your exam was auto-submitted."
SUBMIT_MESSAGE = "Exam submitted successfully."


class AttemptStateError(RuntimeError):
    pass


def classify_start_failure(err: Any) -> str:
    code = getattr(err, "code", None)
    if code in START_FAILURE_CODES:
        return START_FAILURE_CODES[code]
    msg = str(err or "")
    if _NOT_STARTED_RE.search(msg):
        return FAIL_NOT_STARTED
    if _ENDED_RE.search(msg):
        return FAIL_ENDED
    return FAIL_ERROR


def compute_time_left(end_time: Optional[datetime], duration_min: int, now: datetime) -> int:
    """Seconds left: floor(min(end - now, duration) / 1s), never negative."""
    budget_ms = max(0, int(duration_min or 0)) * 60_000
    if end_time is not None:
        budget_ms = min((end_time - now).total_seconds() * 1000.0, budget_ms)
    return max(0, math.floor(budget_ms / 1000))


def build_submit_payload(answers: Dict[int, Answer], browser_info: str) -> Dict[str, Any]:
    return {
        "answers": [{"questionIndex": int(i), "answer": answers[i].wire()} for i in sorted(answers)],
        "meta": {"browserInfo": browser_info or ""},
    }


def format_clock(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


# -----------------------------------------------------------------------------
# Countdown + cancellation scope
# -----------------------------------------------------------------------------
class Countdown:
    """Calls `callback` every `interval` seconds on a daemon thread until stopped."""

    def __init__(self, callback: Callable[[], None], interval: float = 1.0):
        self.callback = callback
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="exam-countdown", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                print(f"[exam] countdown tick failed: {e}", flush=True)

    def stop(self) -> None:
        self._stop.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()


class AttemptScope:
    """Lifetime of one attempt; results arriving after cancel() are discarded."""

    def __init__(self):
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


@dataclass
class StatusView:
    kind: str
    message: str
    exam: Optional[Exam] = None


@dataclass
class SubmitResult:
    ok: bool
    message: str
    auto: bool = False
    rejected: bool = False


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------
class AttemptController:
    def __init__(self, api: ApiClient, catalog: Optional[ExamCatalog] = None,
                 timer_factory: Callable[..., Any] = Countdown,
                 clock: Optional[Callable[[], datetime]] = None,
                 tick_seconds: float = 1.0,
                 on_submitted: Optional[Callable[[SubmitResult], None]] = None):
        self.api = api
        self.catalog = catalog or ExamCatalog(api)
        self.timer_factory = timer_factory
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tick_seconds = tick_seconds
        self.on_submitted = on_submitted

        self._lock = threading.RLock()
        self._timer = None
        self._scope = AttemptScope()
        self._auto_fired = False

        self.state = STATE_IDLE
        self.exam: Optional[Exam] = None
        self.answers: Dict[int, Answer] = {}
        self.time_left = 0
        self.status_view: Optional[StatusView] = None
        self.notice: Optional[str] = None
        self.last_error: Optional[str] = None

    # ---- queries -------------------------------------------------------------
    @property
    def is_active(self) -> bool:
        return self.state in (STATE_IN_PROGRESS, STATE_SUBMITTING)

    @property
    def exam_id(self) -> Optional[str]:
        return self.exam.id if self.exam else None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state,
                "exam_id": self.exam_id,
                "time_left": self.time_left,
                "clock": format_clock(self.time_left),
                "answered": sorted(self.answers),
                "notice": self.notice,
                "error": self.last_error,
            }

    # ---- start ---------------------------------------------------------------
    def start(self, exam_id: str) -> bool:
        with self._lock:
            if self.state in (STATE_STARTING, STATE_IN_PROGRESS, STATE_SUBMITTING):
                raise AttemptStateError("an exam attempt is already active")
            self.state = STATE_STARTING
            self.status_view = None
            self.notice = None
            self.last_error = None
            self._scope = scope = AttemptScope()

        try:
            return self._start(exam_id, scope)
        finally:
            # an unexpected error ends in IDLE, never in STARTING
            with self._lock:
                if self.state == STATE_STARTING and self._scope is scope:
                    self.state = STATE_IDLE

    def _start(self, exam_id: str, scope: AttemptScope) -> bool:
        try:
            self.api.start_exam(exam_id)
            exam = self.catalog.get_exam(exam_id)
        except ApiError as e:
            kind = classify_start_failure(e)
            details = self._exam_details(exam_id)
            if kind == FAIL_NOT_STARTED:
                msg = "This exam has not started yet."
            elif kind == FAIL_ENDED:
                msg = "This exam has ended."
            else:
                msg = e.message or "Failed to start exam"
            with self._lock:
                if scope.cancelled:
                    return False
                self.status_view = StatusView(kind=kind, message=msg, exam=details)
                self.state = STATE_START_FAILED
            print(f"[exam] start {exam_id} refused ({kind}): {e}", flush=True)
            return False

        with self._lock:
            if scope.cancelled:
                return False
            self.exam = exam
            self.answers = {}
            self.time_left = compute_time_left(exam.end_time, exam.duration, self.clock())
            self._auto_fired = False
            self.state = STATE_IN_PROGRESS
            self._timer = self.timer_factory(self.tick, self.tick_seconds)
            self._timer.start()
        print(f"[exam] started {exam_id} with {self.time_left}s left", flush=True)
        return True

    def _exam_details(self, exam_id: str) -> Optional[Exam]:
        try:
            return self.catalog.get_exam(exam_id)
        except ApiError:
            return None

    def dismiss_status(self) -> None:
        with self._lock:
            if self.state == STATE_START_FAILED:
                self.state = STATE_IDLE
            self.status_view = None

    # ---- answers -------------------------------------------------------------
    def _require_in_progress(self) -> Exam:
        if self.state != STATE_IN_PROGRESS or self.exam is None:
            raise AttemptStateError("no exam attempt in progress")
        return self.exam

    def record_answer(self, question_index: int, answer: Answer) -> None:
        with self._lock:
            exam = self._require_in_progress()
            exam.question(question_index).check_answer(answer)
            self.answers[question_index] = answer

    def record_raw_answer(self, question_index: int, raw: Any) -> Optional[Answer]:
        with self._lock:
            exam = self._require_in_progress()
            answer = exam.question(question_index).answer_from_raw(raw)
            if answer is None:
                self.answers.pop(question_index, None)
            else:
                self.answers[question_index] = answer
            return answer

    def clear_answer(self, question_index: int) -> None:
        with self._lock:
            self._require_in_progress()
            self.answers.pop(question_index, None)

    # ---- countdown -----------------------------------------------------------
    def tick(self) -> None:
        with self._lock:
            if self.state not in (STATE_IN_PROGRESS, STATE_SUBMITTING):
                return
            self.time_left = max(0, self.time_left - 1)
            if self.time_left > 0 or self.state != STATE_IN_PROGRESS or self._auto_fired:
                return
            self._auto_fired = True
            self._stop_timer()
            claim = self._claim_submission("")
        print(f"[exam] time up on {claim[0]}; auto-submitting", flush=True)
        self._send(*claim, auto=True)

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.stop()
            self._timer = None

    # ---- submit --------------------------------------------------------------
    def _claim_submission(self, browser_info: str):
        exam = self.exam
        self.state = STATE_SUBMITTING
        self.last_error = None
        return exam.id, build_submit_payload(self.answers, browser_info), self._scope

    def submit(self, browser_info: str = "", auto: bool = False) -> SubmitResult:
        with self._lock:
            if self.state == STATE_SUBMITTING:
                return SubmitResult(False, "A submission is already in progress.", auto=auto, rejected=True)
            if self.state != STATE_IN_PROGRESS or self.exam is None:
                return SubmitResult(False, "No exam attempt in progress.", auto=auto, rejected=True)
            claim = self._claim_submission(browser_info)
        return self._send(*claim, auto=auto)

    def _send(self, exam_id: str, payload: Dict[str, Any], scope: AttemptScope, auto: bool) -> SubmitResult:
        try:
            self.api.submit_exam(exam_id, payload)
        except ApiError as e:
            msg = e.message or "Failed to submit exam"
            self._release_submission(scope, msg)
            print(f"[exam] submit {exam_id} failed: {e}", flush=True)
            return SubmitResult(False, msg, auto=auto)
        except Exception as e:
            self._release_submission(scope, "Failed to submit exam")
            print(f"[exam] submit {exam_id} crashed: {e!r}", flush=True)
            raise

        with self._lock:
            if scope.cancelled:
                return SubmitResult(False, "The attempt was abandoned.", auto=auto)
            message = AUTO_SUBMIT_MESSAGE if auto else SUBMIT_MESSAGE
            self._reset()
            self.notice = message
        print(f"[exam] submitted {exam_id} ({len(payload['answers'])} answers, auto={auto})", flush=True)

        try:
            self.catalog.refresh()
        except ApiError as e:
            print(f"[exam] catalog refresh after submit failed: {e}", flush=True)
        result = SubmitResult(True, message, auto=auto)
        if self.on_submitted:
            self.on_submitted(result)
        return result

    def _release_submission(self, scope: AttemptScope, message: str) -> None:
        """Failed send: back to IN_PROGRESS so a manual submit stays possible."""
        with self._lock:
            if not scope.cancelled and self.state == STATE_SUBMITTING:
                self.state = STATE_IN_PROGRESS
                self.last_error = message

    # ---- teardown ------------------------------------------------------------
    def _reset(self) -> None:
        self._stop_timer()
        self.state = STATE_IDLE
        self.exam = None
        self.answers = {}
        self.time_left = 0
        self._auto_fired = False

    def abandon(self) -> None:
        with self._lock:
            self._scope.cancel()
            self._reset()
            self.status_view = None
            self.last_error = None

    def pop_notice(self) -> Optional[str]:
        with self._lock:
            n, self.notice = self.notice, None
            return n


class AttemptRegistry:
    """In-memory controllers keyed by user id."""

    def __init__(self, factory: Optional[Callable[[], AttemptController]] = None):
        self.factory = factory
        self._lock = threading.Lock()
        self._items: Dict[str, AttemptController] = {}

    def get(self, user_key: str) -> Optional[AttemptController]:
        with self._lock:
            return self._items.get(str(user_key))

    def get_or_create(self, user_key: str, factory: Optional[Callable[[], AttemptController]] = None) -> AttemptController:
        with self._lock:
            ctl = self._items.get(str(user_key))
            if ctl is None:
                make = factory or self.factory
                if make is None:
                    raise AttemptStateError("no controller factory configured")
                ctl = make()
                self._items[str(user_key)] = ctl
            return ctl

    def drop(self, user_key: str) -> None:
        with self._lock:
            ctl = self._items.pop(str(user_key), None)
        if ctl is not None:
            ctl.abandon()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)
