import copy
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from api_client import ApiError  # noqa: E402

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def iso(dt):
    return dt.isoformat().replace("+00:00", "Z")


def make_exam(exam_id="e1", **overrides):
    raw = {
        "_id": exam_id,
        "title": "Midterm",
        "description": "Answer **all** questions.",
        "course": {"_id": "c1", "name": "Algorithms", "code": "CS201"},
        "examType": "midterm",
        "startTime": iso(NOW - timedelta(hours=1)),
        "endTime": iso(NOW + timedelta(hours=2)),
        "duration": 30,
        "isActive": True,
        "status": "ongoing",
        "settings": {"maxAttempts": 1},
        "questions": [
            {"questionText": "Pick A", "questionType": "mcq", "options": ["A", "B", "C"],
             "correctAnswer": "A", "marks": 2},
            {"questionText": "Sky is blue", "questionType": "true_false", "correctAnswer": "true", "marks": 1},
            {"questionText": "Explain recursion", "questionType": "short_answer", "marks": 5},
        ],
        "attempts": [],
    }
    raw.update(overrides)
    return raw


class FakeApi:
    """In-memory stand-in for ApiClient. `fail[name]` makes that call raise."""

    def __init__(self, exams=None, student_id="s1"):
        self.exams = {e["_id"]: e for e in (exams if exams is not None else [make_exam()])}
        self.student_id = student_id
        self.calls = []
        self.fail = {}
        self.hooks = {}
        self.graded = []
        self.courses = [{"_id": "c1", "name": "Algorithms", "code": "CS201"}]

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        hook = self.hooks.get(name)
        if hook:
            hook(*args)
        err = self.fail.get(name)
        if err is not None:
            raise err

    def names(self):
        return [c[0] for c in self.calls]

    def _exam(self, exam_id):
        if exam_id not in self.exams:
            raise ApiError("Exam not found", status=404)
        return self.exams[exam_id]

    def login(self, email, password):
        self._call("login", email, password)
        return {"success": True, "token": "tok-1",
                "user": {"id": self.student_id, "name": "Sam", "email": email, "role": "student"}}

    def me(self):
        self._call("me")
        return {"user": {"_id": self.student_id, "name": "Sam", "email": "sam@example.com", "role": "student"}}

    def list_courses(self):
        self._call("list_courses")
        return {"courses": copy.deepcopy(self.courses)}

    def list_exams(self):
        self._call("list_exams")
        return {"exams": copy.deepcopy(list(self.exams.values()))}

    def get_exam(self, exam_id):
        self._call("get_exam", exam_id)
        return {"exam": copy.deepcopy(self._exam(exam_id))}

    def create_exam(self, payload):
        self._call("create_exam", payload)
        new_id = f"e{len(self.exams) + 1}"
        self.exams[new_id] = dict(payload, _id=new_id, attempts=[])
        return {"exam": copy.deepcopy(self.exams[new_id])}

    def update_exam(self, exam_id, payload):
        self._call("update_exam", exam_id, payload)
        self._exam(exam_id).update(payload)
        return {"exam": copy.deepcopy(self.exams[exam_id])}

    def delete_exam(self, exam_id):
        self._call("delete_exam", exam_id)
        self._exam(exam_id)
        del self.exams[exam_id]
        return {"message": "Exam deleted"}

    def start_exam(self, exam_id):
        self._call("start_exam", exam_id)
        return {"message": "Exam started"}

    def heartbeat_exam(self, exam_id, visibility, fullscreen):
        self._call("heartbeat_exam", exam_id, visibility, fullscreen)
        return {"ok": True}

    def submit_exam(self, exam_id, payload):
        self._call("submit_exam", exam_id, payload)
        self._exam(exam_id)["attempts"].append({
            "student": {"_id": self.student_id, "name": "Sam", "email": "sam@example.com"},
            "status": "submitted",
            "answers": [dict(a, marksAwarded=0) for a in payload["answers"]],
        })
        return {"message": "Exam submitted"}

    def list_exam_attempts(self, exam_id):
        self._call("list_exam_attempts", exam_id)
        return {"attempts": copy.deepcopy(self._exam(exam_id).get("attempts") or [])}

    def grade_exam_attempt(self, exam_id, student_id, manual_marks, feedback):
        self._call("grade_exam_attempt", exam_id, student_id, manual_marks, feedback)
        self.graded.append((exam_id, student_id, manual_marks, feedback))
        for a in self._exam(exam_id)["attempts"]:
            if (a.get("student") or {}).get("_id") == student_id:
                a["manualMarks"] = manual_marks
                a["feedback"] = feedback
                a["status"] = "graded"
        return {"message": "Graded"}

    def list_my_exam_attempts(self):
        self._call("list_my_exam_attempts")
        return {"attempts": [{"examId": "e0", "examTitle": "Quiz 1", "status": "graded",
                              "totalMarks": 7, "maximumMarks": 8, "percentage": 87.5,
                              "feedback": "Well done"}]}


class ManualTimer:
    """Countdown stand-in; the test fires ticks by hand."""

    def __init__(self, callback, interval=1.0):
        self.callback = callback
        self.interval = interval
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def fire(self, times=1):
        for _ in range(times):
            if self.stopped:
                break
            self.callback()


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, callback, interval=1.0):
        t = ManualTimer(callback, interval)
        self.timers.append(t)
        return t

    @property
    def last(self):
        return self.timers[-1]


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def clock():
    return lambda: NOW
