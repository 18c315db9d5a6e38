"""Exam, question and attempt shapes as returned by the backend, plus the
per-question answer types used while an attempt is in progress."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

QUESTION_TYPES = ("mcq", "true_false", "short_answer", "long_answer")
OBJECTIVE_TYPES = ("mcq", "true_false")
EXAM_TYPES = ("quiz", "midterm", "final", "assignment")
TRUE_FALSE_VALUES = ("true", "false")


class AnswerError(ValueError):
    pass


class ExamFormError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


# -----------------------------------------------------------------------------
# Time helpers
# -----------------------------------------------------------------------------
def parse_instant(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 instant ('Z' suffix allowed). Naive values are UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_instant(dt: Optional[datetime]) -> str:
    if dt is None:
        return "N/A"
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _ref_id(ref: Any) -> Optional[str]:
    if isinstance(ref, dict):
        v = ref.get("_id") or ref.get("id")
        return str(v) if v is not None else None
    return str(ref) if ref else None


# -----------------------------------------------------------------------------
# Answers (one variant per question kind)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class McqAnswer:
    selected: str
    kind: str = "mcq"

    def wire(self) -> str:
        return self.selected


@dataclass(frozen=True)
class TrueFalseAnswer:
    value: bool
    kind: str = "true_false"

    def wire(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class TextAnswer:
    value: str
    kind: str = "text"

    def wire(self) -> str:
        return self.value


Answer = Union[McqAnswer, TrueFalseAnswer, TextAnswer]


# -----------------------------------------------------------------------------
# Backend shapes
# -----------------------------------------------------------------------------
@dataclass
class Question:
    text: str
    question_type: str
    marks: int = 1
    options: List[str] = field(default_factory=list)
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Question":
        qtype = raw.get("questionType") if raw.get("questionType") in QUESTION_TYPES else "mcq"
        try:
            marks = int(raw.get("marks") or 1)
        except (TypeError, ValueError):
            marks = 1
        return cls(
            text=str(raw.get("questionText") or ""),
            question_type=qtype,
            marks=marks,
            options=[str(o) for o in (raw.get("options") or [])] if qtype == "mcq" else [],
            correct_answer=(str(raw["correctAnswer"]) if raw.get("correctAnswer") is not None else None),
            explanation=raw.get("explanation"),
        )

    @property
    def is_objective(self) -> bool:
        return self.question_type in OBJECTIVE_TYPES

    def answer_kind(self) -> str:
        if self.question_type == "mcq":
            return "mcq"
        if self.question_type == "true_false":
            return "true_false"
        return "text"

    def check_answer(self, answer: Answer) -> None:
        if answer.kind != self.answer_kind():
            raise AnswerError(f"a {self.question_type} question cannot take a {answer.kind} answer")
        if isinstance(answer, McqAnswer) and answer.selected not in self.options:
            raise AnswerError(f"'{answer.selected}' is not one of the options")

    def answer_from_raw(self, raw: Any) -> Optional[Answer]:
        """Build the typed answer from a submitted form value; None when blank."""
        text = "" if raw is None else str(raw)
        if not text.strip():
            return None
        if self.question_type == "mcq":
            answer: Answer = McqAnswer(selected=text)
        elif self.question_type == "true_false":
            v = text.strip().lower()
            if v not in TRUE_FALSE_VALUES:
                raise AnswerError("true/false answers must be 'true' or 'false'")
            answer = TrueFalseAnswer(value=(v == "true"))
        else:
            answer = TextAnswer(value=text)
        self.check_answer(answer)
        return answer


@dataclass
class Attempt:
    student_id: Optional[str]
    student_name: str = ""
    student_email: str = ""
    status: str = "in_progress"
    answers: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    manual_marks: Dict[int, float] = field(default_factory=dict)
    manual_comments: Dict[int, str] = field(default_factory=dict)
    total_marks: float = 0.0
    percentage: float = 0.0
    feedback: str = ""
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Attempt":
        student = raw.get("student")
        answers: Dict[int, Dict[str, Any]] = {}
        for a in raw.get("answers") or []:
            try:
                answers[int(a.get("questionIndex"))] = a
            except (TypeError, ValueError):
                continue
        manual: Dict[int, float] = {}
        comments: Dict[int, str] = {}
        for m in raw.get("manualMarks") or []:
            try:
                idx = int(m.get("questionIndex"))
                manual[idx] = float(m.get("marksAwarded") or 0)
            except (TypeError, ValueError):
                continue
            if m.get("comment"):
                comments[idx] = str(m["comment"])
        return cls(
            student_id=_ref_id(student),
            student_name=str((student or {}).get("name") or "") if isinstance(student, dict) else "",
            student_email=str((student or {}).get("email") or "") if isinstance(student, dict) else "",
            status=str(raw.get("status") or "in_progress"),
            answers=answers,
            manual_marks=manual,
            manual_comments=comments,
            total_marks=float(raw.get("totalMarks") or 0),
            percentage=float(raw.get("percentage") or 0),
            feedback=str(raw.get("feedback") or ""),
            started_at=parse_instant(raw.get("startedAt")),
            submitted_at=parse_instant(raw.get("submittedAt")),
            graded_at=parse_instant(raw.get("gradedAt")),
        )

    def objective_mark(self, question_index: int) -> float:
        return float((self.answers.get(question_index) or {}).get("marksAwarded") or 0)

    def answer_text(self, question_index: int) -> str:
        a = self.answers.get(question_index)
        return "" if a is None or a.get("answer") is None else str(a.get("answer"))


@dataclass
class Exam:
    id: Optional[str]
    title: str
    description: str = ""
    course_id: Optional[str] = None
    course_name: str = ""
    exam_type: str = "quiz"
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: int = 60
    questions: List[Question] = field(default_factory=list)
    is_active: bool = True
    status: str = "scheduled"
    total_marks: float = 0.0
    passing_marks: float = 0.0
    settings: Dict[str, Any] = field(default_factory=dict)
    attempts: List[Attempt] = field(default_factory=list)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Exam":
        course = raw.get("course")
        settings = dict(raw.get("settings") or {})
        try:
            settings["maxAttempts"] = max(1, int(settings.get("maxAttempts") or 1))
        except (TypeError, ValueError):
            settings["maxAttempts"] = 1
        questions = [Question.from_api(q) for q in (raw.get("questions") or []) if isinstance(q, dict)]
        return cls(
            id=_ref_id(raw.get("_id") or raw.get("id")),
            title=str(raw.get("title") or ""),
            description=str(raw.get("instructions") or raw.get("description") or ""),
            course_id=_ref_id(course),
            course_name=str(course.get("name") or "") if isinstance(course, dict) else "",
            exam_type=str(raw.get("examType") or "quiz"),
            start_time=parse_instant(raw.get("startTime")),
            end_time=parse_instant(raw.get("endTime")),
            duration=int(raw.get("duration") or 0),
            questions=questions,
            is_active=bool(raw.get("isActive", True)),
            status=str(raw.get("status") or "scheduled"),
            total_marks=float(raw.get("totalMarks") or sum(q.marks for q in questions)),
            passing_marks=float(raw.get("passingMarks") or 0),
            settings=settings,
            attempts=[Attempt.from_api(a) for a in (raw.get("attempts") or []) if isinstance(a, dict)],
        )

    @property
    def max_attempts(self) -> int:
        return int(self.settings.get("maxAttempts") or 1)

    def attempt_count(self, student_id: Optional[str] = None) -> int:
        if student_id is None:
            return len(self.attempts)
        return sum(1 for a in self.attempts if a.student_id == str(student_id))

    def question(self, index: int) -> Question:
        if not (0 <= index < len(self.questions)):
            raise AnswerError(f"question {index} does not exist")
        return self.questions[index]


# -----------------------------------------------------------------------------
# Exam form (faculty create/edit)
# -----------------------------------------------------------------------------
def validate_question(q: Dict[str, Any], number: int) -> List[str]:
    errs: List[str] = []
    qtype = q.get("questionType")
    if not str(q.get("questionText") or "").strip():
        errs.append(f"Q{number}: question text is required")
    if qtype not in QUESTION_TYPES:
        errs.append(f"Q{number}: unknown question type '{qtype}'")
        return errs
    try:
        marks = int(q.get("marks"))
    except (TypeError, ValueError):
        marks = 0
    if marks < 1:
        errs.append(f"Q{number}: marks must be a positive integer")
    correct = q.get("correctAnswer")
    if qtype == "mcq":
        options = [str(o) for o in (q.get("options") or []) if str(o).strip()]
        if len(options) < 2:
            errs.append(f"Q{number}: multiple choice needs at least 2 options")
        elif correct is None or str(correct) not in options:
            errs.append(f"Q{number}: correct answer must be one of the options")
    elif qtype == "true_false":
        if str(correct or "").lower() not in TRUE_FALSE_VALUES:
            errs.append(f"Q{number}: correct answer must be 'true' or 'false'")
    return errs


def validate_exam_form(form: Dict[str, Any]) -> List[str]:
    errs: List[str] = []
    if not str(form.get("title") or "").strip():
        errs.append("Title is required")
    if not form.get("course"):
        errs.append("Course is required")
    try:
        duration = int(form.get("duration"))
    except (TypeError, ValueError):
        duration = 0
    if duration < 1:
        errs.append("Duration must be at least 1 minute")
    start = parse_instant(form.get("startTime"))
    end = parse_instant(form.get("endTime"))
    if start is None or end is None:
        errs.append("Invalid start or end time")
    elif end <= start:
        errs.append("End time must be after start time")
    try:
        max_attempts = int((form.get("settings") or {}).get("maxAttempts") or 1)
    except (TypeError, ValueError):
        max_attempts = 0
    if max_attempts < 1:
        errs.append("Max attempts must be at least 1")
    if form.get("passingMarks") not in (None, ""):
        try:
            if int(form.get("passingMarks")) < 0:
                errs.append("Passing marks cannot be negative")
        except (TypeError, ValueError):
            errs.append("Passing marks must be a number")
    questions = form.get("questions") or []
    if not questions:
        errs.append("Please add at least one question")
    for i, q in enumerate(questions, start=1):
        errs.extend(validate_question(q, i))
    return errs


def exam_form_payload(form: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a validated form the way the backend create/update endpoints read it."""
    questions = []
    for q in form.get("questions") or []:
        qtype = q["questionType"]
        item = {
            "questionText": str(q["questionText"]).strip(),
            "questionType": qtype,
            "marks": int(q["marks"]),
        }
        if qtype == "mcq":
            item["options"] = [str(o) for o in q.get("options") or [] if str(o).strip()]
        if qtype in OBJECTIVE_TYPES:
            item["correctAnswer"] = str(q.get("correctAnswer"))
        if q.get("explanation"):
            item["explanation"] = q["explanation"]
        questions.append(item)
    settings = dict(form.get("settings") or {})
    settings["maxAttempts"] = int(settings.get("maxAttempts") or 1)
    start = parse_instant(form.get("startTime"))
    end = parse_instant(form.get("endTime"))
    payload = {
        "title": str(form["title"]).strip(),
        "description": form.get("description") or "",
        "instructions": form.get("description") or "",
        "course": form.get("course"),
        "examType": form.get("examType") if form.get("examType") in EXAM_TYPES else "quiz",
        "startTime": start.isoformat() if start else None,
        "endTime": end.isoformat() if end else None,
        "duration": int(form["duration"]),
        "questions": questions,
        "isActive": bool(form.get("isActive", True)),
        "settings": settings,
    }
    if form.get("passingMarks") not in (None, ""):
        payload["passingMarks"] = int(form["passingMarks"])
    return payload
