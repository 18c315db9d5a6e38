# exam_grading.py
# Faculty grading of one exam: auto (objective) marks from the backend,
# per-question manual overrides kept as a draft per student until saved.

from typing import Any, Dict, List, Optional

from api_client import ApiClient
from exam_models import Attempt, Exam


class GradingError(ValueError):
    pass


class GradingView:
    def __init__(self, api: ApiClient, exam: Exam):
        self.api = api
        self.exam = exam
        self.attempts: List[Attempt] = []
        # student_id -> {"feedback": str, "manual_marks": {idx: marks}, "comments": {idx: str}}
        self.drafts: Dict[str, Dict[str, Any]] = {}

    def load(self) -> List[Attempt]:
        raw = self.api.list_exam_attempts(self.exam.id).get("attempts")
        self.attempts = [Attempt.from_api(a) for a in (raw if isinstance(raw, list) else []) if isinstance(a, dict)]
        self.drafts = {}
        for a in self.attempts:
            if a.student_id:
                self.drafts[a.student_id] = {
                    "feedback": a.feedback,
                    "manual_marks": dict(a.manual_marks),
                    "comments": dict(a.manual_comments),
                }
        return self.attempts

    def attempt_for(self, student_id: str) -> Attempt:
        for a in self.attempts:
            if a.student_id == str(student_id):
                return a
        raise GradingError(f"no attempt for student {student_id}")

    def _draft(self, student_id: str) -> Dict[str, Any]:
        self.attempt_for(student_id)
        return self.drafts.setdefault(str(student_id), {"feedback": "", "manual_marks": {}, "comments": {}})

    # ---- marks ---------------------------------------------------------------
    @staticmethod
    def objective_mark(attempt: Attempt, question_index: int) -> float:
        return attempt.objective_mark(question_index)

    def manual_mark(self, student_id: str, question_index: int) -> Optional[float]:
        return (self.drafts.get(str(student_id)) or {}).get("manual_marks", {}).get(question_index)

    def comment(self, student_id: str, question_index: int) -> str:
        return (self.drafts.get(str(student_id)) or {}).get("comments", {}).get(question_index, "")

    def current_mark(self, student_id: str, question_index: int) -> float:
        manual = self.manual_mark(student_id, question_index)
        if manual is not None:
            return manual
        return self.objective_mark(self.attempt_for(student_id), question_index)

    def set_manual_mark(self, student_id: str, question_index: int, value: Any) -> float:
        if not (0 <= question_index < len(self.exam.questions)):
            raise GradingError(f"question {question_index} does not exist")
        try:
            marks = float(value)
        except (TypeError, ValueError):
            raise GradingError("marks must be a number")
        max_marks = self.exam.questions[question_index].marks
        if marks < 0 or marks > max_marks:
            raise GradingError(f"marks for Q{question_index + 1} must be between 0 and {max_marks}")
        self._draft(student_id)["manual_marks"][question_index] = marks
        return marks

    def set_comment(self, student_id: str, question_index: int, comment: str) -> None:
        if self.manual_mark(student_id, question_index) is None:
            raise GradingError(f"Q{question_index + 1} has no manual mark to comment on")
        comments = self._draft(student_id)["comments"]
        if comment:
            comments[question_index] = comment
        else:
            comments.pop(question_index, None)

    def clear_manual_mark(self, student_id: str, question_index: int) -> None:
        draft = self._draft(student_id)
        draft["manual_marks"].pop(question_index, None)
        draft["comments"].pop(question_index, None)

    def set_feedback(self, student_id: str, feedback: str) -> None:
        self._draft(student_id)["feedback"] = feedback or ""

    def draft_total(self, student_id: str) -> float:
        return sum(self.current_mark(student_id, i) for i in range(len(self.exam.questions)))

    def rows(self, attempt: Attempt) -> List[Dict[str, Any]]:
        out = []
        for i, q in enumerate(self.exam.questions):
            out.append({
                "index": i,
                "question": q,
                "answer": attempt.answer_text(i),
                "objective": self.objective_mark(attempt, i),
                "current": self.current_mark(attempt.student_id, i),
                "overridden": self.manual_mark(attempt.student_id, i) is not None,
                "comment": self.comment(attempt.student_id, i),
            })
        return out

    # ---- persistence ---------------------------------------------------------
    def grade_payload(self, student_id: str) -> Dict[str, Any]:
        # the backend replaces the whole list, so saved comments go back with it
        draft = self._draft(student_id)
        marks = draft["manual_marks"]
        comments = draft["comments"]
        return {
            "manualMarks": [{"questionIndex": i, "marksAwarded": marks[i], "comment": comments.get(i, "")}
                            for i in sorted(marks)],
            "feedback": draft["feedback"],
        }

    def save(self, student_id: str) -> List[Attempt]:
        payload = self.grade_payload(student_id)
        self.api.grade_exam_attempt(self.exam.id, str(student_id), payload["manualMarks"], payload["feedback"])
        print(f"[grading] saved {self.exam.id}/{student_id} ({len(payload['manualMarks'])} overrides)", flush=True)
        return self.load()
