# exam_catalog.py
# Exam listing / lookup for every role, plus faculty create/edit/delete.

from typing import Any, Dict, List, Optional

from api_client import ApiClient
from exam_models import Exam, ExamFormError, exam_form_payload, validate_exam_form


class ExamCatalog:
    def __init__(self, api: ApiClient):
        self.api = api
        self.exams: List[Exam] = []

    # ---- reads ---------------------------------------------------------------
    def list_exams(self) -> List[Exam]:
        data = self.api.list_exams()
        raw = data.get("exams")
        self.exams = [Exam.from_api(e) for e in (raw if isinstance(raw, list) else []) if isinstance(e, dict)]
        return self.exams

    refresh = list_exams

    def get_exam(self, exam_id: str) -> Exam:
        data = self.api.get_exam(exam_id)
        return Exam.from_api(data.get("exam") or {})

    def find(self, exam_id: str) -> Optional[Exam]:
        for e in self.exams:
            if e.id == str(exam_id):
                return e
        return None

    def my_attempts(self) -> List[Dict[str, Any]]:
        raw = self.api.list_my_exam_attempts().get("attempts")
        return raw if isinstance(raw, list) else []

    def list_courses(self) -> List[Dict[str, Any]]:
        raw = self.api.list_courses().get("courses")
        return raw if isinstance(raw, list) else []

    # ---- faculty CRUD --------------------------------------------------------
    def create_exam(self, form: Dict[str, Any]) -> Exam:
        errs = validate_exam_form(form)
        if errs:
            raise ExamFormError(errs)
        data = self.api.create_exam(exam_form_payload(form))
        self.list_exams()
        return Exam.from_api(data.get("exam") or {})

    def update_exam(self, exam_id: str, form: Dict[str, Any]) -> Exam:
        errs = validate_exam_form(form)
        if errs:
            raise ExamFormError(errs)
        data = self.api.update_exam(exam_id, exam_form_payload(form))
        self.list_exams()
        return Exam.from_api(data.get("exam") or {})

    def delete_exam(self, exam_id: str) -> None:
        self.api.delete_exam(exam_id)
        self.list_exams()
