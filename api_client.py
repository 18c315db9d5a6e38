# api_client.py
# -----------------------------------------------------------------------------
# Thin REST client for the academic backend (JSON over HTTP, bearer token).
# Every view talks to the backend through an ApiClient built per session.
# -----------------------------------------------------------------------------

from typing import Any, Dict, List, Optional

import requests

DEFAULT_TIMEOUT_SEC = 15.0


class ApiError(Exception):
    """Raised for non-2xx answers, undecodable bodies and transport failures."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __str__(self) -> str:
        return self.message


class ApiClient:
    def __init__(self, base_url: str, token: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT_SEC,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    # ---- transport -----------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def request(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            r = self.session.request(
                method, url,
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            print(f"[api] {method} {endpoint} failed: {e}", flush=True)
            raise ApiError(f"Backend unreachable: {e}", code="network") from e

        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = None

        if not r.ok:
            body = data if isinstance(data, dict) else {}
            message = str(body.get("message") or body.get("error") or "API request failed")
            print(f"[api] {method} {endpoint} -> {r.status_code}: {message}", flush=True)
            raise ApiError(message, status=r.status_code, code=body.get("code"))
        if not isinstance(data, dict):
            raise ApiError("Backend returned a non-JSON response", status=r.status_code, code="bad_response")
        return data

    def get(self, endpoint: str) -> Dict[str, Any]:
        return self.request("GET", endpoint)

    def post(self, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("POST", endpoint, payload or {})

    # ---- auth ----------------------------------------------------------------
    def login(self, email: str, password: str) -> Dict[str, Any]:
        return self.post("/auth/login", {"email": email, "password": password})

    def me(self) -> Dict[str, Any]:
        return self.get("/auth/me")

    # ---- courses -------------------------------------------------------------
    def list_courses(self) -> Dict[str, Any]:
        return self.get("/courses")

    # ---- exams ---------------------------------------------------------------
    def list_exams(self) -> Dict[str, Any]:
        return self.get("/exams")

    def get_exam(self, exam_id: str) -> Dict[str, Any]:
        return self.get(f"/exams/{exam_id}")

    def create_exam(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.post("/exams", payload)

    def update_exam(self, exam_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("PUT", f"/exams/{exam_id}", payload)

    def delete_exam(self, exam_id: str) -> Dict[str, Any]:
        return self.request("DELETE", f"/exams/{exam_id}")

    def start_exam(self, exam_id: str) -> Dict[str, Any]:
        return self.post(f"/exams/{exam_id}/start")

    def heartbeat_exam(self, exam_id: str, visibility: bool, fullscreen: bool) -> Dict[str, Any]:
        return self.post(f"/exams/{exam_id}/heartbeat",
                         {"visibility": bool(visibility), "fullscreen": bool(fullscreen)})

    def submit_exam(self, exam_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.post(f"/exams/{exam_id}/submit", payload)

    def list_exam_attempts(self, exam_id: str) -> Dict[str, Any]:
        return self.get(f"/exams/{exam_id}/attempts")

    def grade_exam_attempt(self, exam_id: str, student_id: str,
                           manual_marks: List[Dict[str, Any]], feedback: str) -> Dict[str, Any]:
        return self.request("PATCH", f"/exams/{exam_id}/grade/{student_id}",
                            {"manualMarks": manual_marks, "feedback": feedback})

    def list_my_exam_attempts(self) -> Dict[str, Any]:
        return self.get("/exams/attempts/mine")
