# exam.py
# -----------------------------------------------------------------------------
# Exam pages over the academic REST backend.
# - Students: catalog, start (window enforced by backend), take with countdown,
#   anti-cheat signals, manual or automatic submit, own attempt history
# - Faculty/admin: create/edit/delete exams, grade attempts with manual overrides
# - One attempt controller per signed-in student, kept in memory
# -----------------------------------------------------------------------------

import os
from typing import Any, Callable, Dict, List, Optional

from flask import (
    Blueprint, request, jsonify, render_template, render_template_string,
    redirect, url_for, g, abort
)
from jinja2 import TemplateNotFound
from markupsafe import Markup, escape
from werkzeug.routing import BuildError

from api_client import ApiError
from anti_cheat import AntiCheatMonitor
from exam_attempt import (
    AttemptController, AttemptRegistry, AttemptStateError, Countdown,
    STATE_START_FAILED,
)
from exam_catalog import ExamCatalog
from exam_grading import GradingError, GradingView
from exam_models import (
    AnswerError, EXAM_TYPES, Exam, ExamFormError, QUESTION_TYPES, format_instant,
)

FACULTY_ROLES = ("faculty", "admin")


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + "/exams".
    Optional deps: current_api, current_user, timer_factory, clock, render_rich
    """
    url_prefix = (base_path or "") + "/exams"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Deps ----------------------------------------------------------------
    current_api: Callable = deps.get("current_api") or (lambda: getattr(g, "api", None))
    current_user: Callable = deps.get("current_user") or (lambda: getattr(g, "user", None))
    timer_factory: Callable = deps.get("timer_factory") or Countdown
    clock: Optional[Callable] = deps.get("clock")
    render_rich: Callable = deps.get("render_rich") or _plain_rich

    # ---- Config --------------------------------------------------------------
    TICK_SECONDS = float(os.getenv("EXAM_TICK_SECONDS") or 1)
    HEARTBEAT_INTERVAL_SEC = int(os.getenv("EXAM_HEARTBEAT_INTERVAL_SEC") or 30)

    registry = AttemptRegistry()
    monitors: Dict[str, AntiCheatMonitor] = {}
    bp.attempts = registry
    bp.monitors = monitors

    def _forget(user_id: str) -> None:
        """Sign-out: cancel the attempt and drop the per-user state."""
        registry.drop(user_id)
        monitors.pop(str(user_id), None)

    bp.forget = _forget

    bp.add_app_template_filter(render_rich, "rich")
    bp.add_app_template_filter(format_instant, "instant")

    # ------------------------------- identity ---------------------------------
    def _user() -> Optional[Dict[str, Any]]:
        u = current_user()
        return u if isinstance(u, dict) and u.get("id") else None

    def _is_faculty(user: Dict[str, Any]) -> bool:
        return (user.get("role") or "").lower() in FACULTY_ROLES

    def _login_redirect():
        for endpoint in ("login_bp", "login") if base_path else ("login",):
            try:
                return redirect(url_for(endpoint, next=request.path))
            except BuildError:
                continue
        abort(401)

    def _controller(user: Dict[str, Any]) -> AttemptController:
        api = current_api()
        ctl = registry.get_or_create(
            user["id"],
            factory=lambda: AttemptController(api, timer_factory=timer_factory, clock=clock,
                                              tick_seconds=TICK_SECONDS),
        )
        if not ctl.is_active and api is not None:
            ctl.api = api
            ctl.catalog.api = api
        return ctl

    def _monitor(user: Dict[str, Any], ctl: AttemptController) -> AntiCheatMonitor:
        mon = monitors.get(user["id"])
        if mon is None or mon.controller is not ctl:
            mon = AntiCheatMonitor(ctl.api, ctl)
            monitors[user["id"]] = mon
        mon.api = ctl.api
        return mon

    # ------------------------------- rendering --------------------------------
    def _render(template_name: str, inline: str, **context):
        """Try templates/<name> first; else the inline page."""
        context.setdefault("user", _user())
        try:
            return render_template(template_name, **context)
        except TemplateNotFound:
            return render_template_string(_LAYOUT_HEAD + inline + _LAYOUT_FOOT, **context)

    # ------------------------------- exam form --------------------------------
    def _blank_question() -> Dict[str, Any]:
        return {"questionText": "", "questionType": "mcq", "options": ["", "", "", ""],
                "correctAnswer": "", "marks": 1}

    def _form_from_request(form) -> Dict[str, Any]:
        try:
            count = int(form.get("question_count") or 0)
        except ValueError:
            count = 0
        removed = form.get("remove_question")
        questions: List[Dict[str, Any]] = []
        for i in range(count):
            if removed is not None and removed == str(i):
                continue
            qtype = form.get(f"q-{i}-type") or "mcq"
            options = [o.strip() for o in (form.get(f"q-{i}-options") or "").splitlines() if o.strip()]
            questions.append({
                "questionText": (form.get(f"q-{i}-text") or "").strip(),
                "questionType": qtype,
                "options": options if qtype == "mcq" else [],
                "correctAnswer": (form.get(f"q-{i}-correct") or "").strip() or None,
                "marks": form.get(f"q-{i}-marks") or 1,
            })
        if form.get("action") == "add_question":
            questions.append(_blank_question())
        return {
            "title": (form.get("title") or "").strip(),
            "description": form.get("description") or "",
            "course": form.get("course") or "",
            "examType": form.get("examType") or "quiz",
            "startTime": form.get("startTime") or "",
            "endTime": form.get("endTime") or "",
            "duration": form.get("duration") or 60,
            "passingMarks": form.get("passingMarks") or "",
            "isActive": form.get("isActive") == "on",
            "settings": {"maxAttempts": form.get("maxAttempts") or 1},
            "questions": questions,
        }

    def _form_from_exam(exam: Exam) -> Dict[str, Any]:
        def _local(dt):
            return dt.strftime("%Y-%m-%dT%H:%M") if dt else ""
        return {
            "title": exam.title,
            "description": exam.description,
            "course": exam.course_id or "",
            "examType": exam.exam_type,
            "startTime": _local(exam.start_time),
            "endTime": _local(exam.end_time),
            "duration": exam.duration,
            "passingMarks": int(exam.passing_marks) if exam.passing_marks else "",
            "isActive": exam.is_active,
            "settings": {"maxAttempts": exam.max_attempts},
            "questions": [{
                "questionText": q.text,
                "questionType": q.question_type,
                "options": list(q.options),
                "correctAnswer": q.correct_answer or "",
                "marks": q.marks,
            } for q in exam.questions],
        }

    def _render_exam_form(form: Dict[str, Any], exam_id: Optional[str], errors: List[str]):
        catalog = ExamCatalog(current_api())
        try:
            courses = catalog.list_courses()
        except ApiError as e:
            print(f"[exam] course list failed: {e}", flush=True)
            courses = []
        action = (url_for(f"{bp.name}.exam_edit", exam_id=exam_id) if exam_id
                  else url_for(f"{bp.name}.exam_new"))
        return _render("exam_form.html", _FORM_PAGE,
                       form=form, exam_id=exam_id, errors=errors, courses=courses,
                       action_url=action, question_types=QUESTION_TYPES, exam_types=EXAM_TYPES,
                       list_url=url_for(f"{bp.name}.exam_list"))

    # --------------------------------- routes ---------------------------------
    @bp.get("")
    def exam_list():
        user = _user()
        if not user:
            return _login_redirect()
        catalog = ExamCatalog(current_api())
        error_msg = None
        try:
            exams = catalog.list_exams()
        except ApiError as e:
            exams, error_msg = [], (e.message or "Failed to load exams")

        notice, status_view, my_attempts = None, None, []
        if not _is_faculty(user):
            ctl = _controller(user)
            if ctl.is_active:
                return redirect(url_for(f"{bp.name}.exam_take"))
            notice = ctl.pop_notice()
            if ctl.state == STATE_START_FAILED:
                status_view = ctl.status_view
            try:
                my_attempts = catalog.my_attempts()
            except ApiError as e:
                print(f"[exam] my attempts failed: {e}", flush=True)

        return _render("exams.html", _LIST_PAGE,
                       exams=exams, error_msg=error_msg, notice=notice,
                       status_view=status_view, my_attempts=my_attempts,
                       is_faculty=_is_faculty(user), bp_name=bp.name)

    @bp.post("/<exam_id>/start")
    def exam_start(exam_id: str):
        user = _user()
        if not user:
            return _login_redirect()
        if _is_faculty(user):
            abort(403)
        ctl = _controller(user)
        try:
            started = ctl.start(exam_id)
        except AttemptStateError:
            started = ctl.is_active
        if started:
            return redirect(url_for(f"{bp.name}.exam_take"))
        return redirect(url_for(f"{bp.name}.exam_list"))

    @bp.post("/status/dismiss")
    def exam_status_dismiss():
        user = _user()
        if not user:
            return _login_redirect()
        _controller(user).dismiss_status()
        return redirect(url_for(f"{bp.name}.exam_list"))

    # ---- taking --------------------------------------------------------------
    @bp.get("/take")
    def exam_take():
        user = _user()
        if not user:
            return _login_redirect()
        ctl = _controller(user)
        if not ctl.is_active or ctl.exam is None:
            return redirect(url_for(f"{bp.name}.exam_list"))
        mon = _monitor(user, ctl)
        snap = ctl.snapshot()
        return _render("exam_take.html", _TAKE_PAGE,
                       exam=ctl.exam,
                       answers={i: a.wire() for i, a in ctl.answers.items()},
                       time_left=snap["time_left"], clock=snap["clock"],
                       error_msg=snap["error"],
                       leave_prompt=mon.on_before_unload().confirm_leave or "",
                       heartbeat_interval=HEARTBEAT_INTERVAL_SEC,
                       answer_url=url_for(f"{bp.name}.exam_answer"),
                       event_url=url_for(f"{bp.name}.exam_event"),
                       status_url=url_for(f"{bp.name}.exam_take_status"),
                       submit_url=url_for(f"{bp.name}.exam_submit"),
                       list_url=url_for(f"{bp.name}.exam_list"))

    @bp.post("/take/answer")
    def exam_answer():
        user = _user()
        if not user:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        data = request.get_json(force=True, silent=True) or {}
        try:
            idx = int(data.get("questionIndex"))
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "questionIndex is required"}), 400
        ctl = _controller(user)
        try:
            ans = ctl.record_raw_answer(idx, data.get("answer"))
        except AttemptStateError as e:
            return jsonify({"ok": False, "error": str(e)}), 409
        except AnswerError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        return jsonify({"ok": True, "questionIndex": idx, "answered": ans is not None})

    @bp.post("/take/event")
    def exam_event():
        user = _user()
        if not user:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        data = request.get_json(force=True, silent=True) or {}
        mon = _monitor(user, _controller(user))
        try:
            reaction = mon.handle(data)
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        return jsonify({"ok": True, **reaction.to_dict()})

    @bp.get("/take/status")
    def exam_take_status():
        user = _user()
        if not user:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        return jsonify({"ok": True, **_controller(user).snapshot()})

    @bp.post("/take/submit")
    def exam_submit():
        user = _user()
        if not user:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        ctl = _controller(user)
        result = ctl.submit(browser_info=request.headers.get("User-Agent", ""))
        if request.is_json:
            status = 200 if result.ok else (409 if result.rejected else 502)
            return jsonify({"ok": result.ok, "message": result.message}), status
        return redirect(url_for(f"{bp.name}.exam_list" if result.ok else f"{bp.name}.exam_take"))

    @bp.post("/take/abandon")
    def exam_abandon():
        user = _user()
        if not user:
            return _login_redirect()
        _controller(user).abandon()
        return redirect(url_for(f"{bp.name}.exam_list"))

    # ---- faculty CRUD --------------------------------------------------------
    @bp.route("/new", methods=["GET", "POST"])
    def exam_new():
        user = _user()
        if not user:
            return _login_redirect()
        if not _is_faculty(user):
            abort(403)
        if request.method == "GET":
            return _render_exam_form(_form_from_request({"question_count": "0"}), None, [])
        form = _form_from_request(request.form)
        if request.form.get("action") != "save":
            return _render_exam_form(form, None, [])
        try:
            ExamCatalog(current_api()).create_exam(form)
        except ExamFormError as e:
            return _render_exam_form(form, None, e.errors)
        except ApiError as e:
            return _render_exam_form(form, None, [e.message or "Failed to save exam"])
        return redirect(url_for(f"{bp.name}.exam_list"))

    @bp.route("/<exam_id>/edit", methods=["GET", "POST"])
    def exam_edit(exam_id: str):
        user = _user()
        if not user:
            return _login_redirect()
        if not _is_faculty(user):
            abort(403)
        catalog = ExamCatalog(current_api())
        if request.method == "GET":
            try:
                exam = catalog.get_exam(exam_id)
            except ApiError as e:
                return _render_exam_form(_form_from_request({}), exam_id, [e.message or "Failed to load exam"])
            return _render_exam_form(_form_from_exam(exam), exam_id, [])
        form = _form_from_request(request.form)
        if request.form.get("action") != "save":
            return _render_exam_form(form, exam_id, [])
        try:
            catalog.update_exam(exam_id, form)
        except ExamFormError as e:
            return _render_exam_form(form, exam_id, e.errors)
        except ApiError as e:
            return _render_exam_form(form, exam_id, [e.message or "Failed to save exam"])
        return redirect(url_for(f"{bp.name}.exam_list"))

    @bp.post("/<exam_id>/delete")
    def exam_delete(exam_id: str):
        user = _user()
        if not user:
            return _login_redirect()
        if not _is_faculty(user):
            abort(403)
        try:
            ExamCatalog(current_api()).delete_exam(exam_id)
        except ApiError as e:
            print(f"[exam] delete {exam_id} failed: {e}", flush=True)
            return _render("exam_error.html", _ERROR_PAGE, error_msg=e.message or "Failed to delete exam",
                           list_url=url_for(f"{bp.name}.exam_list")), (e.status or 500)
        return redirect(url_for(f"{bp.name}.exam_list"))

    # ---- grading -------------------------------------------------------------
    def _render_grading(view: GradingView, errors: Dict[str, str]):
        return _render("exam_grading.html", _GRADING_PAGE,
                       exam=view.exam, view=view, attempts=view.attempts, errors=errors,
                       bp_name=bp.name, list_url=url_for(f"{bp.name}.exam_list"))

    def _grading_view(exam_id: str) -> GradingView:
        api = current_api()
        view = GradingView(api, ExamCatalog(api).get_exam(exam_id))
        view.load()
        return view

    @bp.get("/<exam_id>/grading")
    def exam_grading(exam_id: str):
        user = _user()
        if not user:
            return _login_redirect()
        if not _is_faculty(user):
            abort(403)
        try:
            view = _grading_view(exam_id)
        except ApiError as e:
            return _render("exam_error.html", _ERROR_PAGE, error_msg=e.message or "Failed to load attempts",
                           list_url=url_for(f"{bp.name}.exam_list")), (e.status or 500)
        return _render_grading(view, {})

    @bp.post("/<exam_id>/grading/<student_id>")
    def exam_grade_save(exam_id: str, student_id: str):
        user = _user()
        if not user:
            return _login_redirect()
        if not _is_faculty(user):
            abort(403)
        try:
            view = _grading_view(exam_id)
        except ApiError as e:
            return _render("exam_error.html", _ERROR_PAGE, error_msg=e.message or "Failed to load attempts",
                           list_url=url_for(f"{bp.name}.exam_list")), (e.status or 500)
        try:
            for i in range(len(view.exam.questions)):
                raw = (request.form.get(f"mark-{i}") or "").strip()
                if not raw:
                    view.clear_manual_mark(student_id, i)
                    continue
                # Only a changed value (or an existing override) becomes a manual mark
                try:
                    changed = float(raw) != view.current_mark(student_id, i)
                except ValueError:
                    changed = True
                if changed or view.manual_mark(student_id, i) is not None:
                    view.set_manual_mark(student_id, i, raw)
                if f"comment-{i}" in request.form and view.manual_mark(student_id, i) is not None:
                    view.set_comment(student_id, i, (request.form.get(f"comment-{i}") or "").strip())
            view.set_feedback(student_id, request.form.get("feedback") or "")
            view.save(student_id)
        except GradingError as e:
            return _render_grading(view, {student_id: str(e)}), 400
        except ApiError as e:
            return _render_grading(view, {student_id: e.message or "Failed to save grade"}), (e.status or 500)
        return redirect(url_for(f"{bp.name}.exam_grading", exam_id=exam_id))

    return bp


# -----------------------------------------------------------------------------#
# Fallback helpers
# -----------------------------------------------------------------------------#
def _plain_rich(text: Any) -> Markup:
    if not text:
        return Markup("")
    return Markup("<p>" + str(escape(str(text))).replace("\n\n", "</p><p>").replace("\n", "<br/>") + "</p>")


# -----------------------------------------------------------------------------#
# Inline pages (used when templates/ has no override)
# -----------------------------------------------------------------------------#
_LAYOUT_HEAD = """
<!doctype html><html><head><meta charset="utf-8"/>
<title>Exams</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  :root{--ink:#111827;--muted:#6b7280;--line:#e5e7eb}
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:var(--ink)}
  main{max-width:960px;margin:0 auto;padding:24px}
  a{color:inherit}
  .card{border:1px solid var(--line);border-radius:10px;padding:14px;margin:12px 0;background:#fff}
  .btn{display:inline-block;padding:8px 14px;border-radius:8px;background:#111827;color:#fff;border:0;cursor:pointer;text-decoration:none}
  .btn.ghost{background:#fff;color:#111827;border:1px solid #111827}
  .muted{color:var(--muted);font-size:12px}
  .badge{display:inline-block;padding:2px 8px;border-radius:999px;font-size:12px;border:1px solid #d1d5db;background:#f9fafb}
  .error{color:#b91c1c}
  .notice{border-color:#10b981;background:#ecfdf5}
  .timer{font-size:22px;font-weight:700}
  textarea,input[type=text],input[type=number],select{width:100%;box-sizing:border-box}
  table{border-collapse:collapse;width:100%}
  td,th{border-bottom:1px solid var(--line);padding:6px;text-align:left;vertical-align:top}
</style>
</head>
<body><main>
{% if user %}<div class="muted">Signed in as {{ user.name or user.email }} ({{ user.role }})</div>{% endif %}
"""

_LAYOUT_FOOT = """
</main></body></html>
"""

_ERROR_PAGE = """
<div class="card error">{{ error_msg }}</div>
<a class="btn ghost" href="{{ list_url }}">Back to exams</a>
"""

_LIST_PAGE = """
<h1>Exams</h1>
{% if notice %}<div class="card notice">{{ notice }}</div>{% endif %}
{% if error_msg %}<div class="card error">{{ error_msg }}</div>{% endif %}

{% if status_view %}
  <div class="card">
    <strong>{{ status_view.message }}</strong>
    {% if status_view.exam %}
      <div>{{ status_view.exam.title }}</div>
      <div class="muted">Starts {{ status_view.exam.start_time|instant }} · Ends {{ status_view.exam.end_time|instant }} · Duration {{ status_view.exam.duration }} min</div>
    {% endif %}
    <form method="post" action="{{ url_for(bp_name ~ '.exam_status_dismiss') }}"><button class="btn ghost">Back to exams</button></form>
  </div>
{% endif %}

{% if is_faculty %}
  <a class="btn" href="{{ url_for(bp_name ~ '.exam_new') }}">New exam</a>
{% endif %}

{% for e in exams %}
  <div class="card">
    <div><strong>{{ e.title }}</strong> <span class="badge">{{ e.exam_type }}</span> <span class="badge">{{ e.status }}</span></div>
    {% if e.course_name %}<div class="muted">{{ e.course_name }}</div>{% endif %}
    <div class="muted">{{ e.start_time|instant }} → {{ e.end_time|instant }}</div>
    <div class="muted">Duration: {{ e.duration }} minutes · Questions: {{ e.questions|length }} · Max Attempts: {{ e.max_attempts }}</div>
    {% if e.description %}<div>{{ e.description|rich }}</div>{% endif %}
    {% if is_faculty %}
      <a class="btn ghost" href="{{ url_for(bp_name ~ '.exam_edit', exam_id=e.id) }}">Edit</a>
      <a class="btn ghost" href="{{ url_for(bp_name ~ '.exam_grading', exam_id=e.id) }}">Grade attempts ({{ e.attempt_count() }})</a>
      <form method="post" action="{{ url_for(bp_name ~ '.exam_delete', exam_id=e.id) }}" style="display:inline"
            onsubmit="return confirm('Are you sure you want to delete this exam?');">
        <button class="btn ghost">Delete</button>
      </form>
    {% else %}
      <form method="post" action="{{ url_for(bp_name ~ '.exam_start', exam_id=e.id) }}">
        <button class="btn">Start exam</button>
      </form>
    {% endif %}
  </div>
{% else %}
  {% if not error_msg %}<div class="muted">No exams available.</div>{% endif %}
{% endfor %}

{% if not is_faculty %}
  <h2>My attempts</h2>
  {% if my_attempts %}
    <table>
      <tr><th>Exam</th><th>Status</th><th>Marks</th><th>%</th><th>Feedback</th></tr>
      {% for a in my_attempts %}
        <tr>
          <td>{{ a.examTitle }}</td>
          <td>{{ a.status }}</td>
          <td>{{ a.totalMarks }} / {{ a.maximumMarks }}</td>
          <td>{{ a.percentage }}</td>
          <td>{{ a.feedback }}</td>
        </tr>
      {% endfor %}
    </table>
  {% else %}
    <div class="muted">No attempts yet.</div>
  {% endif %}
{% endif %}
"""

_TAKE_PAGE = """
<h1>{{ exam.title }}</h1>
<div class="card">
  <span class="timer" id="timer">{{ clock }}</span>
  <span class="muted">time left</span>
  <button class="btn ghost" id="fs-btn" type="button">Enter full-screen</button>
</div>
{% if exam.description %}<div class="card">{{ exam.description|rich }}</div>{% endif %}
{% if error_msg %}<div class="card error" id="error">{{ error_msg }}</div>{% endif %}

{% for q in exam.questions %}
  {% set idx = loop.index0 %}
  <div class="card">
    <div><strong>Q{{ loop.index }}</strong> <span class="muted">({{ q.marks }} marks)</span></div>
    <div>{{ q.text }}</div>
    {% if q.question_type == 'mcq' %}
      {% for opt in q.options %}
        <label><input type="radio" name="q{{ idx }}" value="{{ opt }}" data-q="{{ idx }}"
               {% if answers.get(idx) == opt %}checked{% endif %}> {{ opt }}</label><br/>
      {% endfor %}
    {% elif q.question_type == 'true_false' %}
      {% for opt in ['true', 'false'] %}
        <label><input type="radio" name="q{{ idx }}" value="{{ opt }}" data-q="{{ idx }}"
               {% if answers.get(idx) == opt %}checked{% endif %}> {{ opt|capitalize }}</label>
      {% endfor %}
    {% else %}
      <textarea name="q{{ idx }}" data-q="{{ idx }}" rows="{{ 8 if q.question_type == 'long_answer' else 3 }}">{{ answers.get(idx, '') }}</textarea>
    {% endif %}
  </div>
{% endfor %}

<button class="btn" id="submit-btn" type="button">Submit exam</button>
<span id="result" class="muted"></span>

<script>
(function(){
  const ANSWER_URL="{{ answer_url }}";
  const EVENT_URL="{{ event_url }}";
  const STATUS_URL="{{ status_url }}";
  const SUBMIT_URL="{{ submit_url }}";
  const LIST_URL="{{ list_url }}";
  const LEAVE_PROMPT={{ leave_prompt|tojson }};
  const HEARTBEAT_SEC={{ heartbeat_interval }};
  let timeLeft={{ time_left }};
  let leaving=false;

  function post(url, body){
    return fetch(url,{method:"POST",headers:{"Content-Type":"application/json"},body:JSON.stringify(body)})
      .then(function(r){ return r.json(); });
  }
  function fmt(s){ s=Math.max(0,s); const m=Math.floor(s/60), r=s%60; return (m<10?"0":"")+m+":"+(r<10?"0":"")+r; }
  function signals(){ return {visible: document.visibilityState==='visible', fullscreen: !!document.fullscreenElement}; }
  function react(j){
    if(!j) return;
    if(j.warning) alert(j.warning);
    if(j.request_fullscreen && document.documentElement.requestFullscreen){
      document.documentElement.requestFullscreen().catch(function(){});
    }
  }

  // Answers
  document.querySelectorAll('[data-q]').forEach(function(el){
    const evt = el.tagName==='TEXTAREA' ? 'change' : 'click';
    el.addEventListener(evt, function(){
      post(ANSWER_URL,{questionIndex:Number(el.getAttribute('data-q')),answer:el.value})
        .then(function(j){ if(!j.ok) document.getElementById('result').textContent=j.error||"Not saved"; })
        .catch(function(){});
    });
  });

  // Anti-cheat signals
  document.addEventListener('visibilitychange', function(){
    post(EVENT_URL,Object.assign({type:'visibilitychange'},signals())).then(react).catch(function(){});
  });
  document.addEventListener('fullscreenchange', function(){
    post(EVENT_URL,Object.assign({type:'fullscreenchange'},signals())).then(react).catch(function(){});
  });
  window.addEventListener('beforeunload', function(e){
    if(leaving) return;
    e.preventDefault(); e.returnValue=LEAVE_PROMPT; return LEAVE_PROMPT;
  });
  if(HEARTBEAT_SEC>0){
    setInterval(function(){ post(EVENT_URL,Object.assign({type:'pulse'},signals())).catch(function(){}); }, HEARTBEAT_SEC*1000);
  }
  document.getElementById('fs-btn').addEventListener('click', function(){
    if(document.documentElement.requestFullscreen){
      document.documentElement.requestFullscreen().catch(function(){ alert('Please manually return to full-screen mode to continue the exam.'); });
    }
  });

  // Countdown (server is authoritative; this only displays and resyncs)
  setInterval(function(){ timeLeft-=1; document.getElementById('timer').textContent=fmt(timeLeft); }, 1000);
  setInterval(function(){
    fetch(STATUS_URL,{headers:{'Accept':'application/json'}}).then(function(r){ return r.json(); }).then(function(j){
      if(!j.ok) return;
      if(j.state!=='in_progress' && j.state!=='submitting'){ leaving=true; window.location.href=LIST_URL; return; }
      timeLeft=j.time_left;
      if(j.error) document.getElementById('result').textContent=j.error;
    }).catch(function(){});
  }, 5000);

  // Submit
  document.getElementById('submit-btn').addEventListener('click', function(){
    document.getElementById('result').textContent="Submitting…";
    post(SUBMIT_URL,{}).then(function(j){
      if(j.ok){ leaving=true; window.location.href=LIST_URL; }
      else { alert(j.message||"Failed to submit exam"); document.getElementById('result').textContent=""; }
    }).catch(function(e){ alert("Failed to submit exam"); });
  });
})();
</script>
"""

_FORM_PAGE = """
<h1>{{ 'Edit exam' if exam_id else 'New exam' }}</h1>
{% for err in errors %}<div class="card error">{{ err }}</div>{% endfor %}
<form method="post" action="{{ action_url }}">
  <button class="btn" name="action" value="save" style="position:absolute;left:-9999px" tabindex="-1" aria-hidden="true">Save exam</button>
  <div class="card">
    <label>Title <input type="text" name="title" value="{{ form.title }}"></label>
    <label>Description <textarea name="description" rows="3">{{ form.description }}</textarea></label>
    <label>Course
      <select name="course">
        <option value="">Select a course</option>
        {% for c in courses %}
          <option value="{{ c._id }}" {% if c._id == form.course %}selected{% endif %}>{{ c.name }}{% if c.code %} ({{ c.code }}){% endif %}</option>
        {% endfor %}
        {% if form.course and not courses %}<option value="{{ form.course }}" selected>{{ form.course }}</option>{% endif %}
      </select>
    </label>
    <label>Type
      <select name="examType">
        {% for t in exam_types %}<option value="{{ t }}" {% if t == form.examType %}selected{% endif %}>{{ t }}</option>{% endfor %}
      </select>
    </label>
    <label>Start <input type="datetime-local" name="startTime" value="{{ form.startTime }}"></label>
    <label>End <input type="datetime-local" name="endTime" value="{{ form.endTime }}"></label>
    <label>Duration (minutes) <input type="number" min="1" name="duration" value="{{ form.duration }}"></label>
    <label>Passing marks <input type="number" min="0" name="passingMarks" value="{{ form.passingMarks }}"></label>
    <label>Max attempts <input type="number" min="1" name="maxAttempts" value="{{ form.settings.maxAttempts }}"></label>
    <label><input type="checkbox" name="isActive" {% if form.isActive %}checked{% endif %}> Active</label>
  </div>

  <input type="hidden" name="question_count" value="{{ form.questions|length }}">
  {% for q in form.questions %}
    {% set i = loop.index0 %}
    <div class="card">
      <strong>Question {{ loop.index }}</strong>
      <button class="btn ghost" name="remove_question" value="{{ i }}">Remove</button>
      <textarea name="q-{{ i }}-text" rows="2">{{ q.questionText }}</textarea>
      <select name="q-{{ i }}-type">
        {% for t in question_types %}<option value="{{ t }}" {% if t == q.questionType %}selected{% endif %}>{{ t }}</option>{% endfor %}
      </select>
      <label>Options (one per line, multiple choice only)
        <textarea name="q-{{ i }}-options" rows="4">{{ (q.options or [])|join('\\n') }}</textarea></label>
      <label>Correct answer <input type="text" name="q-{{ i }}-correct" value="{{ q.correctAnswer or '' }}"></label>
      <label>Marks <input type="number" min="1" name="q-{{ i }}-marks" value="{{ q.marks }}"></label>
    </div>
  {% endfor %}

  <button class="btn ghost" name="action" value="add_question">Add question</button>
  <button class="btn" name="action" value="save">Save exam</button>
  <a class="btn ghost" href="{{ list_url }}">Cancel</a>
</form>
"""

_GRADING_PAGE = """
<h1>Grade: {{ exam.title }}</h1>
<a class="btn ghost" href="{{ list_url }}">Back to exams</a>
{% for a in attempts %}
  <div class="card">
    <div><strong>{{ a.student_name or a.student_id }}</strong> <span class="muted">{{ a.student_email }}</span>
      <span class="badge">{{ a.status }}</span>
      <span class="muted">Total {{ a.total_marks }} ({{ a.percentage }}%)</span></div>
    {% if errors.get(a.student_id) %}<div class="error">{{ errors.get(a.student_id) }}</div>{% endif %}
    <form method="post" action="{{ url_for(bp_name ~ '.exam_grade_save', exam_id=exam.id, student_id=a.student_id) }}">
      <table>
        <tr><th>#</th><th>Question</th><th>Answer</th><th>Auto Marks</th><th>Marks</th><th>Comment</th></tr>
        {% for row in view.rows(a) %}
          <tr>
            <td>Q{{ row.index + 1 }}</td>
            <td>{{ row.question.text }} <span class="muted">(max {{ row.question.marks }})</span></td>
            <td>{{ row.answer }}</td>
            <td>{{ row.objective }}</td>
            <td><input type="number" step="0.5" min="0" max="{{ row.question.marks }}" name="mark-{{ row.index }}" value="{{ row.current }}">
              {% if row.overridden %}<span class="muted">manual</span>{% endif %}</td>
            <td><input type="text" name="comment-{{ row.index }}" value="{{ row.comment }}" placeholder="Comment on the manual mark"></td>
          </tr>
        {% endfor %}
      </table>
      <div class="muted">Draft total: {{ view.draft_total(a.student_id) }}</div>
      <label>Feedback <textarea name="feedback" rows="2">{{ view.drafts.get(a.student_id, {}).get('feedback', '') }}</textarea></label>
      <button class="btn">Save grade</button>
    </form>
  </div>
{% else %}
  <div class="muted">No attempts found.</div>
{% endfor %}
"""
