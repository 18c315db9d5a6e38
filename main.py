# main.py: exam frontend over the academic REST backend, BASE_PATH-aware
# Sign-in goes through the backend's /auth/login; the bearer token lives in the session.

import os
import re
from functools import lru_cache
from urllib.parse import quote, urlsplit, urlunsplit
from typing import Any, Dict, Optional

import bleach
import markdown
from flask import (
    Flask, render_template, render_template_string, request, redirect, g, session, flash,
)
from jinja2 import TemplateNotFound
from markupsafe import Markup

from api_client import ApiClient, ApiError
from exam import create_exam_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# Backend + auth configuration
# =============================================================================
BACKEND_API_URL = (os.getenv("BACKEND_API_URL", "http://localhost:5000/api") or "").rstrip("/")
API_TIMEOUT_SEC = float(os.getenv("API_TIMEOUT_SEC", "15") or 15)
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

ALLOW_RAW_HTML = os.getenv("ALLOW_RAW_HTML", "1").lower() in {"1", "true", "yes"}
SANITIZE_HTML = os.getenv("SANITIZE_HTML", "0").lower() in {"1", "true", "yes"}

BLEACH_ALLOWED_TAGS = [
    "a","abbr","b","blockquote","code","em","i","li","ol","strong","ul",
    "p","h1","h2","h3","h4","pre","hr","br","span","div","img","table",
    "thead","tbody","tr","th","td","caption",
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class","id","title"],
    "a": ["href","name","target","rel"],
    "img": ["src","alt","width","height","loading"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http","https","mailto"]

print(f"[auth] backend {BACKEND_API_URL} (auth required: {AUTH_REQUIRED})", flush=True)


def make_api(token: Optional[str] = None) -> ApiClient:
    return ApiClient(BACKEND_API_URL, token=token, timeout=API_TIMEOUT_SEC)


def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

# =============================================================================
# Rendering helpers (Markdown/HTML)
# =============================================================================
_HTML_PATTERN = re.compile(r"</?\w+[^>]*>")

def _sanitize_if_enabled(html: str) -> str:
    if not SANITIZE_HTML:
        return html
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=False,
    )

@lru_cache(maxsize=256)
def _render_rich_cached(text: str, allow_raw: bool, sanitize_flag: bool) -> str:
    if not text:
        return ""
    if allow_raw and _HTML_PATTERN.search(text):
        return _sanitize_if_enabled(text)
    html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists"], output_format="html5")
    return _sanitize_if_enabled(html)

def render_rich(text: Optional[str]) -> Markup:
    if text is None:
        return Markup("")
    text_str = text if isinstance(text, str) else str(text)
    return Markup(_render_rich_cached(text_str, ALLOW_RAW_HTML, SANITIZE_HTML))

# =============================================================================
# Identity
# =============================================================================
def _normalize_user(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    uid = raw.get("id") or raw.get("_id")
    if not uid:
        return None
    return {
        "id": str(uid),
        "name": raw.get("name") or "",
        "email": (raw.get("email") or "").lower(),
        "role": (raw.get("role") or "student").lower(),
    }

def current_user() -> Optional[Dict[str, Any]]:
    return _normalize_user(session.get("user"))

@app.context_processor
def inject_user_and_base():
    return {
        "current_user": getattr(g, "user", None),
        "base_path": BASE_PATH,
        "bp": _bp,
    }

# =============================================================================
# Routes (auth, health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        make_api().get("/health")
    except ApiError as e:
        if e.code == "network":
            return (f"backend-unreachable: {e}", 503)
    return ("ok", 200)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

@app.get("/")
def index():
    return redirect(_bp("/exams"))

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/exams")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/exams")
    path = parts.path or "/"
    blocked_prefixes = {_bp("/login"), _bp("/logout"), "/login", "/logout"}
    if any(path == p or path.startswith(p + "/") for p in blocked_prefixes):
        return _bp("/exams")
    safe = urlunsplit(("", "", path, parts.query, ""))
    return safe or _bp("/exams")

_LOGIN_PAGE = """
<!doctype html><html><head><meta charset="utf-8"/><title>Sign in</title>
<style>body{font-family:system-ui,sans-serif;max-width:360px;margin:64px auto}
input{width:100%;margin:6px 0;padding:8px;box-sizing:border-box}.error{color:#b91c1c}</style></head>
<body>
<h1>Sign in</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post">
  <input type="hidden" name="next" value="{{ next_url }}">
  <input type="email" name="email" placeholder="Email" value="{{ email or '' }}" required>
  <input type="password" name="password" placeholder="Password" required>
  <button type="submit">Sign in</button>
</form>
</body></html>
"""

@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "POST":
        next_url = _sanitize_next(request.form.get("next") or session.get("login_next"))
    else:
        next_url = _sanitize_next(request.args.get("next") or session.get("login_next"))
    session["login_next"] = next_url

    error = None
    email = ""
    if request.method == "POST":
        email = (request.form.get("email") or "").strip().lower()
        password = request.form.get("password") or ""
        try:
            data = make_api().login(email, password)
            token = data.get("token")
            user = _normalize_user(data.get("user"))
            if token and not user:
                user = _normalize_user(make_api(token).me().get("user"))
            if not user or not token:
                raise ApiError("Login response is missing the user or token", code="bad_response")
        except ApiError as e:
            print(f"[auth] login failed for {email}: {e}", flush=True)
            error = e.message if e.code != "network" else "The exam service is unavailable. Please try again."
        else:
            session["user"] = user
            session["token"] = token
            print(f"[auth] {email} signed in as {user['role']}", flush=True)
            return redirect(_sanitize_next(session.pop("login_next", None)))

    ctx = {"next_url": next_url, "error": error, "email": email, "base_path": BASE_PATH}
    try:
        return render_template("login.html", **ctx)
    except TemplateNotFound:
        return render_template_string(_LOGIN_PAGE, **ctx)

@app.get("/logout")
def logout():
    user = current_user()
    if user:
        exam_bp.forget(user["id"])
    session.clear()
    flash("Signed out.", "success")
    return redirect(_bp("/login"))

def _is_public_path(path: str) -> bool:
    if path.startswith(STATIC_URL_PATH):
        return True
    public_exact = {
        "/", _bp("/"),
        "/favicon.ico", _bp("/favicon.ico"),
        "/healthz", _bp("/healthz"),
        "/login", _bp("/login"),
        "/logout", _bp("/logout"),
    }
    return path in public_exact

@app.before_request
def enforce_or_attach_identity():
    user = current_user()
    g.user = user
    g.api = make_api(session.get("token") if user else None)
    if user or _is_public_path(request.path):
        return
    if AUTH_REQUIRED:
        full = request.full_path if request.query_string else request.path
        next_url = _sanitize_next(full)
        return redirect(f"{_bp('/login')}?next={quote(next_url, safe='/:?&=')}")

# =============================================================================
# Exam blueprint
# =============================================================================
exam_bp = create_exam_blueprint(BASE_PATH, {
    "current_api": lambda: getattr(g, "api", None),
    "current_user": lambda: getattr(g, "user", None),
    "render_rich": render_rich,
})
app.register_blueprint(exam_bp)

# Auth and health pages also answer under BASE_PATH
if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/", endpoint="index_bp", view_func=index, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET", "POST"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
