# anti_cheat.py
# Browser focus/fullscreen signals while an attempt is running. Nothing here
# blocks the student; it forwards heartbeats and tells the page what to show.

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from api_client import ApiClient, ApiError
from exam_attempt import AttemptController

HIDDEN_WARNING = ("WARNING: You have switched away from the exam tab. "
                  "This may be recorded as suspicious activity.")
FULLSCREEN_WARNING = ("WARNING: You have exited full-screen mode. "
                      "Please return to full-screen to continue the exam.")
LEAVE_PROMPT = "Are you sure you want to leave the exam? Your answers have not been submitted yet."


@dataclass
class Reaction:
    warning: Optional[str] = None
    request_fullscreen: bool = False
    confirm_leave: Optional[str] = None
    heartbeat_sent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AntiCheatMonitor:
    def __init__(self, api: ApiClient, controller: AttemptController):
        self.api = api
        self.controller = controller
        self.hidden_count = 0
        self.fullscreen_exits = 0

    def _active_exam_id(self) -> Optional[str]:
        if not self.controller.is_active:
            return None
        return self.controller.exam_id

    def heartbeat(self, visible: bool, fullscreen: bool) -> bool:
        exam_id = self._active_exam_id()
        if not exam_id:
            return False
        try:
            self.api.heartbeat_exam(exam_id, visibility=visible, fullscreen=fullscreen)
            return True
        except ApiError as e:
            print(f"[anti-cheat] heartbeat for {exam_id} ignored: {e}", flush=True)
            return False

    # ---- browser events ------------------------------------------------------
    def on_visibility_change(self, visible: bool, fullscreen: bool) -> Reaction:
        if not self._active_exam_id():
            return Reaction()
        sent = self.heartbeat(visible, fullscreen)
        if visible:
            return Reaction(heartbeat_sent=sent)
        self.hidden_count += 1
        return Reaction(warning=HIDDEN_WARNING, heartbeat_sent=sent)

    def on_fullscreen_change(self, fullscreen: bool) -> Reaction:
        if not self._active_exam_id() or fullscreen:
            return Reaction()
        self.fullscreen_exits += 1
        return Reaction(warning=FULLSCREEN_WARNING, request_fullscreen=True)

    def on_before_unload(self) -> Reaction:
        if not self._active_exam_id():
            return Reaction()
        return Reaction(confirm_leave=LEAVE_PROMPT)

    def pulse(self, visible: bool, fullscreen: bool) -> Reaction:
        return Reaction(heartbeat_sent=self.heartbeat(visible, fullscreen))

    def handle(self, event: Dict[str, Any]) -> Reaction:
        kind = str(event.get("type") or "")
        visible = bool(event.get("visible", True))
        fullscreen = bool(event.get("fullscreen", False))
        if kind == "visibilitychange":
            return self.on_visibility_change(visible, fullscreen)
        if kind == "fullscreenchange":
            return self.on_fullscreen_change(fullscreen)
        if kind == "beforeunload":
            return self.on_before_unload()
        if kind == "pulse":
            return self.pulse(visible, fullscreen)
        raise ValueError(f"unknown event type '{kind}'")
