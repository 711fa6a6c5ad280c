"""
Notification surface adapters.

The scheduler emits notifications through ``emit(notification_id, title,
body, actions)`` and hears back through callbacks:

    on_action(notification_id, action_index)
    on_dismiss(notification_id)
    on_error(notification_id, reason)     host surface failed after emission

DesktopNotifier drives notify-send (libnotify) with action buttons and waits
for the user's choice on a helper thread. LogNotifier only logs; it is the
headless backend and never produces actions.
"""

import subprocess
import threading
from typing import Callable, Dict, List, Optional

from rhythm.logger import get_logger
from rhythm.models import NotificationAction


class NotificationError(Exception):
    """The host notification surface rejected an emission."""


class BaseNotifier:
    """Callback plumbing shared by all notification backends."""

    def __init__(self, config=None):
        self.config = config
        self.logger = get_logger(self.__class__.__name__, config)
        self._action_callback: Optional[Callable[[str, int], None]] = None
        self._dismiss_callback: Optional[Callable[[str], None]] = None
        self._error_callback: Optional[Callable[[str, str], None]] = None

    def set_callbacks(self, on_action: Callable[[str, int], None],
                      on_dismiss: Callable[[str], None],
                      on_error: Optional[Callable[[str, str], None]] = None):
        self._action_callback = on_action
        self._dismiss_callback = on_dismiss
        self._error_callback = on_error

    def _fire_action(self, notification_id: str, index: int):
        if self._action_callback:
            self._action_callback(notification_id, index)

    def _fire_dismiss(self, notification_id: str):
        if self._dismiss_callback:
            self._dismiss_callback(notification_id)

    def _fire_error(self, notification_id: str, reason: str):
        if self._error_callback:
            self._error_callback(notification_id, reason)

    def emit(self, notification_id: str, title: str, body: str,
             actions: List[NotificationAction]):
        raise NotImplementedError

    def clear(self, notification_id: str):
        raise NotImplementedError


class LogNotifier(BaseNotifier):
    """Headless backend: writes notifications to the log."""

    def emit(self, notification_id, title, body, actions):
        labels = ", ".join(a.label for a in actions)
        self.logger.info(f"[{notification_id}] {title}: {body} ({labels})")

    def clear(self, notification_id):
        self.logger.debug(f"[{notification_id}] cleared")


class DesktopNotifier(BaseNotifier):
    """notify-send backend with action buttons.

    notify-send --wait prints the chosen action key on stdout and exits when
    the notification is closed; an empty line means dismissed.
    """

    def __init__(self, config=None):
        super().__init__(config)
        self.urgency = config.get("notifications.urgency", "critical") if config else "critical"
        self._procs: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def emit(self, notification_id, title, body, actions):
        cmd = ["notify-send", f"--urgency={self.urgency}", "--wait",
               "--app-name=rhythm"]
        for action in actions:
            cmd.append(f"--action={action.key}={action.label}")
        cmd.append(title)
        if body:
            cmd.append(body)

        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE,
                                    stderr=subprocess.DEVNULL, text=True)
        except OSError as e:
            raise NotificationError(f"notify-send failed: {e}") from e

        with self._lock:
            self._procs[notification_id] = proc

        keys = [a.key for a in actions]
        threading.Thread(target=self._wait_for_choice,
                         args=(notification_id, proc, keys),
                         daemon=True, name=f"notify-{notification_id}").start()

    def _wait_for_choice(self, notification_id: str, proc: subprocess.Popen, keys: List[str]):
        try:
            out, _ = proc.communicate()
        except Exception as e:
            self.logger.warning(f"Waiting on notification {notification_id} failed: {e}")
            return
        finally:
            with self._lock:
                if self._procs.get(notification_id) is proc:
                    del self._procs[notification_id]

        # Negative return code: terminated by clear()
        if proc.returncode < 0:
            return
        if proc.returncode > 0:
            # No notification daemon or similar: nobody will answer this one
            self.logger.warning(f"notify-send exited with {proc.returncode} for {notification_id}")
            self._fire_error(notification_id, f"notify-send exited with {proc.returncode}")
            self._fire_dismiss(notification_id)
            return

        choice = (out or "").strip()
        if choice in keys:
            self._fire_action(notification_id, keys.index(choice))
        else:
            self._fire_dismiss(notification_id)

    def clear(self, notification_id):
        with self._lock:
            proc = self._procs.pop(notification_id, None)
        if proc and proc.poll() is None:
            proc.terminate()


def create_notifier(config) -> BaseNotifier:
    backend = config.get("notifications.backend", "desktop") if config else "log"
    if backend == "desktop":
        return DesktopNotifier(config)
    return LogNotifier(config)
