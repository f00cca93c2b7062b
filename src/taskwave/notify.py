"""Desktop notification when a scheduling run finishes, best-effort."""

from __future__ import annotations

import subprocess
import sys

from taskwave.events import Event, RunFinishedEvent

_TITLE = "taskwave"

# Sound command per (platform, success).
_SOUNDS = {
    ("darwin", True): ("afplay", "/System/Library/Sounds/Glass.aiff"),
    ("darwin", False): ("afplay", "/System/Library/Sounds/Basso.aiff"),
    ("linux", True): ("paplay", "/usr/share/sounds/freedesktop/stereo/complete.oga"),
    ("linux", False): ("paplay", "/usr/share/sounds/freedesktop/stereo/dialog-error.oga"),
    ("win32", True): ("powershell.exe", "-Command", "[System.Media.SystemSounds]::Asterisk.Play()"),
    ("win32", False): ("powershell.exe", "-Command", "[System.Media.SystemSounds]::Hand.Play()"),
}


def _platform() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def _run_quiet(*cmd: str) -> None:
    """Fire-and-forget subprocess, ignore failures."""
    try:
        subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError:
        pass


def _toast(title: str, message: str, *, success: bool) -> tuple[str, ...] | None:
    match _platform():
        case "darwin":
            safe = message.replace('"', "'")
            return ("osascript", "-e", f'display notification "{safe}" with title "{title}"')
        case "linux":
            urgency = "normal" if success else "critical"
            return ("notify-send", "-u", urgency, title, message)
    return None


def notify(message: str, *, success: bool = True) -> None:
    """Play a sound and show a toast where the platform supports it."""
    title = _TITLE if success else f"{_TITLE} - Attention"
    toast = _toast(title, message, success=success)
    if toast:
        _run_quiet(*toast)
    sound = _SOUNDS.get((_platform(), success))
    if sound:
        _run_quiet(*sound)


def run_message(event: RunFinishedEvent) -> str:
    parts = [f"{event.completed} completed"]
    if event.failed:
        parts.append(f"{event.failed} failed")
    if event.blocked:
        parts.append(f"{event.blocked} blocked")
    if event.conflicts:
        parts.append(f"{len(event.conflicts)} conflicts")
    return ", ".join(parts)


def on_event(event: Event) -> None:
    """Event-channel listener that notifies when a run finishes."""
    if not isinstance(event, RunFinishedEvent):
        return
    if event.success:
        notify(f"All tasks finished: {run_message(event)}")
    else:
        notify(f"Run incomplete: {run_message(event)}", success=False)
