"""
Capture of the host's human-readable progress narration.

While a package is installed the host emits progress text ("Downloading
update...", "Plugin updated successfully."). The narration sink collects it
between an explicit start and stop, so each log entry carries the text the
operator would have seen. Core updates report their steps through a separate
channel collected by CoreFeedback.

Also home to the message formatting shared by all log entries.
"""

import re
from typing import List, Optional, Sequence

from update_audit.utils.sanitizer import strip_markup

_LINE_BREAK_RUN = re.compile(r"\s*\n\s*")
_MORE_DETAILS = "More details."


def feedback_html_to_plain(html: str) -> str:
    """
    Turn captured progress markup into plain text, one message per line.

    Scripts are dropped, tags stripped and entities decoded. Empty lines,
    "More details." links and inline jQuery snippets are removed.
    """
    text = strip_markup(html or "", keep_lines=True)
    text = _LINE_BREAK_RUN.sub("\n", text)

    lines = []
    for line in text.split("\n"):
        line = line.strip()
        if not line or line == _MORE_DETAILS or line.startswith("jQuery("):
            continue
        if line.endswith(" " + _MORE_DETAILS):
            line = line[: -len(_MORE_DETAILS) - 1].rstrip()
        lines.append(line)
    return "\n".join(lines)


class NarrationSink:
    """
    Armed/disarmed collector for progress narration.

    The host marks item boundaries during bulk runs with flush(); the chunk
    collected so far is kept and capture continues for the next item.
    stop_capture() returns everything collected since start_capture().
    """

    def __init__(self):
        self._chunks: List[str] = []
        self._current: List[str] = []
        self._capturing = False

    @property
    def capturing(self) -> bool:
        return self._capturing

    def start_capture(self) -> None:
        """Arm the sink. Arming an armed sink keeps what was collected."""
        self._capturing = True

    def append(self, text: str) -> bool:
        """Collect a chunk; ignored (returns False) while disarmed."""
        if not self._capturing:
            return False
        self._current.append(str(text))
        return True

    def flush(self) -> None:
        """Per-item boundary: keep the current chunk and stay armed."""
        if self._current:
            self._chunks.append("".join(self._current))
            self._current = []

    def stop_capture(self) -> str:
        """Disarm, clear and return the collected narration as plain text."""
        self.flush()
        html = "\n".join(self._chunks)
        self._chunks = []
        self._capturing = False
        return feedback_html_to_plain(html)


class CoreFeedback:
    """Step messages of a core update, collected after the package download starts."""

    def __init__(self):
        self.package_url = ""
        self._steps: List[str] = []
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self, package_url: str = "") -> None:
        self.package_url = package_url or ""
        self._steps = []
        self._active = True

    def collect(self, text: str) -> None:
        if not self._active:
            return
        step = strip_markup(text, keep_lines=False).replace("&#8230;", "…").strip()
        if step:
            self._steps.append(step)

    def drain(self) -> List[str]:
        """Return the collected steps, prefixed with download/unpack steps, and reset."""
        steps = []
        if self.package_url:
            steps.append(f"Downloading the update from {self.package_url}…")
            steps.append("Unpacking the update…")
        steps.extend(self._steps)

        self.package_url = ""
        self._steps = []
        self._active = False
        return steps


def format_item_title(action: str, name: str, version: str) -> str:
    """First line of a plugin, theme or translation log message."""
    version = version or ""
    if action == "install":
        title = f"Installed {name} {version}"
    elif action == "uninstall":
        title = f"Uninstalled {name} {version}"
    elif action == "downgrade":
        title = f"Rolled back {name} to {version}"
    elif action == "same_version":
        title = f"Reinstalled {name} {version} (same version)"
    elif action == "failed":
        title = f"Failed to update {name} to {version}" if version else f"Failed to update {name}"
    else:
        title = f"Updated {name} to {version}" if version else f"Updated {name}"
    return " ".join(title.split())


def format_note(title: str, steps: Optional[Sequence[str]] = None, details: str = "") -> str:
    """
    Compose a log message.

    Layout: title, then one step per line, then a blank line and the details.
    """
    head = [title] + [step for step in (steps or []) if step]
    message = "\n".join(head)
    details = (details or "").strip()
    if details:
        message += "\n\n" + details
    return message.strip()
