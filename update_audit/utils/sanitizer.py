"""
Input sanitization for audit log entries.

Every field of a log entry passes through this module before it reaches
the store. All functions are total: they accept any input, coerce it to
text and fall back to a safe default instead of raising, so a malformed
host signal degrades to a slightly less precise entry and never to a
failed write.

Markup handling uses BeautifulSoup with the stdlib html.parser backend.
"""

import re
from typing import Any, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup

from .logging import get_logger
from .types import KINDS

logger = get_logger(__name__)

ACTIONS = ("update", "downgrade", "install", "same_version", "failed", "uninstall")
STATUSES = ("success", "error", "cancelled")
INITIATION_MODES = ("manual", "automatic", "upload")
BATCH_CONTEXTS = ("bulk", "single", "")
ACTOR_KINDS = ("system", "user")

MAX_STRING_LENGTH = 255
MAX_VERSION_LENGTH = 64
MAX_MESSAGE_LENGTH = 65535
MAX_LOCATION_LENGTH = 500
MAX_ARG_LENGTH = 200
MAX_ARGS_PER_FRAME = 10
# Signed 32-bit INTEGER column range
MAX_INTEGER = 2**31 - 1

_KEY_CHARS = re.compile(r"[^a-z0-9_\-]")
_VERSION_CHARS = re.compile(r"[^A-Za-z0-9._\-]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ALL_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RUN = re.compile(r"\s+")
_TAG = re.compile(r"<[^>]*>")

_EXECUTABLE_TAGS = ["script", "style", "iframe", "object", "embed", "noscript", "template"]
_BLOCK_TAGS = [
    "p", "div", "li", "ul", "ol", "tr", "table", "pre", "blockquote",
    "section", "article", "header", "footer",
    "h1", "h2", "h3", "h4", "h5", "h6",
]


def _coerce(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    try:
        return str(value)
    except Exception:  # Broken __str__
        return ""


def sanitize_key(value: Any) -> str:
    """Lower-case and keep only [a-z0-9_-]."""
    return _KEY_CHARS.sub("", _coerce(value).lower())


def strip_markup(value: Any, keep_lines: bool = True) -> str:
    """
    Convert markup to plain text.

    Executable elements (script, style, iframe, ...) are dropped together
    with their content; every other tag is removed and its text kept.
    Entities are decoded. With keep_lines, <br> and block elements end a line.
    """
    text = _coerce(value)
    if "<" not in text and "&" not in text:
        return text

    try:
        soup = BeautifulSoup(text, "html.parser")
        for tag in soup(_EXECUTABLE_TAGS):
            tag.decompose()
        if keep_lines:
            for br in soup.find_all("br"):
                br.replace_with("\n")
            for block in soup.find_all(_BLOCK_TAGS):
                block.append("\n")
        return soup.get_text()
    except Exception as e:
        logger.warning("Markup parsing failed, stripping tags textually", error=str(e))
        return _TAG.sub("", text)


def _snap(value: Any, allowed: Iterable[str], default: str) -> str:
    key = sanitize_key(value)
    return key if key in allowed else default


def sanitize_kind(value: Any) -> str:
    """Item kind, defaulting to plugin."""
    return _snap(value, KINDS, "plugin")


def sanitize_action(value: Any) -> str:
    return _snap(value, ACTIONS, "update")


def sanitize_status(value: Any) -> str:
    return _snap(value, STATUSES, "success")


def sanitize_initiation_mode(value: Any) -> str:
    return _snap(value, INITIATION_MODES, "manual")


def sanitize_batch_context(value: Any) -> str:
    return _snap(value, BATCH_CONTEXTS, "")


def sanitize_actor_kind(value: Any) -> str:
    return _snap(value, ACTOR_KINDS, "system")


def sanitize_string(value: Any, max_length: int = MAX_STRING_LENGTH) -> str:
    """
    Single-line text field: no tags, no control characters, no line breaks.

    Args:
        value: Any input
        max_length: Maximum length of the result

    Returns:
        Trimmed text of at most max_length characters
    """
    text = strip_markup(value, keep_lines=False)
    text = _ALL_CONTROL_CHARS.sub(" ", text)
    text = _WHITESPACE_RUN.sub(" ", text).strip()
    return text[:max_length]


def sanitize_version(value: Any) -> str:
    """Version strings keep only [A-Za-z0-9._-], at most 64 characters."""
    return _VERSION_CHARS.sub("", _coerce(value))[:MAX_VERSION_LENGTH]


def sanitize_message(value: Any) -> str:
    """
    Multi-line message text.

    Executable markup is removed, the remaining text is kept with its line
    breaks, entities are decoded and control characters other than newline
    and tab are dropped.
    """
    text = strip_markup(value, keep_lines=True)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    return text.strip()[:MAX_MESSAGE_LENGTH]


def _sanitize_frame(frame: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(frame, dict):
        return None

    try:
        line = int(frame.get("line") or 0)
    except (TypeError, ValueError, OverflowError):
        line = 0
    if line > MAX_INTEGER:
        line = 0

    raw_args = frame.get("args") or []
    if not isinstance(raw_args, (list, tuple)):
        raw_args = [raw_args]

    return {
        "location": sanitize_string(frame.get("location"), MAX_LOCATION_LENGTH),
        "line": max(line, 0),
        "function": sanitize_string(frame.get("function")),
        "args": [sanitize_string(arg, MAX_ARG_LENGTH) for arg in raw_args[:MAX_ARGS_PER_FRAME]],
    }


def sanitize_trace(value: Any, max_frames: int = 40) -> List[Dict[str, Any]]:
    """
    Structured call-stack trace.

    Accepts a list of frame dicts ({location, line, function, args}) or a
    pre-rendered string (one frame per line). Malformed frames are dropped.
    """
    if value is None:
        return []

    if isinstance(value, (str, bytes)):
        lines = [line for line in strip_markup(value, keep_lines=True).splitlines() if line.strip()]
        value = [{"location": line} for line in lines]
    elif not isinstance(value, (list, tuple)):
        return []

    frames = []
    for frame in value:
        if len(frames) >= max_frames:
            break
        cleaned = _sanitize_frame(frame)
        if cleaned is not None:
            frames.append(cleaned)
    return frames


def sanitize_tenant_id(value: Any, default: int = 1) -> int:
    """Positive tenant id, falling back to the default tenant."""
    try:
        tenant_id = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return tenant_id if 1 <= tenant_id <= MAX_INTEGER else default


def sanitize_entry(data: Dict[str, Any], max_frames: int = 40, default_tenant: int = 1) -> Dict[str, Any]:
    """Sanitize every column of a log entry at once."""
    return {
        "tenant_id": sanitize_tenant_id(data.get("tenant_id"), default_tenant),
        "kind": sanitize_kind(data.get("kind")),
        "action": sanitize_action(data.get("action")),
        "item_name": sanitize_string(data.get("item_name")),
        "item_slug": sanitize_string(data.get("item_slug")),
        "version_before": sanitize_version(data.get("version_before")),
        "version_after": sanitize_version(data.get("version_after")),
        "status": sanitize_status(data.get("status")),
        "message": sanitize_message(data.get("message")),
        "trace": sanitize_trace(data.get("trace"), max_frames),
        "actor_kind": sanitize_actor_kind(data.get("actor_kind")),
        "initiation_mode": sanitize_initiation_mode(data.get("initiation_mode")),
        "batch_context": sanitize_batch_context(data.get("batch_context")),
    }
