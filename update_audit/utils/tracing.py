"""
Call-stack capture for audit log entries.

A log entry records the host call stack that led to it, so an operator can
tell which code path triggered an update. Frames that belong to this
package are skipped: they are identical for every entry and say nothing
about the caller.
"""

import inspect
import os
from typing import Any, Dict, List

_PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

_SCALARS = (int, float, bool, type(None))


def _describe_arg(value: Any) -> str:
    if isinstance(value, _SCALARS):
        return repr(value)
    if isinstance(value, str):
        return repr(value if len(value) <= 60 else value[:57] + "...")
    return type(value).__name__


def _is_internal(filename: str) -> bool:
    return os.path.abspath(filename).startswith(_PACKAGE_DIR + os.sep)


def capture_trace(max_frames: int = 40) -> List[Dict[str, Any]]:
    """
    Capture the current call stack, outermost frame first.

    Args:
        max_frames: Keep at most this many frames (the innermost ones)

    Returns:
        List of {location, line, function, args} dicts
    """
    frames = []
    frame = inspect.currentframe()
    try:
        while frame is not None:
            code = frame.f_code
            if not _is_internal(code.co_filename):
                arg_info = inspect.getargvalues(frame)
                frames.append(
                    {
                        "location": code.co_filename,
                        "line": frame.f_lineno,
                        "function": code.co_name,
                        "args": [
                            _describe_arg(arg_info.locals.get(name))
                            for name in arg_info.args
                            if name not in ("self", "cls")
                        ],
                    }
                )
                if len(frames) >= max_frames:
                    break
            frame = frame.f_back
    finally:
        # Break the reference cycle frame objects create
        del frame

    frames.reverse()
    return frames


def format_trace(frames: List[Dict[str, Any]]) -> str:
    """Render a stored trace as one line per frame."""
    lines = []
    for index, frame in enumerate(frames):
        args = ", ".join(frame.get("args") or [])
        lines.append(
            f"#{index} {frame.get('location', '')}({frame.get('line', 0)}): "
            f"{frame.get('function', '')}({args})"
        )
    return "\n".join(lines)
