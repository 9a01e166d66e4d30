"""
Outcome classification for reconciled operations.

The host's action hint is unreliable: an upload that replaces an installed
plugin arrives as "install", and a rollback arrives as "update". The
versions observed before and after decide instead, whenever both are known.
"""

from update_audit.utils.sanitizer import ACTIONS
from update_audit.utils.versions import compare_versions

DEFAULT_ACTION = "update"


def classify(version_before: str, version_after: str, action_hint: str = DEFAULT_ACTION) -> str:
    """
    Decide the action recorded for an operation.

    Rules, first match wins:
    1. A hint of "install" is kept: nothing was installed before.
    2. Both versions known: older after is a downgrade, equal is a
       same-version reinstall, newer is an update.
    3. Otherwise the hint when it is a known action, else "update".

    Never raises.
    """
    hint = str(action_hint or "").strip().lower()
    if hint == "install":
        return "install"

    before = str(version_before or "").strip()
    after = str(version_after or "").strip()
    if before and after:
        result = compare_versions(after, before)
        if result < 0:
            return "downgrade"
        if result == 0:
            return "same_version"
        return "update"

    return hint if hint in ACTIONS else DEFAULT_ACTION
