"""
Semantic version comparison for update classification.

Follows the widely used ``version_compare`` ordering so that plugin and
theme version strings compare the way their publishers expect:

- separators ``-``, ``_`` and ``+`` are treated like ``.``
- a boundary between digits and letters starts a new segment
- numeric segments compare numerically (6.4.10 > 6.4.9)
- special forms order as dev < alpha = a < beta = b < RC = rc < # < pl = p,
  where ``#`` stands for any number
"""

import re

_SEPARATORS = re.compile(r"[-_+]")
_BOUNDARY = re.compile(r"(?<=\d)(?=[^\d.])|(?<=[^\d.])(?=\d)")

_SPECIAL_FORMS = {
    "dev": 0,
    "alpha": 1,
    "a": 1,
    "beta": 2,
    "b": 2,
    "RC": 3,
    "rc": 3,
    "#": 4,
    "pl": 5,
    "p": 5,
}


def canonicalize(version: str) -> list:
    """Split a version string into comparable segments."""
    text = _SEPARATORS.sub(".", str(version).strip())
    text = _BOUNDARY.sub(".", text)
    return [part for part in text.split(".") if part != ""]


def _special_order(part: str) -> int:
    # Unknown words sort before "dev"
    for form, order in _SPECIAL_FORMS.items():
        if part.startswith(form):
            return order
    return -1


def _compare_parts(left: str, right: str) -> int:
    left_numeric = left.isdigit()
    right_numeric = right.isdigit()

    if left_numeric and right_numeric:
        a, b = int(left), int(right)
    elif not left_numeric and not right_numeric:
        a, b = _special_order(left), _special_order(right)
    elif left_numeric:
        a, b = _special_order("#"), _special_order(right)
    else:
        a, b = _special_order(left), _special_order("#")

    return (a > b) - (a < b)


def compare_versions(version_a: str, version_b: str) -> int:
    """
    Compare two version strings.

    Returns:
        -1 if version_a < version_b, 0 if equal, 1 if version_a > version_b
    """
    parts_a = canonicalize(version_a)
    parts_b = canonicalize(version_b)

    for left, right in zip(parts_a, parts_b):
        result = _compare_parts(left, right)
        if result != 0:
            return result

    if len(parts_a) == len(parts_b):
        return 0

    # One side has extra segments: a trailing number makes it newer,
    # a trailing word is compared against "any number".
    if len(parts_a) > len(parts_b):
        extra = parts_a[len(parts_b)]
        return 1 if extra.isdigit() else _compare_parts(extra, "#")

    extra = parts_b[len(parts_a)]
    return -1 if extra.isdigit() else _compare_parts("#", extra)
