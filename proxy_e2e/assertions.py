"""
Response assertions with readable diffs

Checks are plain functions returning a ``Check``; the ``assert_*`` variants
raise ``AssertionFailure`` so pytest reports the expected and actual values
side by side. ``SoftAssertions`` gathers several checks from one scenario and
fails once at the end.
"""

from dataclasses import dataclass
from typing import List, Optional, Union

from .errors import AssertionFailure
from .probes import ProbeResult

Body = Union[str, bytes]

# Bodies longer than this are elided in failure messages
MAX_BODY_CHARS = 500


@dataclass(frozen=True)
class Check:
    passed: bool
    message: str

    def __bool__(self) -> bool:
        return self.passed


def _as_text(body: Body) -> str:
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


def _excerpt(text: str) -> str:
    if len(text) <= MAX_BODY_CHARS:
        return repr(text)
    return f"{text[:MAX_BODY_CHARS]!r}... ({len(text)} chars total)"


def contains(body: Body, expected: str) -> Check:
    """``expected`` appears somewhere in ``body``"""
    text = _as_text(body)
    if expected in text:
        return Check(True, f"body contains {expected!r}")
    return Check(False, f"expected body to contain {expected!r}\n  actual body: {_excerpt(text)}")


def not_contains(body: Body, forbidden: str) -> Check:
    """``forbidden`` appears nowhere in ``body``"""
    text = _as_text(body)
    if forbidden not in text:
        return Check(True, f"body free of {forbidden!r}")
    return Check(False, f"expected body without {forbidden!r}\n  actual body: {_excerpt(text)}")


def equals(body: Body, expected: str) -> Check:
    text = _as_text(body)
    if text == expected:
        return Check(True, f"body equals {expected!r}")
    return Check(False, f"expected body {_excerpt(expected)}\n  actual body: {_excerpt(text)}")


def status_is(result: ProbeResult, code: int) -> Check:
    if result.status == code:
        return Check(True, f"status {code}")
    return Check(
        False,
        f"expected status {code}, got {result.status} for {result.url} (Host: {result.host})\n"
        f"  actual body: {_excerpt(result.text)}",
    )


def header_contains(result: ProbeResult, name: str, expected: str) -> Check:
    """Header ``name`` is present and contains ``expected``"""
    value = result.headers.get(name)
    if value is None:
        present = ", ".join(sorted(result.headers.keys()))
        return Check(False, f"expected header {name!r} containing {expected!r}, header missing (present: {present})")
    if expected in value:
        return Check(True, f"header {name} contains {expected!r}")
    return Check(False, f"expected header {name!r} to contain {expected!r}\n  actual value: {value!r}")


def _raise_unless(check: Check, expected: object, actual: object):
    if not check.passed:
        raise AssertionFailure(check.message, expected=expected, actual=actual)


def assert_contains(body: Body, expected: str):
    _raise_unless(contains(body, expected), expected, _as_text(body))


def assert_not_contains(body: Body, forbidden: str):
    _raise_unless(not_contains(body, forbidden), forbidden, _as_text(body))


def assert_equals(body: Body, expected: str):
    _raise_unless(equals(body, expected), expected, _as_text(body))


def assert_status(result: ProbeResult, code: int):
    _raise_unless(status_is(result, code), code, result.status)


def assert_header_contains(result: ProbeResult, name: str, expected: str):
    _raise_unless(header_contains(result, name, expected), expected, result.headers.get(name))


class SoftAssertions:
    """Collect failed checks and raise them together

        with SoftAssertions() as soft:
            soft.check(status_is(result, 200))
            soft.check(contains(result.body, "APP1"))
    """

    def __init__(self, context: Optional[str] = None):
        self.context = context
        self.failures: List[Check] = []

    def check(self, check: Check) -> bool:
        if not check.passed:
            self.failures.append(check)
        return check.passed

    def verify(self):
        """Raise one AssertionFailure listing every failed check"""
        if not self.failures:
            return
        header = f"{len(self.failures)} check(s) failed"
        if self.context:
            header += f" ({self.context})"
        lines = [header]
        for i, failure in enumerate(self.failures, start=1):
            lines.append(f"{i}. {failure.message}")
        raise AssertionFailure("\n".join(lines), actual=[f.message for f in self.failures])

    def __enter__(self) -> "SoftAssertions":
        return self

    def __exit__(self, exc_type, exc, tb):
        # an exception from the block itself takes precedence
        if exc_type is None:
            self.verify()
        return False
