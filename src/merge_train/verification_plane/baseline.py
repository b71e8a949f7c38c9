"""Failure signatures and the per-tip baseline cache.

A candidate failure only counts as pre-existing when every test it fails also
fails on the target tip it was rebased onto. The baseline run for a tip is
memoized by commit sha, so a burst of MRs against the same tip pays for one
baseline, and any new tip is a fresh cache miss.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from merge_train.verification_plane.runner import CommandResult

_DEFAULT_MAX_ENTRIES: Final[int] = 32

_FAILURE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    # pytest short test summary: "FAILED tests/test_x.py::test_y - AssertionError"
    re.compile(r"^(?:FAILED|ERROR) (?P<test>\S+::\S+|\S+\.py)(?:\s|$)"),
    # go test: "--- FAIL: TestMerge (0.00s)"
    re.compile(r"^\s*--- FAIL: (?P<test>\S+)"),
    # unittest: "FAIL: test_merge (tests.test_queue.QueueTests.test_merge)"
    re.compile(r"^(?:FAIL|ERROR): (?P<test>\S+ \([^)]+\))"),
)


@dataclass(frozen=True, slots=True)
class FailureSignature:
    """Identity of a failing test run: failing test ids, else the exit code."""

    failing_tests: frozenset[str]
    exit_code: int | None

    @property
    def parsed(self) -> bool:
        return bool(self.failing_tests)

    def is_subset_of(self, other: FailureSignature) -> bool:
        """True when this failure is fully explained by ``other``."""
        if self.parsed and other.parsed:
            return self.failing_tests <= other.failing_tests
        if not self.parsed and not other.parsed:
            return self.exit_code == other.exit_code
        return False

    def new_failures(self, baseline: FailureSignature | None) -> tuple[str, ...]:
        if baseline is None:
            return tuple(sorted(self.failing_tests))
        return tuple(sorted(self.failing_tests - baseline.failing_tests))

    @property
    def key(self) -> str:
        """Stable digest used to memoize filed defects."""
        if self.parsed:
            material = "\n".join(sorted(self.failing_tests))
        else:
            material = f"exit:{self.exit_code}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]

    def describe(self, limit: int = 10) -> str:
        if not self.parsed:
            return f"test command exited with code {self.exit_code}"
        tests = sorted(self.failing_tests)
        shown = ", ".join(tests[:limit])
        if len(tests) > limit:
            shown = f"{shown} (+{len(tests) - limit} more)"
        return f"{len(tests)} failing: {shown}"


def parse_failure_signature(result: CommandResult) -> FailureSignature:
    failing: set[str] = set()
    for line in result.output.splitlines():
        for pattern in _FAILURE_PATTERNS:
            match = pattern.match(line)
            if match is not None:
                failing.add(match.group("test"))
                break
    return FailureSignature(failing_tests=frozenset(failing), exit_code=result.exit_code)


@dataclass(frozen=True, slots=True)
class BaselineResult:
    """Test outcome on a target tip, with no candidate changes applied."""

    tip: str
    result: CommandResult
    signature: FailureSignature | None

    @property
    def passed(self) -> bool:
        return self.result.passed

    @property
    def unavailable(self) -> bool:
        return self.result.unavailable


class BaselineCache:
    """Memoizes baseline runs by target tip sha.

    Concurrent requests for the same tip share one run. Unavailable results
    (timeouts, runner errors) are not cached so the next request retries.
    """

    def __init__(self, *, max_entries: int = _DEFAULT_MAX_ENTRIES) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._max_entries = max_entries
        self._entries: OrderedDict[str, BaselineResult] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, tip: object) -> bool:
        return tip in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, tip: str) -> BaselineResult | None:
        entry = self._entries.get(tip)
        if entry is not None:
            self._entries.move_to_end(tip)
        return entry

    async def get_or_run(
        self,
        tip: str,
        run: Callable[[], Awaitable[CommandResult]],
    ) -> BaselineResult:
        cached = self.get(tip)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(tip, asyncio.Lock())
        async with lock:
            cached = self.get(tip)
            if cached is not None:
                return cached
            result = await run()
            baseline = BaselineResult(
                tip=tip,
                result=result,
                signature=None if result.passed else parse_failure_signature(result),
            )
            if not baseline.unavailable:
                self._store(baseline)
        self._locks.pop(tip, None)
        return baseline

    def clear(self) -> None:
        self._entries.clear()

    def _store(self, baseline: BaselineResult) -> None:
        self._entries[baseline.tip] = baseline
        self._entries.move_to_end(baseline.tip)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)


__all__ = [
    "BaselineCache",
    "BaselineResult",
    "FailureSignature",
    "parse_failure_signature",
]
