from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class TestStats:
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


_PYTEST_SUMMARY = re.compile(r"^=+ (?P<body>.*?\d+ (?:passed|failed|error|errors|skipped).*?) in [\d.]+s.*=+\s*$", re.M)
_PYTEST_COUNT = re.compile(r"(\d+) (passed|failed|errors?|skipped|xfailed|xpassed)")
_JEST_TESTS = re.compile(r"^Tests:\s+(?P<body>.+)$", re.M)
_JEST_COUNT = re.compile(r"(\d+) (passed|failed|skipped|todo|total)")
_CARGO = re.compile(r"test result: \w+\. (\d+) passed; (\d+) failed; (\d+) ignored")
_SUREFIRE = re.compile(r"Tests run: (\d+), Failures: (\d+), Errors: (\d+), Skipped: (\d+)")
_PHPUNIT_OK = re.compile(r"^OK \((\d+) tests?, \d+ assertions?\)", re.M)
_PHPUNIT_SUMMARY = re.compile(r"^Tests: (\d+), Assertions: \d+(?P<rest>.*)$", re.M)
_GO_RESULT = re.compile(r"^\s*--- (PASS|FAIL|SKIP): ", re.M)


def _pytest(text: str) -> Optional[TestStats]:
    found = _PYTEST_SUMMARY.findall(text)
    if not found:
        return None
    counts = {"passed": 0, "failed": 0, "skipped": 0}
    for n, kind in _PYTEST_COUNT.findall(found[-1]):
        if kind in ("failed", "error", "errors"):
            counts["failed"] += int(n)
        elif kind in ("skipped", "xfailed"):
            counts["skipped"] += int(n)
        else:
            counts["passed"] += int(n)
    return TestStats(total=sum(counts.values()), **counts)


def _jest(text: str) -> Optional[TestStats]:
    found = _JEST_TESTS.findall(text)
    if not found:
        return None
    matches = _JEST_COUNT.findall(found[-1])
    if not matches:
        return None
    counts = {k: 0 for k in ("passed", "failed", "skipped", "todo", "total")}
    for n, kind in matches:
        counts[kind] = int(n)
    skipped = counts["skipped"] + counts["todo"]
    total = counts["total"] or (counts["passed"] + counts["failed"] + skipped)
    return TestStats(total=total, passed=counts["passed"], failed=counts["failed"], skipped=skipped)


def _cargo(text: str) -> Optional[TestStats]:
    found = _CARGO.findall(text)
    if not found:
        return None
    passed = sum(int(p) for p, _, _ in found)
    failed = sum(int(f) for _, f, _ in found)
    skipped = sum(int(s) for _, _, s in found)
    return TestStats(total=passed + failed + skipped, passed=passed, failed=failed, skipped=skipped)


def _surefire(text: str) -> Optional[TestStats]:
    found = _SUREFIRE.findall(text)
    if not found:
        return None
    # The last line is the module-wide summary.
    run, failures, errors, skipped = (int(x) for x in found[-1])
    failed = failures + errors
    return TestStats(total=run, passed=max(0, run - failed - skipped), failed=failed, skipped=skipped)


def _phpunit(text: str) -> Optional[TestStats]:
    ok = _PHPUNIT_OK.findall(text)
    if ok:
        n = int(ok[-1])
        return TestStats(total=n, passed=n)
    m = None
    for m in _PHPUNIT_SUMMARY.finditer(text):
        pass
    if m is None:
        return None
    total = int(m.group(1))
    rest = m.group("rest")

    def _n(label: str) -> int:
        mm = re.search(label + r": (\d+)", rest)
        return int(mm.group(1)) if mm else 0

    failed = _n("Failures") + _n("Errors")
    skipped = _n("Skipped") + _n("Incomplete")
    return TestStats(total=total, passed=max(0, total - failed - skipped), failed=failed, skipped=skipped)


def _go(text: str) -> Optional[TestStats]:
    found = _GO_RESULT.findall(text)
    if not found:
        return None
    passed = found.count("PASS")
    failed = found.count("FAIL")
    skipped = found.count("SKIP")
    return TestStats(total=len(found), passed=passed, failed=failed, skipped=skipped)


def parse_test_output(text: str) -> TestStats:
    """
    Best-effort pass/fail/skip counts from test-runner output
    (pytest, jest, cargo, maven surefire, phpunit, go test -v).
    Unrecognized output yields all zeros.
    """
    if not text:
        return TestStats()
    for parser in (_pytest, _jest, _cargo, _surefire, _phpunit, _go):
        stats = parser(text)
        if stats is not None:
            return stats
    return TestStats()


_COVERAGE_TOTALS = (
    # go tool cover -func: "total:  (statements)  82.3%"
    re.compile(r"^total:\s+\(statements\)\s+(\d+(?:\.\d+)?)%", re.M),
    # pytest-cov / coverage.py: "TOTAL   120   10   92%" (also "TOTAL 92%")
    re.compile(r"^TOTAL\b.*?(\d+(?:\.\d+)?)%\s*$", re.M),
    # jest / istanbul: "All files |   85.25 |  ..."
    re.compile(r"^All files\s*\|\s*(\d+(?:\.\d+)?)", re.M),
    # cargo tarpaulin: "85.71% coverage, 12/14 lines covered"
    re.compile(r"(\d+(?:\.\d+)?)% coverage", re.M),
    # phpunit --coverage-text / generic: "Lines:   87.50% (7/8)"
    re.compile(r"^\s*Lines:\s+(\d+(?:\.\d+)?)%", re.M),
)
_GO_PACKAGE_COVERAGE = re.compile(r"coverage: (\d+(?:\.\d+)?)% of statements")


def _clamp(v: float) -> float:
    return max(0.0, min(100.0, v))


def parse_coverage(text: str) -> float:
    """
    Coverage percentage in [0, 100] from coverage-tool output. Report totals win over
    per-package lines; several `go test -cover` package lines are averaged.
    Unrecognized output yields 0.0.
    """
    if not text:
        return 0.0
    for rx in _COVERAGE_TOTALS:
        found = rx.findall(text)
        if found:
            return _clamp(float(found[-1]))
    per_package: List[float] = [float(x) for x in _GO_PACKAGE_COVERAGE.findall(text)]
    if per_package:
        return _clamp(round(sum(per_package) / len(per_package), 2))
    return 0.0
