"""Infer test progress from the conformance suite's log output.

The suite announces how many specs it will run with a line such as
``Will run 5 of 200 specs`` and then prints one ``•`` per finished spec
(skipped specs print ``S``). When the whole suite is done ginkgo prints
``Ginkgo ran 1 suite in ...``.
"""

import re

from kubeharness.conformance_runner.errors import ProgressParseError
from kubeharness.conformance_runner.models.stream import ProgressSnapshot

SPEC_COUNT_PATTERN = re.compile(r"Will run (\S+) of (\S+) specs")
SUITE_FINISHED_PATTERN = re.compile(r"Ginkgo ran \d+ suites?")
COMPLETION_GLYPH = "•"


def parse_test_progress(text: str) -> ProgressSnapshot:
    """Count announced and completed tests in a (possibly partial) log.

    Only glyphs printed after the spec count line are counted, so output
    from before the suite started never inflates the completed count.

    Args:
        text: Full text of the test log read so far

    Returns:
        Snapshot with total and completed test counts

    Raises:
        ProgressParseError: If the spec count line is missing or malformed

    """
    match = SPEC_COUNT_PATTERN.search(text)
    if match is None:
        raise ProgressParseError("could not find test spec count")

    try:
        total = int(match.group(1))
    except ValueError as e:
        raise ProgressParseError(
            f"malformed spec count in {match.group(0)!r}"
        ) from e
    if total < 0:
        raise ProgressParseError(f"malformed spec count in {match.group(0)!r}")

    completed = text.count(COMPLETION_GLYPH, match.end())
    return ProgressSnapshot(total_tests=total, completed_tests=completed)


def is_suite_finished(line: str) -> bool:
    """Whether a log line is ginkgo's end-of-run summary."""
    return SUITE_FINISHED_PATTERN.search(line) is not None
