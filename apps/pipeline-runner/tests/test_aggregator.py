from __future__ import annotations

from hypothesis import given, strategies as st

from scenario_generator.completion import CompletionServiceUnavailableError
from scenario_generator.models import GenerationFailure
from spec_normalizer.errors import MalformedSpecError
from response_validator.models import Classification, Mismatch, Verdict
from pipeline_runner.aggregator import RunOutcome, aggregate, failed_to_start


def verdict(scenario_id: str, classification: Classification) -> Verdict:
    mismatches = (Mismatch(path="status", expected=[200], actual=500),) if classification is Classification.FAIL else ()
    return Verdict(
        scenario_id=scenario_id,
        operation_id="getUser",
        category="valid",
        classification=classification,
        mismatches=mismatches,
        reason="Timed out" if classification is Classification.ERROR else None,
        terminal_state="failed" if classification is Classification.ERROR else "succeeded",
        attempts=1,
    )


def test_fail_outranks_error_outranks_pass() -> None:
    passed = verdict("a", Classification.PASS)
    failed = verdict("b", Classification.FAIL)
    errored = verdict("c", Classification.ERROR)

    assert aggregate([passed]).status is RunOutcome.PASSED
    assert aggregate([passed, errored]).status is RunOutcome.ERRORED
    assert aggregate([errored, failed, passed]).status is RunOutcome.FAILED


def test_counts_cover_every_classification() -> None:
    report = aggregate([verdict("a", Classification.PASS), verdict("b", Classification.PASS)], run_id="r1")

    assert report.counts == {"pass": 2, "fail": 0, "error": 0}
    assert report.total == 2
    assert report.run_id == "r1"


def test_empty_run_passes() -> None:
    report = aggregate([])

    assert report.status is RunOutcome.PASSED
    assert report.counts == {"pass": 0, "fail": 0, "error": 0}


def test_run_with_every_operation_dropped_is_errored() -> None:
    dropped = [GenerationFailure(operation_id="getUser", attempts=3, reasons=["attempt 1: no candidates"])]

    report = aggregate([], generation_failures=dropped)

    assert report.status is RunOutcome.ERRORED
    assert report.error == "No scenario was generated; 1 operation(s) dropped during generation"
    assert report.error_tag is None
    assert aggregate([verdict("a", Classification.PASS)], generation_failures=dropped).status is RunOutcome.PASSED


def test_failed_to_start_carries_the_error_tag() -> None:
    report = failed_to_start(CompletionServiceUnavailableError("no completion call succeeded"), run_id="r2")
    spec_report = failed_to_start(MalformedSpecError("not YAML"))

    assert report.status is RunOutcome.FAILED_TO_START
    assert report.error_tag == "CompletionServiceUnavailableError"
    assert report.verdicts == ()
    assert spec_report.error_tag == "MalformedSpecError"


classifications = st.lists(st.sampled_from(list(Classification)), max_size=12)


@given(classifications, st.randoms(use_true_random=False))
def test_shuffling_verdicts_does_not_change_the_report(kinds: list[Classification], rnd) -> None:
    verdicts = [verdict(f"s-{index:02d}", kind) for index, kind in enumerate(kinds)]
    shuffled = list(verdicts)
    rnd.shuffle(shuffled)

    assert aggregate(verdicts) == aggregate(shuffled)
