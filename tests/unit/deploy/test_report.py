"""Tests for deployment reports."""

import random
import threading

from sitekv.deploy.report import (
    DeploymentReport,
    FailureReason,
    RunState,
    UploadOutcome,
    UploadStatus,
)


def finished(outcomes):
    report = DeploymentReport()
    report.start()
    for outcome in outcomes:
        report.file_considered()
        report.record(outcome)
    report.finish()
    return report


def test_full_success():
    report = finished([UploadOutcome.uploaded("a"), UploadOutcome.skipped("b")])

    status = report.status

    assert status.state == RunState.FULL_SUCCESS
    assert status.success
    assert status.failed_keys == []
    assert report.summary() == {"Uploaded": 1, "Skipped": 1, "Failed": 0, "Total": 2}


def test_partial_success_lists_failed_keys():
    report = finished([
        UploadOutcome.uploaded("a"),
        UploadOutcome.failed("c", FailureReason.RATE_LIMIT_EXHAUSTED),
        UploadOutcome.failed("b", FailureReason.VALIDATION_ERROR, "HTTP 413"),
    ])

    status = report.status

    assert status.state == RunState.PARTIAL_SUCCESS
    assert not status.success
    assert status.failed_keys == ["b", "c"]
    assert "2 failures" in status.message
    assert report.failure_counts() == {"RateLimitExhausted": 1, "ValidationError": 1}


def test_abort_wins_and_keeps_first_reason():
    report = finished([UploadOutcome.uploaded("a")])
    report.abort("AuthError: HTTP 401")
    report.abort("Interrupted")

    status = report.status

    assert status.state == RunState.FATAL_ABORT
    assert status.reason == "AuthError: HTTP 401"
    assert "aborted" in status.message


def test_summary_is_independent_of_completion_order():
    outcomes = [UploadOutcome.uploaded(f"k{i:03d}") for i in range(50)]
    outcomes += [UploadOutcome.failed(f"f{i:03d}", FailureReason.TRANSIENT_UPLOAD_ERROR) for i in range(10)]
    shuffled = list(outcomes)
    random.Random(7).shuffle(shuffled)

    first = finished(outcomes)
    second = finished(shuffled)

    assert first.outcomes == second.outcomes
    assert first.summary() == second.summary()
    assert first.status == second.status


def test_concurrent_records():
    report = DeploymentReport()

    def writer(prefix):
        for i in range(200):
            report.file_considered()
            report.record(UploadOutcome.uploaded(f"{prefix}-{i}"))

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert report.count(UploadStatus.UPLOADED) == 1600
    assert report.files_considered == 1600


def test_as_dict():
    report = finished([UploadOutcome.uploaded("a"), UploadOutcome.failed("b", FailureReason.READ_ERROR)])
    report.record_deleted(["old"], ["stuck"])

    data = report.as_dict()

    assert data["state"] == "PartialSuccess"
    assert data["files_considered"] == 2
    assert data["summary"]["Total"] == 2
    assert data["failures"] == {"ReadError": 1}
    assert data["deleted_keys"] == ["old"]
    assert data["delete_failures"] == ["stuck"]
    assert report.duration is not None and report.duration >= 0
