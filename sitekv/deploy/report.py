"""Outcome collection for a deployment run."""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional


class UploadStatus(Enum):
    """What happened to a single file."""
    UPLOADED = "Uploaded"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class FailureReason(Enum):
    """Why a file ended up Failed."""
    RATE_LIMIT_EXHAUSTED = "RateLimitExhausted"
    TRANSIENT_UPLOAD_ERROR = "TransientUploadError"
    VALIDATION_ERROR = "ValidationError"
    AUTH_ERROR = "AuthError"
    READ_ERROR = "ReadError"
    ABORTED = "Aborted"


class RunState(Enum):
    """Overall result reported to the caller."""
    FULL_SUCCESS = "FullSuccess"
    PARTIAL_SUCCESS = "PartialSuccess"
    FATAL_ABORT = "FatalAbort"


@dataclass(frozen=True)
class UploadOutcome:
    """Outcome for one file."""
    key: str
    status: UploadStatus
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    @classmethod
    def uploaded(cls, key: str) -> "UploadOutcome":
        return cls(key, UploadStatus.UPLOADED)

    @classmethod
    def skipped(cls, key: str) -> "UploadOutcome":
        return cls(key, UploadStatus.SKIPPED)

    @classmethod
    def failed(cls, key: str, reason: FailureReason, detail: Optional[str] = None) -> "UploadOutcome":
        return cls(key, UploadStatus.FAILED, reason, detail)


class DeploymentStatus(NamedTuple):
    """Result of a deployment as seen by the caller."""
    state: RunState
    message: str
    failed_keys: List[str]
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == RunState.FULL_SUCCESS


class DeploymentReport:
    """
    Append-only collector of UploadOutcome plus run metadata.

    ``record`` may be called from any thread or task. Reads are meaningful
    once ``finish`` has been called.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._outcomes: List[UploadOutcome] = []
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.files_considered = 0
        self.catalog_used = False
        self.abort_reason: Optional[str] = None
        self.deleted_keys: List[str] = []
        self.delete_failures: List[str] = []

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        if self.started_at is None:
            self.started_at = time.time()
        self.finished_at = time.time()

    def file_considered(self) -> None:
        with self._lock:
            self.files_considered += 1

    def record(self, outcome: UploadOutcome) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    def record_many(self, outcomes: Iterable[UploadOutcome]) -> None:
        outcomes = list(outcomes)
        with self._lock:
            self._outcomes.extend(outcomes)

    def record_deleted(self, keys: Iterable[str], failed: Iterable[str] = ()) -> None:
        with self._lock:
            self.deleted_keys.extend(keys)
            self.delete_failures.extend(failed)

    def abort(self, reason: str) -> None:
        """Mark the run as aborted. The first reason wins."""
        with self._lock:
            if self.abort_reason is None:
                self.abort_reason = reason

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None

    @property
    def outcomes(self) -> List[UploadOutcome]:
        """All outcomes ordered by key, independent of completion order."""
        with self._lock:
            return sorted(self._outcomes, key=lambda outcome: outcome.key)

    def count(self, status: UploadStatus) -> int:
        with self._lock:
            return sum(1 for outcome in self._outcomes if outcome.status == status)

    def summary(self) -> Dict[str, int]:
        """Counts by status."""
        with self._lock:
            counts = {status.value: 0 for status in UploadStatus}
            for outcome in self._outcomes:
                counts[outcome.status.value] += 1
        counts["Total"] = sum(counts.values())
        return counts

    def failure_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            if outcome.status == UploadStatus.FAILED and outcome.reason is not None:
                counts[outcome.reason.value] = counts.get(outcome.reason.value, 0) + 1
        return counts

    @property
    def failed_keys(self) -> List[str]:
        return [outcome.key for outcome in self.outcomes if outcome.status == UploadStatus.FAILED]

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def status(self) -> DeploymentStatus:
        failed = self.failed_keys
        counts = self.summary()

        if self.aborted:
            return DeploymentStatus(
                state=RunState.FATAL_ABORT,
                message=f"Deployment aborted: {self.abort_reason}",
                failed_keys=failed,
                reason=self.abort_reason,
            )
        if failed:
            return DeploymentStatus(
                state=RunState.PARTIAL_SUCCESS,
                message=(
                    f"Deployed with {len(failed)} failures "
                    f"({counts['Uploaded']} uploaded, {counts['Skipped']} unchanged)"
                ),
                failed_keys=failed,
            )
        return DeploymentStatus(
            state=RunState.FULL_SUCCESS,
            message=f"Deployed {counts['Uploaded']} files, {counts['Skipped']} unchanged",
            failed_keys=[],
        )

    def as_dict(self) -> Dict[str, Any]:
        """Plain representation for structured logging or JSON output."""
        status = self.status
        return {
            "state": status.state.value,
            "message": status.message,
            "reason": status.reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "files_considered": self.files_considered,
            "catalog_used": self.catalog_used,
            "summary": self.summary(),
            "failures": self.failure_counts(),
            "failed_keys": status.failed_keys,
            "deleted_keys": list(self.deleted_keys),
            "delete_failures": list(self.delete_failures),
        }
