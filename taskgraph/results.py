"""Outcome types shared by every task graph operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds a caller can branch on."""

    NOT_FOUND = "NotFound"
    DUPLICATE_ID = "DuplicateId"
    DESTINATION_EXISTS = "DestinationExists"
    SELF_DEPENDENCY = "SelfDependency"
    SUBTASK_OF_SELF = "SubtaskOfSelf"
    CYCLE_DETECTED = "CycleDetected"
    DANGLING_REFERENCE = "DanglingReference"
    DUPLICATE_DEPENDENCY = "DuplicateDependency"
    COUNT_MISMATCH = "CountMismatch"
    INVALID_ID = "InvalidId"
    INVALID_VALUE = "InvalidValue"
    INVALID_DOCUMENT = "InvalidDocument"


class TaskGraphError(Exception):
    """Raised inside the store and services; converted to a result at the boundary."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_result(self) -> OperationResult:
        return OperationResult.failure(self.kind, self.message)


@dataclass
class OperationResult:
    """Outcome of a single operation.

    ``changed`` is False for zero-effect successes such as "already depends on"
    or "same ID" skips.
    """

    ok: bool
    message: str = ""
    changed: bool = True
    error_kind: ErrorKind | None = None
    warnings: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str, **data: Any) -> OperationResult:
        return cls(ok=True, message=message, data=data)

    @classmethod
    def noop(cls, message: str, **data: Any) -> OperationResult:
        return cls(ok=True, message=message, changed=False, data=data)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> OperationResult:
        return cls(ok=False, message=message, changed=False, error_kind=kind)

    @property
    def skipped(self) -> bool:
        return self.ok and not self.changed

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"ok": self.ok, "message": self.message}
        if self.ok:
            d["changed"] = self.changed
        else:
            d["errorKind"] = self.error_kind.value if self.error_kind else None
        if self.warnings:
            d["warnings"] = list(self.warnings)
        if self.data:
            d["detail"] = _jsonable(self.data)
        return d


@dataclass
class BatchResult:
    """Per-item outcomes of a batch, range or multi-id operation."""

    results: list[OperationResult] = field(default_factory=list)

    def add(self, result: OperationResult) -> OperationResult:
        self.results.append(result)
        return result

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok and r.changed)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def errors(self) -> list[str]:
        return [r.message for r in self.results if not r.ok]

    def summary(self) -> str:
        return f"{self.succeeded} succeeded / {self.skipped} skipped / {self.failed} failed"

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


def _jsonable(value: Any) -> Any:
    """Convert detail payloads (refs, tuples, sets) into JSON-friendly values."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    to_wire = getattr(value, "to_wire", None)
    if to_wire is not None:
        return to_wire()
    return str(value)
