from __future__ import annotations


class HarvestError(Exception):
    """Base class for orchestration errors."""


class OperationBusyError(HarvestError):
    """Raised when a run of the same operation type is already in flight."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} is already running")
        self.operation = operation


class UnsupportedSourceError(HarvestError):
    def __init__(self, source: str) -> None:
        super().__init__(f"Unsupported source: {source}")
        self.source = source


class InvalidTransitionError(HarvestError):
    def __init__(self, task_id: int, current: str, requested: str) -> None:
        super().__init__(f"Task {task_id} cannot move from {current} to {requested}")
        self.task_id = task_id
        self.current = current
        self.requested = requested


class RecordNotFoundError(HarvestError, KeyError):
    def __init__(self, kind: str, record_id: object) -> None:
        super().__init__(f"{kind} {record_id} does not exist")
        self.kind = kind
        self.record_id = record_id

    def __str__(self) -> str:
        # KeyError would otherwise wrap the message in quotes.
        return str(self.args[0])
