from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    not_found = "not_found"
    invalid_state = "invalid_state"


@dataclass(frozen=True, slots=True)
class OperationError:
    kind: ErrorKind
    message: str


class Rejections:
    """Records why the most recent operation of a component returned False.

    Domain failures never raise; callers that need a reason (the HTTP layer)
    read `last` after a falsy result.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger
        self.last: OperationError | None = None

    def reject(self, kind: ErrorKind, message: str) -> bool:
        self.last = OperationError(kind=kind, message=message)
        self._logger.warning("%s: %s", kind.value, message)
        return False

    def not_found(self, message: str) -> bool:
        return self.reject(ErrorKind.not_found, message)

    def invalid_state(self, message: str) -> bool:
        return self.reject(ErrorKind.invalid_state, message)

    def clear(self) -> None:
        self.last = None
