"""
Tagged results for remote and local operations.

Reconcilers branch on ``Ok``/``Err`` instead of catching exceptions at every
nesting level; the orchestrator folds the errors into SyncPassResult counters.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from kerio_sync.models import SyncPassResult


class ErrorKind(Enum):
    AUTH = "auth"
    TRANSIENT_IO = "transient-io"
    NOT_FOUND = "not-found"
    PARSE = "parse"
    IDENTITY_UNRESOLVED = "identity-unresolved"


@dataclass(frozen=True)
class Ok:
    value: Any = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""

    @property
    def ok(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


Result = Ok | Err


def record_error(result: SyncPassResult, err: Err) -> None:
    """Increment the pass counter matching ``err.kind``."""
    if err.kind is ErrorKind.AUTH:
        result.auth_failures += 1
    elif err.kind is ErrorKind.PARSE:
        result.parse_failures += 1
    elif err.kind is ErrorKind.IDENTITY_UNRESOLVED:
        result.deferred += 1
    else:
        result.io_failures += 1
