from __future__ import annotations

from typing import Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from stageflow.schemas.entities import ValidationReport


class SourceConnectionError(Exception):
    """Raised when a source cannot be reached, authenticated against or read."""


class PreviewError(Exception):
    """Raised when sample rows for a table or join cannot be produced."""


class MappingError(ValueError):
    """Raised when a field mapping request is rejected."""


class ConfigurationEditError(ValueError):
    """Raised when a mutation of an import configuration is not allowed."""


class RecordNotFoundError(LookupError):
    """Raised when a stage, relationship, joined table or mapping id is unknown."""


class CompileError(Exception):
    """Raised when an execution plan cannot be produced.

    ``problems`` lists every issue found so the caller can report them together.
    """

    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        summary = "; ".join(self.problems) if self.problems else "Unable to compile execution plan."
        super().__init__(summary)


class ConfigurationInvalidError(Exception):
    """Raised when a configuration with blocking validation errors is saved."""

    def __init__(self, report: "ValidationReport"):
        self.report = report
        count = len(report.errors)
        noun = "error" if count == 1 else "errors"
        super().__init__(f"Configuration has {count} blocking validation {noun}.")
