"""Error taxonomy for the judging node.

Every failure that reaches an operation boundary is a `JudgingError`; the api
worker turns it into a JSON notice with the class' status code.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class JudgingError(Exception):
    code = "judging_error"
    status_code = 400

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


class IncompleteInput(JudgingError):
    code = "incomplete_input"
    status_code = 422


class AlreadySubmitted(JudgingError):
    code = "already_submitted"
    status_code = 409


class AuthorizationDenied(JudgingError):
    code = "authorization_denied"
    status_code = 403


class StoreUnavailable(JudgingError):
    code = "store_unavailable"
    status_code = 503


class PartialCascadeFailure(JudgingError):
    """Some cascade deletes succeeded and some failed. Safe to re-run."""

    code = "partial_cascade_failure"
    status_code = 500

    def __init__(self, message: str, deleted: int, failed: list[str]):
        super().__init__(message, deleted=deleted, failed=list(failed))
        self.deleted = deleted
        self.failed = list(failed)


class ContestantNotFound(JudgingError):
    code = "contestant_not_found"
    status_code = 404


class JudgeNotFound(JudgingError):
    code = "judge_not_found"
    status_code = 404


class JudgingClosed(JudgingError):
    code = "judging_closed"
    status_code = 409


class TransitionInProgress(JudgingError):
    code = "transition_in_progress"
    status_code = 409


class NoActiveTransition(JudgingError):
    code = "no_active_transition"
    status_code = 409


class StaleControlState(JudgingError):
    """The control record changed between read and compare-and-set write."""

    code = "stale_control_state"
    status_code = 409


@contextmanager
def store_errors(*repositories: Any, operation: str = "store operation") -> Iterator[None]:
    """Translate SQLAlchemy failures into `StoreUnavailable` after rolling back."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.warning("%s failed: %s", operation, exc)
        for repository in repositories:
            try:
                repository.rollback()
            except SQLAlchemyError:
                logger.exception("rollback after %s failed", operation)
        raise StoreUnavailable(f"{operation} failed: {exc.__class__.__name__}") from exc
