"""Errors raised by API clients and the controllers using them."""

from __future__ import annotations

from typing import Iterable, Optional


class ApiError(Exception):
    """An error reported by the API server."""

    reason = "Unknown"


class NotFoundError(ApiError):
    reason = "NotFound"


class AlreadyExistsError(ApiError):
    reason = "AlreadyExists"


class ConflictError(ApiError):
    reason = "Conflict"


class AggregateError(Exception):
    """Several errors reported together."""

    def __init__(self, errors: Iterable[BaseException]):
        self.errors = tuple(errors)
        if not self.errors:
            raise ValueError("an aggregate needs at least one error")
        super().__init__(self._message())

    def _message(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        messages = list(dict.fromkeys(str(err) for err in self.errors))
        if len(messages) == 1:
            return messages[0]
        return "[" + ", ".join(messages) + "]"


def is_not_found(err: Optional[BaseException]) -> bool:
    return isinstance(err, NotFoundError)


def is_already_exists(err: Optional[BaseException]) -> bool:
    return isinstance(err, AlreadyExistsError)


def is_conflict(err: Optional[BaseException]) -> bool:
    return isinstance(err, ConflictError)