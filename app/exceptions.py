"""Domain errors raised by the Luna services and mapped to HTTP codes by the API."""

from __future__ import annotations


class LLMUnavailableError(RuntimeError):
    """The LLM is not configured, timed out, or every model in the chain failed."""


class LLMResponseFormatError(ValueError):
    """The LLM answered, but nothing usable could be extracted from the text."""


class QuestionSetMissingError(ValueError):
    """Scoring was requested for a session that has no stored question set."""


class SessionNotFoundError(LookupError):
    pass


class SessionExpiredError(RuntimeError):
    pass


class QuestionSetExistsError(RuntimeError):
    """A question set is immutable once stored for a session."""


class InvalidAnswerError(ValueError):
    pass
