from __future__ import annotations


class LedgerError(RuntimeError):
    pass


class ParseError(LedgerError):
    """The document could not be read into rows or text."""


class ProviderError(LedgerError):
    """An external provider call timed out, was rate limited or returned junk."""

    def __init__(self, message: str, *, provider: str | None = None, retryable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable


class NormalizationFailure(LedgerError):
    pass


class ClassificationFailure(LedgerError):
    pass


class PersistenceFailure(LedgerError):
    def __init__(self, message: str, *, reason: str = "no_db_record"):
        super().__init__(message)
        self.reason = reason


class MatchingAmbiguity(LedgerError):
    def __init__(self, message: str, *, candidate_ids: list[str] | None = None):
        super().__init__(message)
        self.candidate_ids = list(candidate_ids or [])


class ConsistencyError(LedgerError):
    pass
