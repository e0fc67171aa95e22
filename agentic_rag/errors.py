"""
Error taxonomy shared by ingestion and the answer pipeline.

  ConfigurationError   -- bad settings, embedding dimension mismatch, missing model
  ExternalCallFailure  -- embedding / chat service unreachable or non-success
  PersistenceFailure   -- corpus read/write failure (incl. insert with no id)
  ParseFailure         -- rewrite reply could not be parsed (recoverable)
  ValidationRejection  -- judge rejected a draft (recoverable via retry)

Only the first three ever reach a caller.  ParseFailure is absorbed by the
query rewriter and ValidationRejection only rides on a JudgeVerdict.
"""
from __future__ import annotations


class AgenticRagError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(AgenticRagError):
    """Raised when configuration is missing, malformed or inconsistent."""


class ExternalCallFailure(AgenticRagError):
    """Raised when an embedding or generation call fails."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class PersistenceFailure(AgenticRagError):
    """Raised when the corpus store cannot complete a read or write."""


class ParseFailure(AgenticRagError):
    """Raised when a structured model reply cannot be parsed."""


class ValidationRejection(AgenticRagError):
    """Describes why the judge rejected a draft answer."""
