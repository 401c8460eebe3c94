"""Exception hierarchy for the ticket RAG pipeline."""


class CerberusError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(CerberusError, ValueError):
    """Raised when a parameter or settings file is invalid (e.g. overlap >= chunk_size)."""


class CollaboratorError(CerberusError):
    """Raised when an external collaborator (embedder, similarity index) fails.

    Fatal for the current query: the pipeline surfaces it to the caller
    without retrying.
    """


class RelevanceScoringError(CollaboratorError):
    """Raised by a relevance scorer; always recovered by the reranker."""
