# Error types shared by the retrieval pipeline and the API layer.
#
# "No results" is deliberately absent: an empty search is a normal outcome
# (empty list + placeholder context), not a failure.


class ScholarError(Exception):
    """Base class for every error raised by Raid Scholar itself."""


class ProviderError(ScholarError):
    """An external collaborator (embeddings, vector index, LLM) failed."""


class RetrievalError(ScholarError):
    """Retrieval failed as a whole. The provider error is chained as __cause__."""

    def __init__(self, message: str = "Failed to retrieve relevant mechanics"):
        super().__init__(message)


class RateLimitExceeded(ScholarError):
    """Raised by the rate-limit gate before any retrieval work happens."""

    def __init__(self, identifier: str, reset_at: float):
        super().__init__(f"Rate limit exceeded for {identifier}")
        self.identifier = identifier
        self.reset_at = reset_at
