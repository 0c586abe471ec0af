"""Exception taxonomy shared by the gateway, orchestrator and HTTP layer."""
from __future__ import annotations


class RagQueryError(Exception):
    """Base class for failures the query pipeline knows how to report."""


class RateExhaustedError(RagQueryError):
    def __init__(self, provider: str, window: str | None = None):
        self.provider = provider
        self.window = window
        detail = f" ({window} window)" if window else ""
        super().__init__(f"Rate limit exhausted for {provider}{detail}; try again later")


class UpstreamProviderError(RagQueryError):
    """Non-2xx or malformed response from an LLM or search provider.

    The upstream body is kept verbatim so billing/auth problems can be
    diagnosed from the message alone.
    """

    def __init__(self, provider: str, status_code: int | None, body: str):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        status = status_code if status_code is not None else "no status"
        super().__init__(f"{provider} error ({status}): {body}")


class ModelNotFoundError(RagQueryError):
    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model {model_id} not found")


class ProviderNotConfiguredError(RagQueryError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"API key not found for provider {provider}")


class ToolExecutionError(RagQueryError):
    pass


class ContentFetchError(RagQueryError):
    pass


class StorageError(RagQueryError):
    pass
