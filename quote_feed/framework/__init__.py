from .endpoint_probe import EndpointProbe, ProbeFound, ProbeNotFound, looks_like_quote_data
from .retry_executor import RetryExecutor, RetryOutcome, RetryPolicy
from .token_cache import SessionTokenCache

__all__ = [
    "EndpointProbe",
    "ProbeFound",
    "ProbeNotFound",
    "RetryExecutor",
    "RetryOutcome",
    "RetryPolicy",
    "SessionTokenCache",
    "looks_like_quote_data",
]
