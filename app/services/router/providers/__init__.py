from .base import BaseProvider, classify_http_error, parse_retry_after
from .factory import ProviderFactory
from .google import GoogleProvider
from .openai_compatible import OpenAICompatibleProvider

__all__ = [
    "BaseProvider",
    "GoogleProvider",
    "OpenAICompatibleProvider",
    "ProviderFactory",
    "classify_http_error",
    "parse_retry_after",
]
