from .auth import GoogleIdTokenProvider, StaticTokenProvider, TokenProvider, build_token_provider
from .client import UpstreamClient, UpstreamStream, build_messages, extract_text

__all__ = [
    "GoogleIdTokenProvider",
    "StaticTokenProvider",
    "TokenProvider",
    "UpstreamClient",
    "UpstreamStream",
    "build_messages",
    "build_token_provider",
    "extract_text",
]
