"""chat-relay: session store and streaming relay for a browser chat front end."""

from .config import load_config, validate_config
from .types import (
    RelayConfig,
    RelayError,
    SessionRecord,
    Turn,
)

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "validate_config",
    "RelayConfig",
    "RelayError",
    "SessionRecord",
    "Turn",
]
