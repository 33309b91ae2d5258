from .client import ChatClient, LLMError, OpenAICompatibleClient
from .parsing import ResponseParseError, parse_fenced_json, parse_reply, validate_payload

__all__ = [
    "ChatClient",
    "LLMError",
    "OpenAICompatibleClient",
    "ResponseParseError",
    "parse_fenced_json",
    "parse_reply",
    "validate_payload",
]
