from typing import Any
from typing import Dict
from typing import Iterable
from typing import Optional
from typing import Type

from llmtrail._integrations.anthropic import AnthropicExtractor
from llmtrail._integrations.base import BaseExtractor
from llmtrail._integrations.base import DefaultExtractor
from llmtrail._integrations.openai import RESPONSE
from llmtrail._integrations.openai import OpenAIExtractor
from llmtrail._integrations.openai import OpenAIResponsesExtractor
from llmtrail.internal.logger import get_logger


log = get_logger(__name__)

EXTRACTORS: Dict[str, Type[BaseExtractor]] = {
    OpenAIExtractor.capability: OpenAIExtractor,
    OpenAIResponsesExtractor.capability: OpenAIResponsesExtractor,
    AnthropicExtractor.capability: AnthropicExtractor,
    DefaultExtractor.capability: DefaultExtractor,
}


def resolve_path(obj: Any, path: str) -> Any:
    """Follow a dotted attribute path, returning ``None`` when any part of it is missing."""
    for part in path.split("."):
        try:
            obj = getattr(obj, part)
        except Exception:
            return None
    return obj


def _has_method(client: Any, path: str) -> bool:
    return callable(resolve_path(client, path))


def detect_capability(client: Any) -> Optional[str]:
    """Guess the capability tag of ``client`` from its attribute shape."""
    if _has_method(client, "messages.create"):
        return AnthropicExtractor.capability
    if _has_method(client, "chat.completions.create"):
        return OpenAIExtractor.capability
    if _has_method(client, RESPONSE):
        return OpenAIResponsesExtractor.capability
    if callable(client):
        return DefaultExtractor.capability
    return None


def detect_extractor(
    client: Any, capability: Optional[str] = None, methods: Optional[Iterable[str]] = None
) -> BaseExtractor:
    """Return the extraction strategy for ``client``.

    ``methods`` replaces the dotted method paths traced by the strategy. Without a ``capability`` the strategy is
    detected from the client's shape, falling back to ``default``.
    """
    paths = tuple(methods) if methods is not None else None
    if capability is None:
        capability = DefaultExtractor.capability if paths is not None else detect_capability(client)
        if capability is None:
            log.warning("could not detect the capability of %r, no method will be traced", type(client).__name__)
            return DefaultExtractor(paths=())
        if capability == OpenAIExtractor.capability and paths is None and _has_method(client, RESPONSE):
            paths = OpenAIExtractor.default_paths + (RESPONSE,)
    try:
        extractor_cls = EXTRACTORS[capability]
    except KeyError:
        raise ValueError(
            "unknown capability %r, expected one of %s" % (capability, ", ".join(sorted(EXTRACTORS)))
        ) from None
    return extractor_cls(paths=paths)


__all__ = [
    "BaseExtractor",
    "DefaultExtractor",
    "OpenAIExtractor",
    "OpenAIResponsesExtractor",
    "AnthropicExtractor",
    "EXTRACTORS",
    "detect_capability",
    "detect_extractor",
    "resolve_path",
]
