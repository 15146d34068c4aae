import abc
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from llmtrail._model import Event
from llmtrail._utils import _get_attr
from llmtrail._utils import to_jsonable
from llmtrail.internal.logger import get_logger
from llmtrail.types import Usage


log = get_logger(__name__)


def normalize_usage(usage: Any) -> Optional[Usage]:
    """Map a provider usage object to ``input_tokens``/``output_tokens``/``total_tokens``."""
    if not usage:
        return None
    input_tokens = _get_attr(usage, "input_tokens", None)
    if input_tokens is None:
        input_tokens = _get_attr(usage, "prompt_tokens", None)
    output_tokens = _get_attr(usage, "output_tokens", None)
    if output_tokens is None:
        output_tokens = _get_attr(usage, "completion_tokens", None)
    total_tokens = _get_attr(usage, "total_tokens", None)

    metrics: Usage = {}
    if isinstance(input_tokens, int):
        metrics["input_tokens"] = input_tokens
    if isinstance(output_tokens, int):
        metrics["output_tokens"] = output_tokens
    if isinstance(total_tokens, int):
        metrics["total_tokens"] = total_tokens
    elif "input_tokens" in metrics and "output_tokens" in metrics:
        metrics["total_tokens"] = metrics["input_tokens"] + metrics["output_tokens"]
    return metrics or None


def content_text(content: Any) -> Any:
    """Return the text of a message content, joining the text parts of a multi-part content."""
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, (list, tuple)):
        texts = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
                continue
            text = _get_attr(part, "text", None)
            if isinstance(text, str):
                texts.append(text)
        if texts:
            return "".join(texts)
    return to_jsonable(content)


def last_user_message(messages: Sequence[Any]) -> Any:
    for message in reversed(list(messages)):
        if _get_attr(message, "role", None) == "user":
            return content_text(_get_attr(message, "content", None))
    if messages:
        return content_text(_get_attr(messages[-1], "content", None))
    return None


class BaseExtractor(abc.ABC):
    """Strategy that reads model, input, output and usage out of the calls of one kind of client.

    The public ``set_*`` methods never raise: a malformed request or response is logged and leaves the event with
    whatever could be recorded.
    """

    _integration_name = "base"
    capability = ""
    provider = None  # type: Optional[str]
    default_paths = ()  # type: Tuple[str, ...]

    def __init__(self, paths: Optional[Iterable[str]] = None) -> None:
        self.paths: Tuple[str, ...] = tuple(paths) if paths is not None else self.default_paths

    def __repr__(self):
        return "%s(paths=%r)" % (self.__class__.__name__, self.paths)

    def span_name(self, client_name: str, path: str) -> str:
        if self.provider:
            return "%s.%s" % (self.provider, path)
        if path == "__call__":
            return client_name
        return "%s.%s" % (client_name, path)

    def model(self, args: Sequence[Any], kwargs: Dict[str, Any], operation: str = "") -> Optional[str]:
        model = kwargs.get("model")
        return str(model) if model is not None else None

    @abc.abstractmethod
    def input(self, args: Sequence[Any], kwargs: Dict[str, Any], operation: str = "") -> Any:
        raise NotImplementedError()

    @abc.abstractmethod
    def output(self, response: Any, operation: str = "") -> Any:
        raise NotImplementedError()

    def usage(self, response: Any, operation: str = "") -> Optional[Usage]:
        return normalize_usage(_get_attr(response, "usage", None))

    def properties(self, args: Sequence[Any], kwargs: Dict[str, Any], operation: str = "") -> Dict[str, Any]:
        return {}

    def response_model(self, response: Any) -> Optional[str]:
        model = _get_attr(response, "model", None)
        return model if isinstance(model, str) else None

    def stream_output(self, chunks: List[Any], operation: str = "") -> Any:
        texts = [c for c in chunks if isinstance(c, str)]
        if chunks and len(texts) == len(chunks):
            return "".join(texts)
        return to_jsonable(chunks)

    def stream_usage(self, chunks: List[Any], operation: str = "") -> Optional[Usage]:
        for chunk in reversed(chunks):
            usage = normalize_usage(_get_attr(chunk, "usage", None))
            if usage:
                return usage
        return None

    def set_request_fields(self, event: Event, path: str, args: Sequence[Any], kwargs: Dict[str, Any]) -> None:
        """Record model, input and request properties on ``event``."""
        try:
            event.model = self.model(args, kwargs, operation=path)
            event.provider = self.provider
            event.input = self.input(args, kwargs, operation=path)
            event.properties.update(self.properties(args, kwargs, operation=path))
        except Exception:
            log.error("Error extracting request fields of %s, likely due to malformed data", path, exc_info=True)

    def set_response_fields(self, event: Event, path: str, response: Any) -> None:
        """Record output, usage and the responding model on ``event``."""
        try:
            event.output = self.output(response, operation=path)
            event.usage = self.usage(response, operation=path)
            event.model = self.response_model(response) or event.model
        except Exception:
            log.error("Error extracting response fields of %s, likely due to malformed data", path, exc_info=True)

    def set_stream_fields(self, event: Event, path: str, chunks: List[Any]) -> None:
        """Record the output and usage accumulated from the chunks of a streamed response."""
        try:
            event.output = self.stream_output(chunks, operation=path)
            event.usage = self.stream_usage(chunks, operation=path)
        except Exception:
            log.error("Error extracting streamed fields of %s, likely due to malformed data", path, exc_info=True)


class DefaultExtractor(BaseExtractor):
    """Records the raw arguments and return value of arbitrary methods."""

    _integration_name = "default"
    capability = "default"
    default_paths = ("__call__",)

    def input(self, args, kwargs, operation=""):
        call_kwargs = {k: v for k, v in kwargs.items() if k not in ("model", "stream")}
        if len(args) == 1 and not call_kwargs:
            return to_jsonable(args[0])
        if not args and len(call_kwargs) == 1:
            return to_jsonable(next(iter(call_kwargs.values())))
        return {"args": to_jsonable(list(args)), "kwargs": to_jsonable(call_kwargs)}

    def output(self, response, operation=""):
        return to_jsonable(response)

    def response_model(self, response):
        return None
