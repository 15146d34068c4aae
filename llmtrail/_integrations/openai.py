from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from llmtrail._integrations.base import BaseExtractor
from llmtrail._integrations.base import content_text
from llmtrail._integrations.base import last_user_message
from llmtrail._integrations.base import normalize_usage
from llmtrail._utils import _get_attr
from llmtrail._utils import to_jsonable
from llmtrail.types import Usage


CHAT = "chat.completions.create"
COMPLETION = "completions.create"
EMBEDDING = "embeddings.create"
RESPONSE = "responses.create"


def _operation(path: str) -> str:
    if path.endswith(CHAT):
        return "chat"
    if path.endswith(EMBEDDING):
        return "embedding"
    if path.endswith(RESPONSE):
        return "response"
    if path.endswith(COMPLETION):
        return "completion"
    return "chat"


class OpenAIExtractor(BaseExtractor):
    """Extraction for OpenAI-shaped clients (chat completions, completions, embeddings and responses)."""

    _integration_name = "openai"
    capability = "chat-completions"
    provider = "openai"
    default_paths = (CHAT, COMPLETION, EMBEDDING)

    def input(self, args, kwargs, operation=""):
        op = _operation(operation)
        if op == "chat":
            return last_user_message(kwargs.get("messages") or [])
        if op == "completion":
            return to_jsonable(kwargs.get("prompt"))
        if op == "embedding":
            return to_jsonable(kwargs.get("input"))
        response_input = kwargs.get("input")
        if isinstance(response_input, (list, tuple)):
            return last_user_message(response_input)
        return to_jsonable(response_input)

    def properties(self, args, kwargs, operation=""):
        op = _operation(operation)
        properties: Dict[str, Any] = {}
        if op == "chat":
            messages = kwargs.get("messages") or []
            if len(messages) > 1:
                properties["messages"] = to_jsonable(list(messages))
        elif op == "embedding":
            properties["encoding_format"] = kwargs.get("encoding_format") or "float"
            if kwargs.get("dimensions"):
                properties["dimensions"] = kwargs["dimensions"]
        elif op == "response":
            if kwargs.get("instructions"):
                properties["instructions"] = kwargs["instructions"]
            if isinstance(kwargs.get("input"), (list, tuple)) and len(kwargs["input"]) > 1:
                properties["messages"] = to_jsonable(list(kwargs["input"]))
        for key in ("temperature", "max_tokens", "max_output_tokens"):
            if kwargs.get(key) is not None:
                properties[key] = kwargs[key]
        return properties

    def output(self, response, operation=""):
        op = _operation(operation)
        if op == "embedding":
            data = _get_attr(response, "data", None) or []
            if not data:
                return None
            embedding = _get_attr(data[0], "embedding", None)
            if isinstance(embedding, (list, tuple)):
                return "[{} embedding(s) returned with size {}]".format(len(data), len(embedding))
            return "[{} embedding(s) returned]".format(len(data))
        if op == "response":
            return self._response_output(response)
        choices = _get_attr(response, "choices", None) or []
        if not choices:
            return None
        choice = choices[0]
        if op == "completion":
            return _get_attr(choice, "text", None)
        message = _get_attr(choice, "message", None)
        content = content_text(_get_attr(message, "content", None))
        if content:
            return content
        tool_calls = _get_attr(message, "tool_calls", None)
        if tool_calls:
            return to_jsonable(list(tool_calls))
        return content

    @staticmethod
    def _response_output(response):
        output_text = _get_attr(response, "output_text", None)
        if output_text:
            return output_text
        texts = []
        for item in _get_attr(response, "output", None) or []:
            for part in _get_attr(item, "content", None) or []:
                text = _get_attr(part, "text", None)
                if isinstance(text, str):
                    texts.append(text)
        return "".join(texts) or None

    def stream_output(self, chunks, operation=""):
        op = _operation(operation)
        texts = []
        if op == "response":
            for chunk in chunks:
                chunk_type = _get_attr(chunk, "type", None)
                if chunk_type == "response.output_text.delta":
                    texts.append(_get_attr(chunk, "delta", "") or "")
                elif chunk_type == "response.completed" and not texts:
                    return self._response_output(_get_attr(chunk, "response", None))
            return "".join(texts)
        for chunk in chunks:
            for choice in _get_attr(chunk, "choices", None) or []:
                if _get_attr(choice, "index", 0) != 0:
                    continue
                if op == "completion":
                    text = _get_attr(choice, "text", None)
                else:
                    text = _get_attr(_get_attr(choice, "delta", None), "content", None)
                if isinstance(text, str):
                    texts.append(text)
        return "".join(texts)

    def stream_usage(self, chunks: List[Any], operation: str = "") -> Optional[Usage]:
        if _operation(operation) == "response":
            for chunk in reversed(chunks):
                if _get_attr(chunk, "type", None) == "response.completed":
                    return normalize_usage(_get_attr(_get_attr(chunk, "response", None), "usage", None))
            return None
        return super(OpenAIExtractor, self).stream_usage(chunks, operation)


class OpenAIResponsesExtractor(OpenAIExtractor):
    """Extraction for the OpenAI responses API only."""

    capability = "responses"
    default_paths = (RESPONSE,)
