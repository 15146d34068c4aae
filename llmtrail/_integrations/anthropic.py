from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from llmtrail._integrations.base import BaseExtractor
from llmtrail._integrations.base import content_text
from llmtrail._integrations.base import last_user_message
from llmtrail._utils import _get_attr
from llmtrail._utils import to_jsonable
from llmtrail.types import Usage


MESSAGES = "messages.create"


class AnthropicExtractor(BaseExtractor):
    """Extraction for Anthropic-shaped clients (``messages.create``)."""

    _integration_name = "anthropic"
    capability = "messages"
    provider = "anthropic"
    default_paths = (MESSAGES,)

    def input(self, args, kwargs, operation=""):
        return last_user_message(kwargs.get("messages") or [])

    def properties(self, args, kwargs, operation=""):
        properties: Dict[str, Any] = {}
        system = kwargs.get("system")
        if system:
            properties["system"] = content_text(system)
        messages = kwargs.get("messages") or []
        if len(messages) > 1:
            properties["messages"] = to_jsonable(list(messages))
        for key in ("temperature", "max_tokens"):
            if kwargs.get(key) is not None:
                properties[key] = kwargs[key]
        return properties

    def output(self, response, operation=""):
        texts = []
        tool_uses = []
        for block in _get_attr(response, "content", None) or []:
            block_type = _get_attr(block, "type", None)
            if block_type == "text":
                texts.append(_get_attr(block, "text", "") or "")
            elif block_type == "tool_use":
                tool_uses.append(to_jsonable(block))
        if texts:
            return "".join(texts)
        if tool_uses:
            return tool_uses
        return None

    def usage(self, response, operation=""):
        return self._usage(_get_attr(response, "usage", None))

    @staticmethod
    def _usage(usage: Any) -> Optional[Usage]:
        if not usage:
            return None
        input_tokens = _get_attr(usage, "input_tokens", None)
        output_tokens = _get_attr(usage, "output_tokens", None)
        cache_write_tokens = _get_attr(usage, "cache_creation_input_tokens", None)
        cache_read_tokens = _get_attr(usage, "cache_read_input_tokens", None)

        metrics: Usage = {}
        # input_tokens only counts the non-cached part of the prompt
        if input_tokens is not None:
            metrics["input_tokens"] = (input_tokens or 0) + (cache_write_tokens or 0) + (cache_read_tokens or 0)
        if output_tokens is not None:
            metrics["output_tokens"] = output_tokens
        if "input_tokens" in metrics and output_tokens is not None:
            metrics["total_tokens"] = metrics["input_tokens"] + output_tokens
        return metrics or None

    def stream_output(self, chunks, operation=""):
        texts = []
        for chunk in chunks:
            if _get_attr(chunk, "type", None) != "content_block_delta":
                continue
            delta = _get_attr(chunk, "delta", None)
            if _get_attr(delta, "type", None) == "text_delta":
                texts.append(_get_attr(delta, "text", "") or "")
        return "".join(texts)

    def stream_usage(self, chunks: List[Any], operation: str = "") -> Optional[Usage]:
        input_usage = None
        output_tokens = None
        for chunk in chunks:
            chunk_type = _get_attr(chunk, "type", None)
            if chunk_type == "message_start":
                input_usage = _get_attr(_get_attr(chunk, "message", None), "usage", None)
            elif chunk_type == "message_delta":
                delta_output = _get_attr(_get_attr(chunk, "usage", None), "output_tokens", None)
                if delta_output is not None:
                    output_tokens = delta_output
        if input_usage is None and output_tokens is None:
            return None
        usage: Dict[str, Any] = {}
        for key in ("input_tokens", "cache_creation_input_tokens", "cache_read_input_tokens"):
            value = _get_attr(input_usage, key, None) if input_usage is not None else None
            if value is not None:
                usage[key] = value
        if output_tokens is not None:
            usage["output_tokens"] = output_tokens
        return self._usage(usage)
