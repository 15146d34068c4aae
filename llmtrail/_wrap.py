"""Client interception.

:func:`wrap_client` returns a :class:`TracedClient`, a transparent proxy of a model-provider client. Every
attribute access is forwarded to the client; the attribute chains that lead to a traced method (e.g.
``client.chat.completions.create``) return nested proxies and, at the end of the chain, a traced function that
records one ``llm`` event per call.
"""
import asyncio
import concurrent.futures
import functools
import inspect
from typing import TYPE_CHECKING
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence

import wrapt

from llmtrail._constants import EVENT_ID_ATTR
from llmtrail._constants import SPAN_KIND_LLM
from llmtrail._integrations import BaseExtractor
from llmtrail._model import Event
from llmtrail._model import Interaction
from llmtrail._model import error_from_exception
from llmtrail.internal.logger import get_logger


if TYPE_CHECKING:  # pragma: no cover
    from llmtrail._tracer import Tracer


log = get_logger(__name__)


def _tag_response(response: Any, event_id: str) -> None:
    if response is None or isinstance(response, (str, bytes, int, float, bool, tuple)):
        return
    try:
        setattr(response, EVENT_ID_ATTR, event_id)
    except Exception:
        log.debug("cannot set %s on %r", EVENT_ID_ATTR, type(response))


class _TracedCall(object):
    """One intercepted call: the open event, its auto-promoted root if any, and how to close them."""

    __slots__ = ("tracer", "extractor", "path", "event", "root", "done")

    def __init__(self, tracer, extractor, path, event, root):
        # type: (Tracer, BaseExtractor, str, Event, Optional[Interaction]) -> None
        self.tracer = tracer
        self.extractor = extractor
        self.path = path
        self.event = event
        self.root = root
        self.done = False

    @classmethod
    def start(cls, tracer, extractor, name, path, args, kwargs):
        # type: (Tracer, BaseExtractor, str, str, Sequence[Any], Dict[str, Any]) -> Optional[_TracedCall]
        if not tracer.enabled:
            return None
        event, root = tracer._open_span(SPAN_KIND_LLM, name)
        if event is None:
            return None
        extractor.set_request_fields(event, path, args, kwargs)
        return cls(tracer, extractor, path, event, root)

    def _close(self, error=None):
        if self.done:
            return
        self.done = True
        self.tracer._close_span(self.event, self.root, error=error)

    def succeed(self, response: Any) -> None:
        if self.done:
            return
        self.extractor.set_response_fields(self.event, self.path, response)
        _tag_response(response, self.event.id)
        self._close()

    def fail(self, exc: BaseException) -> None:
        self._close(error=error_from_exception(exc))

    def finish_stream(self, chunks: List[Any], exc: Optional[BaseException] = None) -> None:
        if self.done:
            return
        self.extractor.set_stream_fields(self.event, self.path, chunks)
        self._close(error=error_from_exception(exc) if exc is not None else None)

    def on_future_done(self, future: Any) -> None:
        if future.cancelled():
            cancelled = asyncio.CancelledError() if asyncio.isfuture(future) else concurrent.futures.CancelledError()
            self.fail(cancelled)
            return
        exc = future.exception()
        if exc is not None:
            self.fail(exc)
        else:
            self.succeed(future.result())


class TracedStream(wrapt.ObjectProxy):
    """Proxy of a streamed response that records its chunks and closes the event once the stream ends."""

    def __init__(self, wrapped: Any, call: _TracedCall) -> None:
        super(TracedStream, self).__init__(wrapped)
        self._self_call = call
        self._self_chunks: List[Any] = []
        self._self_iterator = None

    def __iter__(self):
        return self

    def __next__(self):
        if self._self_iterator is None:
            self._self_iterator = iter(self.__wrapped__)
        try:
            chunk = next(self._self_iterator)
        except StopIteration:
            self._self_call.finish_stream(self._self_chunks)
            raise
        except BaseException as e:
            self._self_call.finish_stream(self._self_chunks, e)
            raise
        self._self_chunks.append(chunk)
        return chunk

    def __enter__(self):
        if hasattr(self.__wrapped__, "__enter__"):
            self.__wrapped__.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if hasattr(self.__wrapped__, "__exit__"):
                return self.__wrapped__.__exit__(exc_type, exc_val, exc_tb)
        finally:
            self._self_call.finish_stream(self._self_chunks, exc_val)

    def close(self):
        try:
            close = getattr(self.__wrapped__, "close", None)
            if close is not None:
                close()
        finally:
            self._self_call.finish_stream(self._self_chunks)


class TracedAsyncStream(wrapt.ObjectProxy):
    """Async counterpart of :class:`TracedStream`."""

    def __init__(self, wrapped: Any, call: _TracedCall) -> None:
        super(TracedAsyncStream, self).__init__(wrapped)
        self._self_call = call
        self._self_chunks: List[Any] = []
        self._self_iterator = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._self_iterator is None:
            self._self_iterator = self.__wrapped__.__aiter__()
        try:
            chunk = await self._self_iterator.__anext__()
        except StopAsyncIteration:
            self._self_call.finish_stream(self._self_chunks)
            raise
        except BaseException as e:
            self._self_call.finish_stream(self._self_chunks, e)
            raise
        self._self_chunks.append(chunk)
        return chunk

    async def __aenter__(self):
        if hasattr(self.__wrapped__, "__aenter__"):
            await self.__wrapped__.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if hasattr(self.__wrapped__, "__aexit__"):
                return await self.__wrapped__.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self._self_call.finish_stream(self._self_chunks, exc_val)

    async def aclose(self):
        try:
            aclose = getattr(self.__wrapped__, "aclose", None) or getattr(self.__wrapped__, "close", None)
            if aclose is not None:
                result = aclose()
                if inspect.isawaitable(result):
                    await result
        finally:
            self._self_call.finish_stream(self._self_chunks)


def _is_stream(result: Any, kwargs: Dict[str, Any]) -> bool:
    return bool(kwargs.get("stream")) and not isinstance(result, (str, bytes, dict))


def _complete(call: _TracedCall, result: Any, kwargs: Dict[str, Any]) -> Any:
    """Record a returned value, wrapping it when it is a stream."""
    if _is_stream(result, kwargs):
        if hasattr(result, "__aiter__"):
            return TracedAsyncStream(result, call)
        if hasattr(result, "__iter__"):
            return TracedStream(result, call)
    call.succeed(result)
    return result


async def _traced_coroutine(tracer, call, coro, kwargs):
    # type: (Tracer, _TracedCall, Any, Dict[str, Any]) -> Any
    try:
        with tracer._context.with_context(call.event):
            result = await coro
    except BaseException as e:
        call.fail(e)
        raise
    return _complete(call, result, kwargs)


def traced_function(tracer, extractor, name, path, fn):
    # type: (Tracer, BaseExtractor, str, str, Callable[..., Any]) -> Callable[..., Any]
    """Return a wrapper of ``fn`` that records one ``llm`` event per call."""
    if inspect.iscoroutinefunction(fn):

        @functools.wraps(fn)
        async def async_wrapper(*args, **kwargs):
            call = _TracedCall.start(tracer, extractor, name, path, args, kwargs)
            if call is None:
                return await fn(*args, **kwargs)
            try:
                with tracer._context.with_context(call.event):
                    result = await fn(*args, **kwargs)
            except BaseException as e:
                call.fail(e)
                raise
            return _complete(call, result, kwargs)

        return async_wrapper

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        call = _TracedCall.start(tracer, extractor, name, path, args, kwargs)
        if call is None:
            return fn(*args, **kwargs)
        try:
            with tracer._context.with_context(call.event):
                result = fn(*args, **kwargs)
        except BaseException as e:
            call.fail(e)
            raise
        if inspect.iscoroutine(result):
            return _traced_coroutine(tracer, call, result, kwargs)
        if asyncio.isfuture(result) or isinstance(result, concurrent.futures.Future):
            result.add_done_callback(call.on_future_done)
            return result
        return _complete(call, result, kwargs)

    return wrapper


class TracedClient(wrapt.ObjectProxy):
    """Transparent proxy of a client, or of one of its resources, that traces the methods of its extractor."""

    def __init__(self, wrapped, tracer, extractor, prefix="", client_name=None):
        # type: (Any, Tracer, BaseExtractor, str, Optional[str]) -> None
        super(TracedClient, self).__init__(wrapped)
        self._self_tracer = tracer
        self._self_extractor = extractor
        self._self_prefix = prefix
        self._self_client_name = client_name or type(wrapped).__name__

    def __repr__(self):
        return "<%s of %r>" % (type(self).__name__, self.__wrapped__)

    def __getattr__(self, name):
        value = super(TracedClient, self).__getattr__(name)
        return self._self_trace_attribute(self._self_prefix + name, value)

    def _self_trace_attribute(self, path, value):
        paths = self._self_extractor.paths
        if path in paths and callable(value):
            name = self._self_extractor.span_name(self._self_client_name, path)
            return traced_function(self._self_tracer, self._self_extractor, name, path, value)
        nested = path + "."
        if any(p.startswith(nested) for p in paths):
            proxy_cls = TracedCallableClient if callable(value) else TracedClient
            return proxy_cls(value, self._self_tracer, self._self_extractor, nested, self._self_client_name)
        return value


class TracedCallableClient(TracedClient):
    """:class:`TracedClient` for callable clients; traces ``__call__`` when the extractor lists it."""

    def __call__(self, *args, **kwargs):
        path = self._self_prefix + "__call__" if self._self_prefix else "__call__"
        if path in self._self_extractor.paths:
            fn = self._self_trace_attribute(path, self.__wrapped__)
            return fn(*args, **kwargs)
        return self.__wrapped__(*args, **kwargs)


def wrap_client(tracer, client, extractor):
    # type: (Tracer, Any, BaseExtractor) -> TracedClient
    proxy_cls = TracedCallableClient if callable(client) else TracedClient
    return proxy_cls(client, tracer, extractor)
