import asyncio
import concurrent.futures
import functools
from functools import wraps
from inspect import isasyncgenfunction
from inspect import iscoroutine
from inspect import iscoroutinefunction
from inspect import isgeneratorfunction
from inspect import signature
from typing import TYPE_CHECKING
from typing import Any
from typing import Callable
from typing import Dict
from typing import Mapping
from typing import Optional
from typing import TypeVar

from llmtrail._constants import SPAN_START_WHILE_DISABLED_DEBUG
from llmtrail._utils import to_jsonable
from llmtrail.internal.logger import get_logger


if TYPE_CHECKING:  # pragma: no cover
    from llmtrail._tracer import SpanHandle
    from llmtrail._tracer import Tracer


log = get_logger(__name__)

# Type variable for preserving function signatures
F = TypeVar("F", bound=Callable)


def _get_span_inputs(args: Mapping[str, Any]) -> Dict[str, Any]:
    return {arg: to_jsonable(value) for arg, value in args.items() if arg not in ("self", "cls")}


def _bound_inputs(func: Callable, args, kwargs) -> Optional[Dict[str, Any]]:
    try:
        bound_args = signature(func).bind_partial(*args, **kwargs)
    except (TypeError, ValueError):
        return None
    return _get_span_inputs(bound_args.arguments) or None


def yield_from_gen(tracer, span, gen):
    # type: (Tracer, SpanHandle, Any) -> Any
    """Drive ``gen``, activating ``span`` around each step and finishing it when the generator ends."""
    try:
        with span.activated():
            next_val = next(gen)
        while True:
            try:
                sent = yield next_val
            except GeneratorExit:
                gen.close()
                raise
            except BaseException as e:
                with span.activated():
                    next_val = gen.throw(e)
            else:
                with span.activated():
                    next_val = gen.send(sent)
    except StopIteration as e:
        span.finish()
        return e.value
    except GeneratorExit:
        span.finish()
        raise
    except BaseException as e:
        span.finish(error=e)
        raise


async def yield_from_async_gen(tracer, start_span, agen):
    # type: (Tracer, Callable[[], SpanHandle], Any) -> Any
    """Like :func:`yield_from_gen`, the span is only opened once the generator is first iterated."""
    span = start_span()
    try:
        with span.activated():
            next_val = await agen.asend(None)
        while True:
            try:
                sent = yield next_val
            except GeneratorExit:
                await agen.aclose()
                raise
            except BaseException as e:
                with span.activated():
                    next_val = await agen.athrow(e)
            else:
                with span.activated():
                    next_val = await agen.asend(sent)
    except StopAsyncIteration:
        span.finish()
    except GeneratorExit:
        span.finish()
        raise
    except BaseException as e:
        span.finish(error=e)
        raise


async def _finish_on_await(span, coro):
    # type: (SpanHandle, Any) -> Any
    try:
        with span.activated():
            resp = await coro
    except BaseException as e:
        span.finish(error=e)
        raise
    span.finish(output=resp)
    return resp


def _finish_on_done(span, future):
    # type: (SpanHandle, Any) -> None
    if future.cancelled():
        cancelled = asyncio.CancelledError() if asyncio.isfuture(future) else concurrent.futures.CancelledError()
        span.finish(error=cancelled)
    elif future.exception() is not None:
        span.finish(error=future.exception())
    else:
        span.finish(output=future.result())


def span_decorator(tracer, kind, name=None):
    # type: (Tracer, str, Optional[str]) -> Callable[[F], F]
    """Return a decorator recording one ``kind`` span per call of the decorated function.

    The bound arguments are recorded as the span input and the return value as its output. Plain functions,
    coroutine functions, generator functions and async generator functions are supported.
    """

    def inner(func):
        span_name = name or func.__name__

        if isasyncgenfunction(func):

            @wraps(func)
            def async_generator_wrapper(*args, **kwargs):
                if not tracer.enabled:
                    log.debug(SPAN_START_WHILE_DISABLED_DEBUG)
                    return func(*args, **kwargs)
                inputs = _bound_inputs(func, args, kwargs)
                return yield_from_async_gen(
                    tracer, lambda: tracer._start_span(kind, span_name, input=inputs), func(*args, **kwargs)
                )

            return async_generator_wrapper

        if isgeneratorfunction(func):

            @wraps(func)
            def generator_wrapper(*args, **kwargs):
                if not tracer.enabled:
                    log.debug(SPAN_START_WHILE_DISABLED_DEBUG)
                    return (yield from func(*args, **kwargs))
                span = tracer._start_span(kind, span_name, input=_bound_inputs(func, args, kwargs))
                return (yield from yield_from_gen(tracer, span, func(*args, **kwargs)))

            return generator_wrapper

        if iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                if not tracer.enabled:
                    log.debug(SPAN_START_WHILE_DISABLED_DEBUG)
                    return await func(*args, **kwargs)
                with tracer._start_span(kind, span_name, input=_bound_inputs(func, args, kwargs)) as span:
                    resp = await func(*args, **kwargs)
                    span.set_output(resp)
                    return resp

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            if not tracer.enabled:
                log.debug(SPAN_START_WHILE_DISABLED_DEBUG)
                return func(*args, **kwargs)
            span = tracer._start_span(kind, span_name, input=_bound_inputs(func, args, kwargs))
            try:
                with span.activated():
                    resp = func(*args, **kwargs)
            except BaseException as e:
                span.finish(error=e)
                raise
            if iscoroutine(resp):
                return _finish_on_await(span, resp)
            if asyncio.isfuture(resp) or isinstance(resp, concurrent.futures.Future):
                resp.add_done_callback(functools.partial(_finish_on_done, span))
                return resp
            span.finish(output=resp)
            return resp

        return wrapper

    return inner
