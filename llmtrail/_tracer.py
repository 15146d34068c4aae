import contextlib
import contextvars
import inspect
import itertools
import threading
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Mapping
from typing import Optional
from typing import Tuple
from typing import TypeVar
from typing import Union
import uuid
import weakref

from llmtrail import decorators
from llmtrail._constants import AUTO_INTERACTION_EVENT
from llmtrail._constants import EVENT_ID_ATTR
from llmtrail._constants import ITEM_EVENT
from llmtrail._constants import ITEM_IDENTITY
from llmtrail._constants import ITEM_INTERACTION
from llmtrail._constants import ITEM_SIGNAL
from llmtrail._constants import SENTIMENT_NEGATIVE
from llmtrail._constants import SENTIMENT_POSITIVE
from llmtrail._constants import SIGNAL_TYPE_DEFAULT
from llmtrail._constants import SIGNAL_TYPE_FEEDBACK
from llmtrail._constants import SPAN_KIND_LLM
from llmtrail._constants import SPAN_KIND_TASK
from llmtrail._constants import SPAN_KIND_TOOL
from llmtrail._constants import TRACK_AFTER_CLOSE_DEBUG
from llmtrail._context import Carrier
from llmtrail._context import ContextProvider
from llmtrail._integrations import detect_extractor
from llmtrail._model import Attachment
from llmtrail._model import Event
from llmtrail._model import Identity
from llmtrail._model import Interaction
from llmtrail._model import Node
from llmtrail._model import Signal
from llmtrail._model import add_attachment
from llmtrail._model import attach
from llmtrail._model import check_open
from llmtrail._model import close
from llmtrail._model import error_from_exception
from llmtrail._model import error_from_message
from llmtrail._model import new_event
from llmtrail._model import new_interaction
from llmtrail._model import to_dict
from llmtrail._model import tree_dict
from llmtrail._plugins import PluginHub
from llmtrail._plugins import read_only_view
from llmtrail._wrap import TracedClient
from llmtrail._wrap import wrap_client
from llmtrail._writer import DeliveryFailure
from llmtrail._writer import DeliveryWriter
from llmtrail.errors import AlreadyClosed
from llmtrail.errors import InvalidParent
from llmtrail.internal import atexit
from llmtrail.internal import forksafe
from llmtrail.internal.logger import get_logger
from llmtrail.internal.logger import set_debug
from llmtrail.internal.service import ServiceStatusError
from llmtrail.settings import resolve
from llmtrail.types import ErrorRecord


log = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable)

ErrorLike = Union[BaseException, ErrorRecord, str, None]
AttachmentLike = Union[Attachment, Mapping[str, Any]]

_tracer_ids = itertools.count()


def _error_record(error: ErrorLike) -> Optional[ErrorRecord]:
    if error is None:
        return None
    if isinstance(error, BaseException):
        return error_from_exception(error)
    if isinstance(error, dict):
        return error
    return error_from_message(str(error))


def _resolve_event_id(target: Any) -> Optional[str]:
    """Accept an id, a handle or a value returned by a wrapped call."""
    if isinstance(target, str):
        return target or None
    event_id = getattr(target, EVENT_ID_ATTR, None)
    if isinstance(event_id, str):
        return event_id
    event_id = getattr(target, "id", None)
    return event_id if isinstance(event_id, str) else None


class SpanHandle(object):
    """An open ``tool``, ``task`` or ``llm`` span.

    Used as a context manager the span is the active node for the duration of the block, and is finished on exit,
    recording the exception if one is raised. A handle without an event (tracing disabled) does nothing.
    """

    def __init__(self, tracer, event, root):
        # type: (Optional[Tracer], Optional[Event], Optional[Interaction]) -> None
        self._tracer = tracer
        self._event = event
        self._root = root
        self._token = None  # type: Optional[contextvars.Token]
        self._finished = False

    def __repr__(self):
        return "SpanHandle(%r)" % (self._event,)

    @property
    def id(self) -> Optional[str]:
        return self._event.id if self._event is not None else None

    @property
    def event(self) -> Optional[Event]:
        return self._event

    def _mutate(self, fn: Callable[[Event], None]) -> None:
        if self._event is None:
            return
        try:
            check_open(self._event)
            fn(self._event)
        except AlreadyClosed:
            log.debug("span %s is already finished, ignoring update", self._event.id)

    def set_output(self, output: Any) -> None:
        def _set(event):
            event.output = output

        self._mutate(_set)

    def set_property(self, key: str, value: Any) -> None:
        self._mutate(lambda event: event.properties.__setitem__(key, value))

    def set_properties(self, properties: Mapping[str, Any]) -> None:
        self._mutate(lambda event: event.properties.update(properties))

    def add_attachments(self, attachments: Iterable[AttachmentLike]) -> None:
        for attachment in attachments:
            self._mutate(lambda event: add_attachment(event, attachment))

    @contextlib.contextmanager
    def activated(self) -> Iterator["SpanHandle"]:
        """Make this span the active node for the duration of the block, without finishing it."""
        if self._event is None or self._tracer is None:
            yield self
            return
        with self._tracer._context.with_context(self._event):
            yield self

    def finish(self, output: Any = None, error: ErrorLike = None) -> None:
        if self._finished:
            return
        self._finished = True
        if self._event is None or self._tracer is None:
            return
        self._tracer._close_span(self._event, self._root, output=output, error=_error_record(error))

    def __enter__(self):
        if self._event is not None and self._tracer is not None:
            self._token = self._tracer._context.push(self._event)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._event is not None and self._tracer is not None:
            self._tracer._context.pop(self._event, self._token)
        self.finish(error=exc_val)


class InteractionHandle(object):
    """Handle of an open interaction returned by :meth:`Tracer.begin`."""

    def __init__(self, tracer, interaction, token=None):
        # type: (Tracer, Interaction, Optional[contextvars.Token]) -> None
        self._tracer = tracer
        self._interaction = interaction
        self._token = token

    def __repr__(self):
        return "InteractionHandle(%r)" % (self._interaction,)

    @property
    def id(self) -> str:
        return self._interaction.id

    @property
    def interaction(self) -> Interaction:
        return self._interaction

    @property
    def finished(self) -> bool:
        return self._interaction.finished

    def _mutate(self, fn: Callable[[Interaction], None]) -> None:
        try:
            check_open(self._interaction)
            fn(self._interaction)
        except AlreadyClosed:
            log.debug("interaction %s is already finished, ignoring update", self._interaction.id)

    def set_input(self, input: Any) -> None:
        def _set(interaction):
            interaction.input = input

        self._mutate(_set)

    def set_output(self, output: Any) -> None:
        def _set(interaction):
            interaction.output = output

        self._mutate(_set)

    def set_property(self, key: str, value: Any) -> None:
        self._mutate(lambda interaction: interaction.properties.__setitem__(key, value))

    def set_properties(self, properties: Mapping[str, Any]) -> None:
        self._mutate(lambda interaction: interaction.properties.update(properties))

    def add_attachments(self, attachments: Iterable[AttachmentLike]) -> None:
        for attachment in attachments:
            self._mutate(lambda interaction: add_attachment(interaction, attachment))

    def tool_span(self, name: str, input: Any = None, properties: Optional[Dict[str, Any]] = None) -> SpanHandle:
        return self._tracer._start_span(SPAN_KIND_TOOL, name, input, properties, parent=self._interaction)

    def task_span(self, name: str, input: Any = None, properties: Optional[Dict[str, Any]] = None) -> SpanHandle:
        return self._tracer._start_span(SPAN_KIND_TASK, name, input, properties, parent=self._interaction)

    def finish(
        self, output: Any = None, properties: Optional[Mapping[str, Any]] = None, error: ErrorLike = None
    ) -> None:
        """Finish the interaction and hand it over for delivery.

        ``output=None`` keeps an output set earlier. Finishing twice is ignored.
        """
        self._tracer._finish_interaction(self._interaction, output, _error_record(error), properties)
        self._tracer._context.pop(self._interaction, self._token)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._interaction.finished:
            self.finish(error=exc_val)


class NoopInteraction(object):
    """Placeholder returned instead of an :class:`InteractionHandle` when tracing is disabled."""

    def __init__(self, interaction_id: Optional[str] = None) -> None:
        self.id = interaction_id or uuid.uuid4().hex

    def __repr__(self):
        return "NoopInteraction(%r)" % (self.id,)

    @property
    def finished(self) -> bool:
        return False

    def set_input(self, input: Any) -> None:
        pass

    def set_output(self, output: Any) -> None:
        pass

    def set_property(self, key: str, value: Any) -> None:
        pass

    def set_properties(self, properties: Mapping[str, Any]) -> None:
        pass

    def add_attachments(self, attachments: Iterable[AttachmentLike]) -> None:
        pass

    def tool_span(self, name: str, input: Any = None, properties: Optional[Dict[str, Any]] = None) -> SpanHandle:
        return SpanHandle(None, None, None)

    def task_span(self, name: str, input: Any = None, properties: Optional[Dict[str, Any]] = None) -> SpanHandle:
        return SpanHandle(None, None, None)

    def finish(
        self, output: Any = None, properties: Optional[Mapping[str, Any]] = None, error: ErrorLike = None
    ) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        pass


class Tracer(object):
    """Records interactions, events and signals and delivers them to the collector.

    Options not given as keyword arguments are read from ``LLMTRAIL_*`` environment variables, see
    :class:`llmtrail.settings.TracerConfig`. ``plugins`` and ``on_error`` can only be given here.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        write_key: Optional[str] = None,
        debug: Optional[bool] = None,
        disabled: Optional[bool] = None,
        base_url: Optional[str] = None,
        flush_interval: Optional[float] = None,
        max_queue_size: Optional[int] = None,
        batch_size: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        request_timeout: Optional[float] = None,
        plugin_timeout: Optional[float] = None,
        plugins: Optional[Iterable[Any]] = None,
        on_error: Optional[Callable[[DeliveryFailure], Any]] = None,
        _writer: Optional[DeliveryWriter] = None,
    ) -> None:
        self._config = resolve(
            api_key=api_key,
            write_key=write_key,
            debug=debug,
            disabled=disabled,
            base_url=base_url,
            flush_interval=flush_interval,
            max_queue_size=max_queue_size,
            batch_size=batch_size,
            retry_attempts=retry_attempts,
            request_timeout=request_timeout,
            plugin_timeout=plugin_timeout,
        )
        if self._config.debug:
            set_debug(True)
        self._on_error = on_error
        self._context = ContextProvider()
        self._plugins = PluginHub(plugins, timeout=self._config.plugin_timeout)
        self._open_nodes: Dict[str, Node] = {}
        self._open_nodes_lock = forksafe.Lock()
        self._last_event_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
            "llmtrail_last_event_id_%d" % next(_tracer_ids), default=None
        )
        self._wrapped = weakref.WeakValueDictionary()  # type: weakref.WeakValueDictionary
        self._closed = False
        self._close_lock = threading.Lock()
        self._writer = _writer if _writer is not None else self._new_writer()

        if self._config.disabled:
            log.debug("tracing is disabled, nothing will be recorded")
            return
        if not self._config.resolved_api_key:
            log.warning(
                "No API key is set, recorded data will be dropped. Set LLMTRAIL_API_KEY or pass `api_key=...`."
            )
        self._start_writer()
        atexit.register(self._at_exit)
        forksafe.register(self._child_after_fork)

    def __repr__(self):
        return "Tracer(enabled=%r, base_url=%r)" % (self.enabled, self._config.base_url)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def enabled(self) -> bool:
        return not self._config.disabled and not self._closed

    @property
    def config(self):
        return self._config

    @property
    def writer(self) -> DeliveryWriter:
        return self._writer

    @property
    def plugins(self) -> PluginHub:
        return self._plugins

    def _new_writer(self) -> DeliveryWriter:
        return DeliveryWriter(
            base_url=self._config.base_url,
            api_key=self._config.resolved_api_key,
            interval=self._config.flush_interval,
            timeout=self._config.request_timeout,
            max_queue_size=self._config.max_queue_size,
            batch_size=self._config.batch_size,
            retry_attempts=self._config.retry_attempts,
            on_error=self._on_error,
        )

    def _start_writer(self) -> None:
        try:
            self._writer.start()
        except ServiceStatusError:
            log.debug("%r is already running", self._writer)

    def _at_exit(self) -> None:
        self.close()

    def _child_after_fork(self) -> None:
        self._writer = self._writer.recreate()
        with self._open_nodes_lock:
            self._open_nodes.clear()
        if self.enabled:
            self._start_writer()

    # tree bookkeeping

    def _register(self, node: Node) -> None:
        with self._open_nodes_lock:
            self._open_nodes[node.id] = node

    def _unregister(self, node: Node) -> None:
        with self._open_nodes_lock:
            self._open_nodes.pop(node.id, None)

    def _new_root(self, event: str, **kwargs: Any) -> Interaction:
        interaction = new_interaction(event, **kwargs)
        self._register(interaction)
        self._plugins.dispatch("on_interaction_start", read_only_view(to_dict(interaction)))
        return interaction

    def _attach_event(self, parent: Node, kind: str, name: str, **kwargs: Any) -> Event:
        interaction_id = parent.id if isinstance(parent, Interaction) else parent.interaction_id
        event = new_event(kind, name, parent.id, interaction_id, **kwargs)
        with self._open_nodes_lock:
            attach(parent.id, event, self._open_nodes)
            self._open_nodes[event.id] = event
        return event

    def _open_span(
        self,
        kind: str,
        name: str,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        input: Any = None,
        properties: Optional[Dict[str, Any]] = None,
        parent: Optional[Node] = None,
    ) -> Tuple[Optional[Event], Optional[Interaction]]:
        """Open an event under ``parent`` (the active node by default).

        Without an open parent a standalone root interaction is opened first and returned along with the event,
        it has to be finished together with the event by :meth:`_close_span`.
        """
        kwargs = dict(model=model, provider=provider, input=input, properties=properties)
        root = None
        try:
            if parent is None:
                parent = self._context.current()
            try:
                if parent is None:
                    raise InvalidParent(None)
                event = self._attach_event(parent, kind, name, **kwargs)
            except InvalidParent:
                root = self._new_root(AUTO_INTERACTION_EVENT if kind == SPAN_KIND_LLM else name)
                event = self._attach_event(root, kind, name, **kwargs)
        except Exception:
            log.debug("failed to open %s span %r", kind, name, exc_info=True)
            return None, None
        if kind == SPAN_KIND_LLM:
            self._last_event_id.set(event.id)
        return event, root

    def _close_span(
        self,
        event: Event,
        root: Optional[Interaction] = None,
        output: Any = None,
        error: Optional[ErrorRecord] = None,
    ) -> None:
        """Finish ``event``, hand it over for delivery and finish its auto-promoted root, if any."""
        try:
            self._unregister(event)
            close(event, output=output, error=error)
            record = to_dict(event)
            self._writer.enqueue(ITEM_EVENT, record)
            self._plugins.dispatch("on_span", read_only_view(record))
        except AlreadyClosed:
            log.debug("event %s is already finished", event.id)
            return
        except Exception:
            log.debug("failed to finish event %s", event.id, exc_info=True)
            return
        if root is not None:
            if root.input is None:
                root.input = event.input
            self._finish_interaction(root, event.output, event.error)

    def _finish_interaction(
        self,
        interaction: Interaction,
        output: Any = None,
        error: Optional[ErrorRecord] = None,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> None:
        try:
            if properties and not interaction.finished:
                interaction.properties.update(properties)
            self._unregister(interaction)
            close(interaction, output=output, error=error)
            record = to_dict(interaction)
            self._writer.enqueue(ITEM_INTERACTION, record)
            self._plugins.dispatch("on_interaction_end", read_only_view(record))
            self._plugins.dispatch("on_trace", read_only_view(tree_dict(interaction)))
        except AlreadyClosed:
            log.debug("interaction %s is already finished", interaction.id)
        except Exception:
            log.debug("failed to finish interaction %s", interaction.id, exc_info=True)

    def _start_span(
        self,
        kind: str,
        name: str,
        input: Any = None,
        properties: Optional[Dict[str, Any]] = None,
        parent: Optional[Node] = None,
    ) -> SpanHandle:
        if not self.enabled:
            return SpanHandle(None, None, None)
        event, root = self._open_span(kind, name, input=input, properties=properties, parent=parent)
        return SpanHandle(self, event, root)

    # interactions

    def begin(
        self,
        event: str,
        input: Any = None,
        user_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        convo_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Union[InteractionHandle, NoopInteraction]:
        """Open an interaction and make it the active node of the current execution.

        The interaction stays open until :meth:`InteractionHandle.finish` is called.
        """
        if not self.enabled:
            if self._closed:
                log.debug(TRACK_AFTER_CLOSE_DEBUG, "begin")
            return NoopInteraction(event_id)
        try:
            interaction = self._new_root(
                event,
                input=input,
                user_id=user_id,
                properties=properties,
                convo_id=convo_id,
                interaction_id=event_id,
            )
            token = self._context.push(interaction)
        except Exception:
            log.debug("failed to begin interaction %r", event, exc_info=True)
            return NoopInteraction(event_id)
        return InteractionHandle(self, interaction, token)

    @contextlib.contextmanager
    def interaction(
        self,
        event: str,
        input: Any = None,
        user_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        convo_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Iterator[Union[InteractionHandle, NoopInteraction]]:
        """Scoped form of :meth:`begin`: the interaction is finished when the block exits."""
        handle = self.begin(event, input, user_id, properties, convo_id, event_id)
        try:
            yield handle
        except BaseException as e:
            if not handle.finished:
                handle.finish(error=e)
            raise
        else:
            if not handle.finished:
                handle.finish()

    def with_interaction(
        self,
        fn: Callable[..., T],
        *args: Any,
        event: str,
        input: Any = None,
        user_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        convo_id: Optional[str] = None,
        event_id: Optional[str] = None,
        **kwargs: Any,
    ) -> T:
        """Call ``fn(*args, **kwargs)`` inside a new interaction whose output is the return value.

        For a coroutine function the returned coroutine runs the interaction when awaited.
        """
        options = dict(
            event=event, input=input, user_id=user_id, properties=properties, convo_id=convo_id, event_id=event_id
        )
        if inspect.iscoroutinefunction(fn):

            async def runner():
                with self.interaction(**options) as handle:
                    result = await fn(*args, **kwargs)
                    handle.set_output(result)
                    return result

            return runner()  # type: ignore[return-value]

        with self.interaction(**options) as handle:
            result = fn(*args, **kwargs)
            handle.set_output(result)
            return result

    def current_interaction(self) -> Optional[InteractionHandle]:
        """Return a handle of the interaction the active node belongs to, if any."""
        node = self._context.current()
        if node is None:
            return None
        if isinstance(node, Event):
            with self._open_nodes_lock:
                root = self._open_nodes.get(node.interaction_id)
            if not isinstance(root, Interaction):
                return None
            node = root
        return InteractionHandle(self, node)

    def last_event_id(self) -> Optional[str]:
        """Id of the last ``llm`` event opened in the current logical call chain."""
        return self._last_event_id.get()

    # spans

    def wrap(self, client: Any, capability: Optional[str] = None, methods: Optional[Iterable[str]] = None) -> Any:
        """Return a proxy of ``client`` recording an ``llm`` event for every call of its model methods.

        Wrapping a proxy returns it unchanged; wrapping the same client twice returns the same proxy.
        """
        if isinstance(client, TracedClient):
            return client
        if self._config.disabled:
            return client
        methods = tuple(methods) if methods is not None else None
        # an entry lives as long as its proxy, which keeps the client and so its id alive
        key = (id(client), capability, methods)
        proxy = self._wrapped.get(key)
        if proxy is None:
            proxy = wrap_client(self, client, detect_extractor(client, capability, methods))
            try:
                self._wrapped[key] = proxy
            except TypeError:
                pass
        return proxy

    def wrap_tool(self, name: str, fn: F) -> F:
        """Return ``fn`` wrapped to record one ``tool`` span per call."""
        if self._config.disabled:
            return fn
        return decorators.span_decorator(self, SPAN_KIND_TOOL, name)(fn)

    def tool(self, name: Union[str, Callable, None] = None) -> Any:
        """Decorator recording a ``tool`` span per call; usable as ``@tracer.tool`` or ``@tracer.tool("name")``."""
        return self._decorator(SPAN_KIND_TOOL, name)

    def task(self, name: Union[str, Callable, None] = None) -> Any:
        """Decorator recording a ``task`` span per call; usable as ``@tracer.task`` or ``@tracer.task("name")``."""
        return self._decorator(SPAN_KIND_TASK, name)

    def _decorator(self, kind: str, name: Union[str, Callable, None]) -> Any:
        if callable(name):
            return decorators.span_decorator(self, kind)(name)
        return decorators.span_decorator(self, kind, name)

    def tool_span(self, name: str, input: Any = None, properties: Optional[Dict[str, Any]] = None) -> SpanHandle:
        return self._start_span(SPAN_KIND_TOOL, name, input, properties)

    def task_span(self, name: str, input: Any = None, properties: Optional[Dict[str, Any]] = None) -> SpanHandle:
        return self._start_span(SPAN_KIND_TASK, name, input, properties)

    # signals

    def identify(self, user_id: str, traits: Optional[Dict[str, Any]] = None) -> None:
        if not self.enabled:
            if self._closed:
                log.debug(TRACK_AFTER_CLOSE_DEBUG, "identify")
            return
        try:
            self._writer.enqueue(ITEM_IDENTITY, Identity(user_id=user_id, traits=dict(traits or {})).to_dict())
        except Exception:
            log.debug("failed to record identity of %r", user_id, exc_info=True)

    def track_signal(
        self,
        event_id: Any,
        name: str,
        type: str = SIGNAL_TYPE_DEFAULT,
        sentiment: Optional[str] = None,
        comment: Optional[str] = None,
        after: Any = None,
        properties: Optional[Dict[str, Any]] = None,
        attachment_id: Optional[str] = None,
    ) -> None:
        """Record a signal about an event or interaction.

        ``event_id`` is an id, a handle or a value returned by a wrapped call.
        """
        if not self.enabled:
            if self._closed:
                log.debug(TRACK_AFTER_CLOSE_DEBUG, "track_signal")
            return
        target = _resolve_event_id(event_id)
        if target is None:
            log.warning("cannot record signal %r, no event id found in %r", name, event_id)
            return
        try:
            signal = Signal(
                event_id=target,
                name=name,
                type=type,
                sentiment=sentiment.upper() if isinstance(sentiment, str) else sentiment,
                comment=comment,
                after=after,
                attachment_id=attachment_id,
                properties=dict(properties or {}),
            )
        except (TypeError, ValueError):
            log.warning("invalid signal %r for event %s", name, target, exc_info=True)
            return
        try:
            self._writer.enqueue(ITEM_SIGNAL, signal.to_dict())
        except Exception:
            log.debug("failed to record signal %r", name, exc_info=True)

    def feedback(
        self,
        event_or_trace_id: Any,
        sentiment: Union[str, bool],
        comment: Optional[str] = None,
        name: str = "feedback",
        properties: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record user feedback, ``sentiment`` being ``"POSITIVE"``/``"NEGATIVE"`` or a thumbs up as a bool."""
        if isinstance(sentiment, bool):
            sentiment = SENTIMENT_POSITIVE if sentiment else SENTIMENT_NEGATIVE
        self.track_signal(
            event_or_trace_id,
            name,
            type=SIGNAL_TYPE_FEEDBACK,
            sentiment=sentiment,
            comment=comment,
            properties=properties,
        )

    # context

    def carrier(self) -> Carrier:
        return self._context.carrier()

    def run_with(self, carrier: Carrier, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self._context.run_with(carrier, fn, *args, **kwargs)

    def bind(self, fn: Callable[..., T]) -> Callable[..., T]:
        return self._context.bind(fn)

    def run_detached(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self._context.run_detached(fn, *args, **kwargs)

    # lifecycle

    def flush(self) -> None:
        """Send everything recorded so far and flush the plugins."""
        if self._closed:
            log.debug(TRACK_AFTER_CLOSE_DEBUG, "flush")
            return
        if self._config.disabled:
            return
        try:
            self._writer.flush()
        except Exception:
            log.debug("failed to flush %r", self._writer, exc_info=True)
        self._plugins.flush()

    def close(self) -> None:
        """Flush, shut the plugins down and stop delivery. Safe to call more than once."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        if self._config.disabled:
            return
        try:
            self._writer.flush()
        except Exception:
            log.debug("failed to flush %r", self._writer, exc_info=True)
        self._plugins.flush()
        self._plugins.shutdown()
        try:
            self._writer.close()
        except Exception:
            log.debug("failed to stop %r", self._writer, exc_info=True)
        atexit.unregister(self._at_exit)
        try:
            forksafe.unregister(self._child_after_fork)
        except ValueError:
            pass

    def pending(self) -> List[Node]:
        """Nodes opened and not finished yet."""
        with self._open_nodes_lock:
            return list(self._open_nodes.values())
