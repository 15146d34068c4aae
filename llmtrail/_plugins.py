import asyncio
import copy
import inspect
import threading
import types
from typing import Any
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional
from typing import Set

from llmtrail.errors import PluginHookFailure
from llmtrail.internal.logger import get_logger


log = get_logger(__name__)

HOOKS = ("on_interaction_start", "on_interaction_end", "on_span", "on_trace", "flush", "shutdown")


class Plugin(object):
    """Base class for plugins.

    Subclasses override any of the hooks. Any object exposing a ``name`` and some of these methods is accepted as a
    plugin too. Hooks receive read-only views and their return values are ignored.
    """

    name = "plugin"

    def on_interaction_start(self, interaction: Mapping[str, Any]) -> None:
        pass

    def on_interaction_end(self, interaction: Mapping[str, Any]) -> None:
        pass

    def on_span(self, span: Mapping[str, Any]) -> None:
        pass

    def on_trace(self, trace: Mapping[str, Any]) -> None:
        pass

    def flush(self) -> None:
        pass

    def shutdown(self) -> None:
        pass


def _freeze(value):
    if isinstance(value, dict):
        return types.MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def read_only_view(record: Mapping[str, Any]) -> Mapping[str, Any]:
    """Deep, immutable copy of a node record handed to plugin hooks."""
    return _freeze(copy.deepcopy(dict(record)))


def _plugin_name(plugin: Any) -> str:
    return getattr(plugin, "name", None) or type(plugin).__name__


def _run_to_completion(result: Any) -> None:
    if inspect.iscoroutine(result):
        asyncio.run(result)


class PluginHub(object):
    """Ordered registry of plugins and dispatcher of their lifecycle hooks.

    A failing hook is logged and skipped: the remaining plugins still run and nothing is raised to the caller.
    """

    def __init__(self, plugins: Optional[Iterable[Any]] = None, timeout: float = 2.0) -> None:
        self._plugins: List[Any] = list(plugins or [])
        self._timeout = timeout
        self._shut_down: Set[int] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._plugins)

    @property
    def plugins(self) -> List[Any]:
        return list(self._plugins)

    def register(self, plugin: Any) -> None:
        self._plugins.append(plugin)

    def dispatch(self, hook: str, view: Mapping[str, Any]) -> None:
        """Invoke ``hook`` on every plugin, in registration order."""
        for plugin in self._plugins:
            fn = getattr(plugin, hook, None)
            if fn is None:
                continue
            try:
                fn(view)
            except Exception as e:
                failure = PluginHookFailure(_plugin_name(plugin), hook, e)
                log.warning("%s", failure, exc_info=True)

    def flush(self) -> None:
        for plugin in self._plugins:
            self._call_bounded(plugin, "flush")

    def shutdown(self) -> None:
        """Invoke every plugin's ``shutdown`` hook, at most once per plugin."""
        for plugin in self._plugins:
            with self._lock:
                if id(plugin) in self._shut_down:
                    continue
                self._shut_down.add(id(plugin))
            self._call_bounded(plugin, "shutdown")

    def _call_bounded(self, plugin: Any, hook: str) -> bool:
        """Run a plugin hook on a worker thread, abandoning it after the configured timeout."""
        fn = getattr(plugin, hook, None)
        if fn is None:
            return True
        name = _plugin_name(plugin)

        def target():
            try:
                _run_to_completion(fn())
            except Exception as e:
                log.warning("%s", PluginHookFailure(name, hook, e), exc_info=True)

        worker = threading.Thread(target=target, name="llmtrail:plugin:%s:%s" % (name, hook), daemon=True)
        worker.start()
        worker.join(self._timeout)
        if worker.is_alive():
            log.warning("plugin %r did not complete %s within %.2fs, abandoning it", name, hook, self._timeout)
            return False
        return True
