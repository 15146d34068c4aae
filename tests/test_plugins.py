import time
import types

import mock
import pytest

from llmtrail import Plugin
from llmtrail._plugins import PluginHub
from llmtrail._plugins import read_only_view
from llmtrail.errors import PluginHookFailure


class RecordingPlugin(Plugin):
    def __init__(self, name, calls):
        self.name = name
        self.calls = calls

    def on_interaction_start(self, interaction):
        self.calls.append((self.name, "on_interaction_start", interaction["id"]))

    def on_span(self, span):
        self.calls.append((self.name, "on_span", span["id"]))

    def flush(self):
        self.calls.append((self.name, "flush", None))

    def shutdown(self):
        self.calls.append((self.name, "shutdown", None))


class FailingPlugin(Plugin):
    name = "failing"

    def on_span(self, span):
        raise RuntimeError("plugin bug")

    def shutdown(self):
        raise RuntimeError("shutdown bug")


def test_dispatch_in_registration_order():
    calls = []
    hub = PluginHub([RecordingPlugin("a", calls), RecordingPlugin("b", calls)])
    hub.dispatch("on_span", read_only_view({"id": "e-1"}))
    assert calls == [("a", "on_span", "e-1"), ("b", "on_span", "e-1")]


def test_register():
    calls = []
    hub = PluginHub()
    assert len(hub) == 0
    plugin = RecordingPlugin("a", calls)
    hub.register(plugin)
    assert hub.plugins == [plugin]


def test_missing_hooks_are_skipped():
    class OnlyName(object):
        name = "bare"

    hub = PluginHub([OnlyName()])
    hub.dispatch("on_trace", read_only_view({"id": "i-1"}))
    hub.flush()
    hub.shutdown()


def test_failing_hook_is_isolated(mock_plugin_logs):
    calls = []
    hub = PluginHub([FailingPlugin(), RecordingPlugin("after", calls)])
    hub.dispatch("on_span", read_only_view({"id": "e-1"}))
    assert calls == [("after", "on_span", "e-1")]
    mock_plugin_logs.warning.assert_called_once_with("%s", mock.ANY, exc_info=True)
    failure = mock_plugin_logs.warning.call_args[0][1]
    assert isinstance(failure, PluginHookFailure)
    assert failure.plugin_name == "failing"
    assert failure.hook == "on_span"
    assert isinstance(failure.error, RuntimeError)


def test_read_only_view():
    record = {"id": "i-1", "properties": {"a": 1}, "attachments": [{"value": "x"}]}
    view = read_only_view(record)
    assert isinstance(view, types.MappingProxyType)
    assert isinstance(view["properties"], types.MappingProxyType)
    assert isinstance(view["attachments"], tuple)
    with pytest.raises(TypeError):
        view["id"] = "other"
    with pytest.raises(TypeError):
        view["properties"]["a"] = 2
    # the view is a copy
    record["properties"]["a"] = 3
    assert view["properties"]["a"] == 1


def test_shutdown_runs_once():
    calls = []
    hub = PluginHub([RecordingPlugin("a", calls)])
    hub.shutdown()
    hub.shutdown()
    assert calls == [("a", "shutdown", None)]


def test_shutdown_failure_is_logged(mock_plugin_logs):
    calls = []
    hub = PluginHub([FailingPlugin(), RecordingPlugin("after", calls)])
    hub.shutdown()
    assert calls == [("after", "shutdown", None)]
    mock_plugin_logs.warning.assert_called_once()


def test_flush():
    calls = []
    hub = PluginHub([RecordingPlugin("a", calls), RecordingPlugin("b", calls)])
    hub.flush()
    assert calls == [("a", "flush", None), ("b", "flush", None)]


def test_async_flush_is_awaited():
    done = []

    class AsyncPlugin(Plugin):
        name = "async"

        async def flush(self):
            done.append("flushed")

    PluginHub([AsyncPlugin()]).flush()
    assert done == ["flushed"]


def test_slow_hook_is_abandoned(mock_plugin_logs):
    class SlowPlugin(Plugin):
        name = "slow"

        def shutdown(self):
            time.sleep(1)

    hub = PluginHub([SlowPlugin()], timeout=0.05)
    start = time.monotonic()
    hub.shutdown()
    assert time.monotonic() - start < 0.9
    mock_plugin_logs.warning.assert_called_once_with(
        "plugin %r did not complete %s within %.2fs, abandoning it", "slow", "shutdown", 0.05
    )
