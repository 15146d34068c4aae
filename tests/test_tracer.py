import asyncio
import threading

import mock
import pytest

from llmtrail import InteractionHandle
from llmtrail import NoopInteraction
from llmtrail import Plugin
from llmtrail import Tracer
from llmtrail._constants import TRACK_AFTER_CLOSE_DEBUG
from tests._utils import FakeOpenAI
from tests._utils import TestDeliveryWriter


MESSAGES = [{"role": "user", "content": "What is the capital of France?"}]


class RecordingPlugin(Plugin):
    name = "recording"

    def __init__(self):
        self.calls = []
        self.traces = []

    def on_interaction_start(self, interaction):
        self.calls.append(("on_interaction_start", interaction["id"]))

    def on_interaction_end(self, interaction):
        self.calls.append(("on_interaction_end", interaction["id"]))

    def on_span(self, span):
        self.calls.append(("on_span", span["id"]))

    def on_trace(self, trace):
        self.calls.append(("on_trace", trace["id"]))
        self.traces.append(trace)

    def flush(self):
        self.calls.append(("flush", None))

    def shutdown(self):
        self.calls.append(("shutdown", None))


class BrokenPlugin(Plugin):
    name = "broken"

    def on_span(self, span):
        raise RuntimeError("plugin bug")

    def on_trace(self, trace):
        raise RuntimeError("plugin bug")


@pytest.fixture
def recording_plugin():
    return RecordingPlugin()


@pytest.fixture
def plugins(recording_plugin):
    return [recording_plugin]


def test_begin_and_finish(tracer, writer):
    handle = tracer.begin("rag_query", input="q", user_id="u-1", properties={"plan": "pro"}, convo_id="c-1")
    assert isinstance(handle, InteractionHandle)
    assert tracer.current_interaction().id == handle.id
    handle.set_property("lang", "en")
    handle.finish(output="a", properties={"score": 1})

    assert handle.finished
    assert tracer.current_interaction() is None
    (record,) = writer.interactions()
    assert record["id"] == handle.id
    assert record["event"] == "rag_query"
    assert record["input"] == "q"
    assert record["output"] == "a"
    assert record["user_id"] == "u-1"
    assert record["convo_id"] == "c-1"
    assert record["properties"] == {"plan": "pro", "lang": "en", "score": 1}
    assert record["end_ns"] >= record["start_ns"]
    assert tracer.pending() == []


def test_begin_with_event_id(tracer, writer):
    handle = tracer.begin("chat", event_id="my-interaction")
    handle.finish()
    assert handle.id == "my-interaction"
    assert writer.interactions()[0]["id"] == "my-interaction"


def test_finish_twice(tracer, writer, mock_tracer_logs):
    handle = tracer.begin("chat")
    handle.finish(output="first")
    handle.finish(output="second")
    handle.set_output("late")
    (record,) = writer.interactions()
    assert record["output"] == "first"
    assert handle.interaction.output == "first"


def test_output_set_before_finish(tracer, writer):
    with tracer.interaction("chat") as handle:
        handle.set_input("question")
        handle.set_output("answer")
    (record,) = writer.interactions()
    assert record["input"] == "question"
    assert record["output"] == "answer"


def test_interaction_context_manager_error(tracer, writer):
    with pytest.raises(KeyError):
        with tracer.interaction("chat"):
            raise KeyError("missing")
    (record,) = writer.interactions()
    assert record["error"]["type"] == "builtins.KeyError"
    assert tracer.current_interaction() is None


def test_handle_context_manager(tracer, writer):
    with tracer.begin("chat") as handle:
        handle.set_output("done")
    assert handle.finished
    assert writer.interactions()[0]["output"] == "done"


def test_with_interaction(tracer, writer):
    def answer(question, suffix="!"):
        return "Paris" + suffix

    result = tracer.with_interaction(answer, "capital?", event="qa", input="capital?", suffix=".")
    assert result == "Paris."
    (record,) = writer.interactions()
    assert record["event"] == "qa"
    assert record["input"] == "capital?"
    assert record["output"] == "Paris."


@pytest.mark.asyncio
async def test_with_interaction_async(tracer, writer):
    client = tracer.wrap(FakeOpenAI())

    async def answer(question):
        await asyncio.sleep(0)
        resp = client.chat.completions.create(model="gpt-4o", messages=[{"role": "user", "content": question}])
        return resp.choices[0].message.content

    result = await tracer.with_interaction(answer, "capital?", event="qa", user_id="u-1")
    assert result == "Paris is the capital of France."
    (record,) = writer.interactions()
    (event,) = writer.events()
    assert record["output"] == result
    assert event["parent_id"] == record["id"]


def test_current_interaction_from_span(tracer):
    with tracer.interaction("chat") as handle:
        with tracer.tool_span("search"):
            current = tracer.current_interaction()
            assert current.id == handle.id
            assert len(tracer.pending()) == 2
    assert tracer.current_interaction() is None


def test_identify(tracer, writer):
    tracer.identify("u-1", {"plan": "pro"})
    (identity,) = writer.identities()
    assert identity["user_id"] == "u-1"
    assert identity["traits"] == {"plan": "pro"}
    assert isinstance(identity["timestamp_ms"], int)


def test_track_signal(tracer, writer):
    tracer.track_signal("e-1", "copied", sentiment="positive", properties={"source": "ui"})
    tracer.track_signal("e-2", "edited", type="edit", after="better answer", comment="fixed a typo")
    copied, edited = writer.signals()
    assert copied["event_id"] == "e-1"
    assert copied["sentiment"] == "POSITIVE"
    assert copied["type"] == "default"
    assert copied["properties"] == {"source": "ui"}
    assert edited["type"] == "edit"
    assert edited["after"] == "better answer"
    assert edited["comment"] == "fixed a typo"


def test_feedback_on_response(tracer, writer):
    client = tracer.wrap(FakeOpenAI())
    resp = client.chat.completions.create(model="gpt-4o", messages=MESSAGES)
    tracer.feedback(resp, True, comment="great")
    (event,) = writer.events()
    (signal,) = writer.signals()
    assert signal["event_id"] == event["id"]
    assert signal["name"] == "feedback"
    assert signal["type"] == "feedback"
    assert signal["sentiment"] == "POSITIVE"
    assert signal["comment"] == "great"


def test_feedback_on_interaction(tracer, writer):
    with tracer.interaction("chat") as handle:
        pass
    tracer.feedback(handle, "negative", name="thumbs")
    tracer.feedback(handle.id, False)
    first, second = writer.signals()
    assert first["event_id"] == second["event_id"] == handle.id
    assert first["name"] == "thumbs"
    assert first["sentiment"] == second["sentiment"] == "NEGATIVE"


def test_invalid_signal(tracer, writer, mock_tracer_logs):
    tracer.feedback("e-1", "meh")
    mock_tracer_logs.warning.assert_called_once_with("invalid signal %r for event %s", "feedback", "e-1", exc_info=True)
    assert writer.signals() == []


def test_signal_without_event_id(tracer, writer, mock_tracer_logs):
    tracer.feedback(object(), True)
    mock_tracer_logs.warning.assert_called_once()
    assert writer.signals() == []


def test_disabled_tracer(disabled_tracer, writer):
    handle = disabled_tracer.begin("chat", event_id="abc")
    assert isinstance(handle, NoopInteraction)
    assert handle.id == "abc"
    handle.set_output("x")
    with handle.task_span("plan") as span:
        span.set_output("y")
    handle.finish()
    with disabled_tracer.interaction("chat"):
        pass
    disabled_tracer.identify("u-1")
    disabled_tracer.feedback("e-1", True)
    disabled_tracer.flush()
    assert disabled_tracer.current_interaction() is None
    assert writer.items == []
    assert not disabled_tracer.enabled


def test_disabled_from_env(monkeypatch, writer):
    monkeypatch.setenv("LLMTRAIL_DISABLED", "true")
    t = Tracer(api_key="<not-a-real-api-key>", _writer=writer)
    assert not t.enabled
    assert isinstance(t.begin("chat"), NoopInteraction)
    t.close()


def test_missing_api_key_warning(monkeypatch, writer, mock_tracer_logs):
    monkeypatch.delenv("LLMTRAIL_API_KEY", raising=False)
    monkeypatch.delenv("LLMTRAIL_WRITE_KEY", raising=False)
    t = Tracer(_writer=writer)
    mock_tracer_logs.warning.assert_called_once()
    t.close()


def test_config_overrides(writer):
    t = Tracer(api_key="k", batch_size=5, flush_interval=0.5, retry_attempts=0, _writer=writer)
    assert t.config.batch_size == 5
    assert t.config.flush_interval == 0.5
    assert t.config.retry_attempts == 0
    t.close()


def test_invalid_config():
    with pytest.raises(ValueError):
        Tracer(api_key="k", batch_size=0)


def test_close_delivers_to_collector(collector, recording_plugin):
    t = Tracer(api_key="<not-a-real-api-key>", base_url=collector.base_url, plugins=[recording_plugin])
    with t.interaction("chat"):
        with t.tool_span("search"):
            pass
    t.feedback(t.last_event_id() or "e-1", True)
    t.close()
    t.close()

    payloads = collector.payloads()
    assert sum(len(p["interactions"]) for p in payloads) == 1
    assert sum(len(p["events"]) for p in payloads) == 1
    assert sum(len(p["signals"]) for p in payloads) == 1
    assert recording_plugin.calls.count(("shutdown", None)) == 1
    assert recording_plugin.calls[-2:] == [("flush", None), ("shutdown", None)]
    assert collector.requests[0]["headers"]["Authorization"] == "Bearer <not-a-real-api-key>"


def test_write_key_alias(collector):
    t = Tracer(write_key="<legacy-key>", base_url=collector.base_url)
    t.identify("u-1")
    t.close()
    assert collector.requests[0]["headers"]["Authorization"] == "Bearer <legacy-key>"


def test_calls_after_close(tracer, writer, mock_tracer_logs):
    tracer.close()
    assert not tracer.enabled
    assert isinstance(tracer.begin("chat"), NoopInteraction)
    mock_tracer_logs.debug.assert_called_once_with(TRACK_AFTER_CLOSE_DEBUG, "begin")
    tracer.identify("u-1")
    tracer.flush()
    assert writer.items == []


def test_tracer_context_manager(writer):
    with Tracer(api_key="k", _writer=writer) as t:
        with t.interaction("chat"):
            pass
    assert not t.enabled
    assert writer.closed
    assert len(writer.payloads) == 1


def test_flush(tracer, writer):
    with tracer.interaction("chat"):
        pass
    tracer.flush()
    assert len(writer.payloads) == 1
    assert len(writer.payloads[0]["interactions"]) == 1


def test_plugin_hooks(tracer, recording_plugin):
    with tracer.interaction("rag_query") as handle:
        with tracer.task_span("retrieve") as task:
            with tracer.tool_span("search") as search:
                pass

    assert recording_plugin.calls == [
        ("on_interaction_start", handle.id),
        ("on_span", search.id),
        ("on_span", task.id),
        ("on_interaction_end", handle.id),
        ("on_trace", handle.id),
    ]
    (trace,) = recording_plugin.traces
    assert trace["event"] == "rag_query"
    (retrieve,) = trace["children"]
    assert retrieve["name"] == "retrieve"
    assert [c["name"] for c in retrieve["children"]] == ["search"]


@pytest.mark.parametrize("plugins", [[BrokenPlugin()]])
def test_broken_plugin_does_not_break_tracing(tracer, writer, mock_plugin_logs):
    with tracer.interaction("chat"):
        with tracer.tool_span("search"):
            pass
    assert len(writer.events()) == 1
    assert len(writer.interactions()) == 1
    assert mock_plugin_logs.warning.call_count == 2


def test_run_with_carrier(tracer, writer):
    results = []
    with tracer.interaction("chat") as handle:
        carrier = tracer.carrier()

        def work():
            with tracer.tool_span("search"):
                pass

        t = threading.Thread(target=lambda: results.append(tracer.run_with(carrier, work)))
        t.start()
        t.join()

    (event,) = writer.events()
    assert event["parent_id"] == handle.id


def test_bind(tracer, writer):
    with tracer.interaction("chat") as handle:
        work = tracer.bind(lambda: tracer.tool_span("search").finish(output="ok"))
        t = threading.Thread(target=work)
        t.start()
        t.join()
    (event,) = writer.events()
    assert event["parent_id"] == handle.id
    assert event["output"] == "ok"


def test_run_detached(tracer, writer):
    client = tracer.wrap(FakeOpenAI())
    with tracer.interaction("chat") as handle:
        tracer.run_detached(client.chat.completions.create, model="gpt-4o", messages=MESSAGES)

    (event,) = writer.events()
    assert event["parent_id"] != handle.id
    auto, chat = writer.interactions()
    assert auto["event"] == "llm_call"
    assert event["parent_id"] == auto["id"]
    assert chat["id"] == handle.id
    assert chat["event_ids"] == []


@pytest.mark.asyncio
async def test_concurrent_interactions(tracer, writer):
    @tracer.tool("lookup")
    async def lookup(key):
        await asyncio.sleep(0.01)
        return key

    async def handle_request(i):
        with tracer.interaction("request-%d" % i) as handle:
            await lookup(i)
            return handle.id

    ids = await asyncio.gather(*(handle_request(i) for i in range(10)))
    by_parent = {e["parent_id"]: e["input"]["key"] for e in writer.events()}
    assert by_parent == {interaction_id: i for i, interaction_id in enumerate(ids)}


def test_rag_query(tracer, writer):
    client = tracer.wrap(FakeOpenAI())

    @tracer.tool("search_docs")
    def search_docs(query):
        return ["Paris is the capital and largest city of France."]

    question = "What is the capital of France?"
    with tracer.interaction("rag_query", input=question, user_id="u-42") as handle:
        docs = search_docs(question)
        resp = client.chat.completions.create(
            model="gpt-4o",
            messages=[
                {"role": "system", "content": "Answer using: " + docs[0]},
                {"role": "user", "content": question},
            ],
        )
        handle.set_output(resp.choices[0].message.content)
    tracer.feedback(resp, "POSITIVE")
    tracer.flush()

    (payload,) = writer.payloads
    (interaction,) = payload["interactions"]
    search, llm = payload["events"]
    (signal,) = payload["signals"]
    assert interaction["event"] == "rag_query"
    assert interaction["user_id"] == "u-42"
    assert interaction["output"] == "Paris is the capital of France."
    assert interaction["event_ids"] == [search["id"], llm["id"]]
    assert search["kind"] == "tool"
    assert search["output"] == docs
    assert llm["kind"] == "llm"
    assert llm["input"] == question
    assert llm["usage"]["total_tokens"] == 15
    assert signal["event_id"] == llm["id"]
    assert signal["sentiment"] == "POSITIVE"


def test_child_after_fork(tracer, writer):
    handle = tracer.begin("chat")
    tracer._child_after_fork()
    new_writer = tracer.writer
    assert new_writer is not writer
    assert isinstance(new_writer, TestDeliveryWriter)
    assert tracer.pending() == []
    handle.finish()
    writer.stop()
    writer.join()


def test_on_error_callback(writer):
    on_error = mock.Mock()
    t = Tracer(on_error=on_error, _writer=writer)
    assert t._new_writer()._on_error is on_error
    t.close()
