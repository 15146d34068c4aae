import asyncio
import concurrent.futures
import time

import pytest

from llmtrail._model import Attachment
from llmtrail._model import Signal
from llmtrail._model import add_attachment
from llmtrail._model import attach
from llmtrail._model import close
from llmtrail._model import error_from_exception
from llmtrail._model import error_from_message
from llmtrail._model import new_event
from llmtrail._model import new_interaction
from llmtrail._model import to_dict
from llmtrail._model import tree_dict
from llmtrail.errors import AlreadyClosed
from llmtrail.errors import InvalidParent


def _open_tree():
    interaction = new_interaction("rag_query", input="what is the capital of France?", user_id="u-1")
    open_nodes = {interaction.id: interaction}
    return interaction, open_nodes


def _child(parent, open_nodes, kind="tool", name="search"):
    interaction_id = getattr(parent, "interaction_id", parent.id)
    event = new_event(kind, name, parent.id, interaction_id)
    attach(parent.id, event, open_nodes)
    open_nodes[event.id] = event
    return event


def test_new_interaction_defaults():
    properties = {"tier": "free"}
    interaction = new_interaction("rag_query", properties=properties)
    assert len(interaction.id) == 32
    assert interaction.event == "rag_query"
    assert interaction.properties == {"tier": "free"}
    assert interaction.properties is not properties
    assert interaction.children == []
    assert not interaction.finished
    assert interaction.start_ns <= time.time_ns()


def test_new_interaction_with_id():
    interaction = new_interaction("chat", interaction_id="my-id", convo_id="c-1")
    assert interaction.id == "my-id"
    assert interaction.convo_id == "c-1"


def test_new_event_invalid_kind():
    with pytest.raises(ValueError):
        new_event("retrieval", "search", "parent", "root")


def test_ids_are_unique():
    ids = {new_event("llm", "call", "p", "r").id for _ in range(100)}
    assert len(ids) == 100


def test_close_event():
    interaction, open_nodes = _open_tree()
    event = _child(interaction, open_nodes, kind="llm", name="chat")
    close(event, output="Paris")
    assert event.finished
    assert event.output == "Paris"
    assert event.end_ns >= event.start_ns
    assert event.latency_ms is not None and event.latency_ms >= 0


def test_close_twice_raises():
    interaction, _ = _open_tree()
    close(interaction, output="done")
    with pytest.raises(AlreadyClosed) as e:
        close(interaction, output="again")
    assert e.value.node_id == interaction.id
    assert interaction.output == "done"


def test_close_keeps_earlier_output():
    interaction, _ = _open_tree()
    interaction.output = "set while open"
    close(interaction)
    assert interaction.output == "set while open"


def test_close_with_error():
    interaction, open_nodes = _open_tree()
    event = _child(interaction, open_nodes)
    close(event, error=error_from_message("boom"))
    assert to_dict(event)["status"] == "error"
    assert to_dict(event)["error"]["message"] == "boom"


def test_attach_requires_open_parent():
    interaction, open_nodes = _open_tree()
    with pytest.raises(InvalidParent):
        attach("unknown", new_event("tool", "t", "unknown", interaction.id), open_nodes)
    with pytest.raises(InvalidParent):
        attach(None, new_event("tool", "t", interaction.id, interaction.id), open_nodes)

    close(interaction)
    with pytest.raises(InvalidParent) as e:
        attach(interaction.id, new_event("tool", "t", interaction.id, interaction.id), open_nodes)
    assert e.value.parent_id == interaction.id


def test_children_keep_open_order():
    interaction, open_nodes = _open_tree()
    first = _child(interaction, open_nodes, name="first")
    second = _child(interaction, open_nodes, name="second")
    third = _child(interaction, open_nodes, name="third")
    # completion order differs from open order
    close(third)
    close(first)
    close(second)
    assert [c.name for c in interaction.children] == ["first", "second", "third"]
    assert to_dict(interaction)["event_ids"] == [first.id, second.id, third.id]


def test_nested_event_ids():
    interaction, open_nodes = _open_tree()
    task = _child(interaction, open_nodes, kind="task", name="retrieve")
    tool = _child(task, open_nodes, kind="tool", name="search")
    assert tool.parent_id == task.id
    assert tool.interaction_id == interaction.id
    assert task.children == [tool]


def test_attachments():
    interaction, open_nodes = _open_tree()
    add_attachment(interaction, {"type": "code", "value": "print(1)", "language": "python"})
    add_attachment(interaction, Attachment(value="https://example.com/a.png", type="image", role="output"))
    assert [a.to_dict() for a in interaction.attachments] == [
        {"type": "code", "role": "input", "value": "print(1)", "language": "python"},
        {"type": "image", "role": "output", "value": "https://example.com/a.png"},
    ]
    close(interaction)
    with pytest.raises(AlreadyClosed):
        add_attachment(interaction, {"value": "late"})


def test_attachment_invalid_role():
    with pytest.raises(ValueError):
        Attachment(value="x", role="sideways")


def test_error_from_exception():
    try:
        raise ValueError("bad input")
    except ValueError as e:
        error = error_from_exception(e)
    assert error["kind"] == "exception"
    assert error["type"] == "builtins.ValueError"
    assert error["message"] == "bad input"
    assert "ValueError: bad input" in error["stack"]


@pytest.mark.parametrize("exc", [asyncio.CancelledError(), concurrent.futures.CancelledError()])
def test_error_from_cancellation(exc):
    assert error_from_exception(exc)["kind"] == "cancelled"


def test_event_to_dict():
    interaction, open_nodes = _open_tree()
    event = _child(interaction, open_nodes, kind="llm", name="openai.chat.completions.create")
    event.model = "gpt-4o"
    event.provider = "openai"
    event.input = "hi"
    event.usage = {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5}
    close(event, output="hello")
    record = to_dict(event)
    assert record["id"] == event.id
    assert record["parent_id"] == interaction.id
    assert record["interaction_id"] == interaction.id
    assert record["kind"] == "llm"
    assert record["status"] == "ok"
    assert record["model"] == "gpt-4o"
    assert record["provider"] == "openai"
    assert record["input"] == "hi"
    assert record["output"] == "hello"
    assert record["usage"] == {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5}
    assert record["latency_ms"] >= 0
    assert "error" not in record


def test_interaction_to_dict():
    interaction, _ = _open_tree()
    interaction.properties["plan"] = "pro"
    close(interaction, output="Paris")
    record = to_dict(interaction)
    assert record["event"] == "rag_query"
    assert record["user_id"] == "u-1"
    assert record["input"] == "what is the capital of France?"
    assert record["output"] == "Paris"
    assert record["properties"] == {"plan": "pro"}
    assert record["event_ids"] == []
    assert "convo_id" not in record


def test_tree_dict():
    interaction, open_nodes = _open_tree()
    task = _child(interaction, open_nodes, kind="task", name="retrieve")
    _child(task, open_nodes, kind="tool", name="search")
    _child(interaction, open_nodes, kind="llm", name="answer")
    tree = tree_dict(interaction)
    assert "event_ids" not in tree
    assert [c["name"] for c in tree["children"]] == ["retrieve", "answer"]
    assert [c["name"] for c in tree["children"][0]["children"]] == ["search"]
    assert tree["children"][1]["children"] == []


def test_signal_validation():
    with pytest.raises(ValueError):
        Signal(event_id="e", name="thumbs", sentiment="MEH")
    with pytest.raises(ValueError):
        Signal(event_id="e", name="thumbs", type="like")


def test_signal_to_dict():
    signal = Signal(event_id="e-1", name="edit", type="edit", after="fixed text", comment="typo")
    record = signal.to_dict()
    assert record["event_id"] == "e-1"
    assert record["type"] == "edit"
    assert record["after"] == "fixed text"
    assert record["comment"] == "typo"
    assert record["sentiment"] is None
    assert "attachment_id" not in record
    assert isinstance(record["timestamp_ms"], int)
