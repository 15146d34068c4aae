"""Event tree model.

An :class:`Interaction` is the root of a tree of :class:`Event` nodes. Children are appended to their parent when
they are opened, so siblings keep call order whatever order they complete in. Nodes are mutable while open and
become immutable once closed; the functions of this module enforce that with :class:`~llmtrail.errors.AlreadyClosed`
and :class:`~llmtrail.errors.InvalidParent`.
"""
import asyncio
import concurrent.futures
import time
import traceback
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Union
import uuid

import attr

from llmtrail._constants import ATTACHMENT_ROLES
from llmtrail._constants import ERROR_KIND_CANCELLED
from llmtrail._constants import ERROR_KIND_EXCEPTION
from llmtrail._constants import SENTIMENTS
from llmtrail._constants import SIGNAL_TYPES
from llmtrail._constants import SPAN_KINDS
from llmtrail._utils import now_ms
from llmtrail._utils import to_jsonable
from llmtrail.errors import AlreadyClosed
from llmtrail.errors import InvalidParent
from llmtrail.types import AttachmentRecord
from llmtrail.types import ErrorRecord
from llmtrail.types import EventRecord
from llmtrail.types import IdentityRecord
from llmtrail.types import InteractionRecord
from llmtrail.types import SignalRecord
from llmtrail.types import Usage


_CANCELLED_ERRORS = (asyncio.CancelledError, concurrent.futures.CancelledError)


def _new_id() -> str:
    return uuid.uuid4().hex


@attr.s(frozen=True)
class Attachment(object):
    value = attr.ib(type=str)
    type = attr.ib(type=str, default="text")
    role = attr.ib(type=str, default="input", validator=attr.validators.in_(ATTACHMENT_ROLES))
    language = attr.ib(type=Optional[str], default=None)
    name = attr.ib(type=Optional[str], default=None)

    @classmethod
    def from_dict(cls, data):
        # type: (Union[Attachment, Mapping[str, Any]]) -> Attachment
        if isinstance(data, Attachment):
            return data
        return cls(
            value=data["value"],
            type=data.get("type", "text"),
            role=data.get("role", "input"),
            language=data.get("language"),
            name=data.get("name"),
        )

    def to_dict(self) -> AttachmentRecord:
        record: AttachmentRecord = {"type": self.type, "role": self.role, "value": self.value}
        if self.language is not None:
            record["language"] = self.language
        if self.name is not None:
            record["name"] = self.name
        return record


@attr.s(eq=False)
class Event(object):
    """A single operation: an LLM call, a tool call or a task."""

    kind = attr.ib(type=str, validator=attr.validators.in_(SPAN_KINDS))
    name = attr.ib(type=str)
    parent_id = attr.ib(type=str)
    interaction_id = attr.ib(type=str)
    id = attr.ib(type=str, factory=_new_id)
    model = attr.ib(type=Optional[str], default=None)
    provider = attr.ib(type=Optional[str], default=None)
    input = attr.ib(type=Any, default=None)
    output = attr.ib(type=Any, default=None)
    usage = attr.ib(type=Optional[Usage], default=None)
    error = attr.ib(type=Optional[ErrorRecord], default=None)
    properties = attr.ib(type=Dict[str, Any], factory=dict)
    attachments = attr.ib(type=List[Attachment], factory=list)
    children = attr.ib(type=List["Event"], factory=list, repr=False)
    start_ns = attr.ib(type=int, factory=time.time_ns)
    end_ns = attr.ib(type=Optional[int], default=None)
    _start_monotonic = attr.ib(type=int, factory=time.monotonic_ns, repr=False)
    _duration_ns = attr.ib(type=Optional[int], default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.end_ns is not None

    @property
    def latency_ms(self) -> Optional[float]:
        if self._duration_ns is None:
            return None
        return self._duration_ns / 1e6


@attr.s(eq=False)
class Interaction(object):
    """Root node grouping every event of one user-facing operation."""

    event = attr.ib(type=str)
    id = attr.ib(type=str, factory=_new_id)
    user_id = attr.ib(type=Optional[str], default=None)
    convo_id = attr.ib(type=Optional[str], default=None)
    input = attr.ib(type=Any, default=None)
    output = attr.ib(type=Any, default=None)
    error = attr.ib(type=Optional[ErrorRecord], default=None)
    properties = attr.ib(type=Dict[str, Any], factory=dict)
    attachments = attr.ib(type=List[Attachment], factory=list)
    children = attr.ib(type=List[Event], factory=list, repr=False)
    start_ns = attr.ib(type=int, factory=time.time_ns)
    end_ns = attr.ib(type=Optional[int], default=None)

    @property
    def finished(self) -> bool:
        return self.end_ns is not None


Node = Union[Interaction, Event]


@attr.s(frozen=True)
class Signal(object):
    event_id = attr.ib(type=str)
    name = attr.ib(type=str)
    type = attr.ib(type=str, default="default", validator=attr.validators.in_(SIGNAL_TYPES))
    sentiment = attr.ib(
        type=Optional[str], default=None, validator=attr.validators.optional(attr.validators.in_(SENTIMENTS))
    )
    comment = attr.ib(type=Optional[str], default=None)
    after = attr.ib(type=Any, default=None)
    attachment_id = attr.ib(type=Optional[str], default=None)
    properties = attr.ib(type=Dict[str, Any], factory=dict)
    timestamp_ms = attr.ib(type=int, factory=now_ms)

    def to_dict(self) -> SignalRecord:
        record: SignalRecord = {
            "event_id": self.event_id,
            "name": self.name,
            "type": self.type,
            "sentiment": self.sentiment,
            "properties": to_jsonable(self.properties),
            "timestamp_ms": self.timestamp_ms,
        }
        if self.comment is not None:
            record["comment"] = self.comment
        if self.after is not None:
            record["after"] = to_jsonable(self.after)
        if self.attachment_id is not None:
            record["attachment_id"] = self.attachment_id
        return record


@attr.s(frozen=True)
class Identity(object):
    user_id = attr.ib(type=str)
    traits = attr.ib(type=Dict[str, Any], factory=dict)
    timestamp_ms = attr.ib(type=int, factory=now_ms)

    def to_dict(self) -> IdentityRecord:
        return {"user_id": self.user_id, "traits": to_jsonable(self.traits), "timestamp_ms": self.timestamp_ms}


def new_interaction(
    event: str,
    input: Any = None,
    user_id: Optional[str] = None,
    properties: Optional[Dict[str, Any]] = None,
    convo_id: Optional[str] = None,
    interaction_id: Optional[str] = None,
) -> Interaction:
    kwargs: Dict[str, Any] = {}
    if interaction_id:
        kwargs["id"] = interaction_id
    return Interaction(
        event=event,
        input=input,
        user_id=user_id,
        convo_id=convo_id,
        properties=dict(properties or {}),
        **kwargs,
    )


def new_event(
    kind: str,
    name: str,
    parent_id: str,
    interaction_id: str,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    input: Any = None,
    properties: Optional[Dict[str, Any]] = None,
) -> Event:
    return Event(
        kind=kind,
        name=name,
        parent_id=parent_id,
        interaction_id=interaction_id,
        model=model,
        provider=provider,
        input=input,
        properties=dict(properties or {}),
    )


def check_open(node: Node) -> None:
    if node.finished:
        raise AlreadyClosed(node.id)


def close(node: Node, output: Any = None, error: Optional[ErrorRecord] = None) -> Node:
    """Finish ``node``, recording its output or error.

    ``output=None`` keeps any output recorded earlier.
    """
    check_open(node)
    if output is not None:
        node.output = output
    if error is not None:
        node.error = error
    if isinstance(node, Event):
        node._duration_ns = max(time.monotonic_ns() - node._start_monotonic, 0)
        node.end_ns = node.start_ns + node._duration_ns
    else:
        node.end_ns = max(time.time_ns(), node.start_ns)
    return node


def attach(parent_id: Optional[str], child: Event, open_nodes: Mapping[str, Node]) -> Node:
    """Append ``child`` to the open node registered under ``parent_id`` and return that parent."""
    parent = open_nodes.get(parent_id) if parent_id is not None else None
    if parent is None or parent.finished:
        raise InvalidParent(parent_id)
    parent.children.append(child)
    return parent


def add_attachment(node: Node, attachment: Union[Attachment, Mapping[str, Any]]) -> None:
    check_open(node)
    node.attachments.append(Attachment.from_dict(attachment))


def error_from_exception(exc: BaseException) -> ErrorRecord:
    kind = ERROR_KIND_CANCELLED if isinstance(exc, _CANCELLED_ERRORS) else ERROR_KIND_EXCEPTION
    return {
        "kind": kind,
        "type": "%s.%s" % (type(exc).__module__, type(exc).__name__),
        "message": str(exc),
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


def error_from_message(message: str) -> ErrorRecord:
    return {"kind": ERROR_KIND_EXCEPTION, "type": "error", "message": message}


def to_dict(node: Node) -> Union[InteractionRecord, EventRecord]:
    """Flat delivery record of ``node``; children are referenced by id through their ``parent_id``."""
    if isinstance(node, Interaction):
        record: InteractionRecord = {
            "id": node.id,
            "event": node.event,
            "start_ns": node.start_ns,
            "properties": to_jsonable(node.properties),
            "attachments": [a.to_dict() for a in node.attachments],
            "event_ids": [c.id for c in node.children],
        }
        for key in ("user_id", "convo_id", "end_ns"):
            value = getattr(node, key)
            if value is not None:
                record[key] = value  # type: ignore[literal-required]
        if node.input is not None:
            record["input"] = to_jsonable(node.input)
        if node.output is not None:
            record["output"] = to_jsonable(node.output)
        if node.error is not None:
            record["error"] = dict(node.error)  # type: ignore[typeddict-item]
        return record

    event: EventRecord = {
        "id": node.id,
        "parent_id": node.parent_id,
        "interaction_id": node.interaction_id,
        "kind": node.kind,
        "name": node.name,
        "start_ns": node.start_ns,
        "status": "error" if node.error else "ok",
        "properties": to_jsonable(node.properties),
        "attachments": [a.to_dict() for a in node.attachments],
    }
    for key in ("model", "provider", "end_ns", "latency_ms"):
        value = getattr(node, key)
        if value is not None:
            event[key] = value  # type: ignore[literal-required]
    if node.input is not None:
        event["input"] = to_jsonable(node.input)
    if node.output is not None:
        event["output"] = to_jsonable(node.output)
    if node.usage:
        event["usage"] = dict(node.usage)  # type: ignore[typeddict-item]
    if node.error is not None:
        event["error"] = dict(node.error)  # type: ignore[typeddict-item]
    return event


def tree_dict(node: Node) -> Dict[str, Any]:
    """Nested representation of ``node`` and all of its descendants."""
    data: Dict[str, Any] = dict(to_dict(node))
    data.pop("event_ids", None)
    data["children"] = [tree_dict(c) for c in node.children]
    return data
