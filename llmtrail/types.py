from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import TypedDict


class AttachmentRecord(TypedDict, total=False):
    type: str
    role: str
    value: str
    language: str
    name: str


class ErrorRecord(TypedDict, total=False):
    kind: str
    type: str
    message: str
    stack: str


class Usage(TypedDict, total=False):
    input_tokens: int
    output_tokens: int
    total_tokens: int


class _InteractionRecordOptional(TypedDict, total=False):
    user_id: str
    convo_id: str
    input: Any
    output: Any
    error: ErrorRecord
    end_ns: int
    collection_errors: List[str]


class InteractionRecord(_InteractionRecordOptional):
    id: str
    event: str
    start_ns: int
    properties: Dict[str, Any]
    attachments: List[AttachmentRecord]
    event_ids: List[str]


class _EventRecordOptional(TypedDict, total=False):
    model: str
    provider: str
    input: Any
    output: Any
    usage: Usage
    latency_ms: float
    error: ErrorRecord
    end_ns: int
    collection_errors: List[str]


class EventRecord(_EventRecordOptional):
    id: str
    parent_id: str
    interaction_id: str
    kind: str
    name: str
    start_ns: int
    status: str
    properties: Dict[str, Any]
    attachments: List[AttachmentRecord]


class SignalRecord(TypedDict, total=False):
    event_id: str
    name: str
    type: str
    sentiment: Optional[str]
    comment: str
    after: Any
    attachment_id: str
    properties: Dict[str, Any]
    timestamp_ms: int


class IdentityRecord(TypedDict):
    user_id: str
    traits: Dict[str, Any]
    timestamp_ms: int


class BatchPayload(TypedDict):
    interactions: List[InteractionRecord]
    events: List[EventRecord]
    signals: List[SignalRecord]
    identities: List[IdentityRecord]
