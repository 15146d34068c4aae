SPAN_KIND_LLM = "llm"
SPAN_KIND_TOOL = "tool"
SPAN_KIND_TASK = "task"
SPAN_KINDS = (SPAN_KIND_LLM, SPAN_KIND_TOOL, SPAN_KIND_TASK)

SIGNAL_TYPE_DEFAULT = "default"
SIGNAL_TYPE_FEEDBACK = "feedback"
SIGNAL_TYPE_EDIT = "edit"
SIGNAL_TYPES = (SIGNAL_TYPE_DEFAULT, SIGNAL_TYPE_FEEDBACK, SIGNAL_TYPE_EDIT)

SENTIMENT_POSITIVE = "POSITIVE"
SENTIMENT_NEGATIVE = "NEGATIVE"
SENTIMENTS = (SENTIMENT_POSITIVE, SENTIMENT_NEGATIVE)

ATTACHMENT_ROLES = ("input", "output")

ERROR_KIND_EXCEPTION = "exception"
ERROR_KIND_CANCELLED = "cancelled"

# Name given to the interaction that is opened implicitly around a call made outside of any interaction.
AUTO_INTERACTION_EVENT = "llm_call"

# Attribute set on values returned by wrapped calls to carry the id of the recorded event.
EVENT_ID_ATTR = "_llmtrail_event_id"

ITEM_INTERACTION = "interaction"
ITEM_EVENT = "event"
ITEM_SIGNAL = "signal"
ITEM_IDENTITY = "identity"

BATCH_ENDPOINT = "/v1/batch"
DEFAULT_BASE_URL = "https://api.llmtrail.dev"

EVENT_SIZE_LIMIT = (1 << 20) - 1024  # 999KB
DROPPED_IO_COLLECTION_ERROR = "dropped_io"
DROPPED_VALUE_TEXT = "[This value has been dropped because this record's size exceeds the 1MB size limit.]"

SPAN_START_WHILE_DISABLED_DEBUG = "span started while tracing is disabled, nothing will be recorded"
TRACK_AFTER_CLOSE_DEBUG = "%s called after the tracer was closed, ignoring"
