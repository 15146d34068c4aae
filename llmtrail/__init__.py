"""
Client-side tracing of AI model calls.

Wrap a model-provider client and every call made through it is recorded as an ``llm`` event, grouped under the
interaction active in the calling context::

    from llmtrail import Tracer

    tracer = Tracer(api_key="...")
    client = tracer.wrap(OpenAI())

    with tracer.interaction("rag_query", input=question, user_id="u-42") as interaction:
        docs = search(question)
        answer = client.chat.completions.create(model="gpt-4o", messages=[...])
        interaction.set_output(answer.choices[0].message.content)

    tracer.feedback(answer, sentiment="POSITIVE")
    tracer.close()
"""
from llmtrail._model import Attachment
from llmtrail._plugins import Plugin
from llmtrail._tracer import InteractionHandle
from llmtrail._tracer import NoopInteraction
from llmtrail._tracer import SpanHandle
from llmtrail._tracer import Tracer
from llmtrail._wrap import TracedClient
from llmtrail._writer import DeliveryFailure
from llmtrail.errors import AlreadyClosed
from llmtrail.errors import DeliveryError
from llmtrail.errors import InvalidParent
from llmtrail.errors import LLMTrailError
from llmtrail.errors import PermanentDeliveryFailure
from llmtrail.errors import PluginHookFailure
from llmtrail.errors import TransientDeliveryFailure
from llmtrail.version import __version__


__all__ = [
    "Attachment",
    "AlreadyClosed",
    "DeliveryError",
    "DeliveryFailure",
    "InteractionHandle",
    "InvalidParent",
    "LLMTrailError",
    "NoopInteraction",
    "PermanentDeliveryFailure",
    "Plugin",
    "PluginHookFailure",
    "SpanHandle",
    "TracedClient",
    "Tracer",
    "TransientDeliveryFailure",
    "__version__",
]
