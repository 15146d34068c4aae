from typing import Optional


class LLMTrailError(Exception):
    """Base class for errors raised by llmtrail internals."""


class InvalidParent(LLMTrailError):
    """A node was attached to a parent id that does not match an open node."""

    def __init__(self, parent_id):
        # type: (Optional[str]) -> None
        self.parent_id = parent_id
        super(InvalidParent, self).__init__("parent %r is not an open interaction or event" % (parent_id,))


class AlreadyClosed(LLMTrailError):
    """A finished interaction or event was closed or modified again."""

    def __init__(self, node_id):
        # type: (str) -> None
        self.node_id = node_id
        super(AlreadyClosed, self).__init__("%r is already closed" % (node_id,))


class DeliveryError(LLMTrailError):
    def __init__(self, message, status=None):
        # type: (str, Optional[int]) -> None
        self.status = status
        super(DeliveryError, self).__init__(message)


class TransientDeliveryFailure(DeliveryError):
    """A batch could not be delivered but may succeed on retry (transport errors, 408, 429, 5xx)."""


class PermanentDeliveryFailure(DeliveryError):
    """A batch was rejected by the collector or could not be encoded; it is dropped without retry."""


class PluginHookFailure(LLMTrailError):
    def __init__(self, plugin_name, hook, error):
        # type: (str, str, BaseException) -> None
        self.plugin_name = plugin_name
        self.hook = hook
        self.error = error
        super(PluginHookFailure, self).__init__(
            "plugin %r failed in %s: %s: %s" % (plugin_name, hook, type(error).__name__, error)
        )
