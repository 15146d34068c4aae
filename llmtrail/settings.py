import typing as t

from envier import Env

from llmtrail._constants import DEFAULT_BASE_URL


def _positive(value: float) -> None:
    if value <= 0:
        raise ValueError("value must be positive, got %r" % (value,))


def _not_negative(value: int) -> None:
    if value < 0:
        raise ValueError("value must not be negative, got %r" % (value,))


class TracerConfig(Env):
    """Tracer configuration read from ``LLMTRAIL_*`` environment variables.

    Keyword arguments given to :class:`~llmtrail.Tracer` override the values read here, see :func:`resolve`.
    """

    __prefix__ = "llmtrail"

    api_key = Env.var(t.Optional[str], "api_key", default=None)
    write_key = Env.var(t.Optional[str], "write_key", default=None)
    debug = Env.var(bool, "debug", default=False)
    disabled = Env.var(bool, "disabled", default=False)
    base_url = Env.var(str, "base_url", default=DEFAULT_BASE_URL)
    flush_interval = Env.var(float, "flush_interval", default=1.0, validator=_positive)
    max_queue_size = Env.var(int, "max_queue_size", default=10000, validator=_positive)
    batch_size = Env.var(int, "batch_size", default=100, validator=_positive)
    retry_attempts = Env.var(int, "retry_attempts", default=3, validator=_not_negative)
    request_timeout = Env.var(float, "request_timeout", default=5.0, validator=_positive)
    plugin_timeout = Env.var(float, "plugin_timeout", default=2.0, validator=_positive)

    @property
    def resolved_api_key(self) -> t.Optional[str]:
        return self.api_key or self.write_key or None


OPTIONS = (
    "api_key",
    "write_key",
    "debug",
    "disabled",
    "base_url",
    "flush_interval",
    "max_queue_size",
    "batch_size",
    "retry_attempts",
    "request_timeout",
    "plugin_timeout",
)

_VALIDATORS = {
    "flush_interval": _positive,
    "max_queue_size": _positive,
    "batch_size": _positive,
    "retry_attempts": _not_negative,
    "request_timeout": _positive,
    "plugin_timeout": _positive,
}


def resolve(**overrides: t.Any) -> TracerConfig:
    """Build a configuration from the environment, then apply the non-``None`` keyword overrides."""
    unknown = set(overrides) - set(OPTIONS)
    if unknown:
        raise TypeError("unknown configuration option(s): %s" % ", ".join(sorted(unknown)))
    config = TracerConfig()
    for name, value in overrides.items():
        if value is None:
            continue
        validator = _VALIDATORS.get(name)
        if validator is not None:
            validator(value)
        setattr(config, name, value)
    return config
