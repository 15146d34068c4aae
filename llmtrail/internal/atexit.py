# -*- encoding: utf-8 -*-
"""
An API to provide atexit functionalities
"""
import atexit
import logging
import typing  # noqa:F401


log = logging.getLogger(__name__)


def register(func):
    # type: (typing.Callable) -> typing.Callable
    """
    Register a function to be called when the program exits.
    """

    def _safe_call():
        try:
            func()
        except Exception:
            log.debug("exception ignored in exit hook %r", func, exc_info=True)

    _safe_call.__wrapped__ = func  # type: ignore[attr-defined]
    _hooks[func] = _safe_call
    atexit.register(_safe_call)
    return func


def unregister(func):
    # type: (typing.Callable) -> None
    """
    Unregister a function to be called when the program exits.
    """
    hook = _hooks.pop(func, None)
    if hook is not None:
        atexit.unregister(hook)


_hooks = {}  # type: typing.Dict[typing.Callable, typing.Callable]
