import contextlib
import contextvars
import functools
import itertools
from typing import Any
from typing import Callable
from typing import Iterator
from typing import Optional
from typing import Tuple
from typing import TypeVar

from llmtrail._model import Node


T = TypeVar("T")

Stack = Tuple[Node, ...]

_provider_ids = itertools.count()


def _innermost_open(stack: Stack) -> Optional[Node]:
    for node in reversed(stack):
        if not node.finished:
            return node
    return None


class Carrier(object):
    """An immutable snapshot of the active node stack of one logical call chain.

    A carrier is obtained with :meth:`ContextProvider.carrier` and handed along with a continuation that is later run
    by :meth:`ContextProvider.run_with`, so that the continuation attaches to the same nodes whichever thread or
    callback executes it.
    """

    __slots__ = ("_stack",)

    def __init__(self, stack):
        # type: (Stack) -> None
        self._stack = stack

    @property
    def current(self) -> Optional[Node]:
        return _innermost_open(self._stack)

    def __repr__(self):
        return "Carrier(%r)" % ([n.id for n in self._stack],)


class ContextProvider(object):
    """Context provider that keeps the stack of open nodes in a context variable.

    Each logical call chain sees its own stack: asyncio tasks copy the context they are created in, so pushes made by
    one task are never visible to a sibling task. Threads start from an empty context unless the work is submitted
    through :meth:`bind` or :meth:`run_with`.
    """

    def __init__(self) -> None:
        self._var: contextvars.ContextVar[Stack] = contextvars.ContextVar(
            "llmtrail_active_nodes_%d" % next(_provider_ids), default=()
        )

    def _stack(self) -> Stack:
        return self._var.get()

    def current(self) -> Optional[Node]:
        """Returns the innermost open node of the current logical call chain.

        Finished nodes left on the stack (e.g. an interaction finished from another task) are skipped, so the active
        node is always the closest unfinished ancestor.
        """
        return _innermost_open(self._stack())

    def push(self, node: Node) -> contextvars.Token:
        """Makes ``node`` the active node of the current execution."""
        return self._var.set(self._stack() + (node,))

    def pop(self, node: Node, token: Optional[contextvars.Token] = None) -> None:
        """Removes ``node`` from the active stack of the current execution."""
        stack = self._stack()
        if token is not None and stack and stack[-1] is node:
            try:
                self._var.reset(token)
                return
            except ValueError:
                # the token was created in a different Context
                pass
        if any(n is node for n in stack):
            self._var.set(tuple(n for n in stack if n is not node))

    @contextlib.contextmanager
    def with_context(self, node: Node) -> Iterator[Node]:
        token = self.push(node)
        try:
            yield node
        finally:
            self.pop(node, token)

    def carrier(self) -> Carrier:
        return Carrier(self._stack())

    def run_with(self, carrier: Carrier, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` with the stack captured in ``carrier`` as the active stack.

        ``fn`` runs in a copy of the current context, the caller's stack is left untouched.
        """
        ctx = contextvars.copy_context()
        return ctx.run(self._run_with_stack, carrier._stack, fn, args, kwargs)

    def _run_with_stack(self, stack, fn, args, kwargs):
        self._var.set(stack)
        return fn(*args, **kwargs)

    def run_detached(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` with no active node."""
        return self.run_with(Carrier(()), fn, *args, **kwargs)

    def bind(self, fn: Callable[..., T]) -> Callable[..., T]:
        """Return a callable that runs ``fn`` under the caller's current stack, wherever it is invoked."""
        carrier = self.carrier()

        @functools.wraps(fn)
        def bound(*args, **kwargs):
            return self.run_with(carrier, fn, *args, **kwargs)

        return bound
