import threading
import typing  # noqa:F401

import attr

from llmtrail.internal import service

from . import forksafe


class PeriodicThread(threading.Thread):
    """Worker thread running ``target`` every ``interval`` seconds, or earlier when awakened."""

    def __init__(
        self,
        interval,  # type: float
        target,  # type: typing.Callable[[], typing.Any]
        name=None,  # type: typing.Optional[str]
        on_shutdown=None,  # type: typing.Optional[typing.Callable[[], typing.Any]]
    ):
        # type: (...) -> None
        super(PeriodicThread, self).__init__(name=name)
        self._target = target
        self._on_shutdown = on_shutdown
        self.interval = interval
        self.quit = forksafe.Event()
        self.request = forksafe.Event()
        self.daemon = True

    def awake(self):
        # type: () -> None
        """Run the target as soon as possible. Does not wait for it to run."""
        self.request.set()

    def stop(self):
        # A child process must not touch events a forked parent may hold locked
        if self.is_alive():
            self.quit.set()
            self.request.set()

    def run(self):
        while not self.quit.is_set():
            self.request.wait(self.interval)
            if self.quit.is_set():
                break
            self.request.clear()
            self._target()

        if self._on_shutdown is not None:
            self._on_shutdown()


@attr.s(eq=False)
class PeriodicService(service.Service):
    """A service calling :meth:`periodic` from a worker thread."""

    _interval = attr.ib(type=float)
    _worker = attr.ib(default=None, init=False, repr=False)  # type: typing.Optional[PeriodicThread]

    def _start_service(self, *args, **kwargs):
        # type: (typing.Any, typing.Any) -> None
        self._worker = PeriodicThread(
            self._interval,
            target=self.periodic,
            name="%s:%s" % (self.__class__.__module__, self.__class__.__name__),
            on_shutdown=self.on_shutdown,
        )
        self._worker.start()

    def _stop_service(self, *args, **kwargs):
        # type: (typing.Any, typing.Any) -> None
        self._worker.stop()
        super(PeriodicService, self)._stop_service(*args, **kwargs)

    def awake(self):
        # type: () -> None
        if self._worker:
            self._worker.awake()

    def join(
        self,
        timeout=None,  # type: typing.Optional[float]
    ):
        # type: (...) -> None
        if self._worker:
            self._worker.join(timeout)

    def on_shutdown(self):
        pass

    def periodic(self):
        # type: (...) -> None
        pass
