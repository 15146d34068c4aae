from functools import wraps
import random
from time import sleep
import typing as t


def retry_on_exceptions(
    after: t.Iterable[float],
    exceptions: t.Tuple[t.Type[BaseException], ...],
    on_retry: t.Optional[t.Callable[[BaseException, float], None]] = None,
) -> t.Callable:
    def retry_decorator(f):
        @wraps(f)
        def retry_wrapped(*args, **kwargs):
            for delay in after:
                try:
                    return f(*args, **kwargs)
                except Exception as e:
                    if not isinstance(e, exceptions):
                        raise  # Not a retriable exception, don't keep retrying.
                    if on_retry is not None:
                        on_retry(e, delay)
                    sleep(delay)

            # Last chance to succeed. If it fails, we don't catch the exception.
            return f(*args, **kwargs)

        return retry_wrapped

    return retry_decorator


def exponential_backoff(attempts, initial_wait=0.5, factor=2.0, max_wait=30.0):
    # type: (int, float, float, float) -> t.List[float]
    """Return the ``attempts - 1`` jittered waits to sleep between ``attempts`` tries."""
    return [
        min(max_wait, initial_wait * (factor**i)) * random.uniform(0.5, 1.0)  # nosec
        for i in range(max(attempts - 1, 0))
    ]


def exponential_backoff_with_jitter_on_exceptions(
    attempts: int,
    exceptions: t.Tuple[t.Type[BaseException], ...],
    initial_wait: float = 0.5,
    on_retry: t.Optional[t.Callable[[BaseException, float], None]] = None,
) -> t.Callable:
    return retry_on_exceptions(
        after=exponential_backoff(attempts, initial_wait=initial_wait),
        exceptions=exceptions,
        on_retry=on_retry,
    )
