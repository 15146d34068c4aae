import http.client
import threading
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
from urllib.parse import urlparse

import attr

from llmtrail._constants import BATCH_ENDPOINT
from llmtrail._constants import DROPPED_IO_COLLECTION_ERROR
from llmtrail._constants import DROPPED_VALUE_TEXT
from llmtrail._constants import EVENT_SIZE_LIMIT
from llmtrail._constants import ITEM_EVENT
from llmtrail._constants import ITEM_IDENTITY
from llmtrail._constants import ITEM_INTERACTION
from llmtrail._constants import ITEM_SIGNAL
from llmtrail._utils import safe_json
from llmtrail.errors import PermanentDeliveryFailure
from llmtrail.errors import TransientDeliveryFailure
from llmtrail.internal import forksafe
from llmtrail.internal.buffer import EventQueue
from llmtrail.internal.http import Response
from llmtrail.internal.http import get_connection
from llmtrail.internal.logger import get_logger
from llmtrail.internal.periodic import PeriodicService
from llmtrail.internal.service import ServiceStatus
from llmtrail.internal.utils.retry import exponential_backoff_with_jitter_on_exceptions
from llmtrail.types import BatchPayload


logger = get_logger(__name__)

Item = Tuple[str, Dict[str, Any]]

_PAYLOAD_KEYS = {
    ITEM_INTERACTION: "interactions",
    ITEM_EVENT: "events",
    ITEM_SIGNAL: "signals",
    ITEM_IDENTITY: "identities",
}

REASON_EVICTED = "evicted"
REASON_MISSING_API_KEY = "missing_api_key"
REASON_ENCODING_ERROR = "encoding_error"
REASON_REJECTED = "rejected"
REASON_CONNECTION_ERROR = "connection_error"


@attr.s(frozen=True)
class DeliveryFailure(object):
    """Report handed to the ``on_error`` callback when items are evicted or dropped."""

    reason = attr.ib(type=str)
    count = attr.ib(type=int)
    status = attr.ib(type=Optional[int], default=None)
    error = attr.ib(type=Optional[BaseException], default=None)


def _truncate_record(record: Dict[str, Any]) -> Dict[str, Any]:
    record = dict(record)
    record["input"] = DROPPED_VALUE_TEXT
    record["output"] = DROPPED_VALUE_TEXT
    record["collection_errors"] = [DROPPED_IO_COLLECTION_ERROR]
    return record


def _is_transient_status(status: int) -> bool:
    return status in (408, 429) or status >= 500


class DeliveryWriter(PeriodicService):
    """Buffers finished records and delivers them in batches to the collector.

    Records are queued by :meth:`enqueue` and sent by the worker thread every ``interval`` seconds, or as soon as
    ``batch_size`` records are waiting. :meth:`flush` sends everything queued so far on the caller's thread.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        interval: float = 1.0,
        timeout: float = 5.0,
        max_queue_size: int = 10000,
        batch_size: int = 100,
        retry_attempts: int = 3,
        on_error: Optional[Callable[[DeliveryFailure], Any]] = None,
        retry_initial_wait: float = 0.5,
    ) -> None:
        super(DeliveryWriter, self).__init__(interval=interval)
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._max_queue_size = max_queue_size
        self._batch_size = max(batch_size, 1)
        self._retry_attempts = retry_attempts
        self._retry_initial_wait = retry_initial_wait
        self._on_error = on_error
        self._queue = EventQueue(max_size=max_queue_size)
        self._send_lock = forksafe.Lock()
        self._stats_lock = threading.Lock()
        self._stats = {"sent": 0, "dropped": 0, "evicted": 0, "retried": 0}
        self._closed = False

        self._endpoint = urlparse(self._base_url).path.rstrip("/") + BATCH_ENDPOINT
        self._headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            self._headers["Authorization"] = "Bearer %s" % self._api_key

        self._send_payload_with_retry = exponential_backoff_with_jitter_on_exceptions(
            attempts=max(retry_attempts, 1),
            exceptions=(TransientDeliveryFailure,),
            initial_wait=retry_initial_wait,
            on_retry=self._on_retry,
        )(self._send_payload)

    @property
    def _url(self) -> str:
        return "%s%s" % (self._base_url, BATCH_ENDPOINT)

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._queue)

    def start(self, *args, **kwargs):
        super(DeliveryWriter, self).start()
        logger.debug("started %r to %r", self.__class__.__name__, self._url)

    def stop(self, timeout=None):
        super(DeliveryWriter, self).stop()
        logger.debug("stopped %r to %r", self.__class__.__name__, self._url)

    def on_shutdown(self):
        self.periodic()

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def _count(self, key: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += n

    def enqueue(self, kind: str, record: Dict[str, Any]) -> None:
        """Queue a finished record of the given kind for delivery."""
        if self._closed:
            logger.debug("%r is closed, ignoring %s record", self.__class__.__name__, kind)
            return
        if kind not in _PAYLOAD_KEYS:
            raise ValueError("unknown record kind %r" % (kind,))
        if kind in (ITEM_INTERACTION, ITEM_EVENT):
            encoded = safe_json(record)
            if encoded is not None and len(encoded) > EVENT_SIZE_LIMIT:
                logger.warning(
                    "dropping input/output of %s %r because its size (%d) exceeds the record size limit (%d)",
                    kind,
                    record.get("id"),
                    len(encoded),
                    EVENT_SIZE_LIMIT,
                )
                record = _truncate_record(record)
        evicted = self._queue.put((kind, record))
        if evicted is not None:
            logger.warning(
                "%r queue full (limit is %d), evicting oldest item", self.__class__.__name__, self._max_queue_size
            )
            self._count("evicted")
            self._report(DeliveryFailure(reason=REASON_EVICTED, count=1))
        if len(self._queue) >= self._batch_size and self.status == ServiceStatus.RUNNING:
            self.awake()

    def periodic(self) -> None:
        self.flush()

    def flush(self) -> None:
        """Send every record queued so far, in batches, on the calling thread.

        Batches in flight on the worker thread complete first. Records enqueued while flushing wait for the next
        cycle.
        """
        with self._send_lock:
            self._drain(self._queue.get())

    def close(self) -> None:
        """Flush and stop the writer. Records enqueued afterwards are ignored."""
        if self._closed:
            return
        self._closed = True
        self.flush()
        if self.status == ServiceStatus.RUNNING:
            self.stop()
            self.join()

    def _drain(self, items: List[Item]) -> None:
        for i in range(0, len(items), self._batch_size):
            self._send_batch(items[i : i + self._batch_size])

    def _data(self, items: List[Item]) -> BatchPayload:
        """Return the payload of a batch, keeping enqueue order within each list."""
        payload: Dict[str, List[Any]] = {key: [] for key in _PAYLOAD_KEYS.values()}
        for kind, record in items:
            payload[_PAYLOAD_KEYS[kind]].append(record)
        return payload  # type: ignore[return-value]

    def _encode(self, payload: BatchPayload, num_items: int) -> Optional[bytes]:
        encoded = safe_json(payload)
        if encoded is None:
            logger.error("failed to encode %d items", num_items)
            return None
        logger.debug("encoded %d items to be sent", num_items)
        return encoded.encode("utf-8")

    def _send_batch(self, items: List[Item]) -> None:
        if not items:
            return
        num_items = len(items)
        if not self._api_key:
            logger.warning(
                "An API key is required for sending data to the collector. %d items will not be sent. Set it with "
                "LLMTRAIL_API_KEY or `Tracer(api_key=...)`.",
                num_items,
            )
            self._drop(REASON_MISSING_API_KEY, num_items)
            return
        payload = self._encode(self._data(items), num_items)
        if payload is None:
            self._drop(REASON_ENCODING_ERROR, num_items, error=PermanentDeliveryFailure("failed to encode batch"))
            return
        try:
            self._send_payload_with_retry(payload, num_items)
        except TransientDeliveryFailure as e:
            logger.error("failed to send %d items to %s after retries: %s", num_items, self._url, e)
            self._drop(REASON_CONNECTION_ERROR, num_items, status=e.status, error=e)
        except PermanentDeliveryFailure as e:
            logger.error("dropping %d items rejected by %s: %s", num_items, self._url, e)
            self._drop(REASON_REJECTED, num_items, status=e.status, error=e)
        except Exception as e:
            logger.error("failed to send %d items to %s", num_items, self._url, exc_info=True)
            self._drop(REASON_CONNECTION_ERROR, num_items, error=e)
        else:
            self._count("sent", num_items)

    def _send_payload(self, payload: bytes, num_items: int) -> Response:
        conn = get_connection(self._base_url, timeout=self._timeout)
        try:
            conn.request("POST", self._endpoint, payload, self._headers)
            resp = Response.from_http_response(conn.getresponse())
        except (OSError, http.client.HTTPException) as e:
            raise TransientDeliveryFailure("%s: %s" % (type(e).__name__, e)) from e
        finally:
            conn.close()

        if 200 <= resp.status < 300:
            logger.debug("sent %d items to %s", num_items, self._url)
            return resp
        message = "got response code %d, status: %r" % (resp.status, resp.body)
        if _is_transient_status(resp.status):
            raise TransientDeliveryFailure(message, status=resp.status)
        raise PermanentDeliveryFailure(message, status=resp.status)

    def _on_retry(self, error: BaseException, delay: float) -> None:
        self._count("retried")
        logger.debug("retrying batch delivery to %s in %.2fs: %s", self._url, delay, error)

    def _drop(
        self, reason: str, count: int, status: Optional[int] = None, error: Optional[BaseException] = None
    ) -> None:
        logger.debug("dropped %d items (%s)", count, reason)
        self._count("dropped", count)
        self._report(DeliveryFailure(reason=reason, count=count, status=status, error=error))

    def _report(self, failure: DeliveryFailure) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(failure)
        except Exception:
            logger.debug("on_error callback failed for %r", failure, exc_info=True)

    def recreate(self) -> "DeliveryWriter":
        return self.__class__(
            base_url=self._base_url,
            api_key=self._api_key,
            interval=self._interval,
            timeout=self._timeout,
            max_queue_size=self._max_queue_size,
            batch_size=self._batch_size,
            retry_attempts=self._retry_attempts,
            on_error=self._on_error,
            retry_initial_wait=self._retry_initial_wait,
        )
