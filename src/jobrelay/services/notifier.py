"""Job-ready notification over a message broker.

Notifications are a latency optimization, not a commit-coupled operation:
the job row is already durable when a notification is published, and a
lost notification only means the job is picked up by polling instead.

Two notifier variants:
- BrokerNotifier: publishes {"job_id", "queue"} to a direct kombu exchange,
  routed by queue name.
- DisabledNotifier: no-op, used in polling mode and whenever the broker is
  unavailable.

Connecting yields a typed result consumed once at process startup:

    result = connect_broker(settings.broker)
    match result:
        case Connected(connection=conn):
            ...
        case Unavailable(reason=reason):
            ...
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from kombu import Connection, Exchange, Producer, Queue
from kombu.exceptions import KombuError, OperationalError

from jobrelay.core.config import NotificationMode

if TYPE_CHECKING:
    from jobrelay.core.config import BrokerSettings

logger = logging.getLogger(__name__)

BROKER_UNAVAILABLE_MESSAGE = "broker unavailable, falling back to polling"


# -----------------------------------------------------------------------------
# Wire format
# -----------------------------------------------------------------------------


class MalformedNotificationError(ValueError):
    """Raised when a broker message body is not a valid job notification."""


@dataclass(frozen=True)
class JobNotification:
    """Body of a job-ready message."""

    job_id: uuid.UUID
    queue: str

    def to_body(self) -> dict[str, str]:
        """Serialize to a JSON-compatible body."""
        return {"job_id": str(self.job_id), "queue": self.queue}

    @classmethod
    def from_body(cls, body: Any) -> JobNotification:
        """Parse a decoded (or raw JSON) message body.

        Raises:
            MalformedNotificationError: If the body is not a valid notification.
        """
        if isinstance(body, bytes | str):
            try:
                body = json.loads(body)
            except ValueError as e:
                raise MalformedNotificationError(f"Notification is not JSON: {e}") from e

        if not isinstance(body, dict):
            raise MalformedNotificationError("Notification body must be an object")

        queue = body.get("queue")
        if not isinstance(queue, str) or not queue:
            raise MalformedNotificationError("Notification is missing 'queue'")

        try:
            job_id = uuid.UUID(str(body.get("job_id")))
        except ValueError as e:
            raise MalformedNotificationError(f"Notification has an invalid 'job_id': {e}") from e

        return cls(job_id=job_id, queue=queue)


def notification_exchange(name: str) -> Exchange:
    """Direct exchange carrying job-ready notifications."""
    return Exchange(name, type="direct", durable=True)


def notification_queue(exchange_name: str, queue: str) -> Queue:
    """Broker queue bound to the exchange for one job queue."""
    return Queue(
        f"{exchange_name}.{queue}",
        exchange=notification_exchange(exchange_name),
        routing_key=queue,
        durable=True,
    )


# -----------------------------------------------------------------------------
# Connection
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Connected:
    """Broker connection established."""

    connection: Connection


@dataclass(frozen=True)
class Unavailable:
    """Broker could not be reached; the process runs in polling mode."""

    reason: str


BrokerConnection = Connected | Unavailable


def connect_broker(settings: BrokerSettings) -> BrokerConnection:
    """Attempt a single broker connection.

    A connection error and a handle that comes back unconnected are
    treated the same way. The warning is logged here, once, and callers
    are expected to keep the result for the process lifetime.

    Args:
        settings: Broker connection settings.

    Returns:
        Connected with a live kombu connection, or Unavailable with the reason.
    """
    connection = Connection(settings.url, connect_timeout=settings.connect_timeout)

    reason = None
    try:
        connection.ensure_connection(max_retries=0, timeout=settings.connect_timeout)
    except (OperationalError, OSError) as e:
        reason = f"{type(e).__name__}: {e}"
    else:
        if not connection.connected:
            reason = "connection handle not established"

    if reason is not None:
        connection.release()
        logger.warning(
            "%s: broker=%s, reason=%s",
            BROKER_UNAVAILABLE_MESSAGE,
            settings.safe_url,
            reason,
        )
        return Unavailable(reason)

    logger.info("Broker connected: broker=%s", settings.safe_url)
    return Connected(connection)


# -----------------------------------------------------------------------------
# Notifiers
# -----------------------------------------------------------------------------


class Notifier(Protocol):
    """Publishes job-ready notifications."""

    @property
    def enabled(self) -> bool: ...

    def publish(self, job_id: uuid.UUID, queue: str) -> bool: ...

    def close(self) -> None: ...


class DisabledNotifier:
    """Notifier used in polling mode; publishes nothing."""

    enabled = False

    def publish(self, job_id: uuid.UUID, queue: str) -> bool:  # noqa: ARG002
        return False

    def close(self) -> None:
        pass


class BrokerNotifier:
    """Publishes job-ready notifications to a direct exchange.

    Each publish declares the durable broker queue for its job queue, so a
    notification is held until a worker subscribes.

    The kombu connection is not thread-safe; publishes are serialized with
    a lock so the notifier can be shared by tasks that publish from worker
    threads. After a connection-level failure the notifier stops
    publishing for the rest of the process lifetime and jobs are left to
    polling.

    Attributes:
        exchange_name: Name of the direct exchange.
    """

    def __init__(self, connection: Connection, exchange_name: str) -> None:
        """Initialize the notifier.

        Args:
            connection: Connected kombu connection, owned by the notifier.
            exchange_name: Name of the direct exchange.
        """
        self.exchange_name = exchange_name
        self._connection = connection
        self._exchange = notification_exchange(exchange_name)
        self._producer: Producer | None = None
        self._lock = threading.Lock()
        self._available = True

    @property
    def enabled(self) -> bool:
        """Whether publishes are still attempted."""
        return self._available

    def publish(self, job_id: uuid.UUID, queue: str) -> bool:
        """Publish a job-ready notification.

        Never raises on transport problems; the job row is already durable.

        Args:
            job_id: The job that was created.
            queue: Queue name, used as routing key.

        Returns:
            True if the broker accepted the message, False otherwise.
        """
        notification = JobNotification(job_id=job_id, queue=queue)

        with self._lock:
            if not self._available:
                return False

            try:
                if self._producer is None:
                    self._producer = Producer(
                        self._connection.default_channel,
                        exchange=self._exchange,
                        serializer="json",
                    )
                self._producer.publish(
                    notification.to_body(),
                    routing_key=queue,
                    declare=[self._exchange, notification_queue(self.exchange_name, queue)],
                    delivery_mode=2,
                    retry=False,
                )
            except (KombuError, OSError, *self._connection.connection_errors) as e:
                self._available = False
                self._producer = None
                logger.warning(
                    "%s: publish failed for job_id=%s, queue=%s: %s",
                    BROKER_UNAVAILABLE_MESSAGE,
                    job_id,
                    queue,
                    e,
                )
                return False

        logger.debug("Job notification published: job_id=%s, queue=%s", job_id, queue)
        return True

    def close(self) -> None:
        """Release the broker connection."""
        with self._lock:
            self._producer = None
            self._connection.release()


def notifier_for(result: BrokerConnection, exchange_name: str) -> Notifier:
    """Pick the notifier variant for a connection result."""
    match result:
        case Connected(connection=connection):
            return BrokerNotifier(connection, exchange_name)
        case _:
            return DisabledNotifier()


def build_notifier(mode: NotificationMode, settings: BrokerSettings) -> Notifier:
    """Resolve the notifier once for the process.

    Polling mode never opens a broker connection. Broker mode connects
    once and degrades to DisabledNotifier when the broker is unavailable.

    Args:
        mode: Deployment notification mode.
        settings: Broker connection settings.

    Returns:
        The notifier to hand to the Enqueuer.
    """
    if mode == NotificationMode.POLLING:
        logger.info("Notification mode is polling; broker notifications disabled")
        return DisabledNotifier()
    return notifier_for(connect_broker(settings), settings.exchange)
