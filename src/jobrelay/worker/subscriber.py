"""Broker subscription listener.

Consumes job-ready notifications and hands each one to a dispatch callable
that claims and executes a job. The job store claim is authoritative; the
message is only a hint. Acknowledgement rules:

- malformed body: rejected without requeue (dead-lettered per broker policy)
- dispatch returned (claimed and executed, or nothing left to claim): acked
- dispatch raised before completing: rejected, requeued on first delivery
  and dead-lettered on redelivery

kombu connections are not thread-safe, so the consumer runs entirely in
one thread: dispatch blocks that thread until the job is done and the
ack/reject is issued from it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kombu import Consumer

from jobrelay.services.notifier import (
    JobNotification,
    MalformedNotificationError,
    notification_queue,
)

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable, Iterable

    from kombu import Connection, Message

logger = logging.getLogger(__name__)


class BrokerSubscriber:
    """Consumes job-ready notifications for a set of queues.

    Attributes:
        queues: Job queue names subscribed to.
        drain_timeout: Seconds to block waiting for a message before
            checking the stop flag again.
    """

    def __init__(
        self,
        connection: Connection,
        exchange_name: str,
        queues: Iterable[str],
        dispatch: Callable[[JobNotification], bool],
        drain_timeout: float = 1.0,
    ) -> None:
        """Initialize the subscriber.

        Args:
            connection: Connected kombu connection, used only from the consumer thread.
            exchange_name: Name of the notification exchange.
            queues: Job queue names to subscribe to.
            dispatch: Claims and executes a job for a notification; returns
                True if a job was claimed.
            drain_timeout: Seconds per drain_events wait.
        """
        self.queues = list(queues)
        self.drain_timeout = drain_timeout
        self._connection = connection
        self._exchange_name = exchange_name
        self._dispatch = dispatch

    def run(self, stop: threading.Event) -> None:
        """Consume until the stop event is set.

        Blocking; run it in a dedicated thread.

        Raises:
            Connection errors from the broker; the caller decides how to degrade.
        """
        broker_queues = [notification_queue(self._exchange_name, q) for q in self.queues]
        channel = self._connection.channel()

        try:
            with Consumer(
                channel,
                queues=broker_queues,
                callbacks=[self.on_message],
                on_decode_error=self.on_decode_error,
                accept=["json"],
                prefetch_count=1,
            ):
                logger.info("Subscribed to job notifications: queues=%s", self.queues)
                while not stop.is_set():
                    try:
                        self._connection.drain_events(timeout=self.drain_timeout)
                    except TimeoutError:
                        continue
        finally:
            channel.close()
            logger.info("Unsubscribed from job notifications: queues=%s", self.queues)

    def on_decode_error(self, message: Message, error: Exception) -> None:
        """Reject deliveries whose body cannot be decoded."""
        logger.error("Rejecting undecodable job notification: %s", error)
        message.reject(requeue=False)

    def on_message(self, body: Any, message: Message) -> None:
        """Handle one delivery and acknowledge it."""
        try:
            notification = JobNotification.from_body(body)
        except MalformedNotificationError as e:
            logger.error("Rejecting malformed job notification: %s", e)
            message.reject(requeue=False)
            return

        try:
            claimed = self._dispatch(notification)
        except Exception as e:
            redelivered = bool(message.delivery_info.get("redelivered"))
            logger.exception(
                "Notification dispatch failed: job_id=%s, queue=%s, redelivered=%s, error=%s",
                notification.job_id,
                notification.queue,
                redelivered,
                e,
            )
            message.reject(requeue=not redelivered)
            return

        if not claimed:
            logger.debug(
                "Nothing to claim for notification: job_id=%s, queue=%s",
                notification.job_id,
                notification.queue,
            )
        message.ack()
