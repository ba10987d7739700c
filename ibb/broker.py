"""RabbitMQ message broker used by the API and the build worker.

MessageBroker owns one connection and one channel. It declares the queues,
exchanges and bindings the system needs, publishes messages and consumes
them, either one at a time or by draining everything that is ready.

pika's BlockingConnection is not thread-safe. All operations, including
opening the connection, therefore run on a single broker I/O thread, which
serializes calls coming from the API's worker threads.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Optional

import pika
from pika.exceptions import AMQPError, ChannelClosedByBroker
from pika.exchange_type import ExchangeType

from ibb.config import settings
from ibb.exceptions import (
    BindingError,
    BrokerConnectionError,
    BrokerError,
    ConsumeError,
    PublishError,
    PublishTimeoutError,
    QueueNotFoundError,
)

log = logging.getLogger("ibb.broker")

CONTENT_TYPE = "text/plain"


@dataclass(frozen=True)
class Delivery:
    """A single message retrieved from a queue."""

    body: bytes
    content_type: Optional[str] = None
    exchange: str = ""
    routing_key: str = ""
    delivery_tag: Optional[int] = None
    redelivered: bool = False


def declare_queue(channel, name: str) -> None:
    """Declare a non-durable, non-exclusive, non-auto-delete queue."""
    channel.queue_declare(
        queue=name,
        durable=False,
        exclusive=False,
        auto_delete=False,
    )


def declare_exchange(
    channel, name: str, exchange_type: ExchangeType = ExchangeType.direct
) -> None:
    """Declare a non-durable exchange."""
    channel.exchange_declare(
        exchange=name,
        exchange_type=exchange_type,
        durable=False,
        auto_delete=False,
        internal=False,
    )


class MessageBroker:
    """Connection and channel to RabbitMQ plus publish and consume operations.

    Create instances with MessageBroker.connect(); call close() on shutdown.
    Components that need the broker receive the instance explicitly.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        build_queue: Optional[str] = None,
        status_exchange: Optional[str] = None,
        publish_timeout: Optional[float] = None,
        consume_inactivity_timeout: Optional[float] = None,
    ):
        self.url = url or settings.amqp_url
        self.build_queue = build_queue or settings.build_queue
        self.status_exchange = status_exchange or settings.status_exchange
        self.publish_timeout = (
            settings.publish_timeout if publish_timeout is None else publish_timeout
        )
        self.consume_inactivity_timeout = (
            settings.consume_inactivity_timeout
            if consume_inactivity_timeout is None
            else consume_inactivity_timeout
        )

        self._connection = None
        self._channel = None
        self._closed = False
        self._healthy = False
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="ibb-broker"
        )

    @classmethod
    def connect(cls, url: Optional[str] = None, **kwargs) -> "MessageBroker":
        """Connect to RabbitMQ and declare the build queue and status exchange.

        Args:
            url: AMQP URL, defaults to settings.amqp_url
            **kwargs: Passed on to MessageBroker()

        Returns:
            MessageBroker: A connected broker

        Raises:
            BrokerConnectionError: If the broker cannot be reached or the
                channel cannot be opened
            BindingError: If the topology cannot be declared
        """
        broker = cls(url, **kwargs)
        try:
            broker._run(broker._open)
        except Exception:
            broker._executor.shutdown(wait=False)
            raise
        log.info(
            f"Connected to RabbitMQ at {broker.url.split('@')[-1]} "
            f"(queue={broker.build_queue}, exchange={broker.status_exchange})"
        )
        return broker

    @property
    def is_open(self) -> bool:
        """True if connection and channel were open after the last operation.

        The state is recorded on the broker I/O thread, so reading it never
        touches pika from the calling thread.
        """
        return not self._closed and self._healthy

    def close(self) -> None:
        """Close channel and connection. Calling close() twice is harmless."""
        if self._closed:
            return
        self._closed = True
        try:
            self._executor.submit(self._close).result()
        finally:
            self._executor.shutdown(wait=True)
        log.info("Broker connection closed")

    def create_and_bind(
        self, queue_name: str, exchange_name: str, routing_key: str
    ) -> None:
        """Declare a queue and bind it to an exchange.

        Args:
            queue_name: Queue to declare, no-op if it already exists
            exchange_name: Exchange to bind to
            routing_key: Routing key of the binding

        Raises:
            BindingError: If declaring or binding fails
        """
        try:
            self._run(self._create_and_bind, queue_name, exchange_name, routing_key)
        except BindingError:
            raise
        except (AMQPError, BrokerError) as e:
            raise BindingError(
                f"error binding queue {queue_name} to exchange {exchange_name}: {e}"
            ) from e

    def publish_to_queue(self, payload: bytes, queue_name: str) -> None:
        """Publish a message to a queue through the default exchange.

        Raises:
            PublishTimeoutError: If publishing takes longer than publish_timeout
            PublishError: On any other failure
        """
        self._publish("", queue_name, payload)

    def publish_to_exchange(
        self, payload: bytes, exchange_name: str, routing_key: str
    ) -> None:
        """Publish a message to an exchange with a routing key.

        Raises:
            PublishTimeoutError: If publishing takes longer than publish_timeout
            PublishError: On any other failure
        """
        self._publish(exchange_name, routing_key, payload)

    def consume_one(self, queue_name: str) -> Optional[Delivery]:
        """Fetch a single message from a queue, acknowledging it right away.

        Returns:
            Delivery: The message, possibly with an empty body
            None: If the queue is empty

        Raises:
            QueueNotFoundError: If the queue does not exist
            ConsumeError: On any other failure
        """
        return self._consume(self._basic_get, queue_name)

    def consume_all(self, queue_name: str) -> list[bytes]:
        """Drain the messages that are ready in a queue.

        Subscribes to the queue with automatic acknowledgement and collects
        message bodies until none has arrived for consume_inactivity_timeout
        seconds. Messages published after that are left for the next call.

        Returns:
            list[bytes]: Message bodies in delivery order, empty if none

        Raises:
            QueueNotFoundError: If the queue does not exist
            ConsumeError: On any other failure
        """
        return self._consume(self._drain, queue_name)

    def _run(
        self,
        func: Callable,
        *args,
        timeout: Optional[float] = None,
        on_late: Optional[Callable[[Future], None]] = None,
    ) -> Any:
        """Run func on the broker I/O thread and wait for its result.

        A call that is still queued when the wait times out is cancelled. A
        call that already started can not be stopped: it runs to completion
        and on_late is called with its future once it is done.
        """
        if self._closed:
            raise BrokerConnectionError("broker is closed")
        try:
            future: Future = self._executor.submit(self._call, func, *args)
        except RuntimeError as e:
            # close() shut the executor down after the check above
            raise BrokerConnectionError("broker is closed") from e
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            if not future.cancel() and on_late is not None:
                future.add_done_callback(on_late)
            raise

    def _publish(self, exchange: str, routing_key: str, payload: bytes) -> None:
        target = f"exchange {exchange}" if exchange else f"queue {routing_key}"

        def log_late_publish(future: Future) -> None:
            error = future.exception()
            if error is None:
                log.warning(f"Publish to {target} completed after timing out")
            else:
                log.warning(f"Publish to {target} failed after timing out: {error}")

        try:
            self._run(
                self._basic_publish,
                exchange,
                routing_key,
                payload,
                timeout=self.publish_timeout,
                on_late=log_late_publish,
            )
        except FutureTimeoutError as e:
            raise PublishTimeoutError(
                f"publishing to {target} timed out after {self.publish_timeout}s",
                self.publish_timeout,
            ) from e
        except (AMQPError, BrokerError, TypeError) as e:
            raise PublishError(f"failed to publish a message to {target}: {e}") from e
        log.debug(f"Published {len(payload)} bytes to {target}")

    def _consume(self, func: Callable, queue_name: str):
        try:
            return self._run(func, queue_name)
        except ChannelClosedByBroker as e:
            if e.reply_code == 404:
                raise QueueNotFoundError(queue_name) from e
            raise ConsumeError(f"failed to consume from {queue_name}: {e}") from e
        except (AMQPError, BrokerError) as e:
            raise ConsumeError(f"failed to consume from {queue_name}: {e}") from e

    # Everything below runs on the broker I/O thread.

    def _call(self, func: Callable, *args) -> Any:
        try:
            return func(*args)
        finally:
            self._healthy = (
                self._connection is not None
                and self._connection.is_open
                and self._channel is not None
                and self._channel.is_open
            )

    def _open(self) -> None:
        try:
            parameters = pika.URLParameters(self.url)
        except ValueError as e:
            raise BrokerConnectionError(f"invalid AMQP URL: {e}") from e
        parameters.blocked_connection_timeout = self.publish_timeout
        try:
            connection = pika.BlockingConnection(parameters)
        except (AMQPError, OSError) as e:
            raise BrokerConnectionError(f"failed to connect to RabbitMQ: {e}") from e

        try:
            channel = connection.channel()
        except AMQPError as e:
            self._close_connection(connection)
            raise BrokerConnectionError(f"failed to open a channel: {e}") from e

        try:
            declare_queue(channel, self.build_queue)
            declare_exchange(channel, self.status_exchange, ExchangeType.direct)
        except AMQPError as e:
            self._close_connection(connection)
            raise BindingError(f"error declaring topology: {e}") from e

        self._connection = connection
        self._channel = channel

    def _ensure_channel(self):
        if self._closed:
            raise BrokerConnectionError("broker is closed")
        if self._connection is None or not self._connection.is_open:
            log.warning("Connection to RabbitMQ lost, reconnecting")
            self._open()
        elif self._channel is None or not self._channel.is_open:
            log.warning("Channel was closed by the broker, opening a new one")
            try:
                self._channel = self._connection.channel()
            except AMQPError as e:
                raise BrokerConnectionError(f"failed to open a channel: {e}") from e
        return self._channel

    def _close(self) -> None:
        if self._channel is not None and self._channel.is_open:
            try:
                self._channel.close()
            except AMQPError as e:
                log.warning(f"Failed to close channel: {e}")
        self._channel = None
        if self._connection is not None:
            self._close_connection(self._connection)
        self._connection = None

    @staticmethod
    def _close_connection(connection) -> None:
        if not connection.is_open:
            return
        try:
            connection.close()
        except AMQPError as e:
            log.warning(f"Failed to close connection: {e}")

    def _create_and_bind(
        self, queue_name: str, exchange_name: str, routing_key: str
    ) -> None:
        channel = self._ensure_channel()
        declare_queue(channel, queue_name)
        channel.queue_bind(
            queue=queue_name, exchange=exchange_name, routing_key=routing_key
        )
        log.debug(
            f"Bound queue {queue_name} to exchange {exchange_name} "
            f"with routing key {routing_key}"
        )

    def _basic_publish(self, exchange: str, routing_key: str, payload: bytes) -> None:
        if not isinstance(payload, bytes):
            raise TypeError(f"payload must be bytes, not {type(payload).__name__}")
        channel = self._ensure_channel()
        channel.basic_publish(
            exchange=exchange,
            routing_key=routing_key,
            body=payload,
            properties=pika.BasicProperties(content_type=CONTENT_TYPE),
        )

    def _basic_get(self, queue_name: str) -> Optional[Delivery]:
        channel = self._ensure_channel()
        method, properties, body = channel.basic_get(queue=queue_name, auto_ack=True)
        if method is None:
            return None
        return Delivery(
            body=body or b"",
            content_type=properties.content_type if properties else None,
            exchange=method.exchange,
            routing_key=method.routing_key,
            delivery_tag=method.delivery_tag,
            redelivered=method.redelivered,
        )

    def _drain(self, queue_name: str) -> list[bytes]:
        channel = self._ensure_channel()
        bodies: list[bytes] = []
        try:
            for method, _properties, body in channel.consume(
                queue_name,
                auto_ack=True,
                inactivity_timeout=self.consume_inactivity_timeout,
            ):
                if method is None:
                    break
                bodies.append(body or b"")
        finally:
            if channel.is_open:
                channel.cancel()
        return bodies
