"""Durable-queue publish/consume on RabbitMQ via pika.

pika's BlockingConnection is not thread-safe. The thread that connects owns
the connection and runs the consume loop (which also services heartbeats);
message handlers run on a thread pool, and every ack, nack or publish they
issue is handed back to the owner thread with ``add_callback_threadsafe``.
"""

import functools
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

import pika
from pika.exceptions import AMQPChannelError, AMQPConnectionError, AMQPError

from vidcat.config.models import BrokerConfig
from vidcat.domain.errors import BrokerConnectionLost, ConnectionExhausted

logger = logging.getLogger(__name__)

PERSISTENT_DELIVERY = 2


class Delivery:
    """One delivered message. Exactly one of ack()/nack() takes effect."""

    def __init__(self, client: "BrokerClient", delivery_tag: int, body: bytes, redelivered: bool = False):
        self._client = client
        self.delivery_tag = delivery_tag
        self.body = body
        self.redelivered = redelivered
        self._settled = False
        self._lock = threading.Lock()

    @property
    def settled(self) -> bool:
        return self._settled

    def json(self) -> Any:
        return json.loads(self.body)

    def _claim(self) -> bool:
        with self._lock:
            if self._settled:
                logger.warning(f"Delivery {self.delivery_tag} already settled, ignoring")
                return False
            self._settled = True
            return True

    def ack(self):
        if self._claim():
            self._client._settle(self.delivery_tag, ack=True)

    def nack(self, requeue: bool):
        if self._claim():
            self._client._settle(self.delivery_tag, ack=False, requeue=requeue)


class BrokerClient:
    """Connection + channel wrapper: connect with retry, declare, publish, consume."""

    def __init__(self, config: BrokerConfig, connection_factory: Callable[..., Any] = pika.BlockingConnection):
        self.config = config
        self._connection_factory = connection_factory
        self._connection = None
        self._channel = None
        self._owner_thread: Optional[int] = None
        self._publish_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def channel(self):
        return self._channel

    def connect(self, max_retries: Optional[int] = None, retry_interval: Optional[float] = None):
        """Connects with a fixed delay between attempts; returns the channel.

        Raises ConnectionExhausted when every attempt failed.
        """
        max_retries = max_retries if max_retries is not None else self.config.max_retries
        retry_interval = retry_interval if retry_interval is not None else self.config.retry_interval

        parameters = pika.URLParameters(self.config.url)
        parameters.heartbeat = self.config.heartbeat

        last_error: Optional[Exception] = None
        for attempt in range(1, max_retries + 1):
            connection = None
            try:
                logger.info(f"Connecting to broker (attempt {attempt}/{max_retries})")
                connection = self._connection_factory(parameters)
                channel = connection.channel()
            except AMQPError as e:
                last_error = e
                if connection is not None:
                    self._close_quietly(connection)
                logger.error(f"Broker connection failed (attempt {attempt}/{max_retries}): {e!r}")
                if attempt < max_retries:
                    time.sleep(retry_interval)
                continue

            self._connection = connection
            self._channel = channel
            self._owner_thread = threading.get_ident()
            self._channel.add_on_close_callback(self._on_channel_closed)
            logger.info("Broker connection established")
            return self._channel

        raise ConnectionExhausted(max_retries, last_error)

    @staticmethod
    def _close_quietly(connection):
        try:
            if connection.is_open:
                connection.close()
        except AMQPError as e:
            logger.warning(f"Error closing half-open broker connection: {e!r}")

    def _on_channel_closed(self, channel, reason):
        logger.error(f"Broker channel closed: {reason!r}")

    def declare_queue(self, name: str, durable: bool = True):
        self._require_channel().queue_declare(queue=name, durable=durable)
        logger.debug(f"Queue declared: {name} (durable={durable})")

    def _require_channel(self):
        if self._channel is None:
            raise BrokerConnectionLost("Broker channel is not available (connect() first)")
        return self._channel

    def _on_owner_thread(self) -> bool:
        return threading.get_ident() == self._owner_thread

    def _call_on_owner(self, callback: Callable[[], None]):
        if self._on_owner_thread():
            callback()
        else:
            self._connection.add_callback_threadsafe(callback)

    def publish(self, queue: str, message: Dict[str, Any]) -> bool:
        """Fire-and-forget publish of a JSON message.

        Failures are logged and reported as False; a message can be lost while
        the broker is unreachable.
        """
        if self._channel is None or self._connection is None:
            logger.error(f"Cannot publish to {queue}: broker channel is not available")
            return False
        body = json.dumps(message).encode("utf-8")
        try:
            if self._on_owner_thread():
                self._basic_publish(queue, body)
            else:
                self._connection.add_callback_threadsafe(functools.partial(self._deferred_publish, queue, body))
        except AMQPError as e:
            logger.error(f"Publish to {queue} failed: {e!r}")
            return False
        return True

    def _basic_publish(self, queue: str, body: bytes):
        with self._publish_lock:
            self._channel.basic_publish(
                exchange="",
                routing_key=queue,
                body=body,
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=PERSISTENT_DELIVERY,
                ),
            )
        logger.debug(f"Published to {queue}: {body!r}")

    def _deferred_publish(self, queue: str, body: bytes):
        # Runs inside the consume loop; raising here would tear it down
        try:
            self._basic_publish(queue, body)
        except AMQPError as e:
            logger.error(f"Publish to {queue} failed: {e!r}")

    def _settle(self, delivery_tag: int, ack: bool, requeue: bool = False):
        def _do():
            try:
                if ack:
                    self._channel.basic_ack(delivery_tag=delivery_tag)
                else:
                    self._channel.basic_nack(delivery_tag=delivery_tag, requeue=requeue)
            except AMQPError as e:
                # Unsettled messages come back once the connection is replaced
                logger.error(f"Could not settle delivery {delivery_tag}: {e!r}")

        try:
            self._call_on_owner(_do)
        except AMQPError as e:
            logger.error(f"Could not settle delivery {delivery_tag}: {e!r}")

    def _run_handler(self, handler: Callable[[Delivery], None], delivery: Delivery):
        try:
            handler(delivery)
        except Exception:
            logger.exception(f"Unhandled error in handler for delivery {delivery.delivery_tag}")
            if not delivery.settled:
                delivery.nack(requeue=False)

    def consume(self, queue: str, handler: Callable[[Delivery], None], prefetch: int = 1):
        """Blocks delivering messages from queue to handler.

        At most ``prefetch`` messages are unacknowledged at once and handled
        concurrently on a pool of the same size. Raises BrokerConnectionLost if
        the connection or channel drops.
        """
        channel = self._require_channel()
        channel.basic_qos(prefetch_count=prefetch)
        self._executor = ThreadPoolExecutor(max_workers=prefetch, thread_name_prefix=f"{queue}-handler")

        def _on_message(ch, method, properties, body):
            delivery = Delivery(self, method.delivery_tag, body, redelivered=bool(method.redelivered))
            self._executor.submit(self._run_handler, handler, delivery)

        channel.basic_consume(queue=queue, on_message_callback=_on_message, auto_ack=False)
        logger.info(f"Waiting for messages in {queue} (prefetch={prefetch})")
        try:
            channel.start_consuming()
        except (AMQPConnectionError, AMQPChannelError) as e:
            raise BrokerConnectionLost(f"Lost broker connection while consuming {queue}: {e!r}") from e
        finally:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def stop_consuming(self):
        if self._channel is not None:
            self._call_on_owner(self._channel.stop_consuming)

    def close(self):
        if self._connection is not None and self._connection.is_open:
            try:
                self._connection.close()
            except AMQPError as e:
                logger.warning(f"Error closing broker connection: {e!r}")
        self._connection = None
        self._channel = None
