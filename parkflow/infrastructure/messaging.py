# File: parkflow/infrastructure/messaging.py
"""
Messaging Infrastructure for the Parking Session Engine

This module carries everything the engine emits after a transition commits:
1. Event Bus - In-process publish/subscribe of session events
2. Message Queue - Broker adapters delivering barrier commands and events
   to device controllers and other services
3. Event Store - Append-only audit trail of session events
4. Message Bus - Routes messages to the above through an outbox with retry

Delivery is fire-and-forget relative to the state transition: publishing
failures are logged and never propagate back into the session service.

Supported Brokers:
- Redis Pub/Sub
- RabbitMQ
- In-memory (for testing and CLI replays)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, List, Any, Callable, Tuple
from uuid import uuid4
import json
import logging
import threading
import time

import redis
import pika
import pymongo
from pika.exceptions import AMQPError
from pymongo.errors import PyMongoError

from ..domain import models


# ============================================================================
# MESSAGE TYPES AND ENUMS
# ============================================================================

class MessageType(str, Enum):
    """Types of messages in the system"""
    DOMAIN_EVENT = "domain_event"
    BARRIER_COMMAND = "barrier_command"


class EventType(str, Enum):
    """Session event types"""
    SESSION_OPENED = "session.opened"
    SESSION_EXIT_PENDING = "session.exit_pending"
    SESSION_PAID = "session.paid"
    SESSION_CLOSED = "session.closed"
    SESSION_REPRICED = "session.repriced"
    SESSION_CORRECTED = "session.corrected"
    SESSION_ERROR = "session.error"


# ============================================================================
# MESSAGE BASE CLASSES
# ============================================================================

@dataclass
class Message:
    """Base message class"""
    message_id: str = field(default_factory=lambda: str(uuid4()))
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=datetime.utcnow)
    correlation_id: Optional[str] = None
    source: Optional[str] = "parkflow"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary"""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        """Convert message to JSON string"""
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        """Create message from dictionary"""
        values = dict(data)
        values['timestamp'] = datetime.fromisoformat(values['timestamp'])
        values['message_type'] = MessageType(values['message_type'])
        if 'event_type' in values:
            values['event_type'] = EventType(values['event_type'])
        message_class = {
            MessageType.DOMAIN_EVENT: DomainEvent,
            MessageType.BARRIER_COMMAND: BarrierCommandMessage,
        }[values['message_type']]
        return message_class(**values)

    @classmethod
    def from_json(cls, json_str: str) -> 'Message':
        """Create message from JSON string"""
        return cls.from_dict(json.loads(json_str))


@dataclass
class DomainEvent(Message):
    """Domain event message"""
    event_type: EventType = EventType.SESSION_OPENED
    aggregate_id: Optional[str] = None
    aggregate_type: Optional[str] = "ParkingSession"
    data: Dict[str, Any] = field(default_factory=dict)
    version: int = 1

    def __post_init__(self):
        self.message_type = MessageType.DOMAIN_EVENT

    @classmethod
    def from_domain(cls, event: models.SessionEvent) -> 'DomainEvent':
        """Wrap an aggregate event for transport"""
        return cls(
            message_id=event.event_id,
            timestamp=event.timestamp,
            correlation_id=event.session_id,
            event_type=EventType(event.event_type),
            aggregate_id=event.session_id,
            data=event.to_dict(),
        )


@dataclass
class BarrierCommandMessage(Message):
    """Barrier intent addressed to a device controller"""
    device_id: str = ""
    lane_id: str = ""
    action: str = models.BarrierAction.OPEN.value
    reason: str = ""
    command_id: Optional[str] = None

    def __post_init__(self):
        self.message_type = MessageType.BARRIER_COMMAND

    @classmethod
    def from_command(cls, command: models.BarrierCommand) -> 'BarrierCommandMessage':
        return cls(
            timestamp=command.created_at,
            correlation_id=command.correlation_id,
            device_id=command.device_id,
            lane_id=command.lane_id,
            action=command.action.value,
            reason=command.reason.value,
            command_id=command.id,
        )


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


class LoggingEventHandler(EventHandler):
    """Writes every session event to the log"""

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    def handle(self, event: DomainEvent) -> None:
        self._logger.info(
            f"{event.event_type.value} session={event.aggregate_id} "
            f"status={event.data.get('status')}"
        )


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Implements publish/subscribe pattern within the same process.
    A failing handler is logged and does not stop the others.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        handlers = self._subscribers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
            self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type}")

    def subscribe_all(self, handler: EventHandler) -> None:
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.debug(f"Publishing event: {event.event_type} (ID: {event.message_id})")

        for handler in list(self._subscribers.get(event.event_type, [])):
            if handler.can_handle(event):
                try:
                    handler.handle(event)
                except Exception as e:
                    self._logger.error(
                        f"Error handling event {event.event_type} with {handler.__class__.__name__}: {e}"
                    )


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Abstract base class for message queues"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a topic"""
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to messages from a topic"""
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    def close(self) -> None:
        pass


# ============================================================================
# REDIS MESSAGE QUEUE
# ============================================================================

class RedisMessageQueue(MessageQueue):
    """Redis-based message queue using Pub/Sub"""

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None, **kwargs):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.redis_client = client or redis.Redis.from_url(redis_url, **kwargs)
        self.pubsub = self.redis_client.pubsub()

        self._subscriptions: Dict[str, str] = {}  # subscription_id -> topic
        self._callbacks: Dict[str, Callable[[Message], None]] = {}
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a Redis channel"""
        try:
            receivers = self.redis_client.publish(topic, message.to_json())
            self._logger.debug(f"Published message to {topic}: {message.message_id} ({receivers} receivers)")
            return True
        except redis.exceptions.RedisError as e:
            self._logger.error(f"Error publishing to Redis: {e}")
            return False

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to a Redis channel"""
        subscription_id = str(uuid4())
        self._subscriptions[subscription_id] = topic
        self._callbacks[subscription_id] = callback
        self.pubsub.subscribe(topic)

        if not self._running:
            self._start_listener()

        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id not in self._subscriptions:
            return False

        topic = self._subscriptions.pop(subscription_id)
        del self._callbacks[subscription_id]

        # Unsubscribe from Redis if no more subscribers for this topic
        if topic not in self._subscriptions.values():
            self.pubsub.unsubscribe(topic)
            self._logger.debug(f"Unsubscribed from {topic}")
        return True

    def _start_listener(self):
        self._running = True
        self._thread = threading.Thread(target=self._listen, daemon=True)
        self._thread.start()
        self._logger.info("Started Redis message listener")

    def _listen(self):
        while self._running:
            try:
                message = self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message['type'] == 'message':
                    self._handle_message(message)
            except redis.exceptions.RedisError as e:
                self._logger.error(f"Error in Redis listener: {e}")
                time.sleep(1)  # Avoid tight loop on error

    def _handle_message(self, redis_message: Dict[str, Any]):
        topic = redis_message['channel']
        if isinstance(topic, bytes):
            topic = topic.decode('utf-8')
        data = redis_message['data']
        if isinstance(data, bytes):
            data = data.decode('utf-8')

        try:
            message = Message.from_json(data)
        except (ValueError, KeyError, TypeError) as e:
            self._logger.error(f"Discarding malformed message on {topic}: {e}")
            return

        for subscription_id, callback_topic in list(self._subscriptions.items()):
            if callback_topic == topic:
                try:
                    self._callbacks[subscription_id](message)
                except Exception as e:
                    self._logger.error(f"Error in callback for subscription {subscription_id}: {e}")

    def close(self):
        """Close Redis connections"""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
        self.pubsub.close()
        self.redis_client.close()
        self._logger.info("Redis message queue closed")


# ============================================================================
# RABBITMQ MESSAGE QUEUE
# ============================================================================

class RabbitMQMessageQueue(MessageQueue):
    """RabbitMQ-based message queue"""

    def __init__(self, amqp_url: str = "amqp://localhost:5672"):
        self.amqp_url = amqp_url
        self._logger = logging.getLogger(self.__class__.__name__)
        self.connection_params = pika.URLParameters(amqp_url)

        # Connection and channel (lazy initialization)
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None
        self._consumer_tags: Dict[str, str] = {}

    def _ensure_connection(self) -> None:
        """Ensure RabbitMQ connection is established"""
        if not self._connection or self._connection.is_closed:
            self._connection = pika.BlockingConnection(self.connection_params)
            self._channel = self._connection.channel()
            self._logger.debug("RabbitMQ connection established")

    @staticmethod
    def _routing_key(message: Message) -> str:
        if isinstance(message, DomainEvent):
            return message.event_type.value
        if isinstance(message, BarrierCommandMessage):
            return f"barrier.{message.lane_id}"
        return ''

    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a RabbitMQ topic exchange"""
        try:
            self._ensure_connection()
            self._channel.exchange_declare(exchange=topic, exchange_type='topic', durable=True)
            self._channel.basic_publish(
                exchange=topic,
                routing_key=self._routing_key(message),
                body=message.to_json().encode('utf-8'),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Persistent
                    content_type='application/json',
                    message_id=message.message_id,
                    timestamp=int(message.timestamp.timestamp()),
                    correlation_id=message.correlation_id,
                )
            )
            self._logger.debug(f"Published message to {topic}: {message.message_id}")
            return True
        except AMQPError as e:
            self._logger.error(f"Error publishing to RabbitMQ: {e}")
            return False

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Bind an exclusive queue to the exchange; consume with start_consuming()"""
        self._ensure_connection()
        self._channel.exchange_declare(exchange=topic, exchange_type='topic', durable=True)
        queue = self._channel.queue_declare(queue='', exclusive=True).method.queue
        self._channel.queue_bind(exchange=topic, queue=queue, routing_key='#')

        def message_handler(ch, method, properties, body):
            try:
                callback(Message.from_json(body.decode('utf-8')))
                ch.basic_ack(delivery_tag=method.delivery_tag)
            except Exception as e:
                self._logger.error(f"Error processing message from {topic}: {e}")
                ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

        subscription_id = str(uuid4())
        self._consumer_tags[subscription_id] = self._channel.basic_consume(
            queue=queue, on_message_callback=message_handler
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        consumer_tag = self._consumer_tags.pop(subscription_id, None)
        if consumer_tag is None:
            return False
        self._channel.basic_cancel(consumer_tag)
        return True

    def start_consuming(self) -> None:
        self._ensure_connection()
        self._channel.start_consuming()

    def close(self):
        if self._connection and not self._connection.is_closed:
            self._connection.close()
        self._logger.info("RabbitMQ connection closed")


# ============================================================================
# IN-MEMORY MESSAGE QUEUE (For Testing)
# ============================================================================

class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue for testing"""

    def __init__(self):
        self._callbacks: Dict[str, Tuple[str, Callable[[Message], None]]] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        with self._lock:
            self._messages.setdefault(topic, []).append(message)
            callbacks = [cb for t, cb in self._callbacks.values() if t == topic]

        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                self._logger.error(f"Error in callback for topic {topic}: {e}")

        self._logger.debug(f"Published to {topic}: {message.message_id}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        with self._lock:
            self._callbacks[subscription_id] = (topic, callback)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._callbacks.pop(subscription_id, None) is not None

    def get_messages(self, topic: str) -> List[Message]:
        """Get all messages published to a topic (for testing)"""
        with self._lock:
            return list(self._messages.get(topic, []))


# ============================================================================
# EVENT STORE (Audit trail)
# ============================================================================

class EventStore(ABC):
    """Append-only store of session events"""

    @abstractmethod
    def save(self, event: DomainEvent) -> bool:
        pass

    @abstractmethod
    def get_events_for_aggregate(self, aggregate_id: str) -> List[DomainEvent]:
        pass

    def close(self) -> None:
        pass


class InMemoryEventStore(EventStore):

    def __init__(self):
        self._events: List[DomainEvent] = []
        self._lock = threading.Lock()

    def save(self, event: DomainEvent) -> bool:
        with self._lock:
            self._events.append(event)
        return True

    def get_events_for_aggregate(self, aggregate_id: str) -> List[DomainEvent]:
        with self._lock:
            return [e for e in self._events if e.aggregate_id == aggregate_id]


class MongoEventStore(EventStore):
    """
    Event store on MongoDB

    Stores every session event, enabling:
    - Audit of who changed what and when
    - Replay of a session's history
    """

    def __init__(self, mongo_url: str = "mongodb://localhost:27017", database: str = "parkflow", **kwargs):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.client = pymongo.MongoClient(mongo_url, **kwargs)
        self.events_collection = self.client[database]['session_events']

        self.events_collection.create_index([('aggregate_id', 1), ('timestamp', 1)])
        self.events_collection.create_index([('event_type', 1)])

    def save(self, event: DomainEvent) -> bool:
        try:
            result = self.events_collection.insert_one(self._event_to_document(event))
            self._logger.debug(f"Saved event {event.event_type} for session {event.aggregate_id}")
            return result.acknowledged
        except PyMongoError as e:
            self._logger.error(f"Error saving event to store: {e}")
            return False

    def get_events_for_aggregate(self, aggregate_id: str) -> List[DomainEvent]:
        try:
            cursor = self.events_collection.find({'aggregate_id': aggregate_id}).sort('timestamp', 1)
            return [self._document_to_event(doc) for doc in cursor]
        except PyMongoError as e:
            self._logger.error(f"Error reading events for session {aggregate_id}: {e}")
            return []

    @staticmethod
    def _event_to_document(event: DomainEvent) -> Dict[str, Any]:
        return {
            '_id': event.message_id,
            'event_type': event.event_type.value,
            'timestamp': event.timestamp,
            'aggregate_id': event.aggregate_id,
            'aggregate_type': event.aggregate_type,
            'version': event.version,
            'data': event.data,
            'correlation_id': event.correlation_id,
            'source': event.source,
        }

    @staticmethod
    def _document_to_event(doc: Dict[str, Any]) -> DomainEvent:
        return DomainEvent(
            message_id=doc['_id'],
            event_type=EventType(doc['event_type']),
            timestamp=doc['timestamp'],
            aggregate_id=doc.get('aggregate_id'),
            aggregate_type=doc.get('aggregate_type'),
            version=doc.get('version', 1),
            data=doc.get('data', {}),
            correlation_id=doc.get('correlation_id'),
            source=doc.get('source'),
        )

    def close(self):
        self.client.close()
        self._logger.info("Event store closed")


# ============================================================================
# MESSAGE BUS (Orchestrator)
# ============================================================================

class MessageBus:
    """
    Routes session events and barrier commands to the event bus, the
    broker and the event store.

    Broker delivery goes through an outbox with retry. With
    deliver_in_background the outbox drains on a worker thread so the
    caller never waits on the broker.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        event_store: Optional[EventStore] = None,
        events_topic: str = "parkflow.events",
        barrier_topic: str = "parkflow.barrier",
        deliver_in_background: bool = True,
        max_retries: int = 3,
        retry_delay: float = 0.5
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.event_store = event_store
        self.events_topic = events_topic
        self.barrier_topic = barrier_topic
        self.deliver_in_background = deliver_in_background
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._logger = logging.getLogger(self.__class__.__name__)

        self._outbox: List[Tuple[str, Message]] = []
        self._outbox_lock = threading.Lock()
        self._draining = False
        self.dead_letters: List[Tuple[str, Message]] = []

    def publish_event(self, event: DomainEvent) -> None:
        """Publish a domain event through all channels"""
        self._logger.info(f"Publishing event {event.event_type.value} (session {event.aggregate_id})")

        if self.event_store:
            try:
                self.event_store.save(event)
            except Exception as e:
                self._logger.error(f"Failed to save event to store: {e}")

        self.event_bus.publish(event)

        if self.message_queue:
            self._add_to_outbox(self.events_topic, event)

    def publish_domain_events(self, events: List[models.DomainEvent]) -> None:
        for event in events:
            self.publish_event(DomainEvent.from_domain(event))

    def publish_barrier_command(self, command: models.BarrierCommand) -> None:
        """Send a barrier intent to device controllers"""
        self._logger.info(
            f"Barrier {command.action.value} on lane {command.lane_id} "
            f"(device {command.device_id}, reason {command.reason.value})"
        )
        if self.message_queue:
            self._add_to_outbox(self.barrier_topic, BarrierCommandMessage.from_command(command))
        else:
            self._logger.warning(f"No broker configured, barrier command {command.id} not delivered")

    def _add_to_outbox(self, topic: str, message: Message) -> None:
        with self._outbox_lock:
            self._outbox.append((topic, message))
            start_worker = self.deliver_in_background and not self._draining
            if start_worker:
                self._draining = True

        if start_worker:
            threading.Thread(target=self._process_outbox, daemon=True).start()
        elif not self.deliver_in_background:
            self._process_outbox()

    def _process_outbox(self) -> None:
        """Process messages in the outbox with retry logic"""
        while True:
            with self._outbox_lock:
                if not self._outbox:
                    self._draining = False
                    return
                topic, message = self._outbox.pop(0)

            if not self._publish_with_retry(topic, message):
                self._logger.error(f"Failed to publish message {message.message_id} to {topic} after retries")
                with self._outbox_lock:
                    self.dead_letters.append((topic, message))

    def _publish_with_retry(self, topic: str, message: Message) -> bool:
        for attempt in range(self.max_retries):
            try:
                if self.message_queue.publish(topic, message):
                    return True
            except Exception as e:
                self._logger.warning(f"Attempt {attempt + 1} failed for message {message.message_id}: {e}")
            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff
        return False

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until the outbox is empty (background delivery only)"""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._outbox_lock:
                if not self._outbox and not self._draining:
                    return True
            time.sleep(0.01)
        return False

    def subscribe_to_events(self, event_type: EventType, handler: EventHandler) -> None:
        self.event_bus.subscribe(event_type, handler)

    def replay_events(self, aggregate_id: str, handler: EventHandler) -> None:
        """Replay the audit trail of one session"""
        if not self.event_store:
            raise RuntimeError("Event store not configured")

        for event in self.event_store.get_events_for_aggregate(aggregate_id):
            if handler.can_handle(event):
                handler.handle(event)

    def close(self, timeout: float = 5.0):
        """Drain the outbox, then close the broker and the event store"""
        if not self.flush(timeout):
            with self._outbox_lock:
                pending = len(self._outbox)
            self._logger.warning(f"Closing with {pending} undelivered message(s) in the outbox")
        if self.message_queue:
            self.message_queue.close()
        if self.event_store:
            self.event_store.close()
        self._logger.info("Message bus closed")


# ============================================================================
# MESSAGE BROKER FACTORY
# ============================================================================

class MessageBrokerFactory:
    """Factory for creating message brokers"""

    @staticmethod
    def create_broker(broker_type: str, redis_url: Optional[str] = None, amqp_url: Optional[str] = None) -> MessageQueue:
        if broker_type == "redis":
            return RedisMessageQueue(redis_url or "redis://localhost:6379")
        if broker_type == "rabbitmq":
            return RabbitMQMessageQueue(amqp_url or "amqp://localhost:5672")
        if broker_type == "memory":
            return InMemoryMessageQueue()
        raise ValueError(f"Unknown broker type: {broker_type}")

    @staticmethod
    def create_event_store(mongo_url: Optional[str] = None) -> EventStore:
        if mongo_url:
            return MongoEventStore(mongo_url)
        return InMemoryEventStore()
