"""
Topic consumer: turns each delivered record into a dispatched task and decides whether to acknowledge it
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .dispatcher import TaskDispatcher
from .tasks import HandlerPanic, SubmissionError


log = logging.getLogger("topic_consumer")

MESSAGE_TYPES: Dict[str, str] = {
    "orders": "order-processing",
    "payments": "payment-processing",
    "alerts": "system-alert",
}


def _decode(raw) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


@dataclass(frozen=True)
class Record:
    topic: str
    key: str
    value: str
    partition: int = 0
    offset: int = -1

    @classmethod
    def from_message(cls, msg) -> "Record":
        """Build a Record from a confluent_kafka.Message"""
        return cls(
            topic=msg.topic(),
            key=_decode(msg.key()),
            value=_decode(msg.value()),
            partition=msg.partition(),
            offset=msg.offset(),
        )


class TopicConsumer:
    """
    Record handler shared by all partition workers

    `on_record` calls `ack.acknowledge()` only when the task was submitted; every failure is logged and leaves the
    record unacknowledged so the broker redelivers it. Nothing raised while handling one record escapes
    """
    def __init__(self, dispatcher: TaskDispatcher, message_types: Optional[Dict[str, str]] = None):
        self.dispatcher = dispatcher
        self.message_types = dict(MESSAGE_TYPES if message_types is None else message_types)

    def message_type_for(self, topic: str) -> str:
        try:
            return self.message_types[topic]
        except KeyError:
            raise ValueError(f"No message type configured for topic {topic!r}") from None

    def on_record(self, record: Record, ack) -> bool:
        """
        Handle one record

        Parameters
        ----------
        record: Record - The delivered record
        ack - Acknowledgment handle for this record (`acknowledge()` commits it)

        Returns
        ----------
        bool - True if the record was acknowledged
        """
        try:
            message_type = self.message_type_for(record.topic)
            log.info(f"Received {record.topic} message: key={record.key}, value={record.value}")
            self.dispatcher.handle(message_type, record.topic, record.key, record.value)
        except SubmissionError as e:
            log.error(f"Task submission failed for {record.topic}[{record.partition}]@{record.offset} key={record.key}: {e}")
            return False
        except HandlerPanic as e:
            log.error(f"Handler panic for {record.topic}[{record.partition}]@{record.offset} key={record.key}: {e}", exc_info=e.__cause__ or e)
            return False
        except Exception:
            log.exception(f"Error processing {record.topic} message key={record.key}")
            return False

        ack.acknowledge()
        return True
