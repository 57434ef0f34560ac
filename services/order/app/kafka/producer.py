from kafka import KafkaProducer
from kafka.errors import KafkaError
import json
import logging
import time
from app.core.config import settings

logger = logging.getLogger(__name__)

_producer = None
# monotonic time before which construction is not retried
_unavailable_until = 0.0

def _api_version():
    if not settings.KAFKA_API_VERSION:
        return None
    return tuple(int(part) for part in settings.KAFKA_API_VERSION.split("."))

def get_producer():
    global _producer, _unavailable_until
    if _producer is None:
        if time.monotonic() < _unavailable_until:
            raise KafkaError("Kafka unavailable, retrying later")
        try:
            _producer = KafkaProducer(
                bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
                value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
                key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
                linger_ms=5,
                retries=3,
                max_block_ms=settings.KAFKA_MAX_BLOCK_MS,
                api_version=_api_version(),
            )
        except KafkaError:
            _unavailable_until = time.monotonic() + settings.KAFKA_RETRY_SECONDS
            logger.warning("Kafka producer unavailable, next attempt in %ss", settings.KAFKA_RETRY_SECONDS)
            raise
    return _producer

def send(topic: str, key: str, value: dict, wait: bool = False):
    """Queue an event. Only blocks on delivery when ``wait`` is set."""
    p = get_producer()
    future = p.send(topic, key=key, value=value)
    if wait:
        p.flush(5)
    return future
