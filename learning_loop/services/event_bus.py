"""
In-process event bus with at-least-once delivery and bounded redelivery.
"""

import random
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from ..models.events import Event
from ..utils.config import EventBusConfig
from ..utils.logging_config import get_logger
from .background import BackgroundWorker

logger = get_logger(__name__)

Handler = Callable[[Event], None]


class EventBus:
    """Asynchronous hand-off between pipeline stages.

    `publish` only schedules deliveries and returns. Each subscriber receives its own
    delivery; a handler that raises is invoked again with exponential backoff until
    `retry_attempts` is exhausted, after which the event is dropped for that
    subscriber and logged. No cross-event ordering is promised.
    """

    def __init__(self, config: EventBusConfig, worker: Optional[BackgroundWorker] = None):
        self.config = config
        self.worker = worker or BackgroundWorker(max_workers=config.max_workers, name='event-bus')
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

        logger.info(f'Initialized EventBus with {config.max_workers} workers')

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """
        Register a handler invoked once per delivered event.

        Args:
            event_name: Event name to listen for
            handler: Callable receiving the Event
        """
        with self._lock:
            self._handlers[event_name].append(handler)
        logger.debug(f'Subscribed {getattr(handler, "__qualname__", handler)} to {event_name}')

    def publish(self, event_name: str, payload: dict) -> None:
        """
        Schedule delivery of an event to every subscriber; never raises.

        Args:
            event_name: Event name
            payload: Event payload (copied; later changes by the caller are not seen)
        """
        try:
            event = Event.create(event_name, payload)
            with self._lock:
                handlers = list(self._handlers.get(event_name, []))

            if not handlers:
                logger.warning(f'No subscribers for {event_name}; event {event.event_id} dropped')
                return

            for handler in handlers:
                self.worker.spawn(self._deliver, event, handler, description=f'delivery of {event_name}')

            logger.debug(f'Published {event_name} ({event.event_id}) for interaction {event.interaction_id}')

        except Exception as e:
            logger.error(f'Failed to publish {event_name}: {e}')

    def _deliver(self, event: Event, handler: Handler) -> None:
        attempts = self.config.retry_attempts
        for attempt in range(attempts):
            try:
                handler(event)
                return

            except Exception as e:
                logger.warning(f'Delivery of {event.name} ({event.event_id}) attempt {attempt + 1}/{attempts} failed: {e}')

                if attempt < attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_delay)
                    time.sleep(delay)

        logger.error(f'Giving up on {event.name} ({event.event_id}) for interaction {event.interaction_id} '
                     f'after {attempts} attempts')

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every scheduled delivery, including follow-up events, has finished."""
        return self.worker.join(timeout)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.worker.shutdown(timeout)
