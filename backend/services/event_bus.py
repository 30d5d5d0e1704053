# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
In-process signal bus.

Carries execution-engine and canvas lifecycle signals to the schedule
listeners (`workflow.completed`, `workflow.failed`, `canvas.deleted`).
Handlers are awaited in subscription order; one failing handler is logged
and does not stop delivery to the others.

Usage:
    from services.event_bus import get_event_bus

    event_bus = get_event_bus()
    event_bus.subscribe("workflow.completed", reconciler.handle_workflow_completed)

    await event_bus.publish("workflow.completed", WorkflowCompletedEvent(...))
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from collections import defaultdict

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]


class EventBus:
    """
    Lightweight in-memory signal bus for a single process.

    Features:
    - Async handlers awaited sequentially per publish
    - Per-handler error isolation
    - Statistics for monitoring
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._event_count = 0
        self._failed_deliveries = 0

    def subscribe(self, channel: str, handler: EventHandler):
        """
        Register an async handler for a channel.

        Args:
            channel: Channel name (e.g., "workflow.completed")
            handler: Coroutine function receiving the published event
        """
        self._subscribers[channel].append(handler)
        logger.info(f"Subscribed to '{channel}' (total subscribers: {len(self._subscribers[channel])})")

    def unsubscribe(self, channel: str, handler: EventHandler):
        """
        Remove a handler from a channel.

        Args:
            channel: Channel name
            handler: Handler passed to subscribe()
        """
        if handler in self._subscribers.get(channel, []):
            self._subscribers[channel].remove(handler)
            logger.info(f"Unsubscribed from '{channel}' (remaining: {len(self._subscribers[channel])})")

            # Clean up empty channel lists
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    async def publish(self, channel: str, event: Any) -> int:
        """
        Deliver an event to every handler on the channel.

        Args:
            channel: Channel name
            event: Event object (dataclass from services.schedule.events)

        Returns:
            Number of handlers that completed without raising
        """
        handlers = list(self._subscribers.get(channel, []))
        self._event_count += 1

        if not handlers:
            logger.debug(f"No subscribers for '{channel}', event dropped")
            return 0

        delivered = 0
        for handler in handlers:
            try:
                await handler(event)
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failed_deliveries += 1
                logger.error(
                    f"Handler {getattr(handler, '__qualname__', handler)} failed on '{channel}': {e}",
                    exc_info=True
                )

        return delivered

    def get_stats(self) -> Dict[str, Any]:
        """
        Get event bus statistics.

        Returns:
            Dictionary with statistics:
            - total_channels: Number of channels with subscribers
            - total_subscribers: Total number of handlers across all channels
            - events_published: Total events published since start
            - failed_deliveries: Handler invocations that raised
            - channels: Per-channel subscriber counts
        """
        return {
            "total_channels": len(self._subscribers),
            "total_subscribers": sum(len(subs) for subs in self._subscribers.values()),
            "events_published": self._event_count,
            "failed_deliveries": self._failed_deliveries,
            "channels": {
                channel: len(subs)
                for channel, subs in self._subscribers.items()
            }
        }

    def clear_channel(self, channel: str):
        """
        Remove all handlers from a channel.

        Args:
            channel: Channel name to clear
        """
        if channel in self._subscribers:
            count = len(self._subscribers[channel])
            del self._subscribers[channel]
            logger.info(f"Cleared {count} subscribers from channel '{channel}'")


# Global singleton instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """
    Get or create the global event bus instance.

    Returns:
        Global EventBus singleton
    """
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
        logger.info("Initialized global event bus")
    return _event_bus


def reset_event_bus():
    """
    Reset the global event bus.

    Used for testing and cleanup. Not needed in normal operation.
    """
    global _event_bus
    _event_bus = None
    logger.info("Reset global event bus")
