"""
Domain events published by the engine and the deployment strategies.

Publishers call ``dispatch`` and never learn who listens: a websocket hub
streaming execution output, an audit log or a test collecting lifecycle
transitions. A handler registered for a family base class
(``ExecutionEvent``, ``DeploymentEvent``) receives every event of that family.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger(__name__)

Handler = Callable[["DomainEvent"], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DomainEvent:
    """Root of every event; carries the time it was created."""
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__


# =============================================================================
# Execution Events
# =============================================================================

@dataclass
class ExecutionEvent(DomainEvent):
    execution_id: str = None


@dataclass
class ExecutionStartedEvent(ExecutionEvent):
    """Emitted when an execution has been admitted and starts preparing."""
    program_id: str = None
    version_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class ExecutionOutputEvent(ExecutionEvent):
    """Emitted for every line a running program writes."""
    line: str = None
    is_error: bool = False


@dataclass
class ExecutionCompletedEvent(ExecutionEvent):
    """Emitted when an execution finishes, whatever the outcome."""
    success: bool = False
    exit_code: int = -1
    error_kind: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass
class ExecutionCancelledEvent(ExecutionEvent):
    """Emitted when cancellation of a live execution is requested."""


# =============================================================================
# Deployment Events
# =============================================================================

@dataclass
class DeploymentEvent(DomainEvent):
    program_id: str = None


@dataclass
class DeploymentCreatedEvent(DeploymentEvent):
    """Emitted when an application has been deployed."""
    deployment_type: str = None
    application_url: Optional[str] = None


@dataclass
class DeploymentStatusChangedEvent(DeploymentEvent):
    """Emitted when a deployed instance changes status."""
    old_status: str = None
    new_status: str = None


@dataclass
class DeploymentRemovedEvent(DeploymentEvent):
    """Emitted when an application is undeployed."""


# =============================================================================
# Dispatcher
# =============================================================================

class EventDispatcher:
    """
    In-process publish/subscribe for domain events.

    Handlers run synchronously in registration order, most specific event
    class first. A failing handler is logged and skipped; it never reaches
    the publisher.
    """

    def __init__(self):
        self._subscriptions: Dict[Type[DomainEvent], List[Handler]] = {}

    def register(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        """
        Subscribe handler to event_type and all of its subclasses.

        Args:
            event_type: Event class, or a family base such as DeploymentEvent
            handler: Called with the event; may return a coroutine when the
                event is published with dispatch_async
        """
        self._subscriptions.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {event_type.__name__}")

    def unregister(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        handlers = self._subscriptions.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event: DomainEvent) -> List[Handler]:
        matched: List[Handler] = []
        for cls in type(event).__mro__:
            matched.extend(self._subscriptions.get(cls, ()))
        return matched

    def _report(self, handler: Handler, event: DomainEvent, error: Exception) -> None:
        logger.error(f"Handler {getattr(handler, '__name__', handler)} failed for {event.event_type}: {error}")

    def dispatch(self, event: DomainEvent) -> None:
        for handler in self.handlers_for(event):
            try:
                handler(event)
            except Exception as e:
                self._report(handler, event, e)

    async def dispatch_async(self, event: DomainEvent) -> None:
        """Like dispatch, awaiting handlers that return a coroutine."""
        for handler in self.handlers_for(event):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._report(handler, event, e)

    def clear(self) -> None:
        self._subscriptions.clear()


# Process-wide dispatcher used when a service is not given its own
event_dispatcher = EventDispatcher()


def handles(event_type: Type[DomainEvent]):
    """
    Register the decorated function on the process-wide dispatcher.

    Example:
        @handles(ExecutionCompletedEvent)
        def on_execution_completed(event: ExecutionCompletedEvent):
            if not event.success:
                notify_owner(event.execution_id)
    """
    def decorator(func: Callable):
        event_dispatcher.register(event_type, func)
        return func
    return decorator
