"""
Tests for the domain event dispatcher.

Tests cover:
- Register / dispatch / unregister, including family base classes
- Handler failures not reaching the publisher
- Async dispatch with coroutine handlers
- The handles decorator

Run with: pytest tests/test_events.py -v
"""
import pytest


class TestEventDispatcher:
    """Tests for EventDispatcher."""

    def test_dispatch_by_exact_type(self, dispatcher):
        """Test handlers only receive the event type they registered for."""
        from execution_engine.core.events import ExecutionCancelledEvent, ExecutionStartedEvent

        started = []
        dispatcher.register(ExecutionStartedEvent, started.append)

        dispatcher.dispatch(ExecutionStartedEvent(execution_id="run-1", program_id="p"))
        dispatcher.dispatch(ExecutionCancelledEvent(execution_id="run-1"))

        assert len(started) == 1
        assert started[0].event_type == "ExecutionStartedEvent"
        assert started[0].timestamp.tzinfo is not None

    def test_family_handlers(self, dispatcher):
        """Test a handler on a family base receives every event of that family."""
        from execution_engine.core.events import (
            DeploymentCreatedEvent,
            DeploymentEvent,
            DeploymentRemovedEvent,
            ExecutionCancelledEvent,
        )

        order = []
        dispatcher.register(DeploymentEvent, lambda event: order.append(("family", event.event_type)))
        dispatcher.register(DeploymentRemovedEvent, lambda event: order.append(("exact", event.event_type)))

        dispatcher.dispatch(DeploymentCreatedEvent(program_id="app"))
        dispatcher.dispatch(DeploymentRemovedEvent(program_id="app"))
        dispatcher.dispatch(ExecutionCancelledEvent(execution_id="run-1"))

        assert order == [
            ("family", "DeploymentCreatedEvent"),
            ("exact", "DeploymentRemovedEvent"),
            ("family", "DeploymentRemovedEvent"),
        ]

    def test_failing_handler_is_isolated(self, dispatcher):
        """Test a raising handler does not stop the others."""
        from execution_engine.core.events import DeploymentRemovedEvent

        received = []

        def broken(event):
            raise RuntimeError("boom")

        dispatcher.register(DeploymentRemovedEvent, broken)
        dispatcher.register(DeploymentRemovedEvent, received.append)

        dispatcher.dispatch(DeploymentRemovedEvent(program_id="app"))

        assert [e.program_id for e in received] == ["app"]

    def test_unregister_and_clear(self, dispatcher):
        """Test removed handlers are no longer called."""
        from execution_engine.core.events import ExecutionOutputEvent

        lines = []
        dispatcher.register(ExecutionOutputEvent, lines.append)
        dispatcher.unregister(ExecutionOutputEvent, lines.append)
        dispatcher.dispatch(ExecutionOutputEvent(execution_id="run-1", line="hidden"))

        dispatcher.register(ExecutionOutputEvent, lines.append)
        dispatcher.clear()
        dispatcher.dispatch(ExecutionOutputEvent(execution_id="run-1", line="hidden"))

        assert lines == []

    @pytest.mark.asyncio
    async def test_dispatch_async(self, dispatcher):
        """Test sync and coroutine handlers are both awaited."""
        from execution_engine.core.events import ExecutionCompletedEvent

        received = []

        async def on_completed(event):
            received.append(("async", event.success))

        dispatcher.register(ExecutionCompletedEvent, on_completed)
        dispatcher.register(ExecutionCompletedEvent, lambda event: received.append(("sync", event.success)))

        await dispatcher.dispatch_async(ExecutionCompletedEvent(execution_id="run-1", success=True))

        assert received == [("async", True), ("sync", True)]

    def test_handles_decorator(self):
        """Test the decorator registers on the global dispatcher."""
        from execution_engine.core.events import DeploymentStatusChangedEvent, event_dispatcher, handles

        changes = []

        @handles(DeploymentStatusChangedEvent)
        def on_change(event):
            changes.append((event.old_status, event.new_status))

        try:
            event_dispatcher.dispatch(
                DeploymentStatusChangedEvent(program_id="app", old_status="inactive", new_status="active")
            )
        finally:
            event_dispatcher.unregister(DeploymentStatusChangedEvent, on_change)

        assert changes == [("inactive", "active")]
