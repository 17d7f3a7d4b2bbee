"""Eventide - an event-sourced CQRS core for Python.

This module provides the public API for building event-sourced applications.
"""

from .application import Application
from .config import EventideSettings
from .domain import Aggregate, Command, DomainEvent, EventPayload, PendingEvent
from .events import NO_STREAM, EventUpcaster, FunctionUpcaster
from .projections import Projection
from .routing import applies_event, handles_command, handles_event

__all__ = [
    # Application
    "Application",
    "EventideSettings",
    # Domain primitives
    "Aggregate",
    "Command",
    "DomainEvent",
    "EventPayload",
    "PendingEvent",
    "Projection",
    # Schema evolution
    "EventUpcaster",
    "FunctionUpcaster",
    "NO_STREAM",
    # Decorators
    "applies_event",
    "handles_command",
    "handles_event",
]
