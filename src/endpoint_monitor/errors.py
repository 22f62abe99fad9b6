from __future__ import annotations


class EndpointMonitorError(Exception):
    """Base class for errors raised by endpoint_monitor."""


class TargetError(EndpointMonitorError, ValueError):
    """A target definition is invalid or refers to an unknown id."""


class StorageError(EndpointMonitorError):
    """A targets file could not be read or holds nothing importable."""


class SchedulerError(EndpointMonitorError):
    """The scheduler could not spawn probe work and has stopped."""
