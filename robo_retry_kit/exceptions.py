"""Exceptions raised by robo_retry_kit."""


class RoboKitError(Exception):
    """Base exception for all robo_retry_kit errors."""

    pass


class ConfigurationError(RoboKitError, ValueError):
    """A configuration value could not be used."""

    pass


class ReportWriterError(RoboKitError):
    """The shared report writer could not be initialized.

    Raised only at suite start; a run without a working report pipeline is
    not recoverable.
    """

    pass


class LifecycleError(RoboKitError):
    """A test invocation received an event that is illegal in its current state."""

    def __init__(self, node_id, state, event):
        self.node_id = node_id
        self.state = state
        self.event = event
        super().__init__(f"{node_id}: cannot handle '{event}' while {state.name}")
