"""Exceptions shared across the pipeline."""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class IllegalTransitionError(PipelineError):
    """Raised when a scheduled message is asked to move between states the table does not allow."""

    def __init__(self, from_state, to_state):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Illegal transition: {getattr(from_state, 'value', from_state)} "
                         f"-> {getattr(to_state, 'value', to_state)}")


class DeliveryError(PipelineError):
    """Raised when a queued message cannot be materialized and should be retried."""


class MalformedPayloadError(PipelineError):
    """Raised when a queue payload cannot be parsed. Never retried."""


class StoreUnavailableError(PipelineError):
    """Raised when the store or broker cannot be reached at startup."""
