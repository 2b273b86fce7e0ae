"""
Error taxonomy for the rescue pipeline.

Every error carries the step that failed (if any) and the amounts/addresses
involved, so an aborted rescue can be audited after the fact. Key material
never goes into ``details``.
"""

from typing import Any, Dict, Optional


class RescueError(Exception):
    """Base class for every rescue pipeline failure."""

    def __init__(self, message: str, step: Optional[str] = None, **details: Any):
        self.message = message
        self.step = step
        self.details: Dict[str, Any] = details
        super().__init__(self._render())

    def _render(self) -> str:
        text = self.message
        if self.step:
            text = f"[{self.step}] {text}"
        if self.details:
            extras = ", ".join(f"{key}={value}" for key, value in self.details.items())
            text = f"{text} ({extras})"
        return text


class ConfigError(RescueError):
    """Missing or invalid configuration. Raised before any chain interaction."""

    def __init__(self, problems):
        self.problems = tuple(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class InvalidIntent(RescueError):
    """A transaction intent cannot be turned into a signed transaction."""


class ChainReadFailure(RescueError):
    """A read-only RPC call failed after the bounded retries."""


class CallRejected(RescueError):
    """The node refused a read outright (revert, bad argument). Never retried."""


class InsufficientBalance(RescueError):
    """An observation that must be positive came back zero or negative."""


class SimulationMismatch(RescueError):
    """The committed observation drifted from the dry-run estimate."""


class StepReverted(RescueError):
    """A step was refused or reverted by the execution backend."""


class SubmissionRejected(RescueError):
    """The relay rejected the bundle payload."""


class RelayUnavailable(SubmissionRejected):
    """The relay could not be reached. Never retried automatically."""


class StaleBundle(RescueError):
    """A bundle for an already-submitted target block was offered again."""


class PipelineCancelled(RescueError):
    """The pipeline was cancelled between steps."""
