"""Exception hierarchy for the tool-calling evaluation harness.

All exceptions inherit from ToolEvalError so the CLIs can catch them at the
top level.
"""


class ToolEvalError(Exception):
    """Base exception for all harness errors."""


class ConfigurationError(ToolEvalError):
    """Invalid or missing configuration. Fatal before any test runs."""


class ModelEndpointError(ToolEvalError):
    """The model endpoint was unreachable, errored, or returned a malformed payload."""


class LoopCancelledError(ToolEvalError):
    """The suite-wide cancellation event was set while a loop was running."""


class AnalysisError(ToolEvalError):
    """Batch analysis found nothing to analyse."""
