"""
Errors
======
Exceptions raised before a pipeline starts.

Stage failures are never raised: stages return a ``StageResult`` carrying a
``StageFailure``. Only problems that make a run impossible to start (an
unreadable or invalid ``release-gate.yml``) surface as exceptions.
"""


class ReleaseGateError(Exception):
    """Base class for release-gate errors."""


class ConfigError(ReleaseGateError):
    """Pipeline configuration could not be loaded or validated."""
