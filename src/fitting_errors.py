"""
Exception hierarchy for the box-fitting engine.

Out-of-domain field queries are not errors (they return the zero coefficient
block) and optimizer non-convergence is reported as a status, so neither has
an exception here.
"""


class BoxFittingError(Exception):
    """Base exception for box-fitting errors."""
    pass


class ConfigurationError(BoxFittingError, ValueError):
    """Invalid resolution, degenerate bounding volume or bad config value."""
    pass


class StateError(BoxFittingError, RuntimeError):
    """Operation not allowed in the field's current lifecycle state."""
    pass


class SerializationError(BoxFittingError):
    """Truncated or corrupt binary stream."""
    pass
