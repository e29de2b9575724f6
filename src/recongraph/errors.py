"""Exception hierarchy.

Request-level failures (unknown transform, unknown traversal function,
malformed selector) propagate to the caller. InvalidElementError is
raised per element inside a batch and is always converted into a
diagnostic by the store; it never aborts the batch.
"""


class ReconError(Exception):
    """Base class for all recongraph errors."""


class UnknownTransformError(ReconError, KeyError):
    """No transform is registered under the requested name or alias."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown transform {self.name}"


class UnknownTraversalError(ReconError, ValueError):
    """A traversal pipeline step names a function that does not exist."""

    def __init__(self, name: str):
        super().__init__(f"Unrecognized traverse function {name}")
        self.name = name


class SelectorSyntaxError(ReconError, ValueError):
    """A selector string could not be parsed."""


class InvalidElementError(ReconError, ValueError):
    """A node or edge spec cannot be applied to the store."""
