"""errors.py - Exception types raised by the interception engine.

Failures raised by instrumented code are never wrapped in these types: they
are recorded as event data and re-raised to the caller unchanged.
"""


class CallmapError(Exception):
    """Base class for all callmap errors."""


class AlreadyHooked(CallmapError):
    """Raised when ``install()`` targets a method that is already wrapped."""

    def __init__(self, defined_class: str, method_id: str) -> None:
        super().__init__(f"{defined_class}.{method_id} is already hooked")
        self.defined_class = defined_class
        self.method_id = method_id


class Ineligible(CallmapError):
    """Raised when a method is excluded by configuration or a built-in rule.

    Attributes:
        reason (str): Short description of the rule that excluded the method,
            e.g. ``"constructor"`` or ``"excluded by configuration"``.
    """

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"{target} is not eligible for hooking: {reason}")
        self.target = target
        self.reason = reason
