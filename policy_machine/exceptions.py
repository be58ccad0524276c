"""
Policy Machine Exceptions

Every error raised by the engine derives from PolicyMachineError. Validation
failures also subclass the matching builtin (ValueError, TypeError) so callers
can treat them as ordinary argument errors.
"""


class PolicyMachineError(Exception):
    """Base exception for all policy machine errors."""


class InvalidArgumentError(PolicyMachineError, ValueError):
    """Raised when an argument fails validation.

    Covers unpersisted elements, blank machine uuids and malformed
    query options.
    """


class InvalidArgumentTypeError(InvalidArgumentError, TypeError):
    """Raised when a policy element of the wrong type is passed.

    For example an object where a user or user attribute is expected,
    or a plain value where a policy element is required.
    """


class InvalidAttributeError(InvalidArgumentError):
    """Raised when a policy element is created with an invalid attribute."""


class InvalidOperationNameError(InvalidAttributeError):
    """Raised when an operation identifier uses the reserved prohibition prefix."""


class CrossMachineViolationError(InvalidArgumentError):
    """Raised when elements violate policy machine boundaries.

    Either an element does not belong to the machine it is used with,
    or a logical link joins two elements of the same machine.
    """


class InvalidAssignmentError(InvalidArgumentError):
    """Raised when an assignment joins two element types that cannot be assigned."""


class CycleError(InvalidAssignmentError):
    """Raised when an assignment would close a cycle and cycles are not tolerated."""


class EmptyAssociationSetError(InvalidArgumentError):
    """Raised when a caller-supplied association filter is empty."""


class UnsupportedOperationError(PolicyMachineError, NotImplementedError):
    """Raised when a storage adapter does not implement an optional capability."""
