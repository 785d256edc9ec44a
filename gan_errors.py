"""Error types raised by the compute engine."""


class GANError(RuntimeError):
    """Base class for engine errors."""


class ShapeMismatchError(GANError, ValueError):
    """Tensor or layer dimensions are incompatible (or an index is out of range)."""


class StateError(GANError):
    """An operation was requested in a state that does not allow it.

    Examples: dispatching outside a compute session, reading a deleted
    tensor, calling backward() on a layer that has no training forward pass.
    """


class AllocationError(GANError, MemoryError):
    """Host or device storage could not be obtained."""
