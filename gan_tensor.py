import logging
from collections import namedtuple
from enum import Enum

import numpy as np

from gan_errors import AllocationError, ShapeMismatchError, StateError
from gan_kernels import Hazard

logger = logging.getLogger(__name__)


class Dim(namedtuple('Dim', ['count', 'height', 'width', 'depth'])):
    """Tensor dimensions; ``count`` is the batch axis."""
    __slots__ = ()

    @property
    def elements(self):
        """Elements per batch item."""
        return self.height * self.width * self.depth

    def size_equals(self, other):
        """Compare everything except the batch size."""
        return tuple(self)[1:] == tuple(other)[1:]


class TensorInit(Enum):
    ZERO = 'zero'
    NONE = 'none'
    XAVIER = 'xavier'
    HE = 'he'


class TensorMode(Enum):
    IO = 'io'
    COMPUTE = 'compute'


TensorStats = namedtuple('TensorStats', ['min', 'max', 'mean', 'stddev', 'norm'])


def xavier(dim, rng):
    """Normal samples with std sqrt(2/(fan_in + fan_out))."""
    dim = Dim(*dim)
    std = np.sqrt(2.0 / (dim.elements + dim.count))
    return rng.normal(0.0, std, dim).astype(np.float32)


def he(dim, rng):
    """Normal samples with std sqrt(2/fan_in)."""
    dim = Dim(*dim)
    std = np.sqrt(2.0 / dim.elements)
    return rng.normal(0.0, std, dim).astype(np.float32)


def _host_zeros(shape):
    try:
        return np.zeros(shape, dtype=np.float32)
    except MemoryError as e:
        logger.error("host allocation of %s failed", tuple(shape))
        raise AllocationError(f"cannot allocate host buffer {shape}") from e


class Tensor:
    """4-D float32 array resident on the host (IO) or in compute storage.

    Layout is row-major with the channel fastest varying, i.e. the flat
    index of ``(n, i, j, k)`` is ``((n*H + i)*W + j)*C + k``.

    IO tensors are read and written directly with get/set/io_fill/io_copy.
    COMPUTE tensors are only touched by kernels dispatched inside an open
    session of their engine. ``Tensor.copy`` moves data between any pair of
    residencies.
    """

    def __init__(self, engine, dim, init=TensorInit.ZERO, mode=TensorMode.COMPUTE, rng=None):
        self.engine = engine
        self.dim = Dim(*dim)
        self.mode = mode
        if min(self.dim) <= 0:
            raise ShapeMismatchError(f"invalid tensor dimensions {self.dim}")
        if init in (TensorInit.XAVIER, TensorInit.HE) and rng is None:
            raise ValueError(f"{init.name} initialization requires a random generator")

        if mode is TensorMode.IO:
            self._buffer = _host_zeros(self.dim)
        else:
            self._buffer = engine.backend.alloc(self.dim)
        if init is TensorInit.XAVIER:
            self._write(xavier(self.dim, rng))
        elif init is TensorInit.HE:
            self._write(he(self.dim, rng))

    @classmethod
    def from_array(cls, engine, array, mode=TensorMode.IO):
        array = np.asarray(array, dtype=np.float32)
        if array.ndim != 4:
            raise ShapeMismatchError(f"expected a 4-D array, got shape {array.shape}")
        tensor = cls(engine, array.shape, TensorInit.NONE, mode)
        tensor._write(array)
        return tensor

    def __repr__(self):
        return f"Tensor(dim={tuple(self.dim)}, mode={self.mode.name})"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.delete()

    # --- Storage ---

    @property
    def deleted(self):
        return self._buffer is None

    @property
    def buffer(self):
        """Underlying storage (host array or backend buffer)."""
        if self._buffer is None:
            raise StateError("tensor has been deleted")
        return self._buffer

    @property
    def array(self):
        """Host array of an IO tensor."""
        self._require(TensorMode.IO)
        return self.buffer

    def delete(self):
        self._buffer = None

    def view(self, dim):
        """Tensor sharing this tensor's storage under a different shape."""
        dim = Dim(*dim)
        if dim.count != self.dim.count or dim.elements != self.dim.elements:
            raise ShapeMismatchError(f"cannot view {self.dim} as {dim}")
        view = Tensor.__new__(Tensor)
        view.engine = self.engine
        view.dim = dim
        view.mode = self.mode
        view._buffer = self.buffer.reshape(dim)
        return view

    def initialize(self, value):
        """Set every element immediately; for construction, outside a session."""
        self._write(np.full(self.dim, value, dtype=np.float32))

    def _write(self, array):
        if self.mode is TensorMode.IO:
            self.buffer[...] = array
        else:
            self.engine.backend.write(self.buffer, array)

    def _require(self, mode):
        if self.mode is not mode:
            raise StateError(f"operation requires a {mode.name} tensor, got {self.mode.name}")

    def _check_range(self, n, count):
        if count < 0 or n < 0 or n + count > self.dim.count:
            raise ShapeMismatchError(
                f"range [{n}, {n + count}) outside tensor of count {self.dim.count}")

    # --- Element access (IO) ---

    def _check_index(self, n, i, j, k):
        for idx, size in zip((n, i, j, k), self.dim):
            if not 0 <= idx < size:
                raise ShapeMismatchError(f"index {(n, i, j, k)} outside {tuple(self.dim)}")

    def get(self, n, i, j, k):
        self._require(TensorMode.IO)
        self._check_index(n, i, j, k)
        return float(self.buffer[n, i, j, k])

    def set(self, n, i, j, k, value):
        self._require(TensorMode.IO)
        self._check_index(n, i, j, k)
        self.buffer[n, i, j, k] = value

    def io_fill(self, n, count, value):
        self._require(TensorMode.IO)
        self._check_range(n, count)
        self.buffer[n:n + count] = value

    def compute_fill(self, hazard, n, count, value):
        self._require(TensorMode.COMPUTE)
        self._check_range(n, count)
        self.engine.dispatch(hazard, 'fill', self, n, count, value)

    # --- Copies ---

    @staticmethod
    def _check_copy(src, dst, src_n, dst_n, count):
        if not src.dim.size_equals(dst.dim):
            raise ShapeMismatchError(f"cannot copy {tuple(src.dim)} into {tuple(dst.dim)}")
        src._check_range(src_n, count)
        dst._check_range(dst_n, count)

    @staticmethod
    def io_copy(src, dst, src_n, dst_n, count):
        src._require(TensorMode.IO)
        dst._require(TensorMode.IO)
        Tensor._check_copy(src, dst, src_n, dst_n, count)
        dst.buffer[dst_n:dst_n + count] = src.buffer[src_n:src_n + count]

    @staticmethod
    def compute_copy(src, dst, hazard, src_n, dst_n, count):
        src._require(TensorMode.COMPUTE)
        dst._require(TensorMode.COMPUTE)
        Tensor._check_copy(src, dst, src_n, dst_n, count)
        src.engine.dispatch(hazard, 'copy', src, dst, src_n, dst_n, count)

    @staticmethod
    def copy(src, dst, src_n, dst_n, count):
        """Copy ``count`` items between tensors of any residency.

        Transfers involving compute storage are dispatched in the open
        session with a RAW hazard; a download is visible on the host once
        the session ends.
        """
        if src.mode is TensorMode.IO and dst.mode is TensorMode.IO:
            Tensor.io_copy(src, dst, src_n, dst_n, count)
            return
        Tensor._check_copy(src, dst, src_n, dst_n, count)
        engine = src.engine
        if src.mode is TensorMode.IO:
            snapshot = np.array(src.buffer[src_n:src_n + count], copy=True)
            engine.dispatch(Hazard.RAW, 'upload', dst, dst_n, snapshot)
        elif dst.mode is TensorMode.IO:
            engine.dispatch(Hazard.RAW, 'download', src, src_n, dst.buffer, dst_n, count)
        else:
            engine.dispatch(Hazard.RAW, 'copy', src, dst, src_n, dst_n, count)

    # --- Diagnostics ---

    def stats(self):
        a = self.array
        return TensorStats(float(a.min()), float(a.max()), float(a.mean()),
                           float(a.std()), float(np.sqrt(np.sum(a * a))))

    def image(self, n=0, k=0, vmin=0.0, vmax=1.0):
        """Channel ``k`` of item ``n`` scaled from [vmin, vmax] to uint8."""
        self._check_index(n, 0, 0, k)
        plane = (self.array[n, :, :, k] - vmin) / (vmax - vmin)
        return (np.clip(plane, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)


def init_xavier(tensor, rng):
    tensor._write(xavier(tensor.dim, rng))


def init_he(tensor, rng):
    tensor._write(he(tensor.dim, rng))
