import logging
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import contextmanager

import numpy as np

import gan_kernels
from gan_errors import AllocationError, StateError
from gan_kernels import Hazard
from gan_tensor import Tensor

logger = logging.getLogger(__name__)


class NumpyBackend:
    """Compute backend running gan_kernels on a worker pool.

    Compute buffers are float32 arrays distinct from any host (IO) array.
    Kernels dispatched with Hazard.NONE may overlap with work already in
    flight; Hazard.RAW waits for everything dispatched before it.
    """
    name = 'cpu'

    def __init__(self, workers=4):
        self.workers = workers
        self.pool = None
        self.pending = []

    def alloc(self, shape):
        try:
            return np.zeros(shape, dtype=np.float32)
        except MemoryError as e:
            raise AllocationError(f"cannot allocate compute buffer {shape}") from e

    def write(self, buffer, array):
        buffer[...] = array

    def read(self, buffer):
        return np.array(buffer, dtype=np.float32, copy=True)

    def begin(self):
        # one pool serves every session until close()
        if self.pool is None:
            self.pool = ThreadPoolExecutor(max_workers=self.workers)
        self.pending = []

    def submit(self, hazard, kernel, args):
        if hazard == Hazard.RAW:
            self.barrier()
        fn = getattr(gan_kernels, kernel)
        self.pending.append(self.pool.submit(fn, *args))

    def barrier(self):
        """Block until all pending kernels finish, re-raising the first failure."""
        pending, self.pending = self.pending, []
        wait(pending)
        for future in pending:
            exc = future.exception()
            if exc is not None:
                raise exc

    def end(self):
        self.barrier()

    def close(self):
        if self.pool is not None:
            self.pool.shutdown(wait=True)
            self.pool = None


class GANEngine:
    """Execution context shared by tensors, layers and architectures.

    Owns the compute backend, the compute session and a seeded random
    generator for callers that need noise or weight initialization.
    """

    def __init__(self, device='cpu', seed=None, workers=4):
        if device == 'cpu':
            self.backend = NumpyBackend(workers)
        elif device == 'cuda':
            from gan_cuda import CudaBackend
            self.backend = CudaBackend()
        else:
            raise ValueError(f"unknown device '{device}'")
        self.device = device
        self.rng = np.random.default_rng(seed)
        self.depth = 0
        logger.info("engine ready: device=%s seed=%s", device, seed)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def in_session(self):
        return self.depth > 0

    def begin(self):
        """Open a compute session (or join the one already open)."""
        if self.depth == 0:
            self.backend.begin()
        self.depth += 1

    def end(self):
        """Close the session; the outermost end waits for all dispatched work."""
        if self.depth == 0:
            raise StateError("end() without a matching begin()")
        self.depth -= 1
        if self.depth == 0:
            self.backend.end()

    def close(self):
        """Release backend workers; a later session starts them again."""
        if self.in_session:
            raise StateError("close() while a compute session is open")
        self.backend.close()

    @contextmanager
    def session(self):
        self.begin()
        try:
            yield self
        finally:
            self.end()

    def dispatch(self, hazard, kernel, *args):
        """Queue a kernel; Tensor arguments are passed as their compute buffers."""
        if not self.in_session:
            logger.error("dispatch of '%s' outside a compute session", kernel)
            raise StateError(f"dispatch of '{kernel}' outside a compute session")
        args = tuple(a.buffer if isinstance(a, Tensor) else a for a in args)
        self.backend.submit(hazard, kernel, args)
