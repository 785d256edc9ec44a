from contextlib import ExitStack

from gan_errors import ShapeMismatchError, StateError
from gan_kernels import Hazard
from gan_tensor import Dim, Tensor, TensorMode

LOSS_KINDS = ('mse', 'mae', 'bce')


class LossLayer:
    """Scalar loss and its gradient with respect to the prediction.

    mse: dL/dY = Y - Yt, loss = mean((Y - Yt)^2)
    mae: dL/dY = sign(Y - Yt), loss = mean(|Y - Yt|)
    bce: predictions clipped to [1e-7, 1 - 1e-7],
         dL/dY = (Y - Yt) / (Y (1 - Y)), loss = -mean(Yt log Y + (1 - Yt) log(1 - Y))

    Gradients are not divided by the batch size.
    """

    def __init__(self, engine, dimY, kind='mse'):
        if kind not in LOSS_KINDS:
            raise ValueError(f"unknown loss '{kind}'")
        self.engine = engine
        self.dimY = Dim(*dimY)
        self.kind = kind
        # a failed allocation releases the earlier ones, pop_all keeps them on success
        with ExitStack() as stack:
            self.dL_dY = Tensor(engine, self.dimY)
            stack.callback(self.dL_dY.delete)
            self._loss = Tensor(engine, (1, 1, 1, 1))
            stack.callback(self._loss.delete)
            self._resources = stack.pop_all()

    def __call__(self, bs, Y, Yt):
        return self.compute(bs, Y, Yt)

    def compute(self, bs, Y, Yt):
        """Dispatch the loss for the first ``bs`` items; returns dL/dY."""
        for t in (Y, Yt):
            if t.mode is not TensorMode.COMPUTE:
                raise StateError("loss inputs must be COMPUTE tensors")
            if not t.dim.size_equals(self.dimY):
                raise ShapeMismatchError(
                    f"loss expects {tuple(self.dimY)[1:]}, got {tuple(t.dim)[1:]}")
        if not 0 < bs <= min(self.dimY.count, Y.dim.count, Yt.dim.count):
            raise ShapeMismatchError(f"batch size {bs} out of range")
        self.engine.dispatch(Hazard.RAW, f'loss_{self.kind}', Y, Yt, self.dL_dY, self._loss, bs)
        return self.dL_dY

    @property
    def loss(self):
        """Most recent loss value; readable once the session has ended."""
        if self.engine.in_session:
            raise StateError("loss is not readable while a compute session is open")
        return float(self.engine.backend.read(self._loss.buffer).reshape(-1)[0])

    def delete(self):
        self._resources.close()
