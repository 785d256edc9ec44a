import logging
from contextlib import ExitStack

from gan_kernels import Hazard
from gan_layers import LayerMode
from gan_networks import IMG_SHAPE, NOISE_DIM
from gan_tensor import Tensor, TensorMode

logger = logging.getLogger(__name__)


def sample_batch(Xt, X, rng, count, n=0):
    """Copy ``count`` random items of dataset tensor Xt into X[n:n+count] (both IO)."""
    for i, idx in enumerate(rng.integers(0, Xt.dim.count, size=count)):
        Tensor.io_copy(Xt, X, int(idx), n + i, 1)


def sample_noise(Z, rng, count, n=0):
    """Fill Z[n:n+count] (IO) with standard normal noise."""
    Z.array[n:n + count] = rng.standard_normal((count,) + tuple(Z.dim)[1:])


class GANTrainer:
    """One adversarial step at a time.

    The discriminator trains on a batch whose first half is real data and
    second half generated images (targets 1 and 0). The generator then
    trains through the discriminator in TRAIN_NOP mode against all-ones
    targets, so D is left untouched by the generator step.
    """

    def __init__(self, engine, G, D, Xt, batch_size, rng=None):
        if batch_size < 2 or batch_size % 2:
            raise ValueError("batch_size must be even")
        if batch_size > D.max_batch_size or batch_size // 2 > G.max_batch_size:
            raise ValueError("batch_size exceeds the architectures' max batch size")
        self.engine = engine
        self.G = G
        self.D = D
        self.Xt = Xt
        self.bs = batch_size
        self.half = batch_size // 2
        self.rng = rng if rng is not None else engine.rng
        self.g_loss = 0.0
        self.d_loss = 0.0

        with ExitStack() as stack:
            self.Xr = self._tensor(stack, (self.half,) + IMG_SHAPE, TensorMode.IO)
            self.Z = self._tensor(stack, (self.half, 1, 1, NOISE_DIM), TensorMode.IO)
            self.Xd = self._tensor(stack, (self.bs,) + IMG_SHAPE)
            self.Yt10 = self._tensor(stack, (self.bs, 1, 1, 1))
            self.Yt11 = self._tensor(stack, (self.half, 1, 1, 1))
            with engine.session():
                self.Yt10.compute_fill(Hazard.NONE, 0, self.half, 1.0)
                self.Yt10.compute_fill(Hazard.NONE, self.half, self.half, 0.0)
                self.Yt11.compute_fill(Hazard.NONE, 0, self.half, 1.0)
            self._resources = stack.pop_all()

    def _tensor(self, stack, dim, mode=TensorMode.COMPUTE):
        t = Tensor(self.engine, dim, mode=mode)
        stack.callback(t.delete)
        return t

    def step_discriminator(self):
        half = self.half
        sample_batch(self.Xt, self.Xr, self.rng, half)
        sample_noise(self.Z, self.rng, half)
        with self.engine.session():
            Xg = self.G.forward(LayerMode.TRAIN_NOP, half, self.Z)
            Tensor.copy(self.Xr, self.Xd, 0, 0, half)
            Tensor.compute_copy(Xg, self.Xd, Hazard.RAW, 0, half, half)
            self.D.train(self.bs, self.Xd, self.Yt10)
        self.d_loss = self.D.loss.loss
        return self.d_loss

    def step_generator(self):
        half = self.half
        sample_noise(self.Z, self.rng, half)
        with self.engine.session():
            Xg = self.G.forward(LayerMode.TRAIN, half, self.Z)
            Y = self.D.forward(LayerMode.TRAIN_NOP, half, Xg)
            dL_dY = self.D.loss.compute(half, Y, self.Yt11)
            dL_dX = self.D.backward(LayerMode.TRAIN_NOP, half, dL_dY)
            self.G.backward(LayerMode.TRAIN, half, dL_dX)
        self.g_loss = self.D.loss.loss
        return self.g_loss

    def step(self):
        """Train D then G once; returns (g_loss, d_loss)."""
        d_loss = self.step_discriminator()
        g_loss = self.step_generator()
        logger.debug("step G t=%d D t=%d g_loss=%.4f d_loss=%.4f", self.G.t, self.D.t, g_loss, d_loss)
        return g_loss, d_loss

    def generate(self, Y, count=None):
        """Generate ``count`` images into the IO tensor Y (PREDICT mode)."""
        count = count or min(self.half, Y.dim.count)
        sample_noise(self.Z, self.rng, count)
        self.G.predict(count, self.Z, Y)
        return Y

    def delete(self):
        self._resources.close()
