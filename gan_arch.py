import logging
from contextlib import ExitStack

from gan_adam import ArchState
from gan_errors import ShapeMismatchError, StateError
from gan_layers import LayerMode
from gan_tensor import Tensor, TensorMode

logger = logging.getLogger(__name__)


class Architecture:
    """Ordered pipeline of layers trained together.

    The architecture shares one ArchState (Adam hyperparameters and running
    powers) and one step counter across its layers. Layers are referenced,
    not owned, unless attached with ``own=True``.
    """

    def __init__(self, engine, max_batch_size, state=None, rng=None):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be positive")
        self.engine = engine
        self.max_batch_size = max_batch_size
        self.state = state if state is not None else ArchState()
        self.rng = rng if rng is not None else engine.rng
        self.t = 0
        self.layers = []
        self.loss = None
        self._X = None
        self._resources = ExitStack()

    @property
    def dimX(self):
        return self.layers[0].dimX if self.layers else None

    @property
    def dimY(self):
        return self.layers[-1].dimY if self.layers else None

    def attach(self, layer, own=False):
        if self.loss is not None:
            raise StateError("cannot attach a layer after the loss")
        if self.layers and not layer.dimX.size_equals(self.dimY):
            logger.error("attach: %s output %s does not match %s input %s",
                         type(self.layers[-1]).__name__, tuple(self.dimY),
                         type(layer).__name__, tuple(layer.dimX))
            raise ShapeMismatchError(
                f"layer input {tuple(layer.dimX)[1:]} does not match previous output {tuple(self.dimY)[1:]}")
        self.layers.append(layer)
        if own:
            self._resources.callback(layer.delete)
        return layer

    def attach_loss(self, loss, own=False):
        if not self.layers:
            raise StateError("attach layers before the loss")
        if not loss.dimY.size_equals(self.dimY):
            raise ShapeMismatchError(
                f"loss dims {tuple(loss.dimY)[1:]} do not match output {tuple(self.dimY)[1:]}")
        self.loss = loss
        if own:
            self._resources.callback(loss.delete)
        return loss

    def parameters(self):
        return [p for layer in self.layers for p in layer.parameters()]

    def _check_batch(self, bs, T):
        if not 0 < bs <= min(self.max_batch_size, T.dim.count):
            raise ShapeMismatchError(
                f"batch size {bs} outside 1..{min(self.max_batch_size, T.dim.count)}")

    def _stage(self, X, bs):
        # IO input is copied into an architecture-owned compute tensor
        if self._X is None:
            self._X = Tensor(self.engine, (self.max_batch_size,) + tuple(self.dimX)[1:])
            self._resources.callback(self._X.delete)
        Tensor.copy(X, self._X, 0, 0, bs)
        return self._X

    def forward(self, mode, bs, X):
        """Run every layer in order; returns the last layer's output tensor."""
        if not self.layers:
            raise StateError("architecture has no layers")
        self._check_batch(bs, X)
        with self.engine.session():
            if X.mode is TensorMode.IO:
                X = self._stage(X, bs)
            for layer in self.layers:
                X = layer.forward(mode, bs, X)
        return X

    def backward(self, mode, bs, dL_dY, nop_layers=()):
        """Propagate dL/dY through every layer in reverse order.

        Layers in ``nop_layers`` (or all layers when ``mode`` is TRAIN_NOP)
        only pass the gradient on. If any layer trains, the step counter and
        running powers advance once and Adam is applied to every training
        layer after the whole pass. Returns dL/dX of the first layer.
        """
        if mode is LayerMode.PREDICT:
            raise StateError("backward() requires TRAIN or TRAIN_NOP")
        if not self.layers:
            raise StateError("architecture has no layers")
        self._check_batch(bs, dL_dY)
        training = []
        with self.engine.session():
            for layer in reversed(self.layers):
                if mode is LayerMode.TRAIN_NOP or layer in nop_layers:
                    dL_dY = layer.backward(LayerMode.TRAIN_NOP, bs, dL_dY)
                else:
                    dL_dY = layer.backward(LayerMode.TRAIN, bs, dL_dY)
                    training.append(layer)
            if training:
                self.t += 1
                self.state.advance()
                for layer in training:
                    layer.update(self.state)
        return dL_dY

    def train(self, bs, X, Yt, mode=LayerMode.TRAIN):
        """Forward, attached loss, backward; returns dL/dX."""
        if self.loss is None:
            raise StateError("train() requires an attached loss")
        with self.engine.session():
            Y = self.forward(mode, bs, X)
            dL_dY = self.loss.compute(bs, Y, Yt)
            return self.backward(mode, bs, dL_dY)

    def predict(self, bs, X, Y):
        """PREDICT forward; the output is copied into ``Y`` (any residency)."""
        with self.engine.session():
            out = self.forward(LayerMode.PREDICT, bs, X)
            Tensor.copy(out, Y, 0, 0, bs)

    def delete(self):
        self._resources.close()
        self._X = None
