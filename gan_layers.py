import logging
from contextlib import ExitStack, contextmanager
from enum import Enum

from gan_adam import AdamParameter
from gan_errors import ShapeMismatchError, StateError
from gan_kernels import Hazard
from gan_tensor import Dim, Tensor, TensorInit, TensorMode

logger = logging.getLogger(__name__)

ACTIVATIONS = ('linear', 'logistic', 'lrelu', 'relu', 'tanh')


class LayerMode(Enum):
    PREDICT = 'predict'
    TRAIN = 'train'
    # gradients flow through but the layer is left untouched
    # (used to backprop the generator loss through the discriminator)
    TRAIN_NOP = 'train_nop'


class Layer:
    """Base class for every pipeline stage.

    A layer owns its parameter, moment and scratch tensors. Forward stores
    the input it was given so that backward can use it; backward is only
    valid after a TRAIN or TRAIN_NOP forward. update() applies Adam to every
    parameter and must run after the whole backward pass.
    """

    def __init__(self, engine, dimX, dimY):
        self.engine = engine
        self.dimX = Dim(*dimX)
        self.dimY = Dim(*dimY)
        self.X = None
        self.mode = None
        self.bs = 0
        self._params = []
        self._resources = ExitStack()

    @contextmanager
    def _building(self):
        # release everything acquired so far if construction fails
        try:
            yield
        except BaseException:
            self._resources.close()
            raise

    def _tensor(self, dim, init=TensorInit.ZERO, rng=None):
        if rng is None:
            rng = self.engine.rng
        t = Tensor(self.engine, dim, init, TensorMode.COMPUTE, rng)
        self._resources.callback(t.delete)
        return t

    def _parameter(self, dim, init=TensorInit.ZERO, rng=None):
        p = AdamParameter(self._tensor(dim, init, rng), self._tensor(dim),
                          self._tensor(dim), self._tensor(dim))
        self._params.append(p)
        return p

    def _own(self, layer):
        self._resources.callback(layer.delete)
        return layer

    def parameters(self):
        return list(self._params)

    def forward(self, mode, bs, X):
        if not X.dim.size_equals(self.dimX):
            raise ShapeMismatchError(
                f"{type(self).__name__} expects {tuple(self.dimX)[1:]}, got {tuple(X.dim)[1:]}")
        if not 0 < bs <= min(self.dimY.count, X.dim.count):
            raise ShapeMismatchError(f"batch size {bs} out of range")
        self.X = X
        self.mode = mode
        self.bs = bs
        return self._forward(mode, bs, X)

    def backward(self, mode, bs, dL_dY):
        if self.X is None or self.mode is LayerMode.PREDICT:
            logger.error("%s.backward() called without a training forward pass", type(self).__name__)
            raise StateError(f"{type(self).__name__}.backward() without a training forward pass")
        if mode is LayerMode.PREDICT:
            raise StateError("backward() requires TRAIN or TRAIN_NOP")
        if not dL_dY.dim.size_equals(self.dimY):
            raise ShapeMismatchError(
                f"{type(self).__name__} gradient expects {tuple(self.dimY)[1:]}, got {tuple(dL_dY.dim)[1:]}")
        if bs != self.bs:
            raise ShapeMismatchError(f"backward batch size {bs} != forward batch size {self.bs}")
        return self._backward(mode, bs, dL_dY)

    def update(self, state):
        for p in self.parameters():
            p.step(state)

    def delete(self):
        self._resources.close()
        self.X = None

    def _forward(self, mode, bs, X):
        raise NotImplementedError

    def _backward(self, mode, bs, dL_dY):
        raise NotImplementedError


class LinearLayer(Layer):
    """Fully connected layer on (bs, 1, 1, xd) inputs.

    Runs on the convolution kernels: a dense layer is a 1x1 convolution
    over a 1x1 image.
    """

    def __init__(self, engine, dimX, out_features, init=TensorInit.XAVIER,
                 disable_bias=False, rng=None):
        dimX = Dim(*dimX)
        if dimX.height != 1 or dimX.width != 1:
            raise ShapeMismatchError(f"dense input must be (bs, 1, 1, d), got {tuple(dimX)}")
        super().__init__(engine, dimX, (dimX.count, 1, 1, out_features))
        self.out_features = out_features
        with self._building():
            self.W = self._parameter((out_features, 1, 1, dimX.depth), init, rng)
            self.B = None if disable_bias else self._parameter((out_features, 1, 1, 1))
            self.Y = self._tensor(self.dimY)
            self.dL_dX = self._tensor(self.dimX)

    def _forward(self, mode, bs, X):
        B = self.B.value if self.B is not None else None
        self.engine.dispatch(Hazard.RAW, 'conv_forward', X, self.W.value, B, self.Y,
                             bs, 1, False, True)
        return self.Y

    def _backward(self, mode, bs, dL_dY):
        self.engine.dispatch(Hazard.RAW, 'conv_backward_dx', dL_dY, self.W.value, self.dL_dX,
                             bs, 1, False)
        if mode is LayerMode.TRAIN:
            self.engine.dispatch(Hazard.NONE, 'conv_backward_dw', dL_dY, self.X, self.W.grad,
                                 bs, 1, False)
            if self.B is not None:
                self.engine.dispatch(Hazard.NONE, 'bias_backward', dL_dY, self.B.grad, bs)
        return self.dL_dX


class ActivationLayer(Layer):
    def __init__(self, engine, dimX, activation):
        if activation not in ACTIVATIONS:
            raise ValueError(f"unknown activation '{activation}'")
        super().__init__(engine, dimX, dimX)
        self.activation = activation
        with self._building():
            self.Y = self._tensor(self.dimY)
            self.dL_dX = self._tensor(self.dimX)

    def _forward(self, mode, bs, X):
        self.engine.dispatch(Hazard.RAW, 'activation_forward', self.activation, X, self.Y, bs)
        return self.Y

    def _backward(self, mode, bs, dL_dY):
        # derivative is recomputed from the stored input
        self.engine.dispatch(Hazard.RAW, 'activation_backward', self.activation,
                             self.X, dL_dY, self.dL_dX, bs)
        return self.dL_dX


class ReshapeLayer(Layer):
    """Reinterprets (h, w, d) without moving data; forward and backward return views."""

    def __init__(self, engine, dimX, dimY):
        dimX, dimY = Dim(*dimX), Dim(*dimY)
        if dimX.elements != dimY.elements:
            raise ShapeMismatchError(f"cannot reshape {tuple(dimX)} to {tuple(dimY)}")
        super().__init__(engine, dimX, (dimX.count,) + tuple(dimY)[1:])

    def _forward(self, mode, bs, X):
        return X.view((X.dim.count,) + tuple(self.dimY)[1:])

    def _backward(self, mode, bs, dL_dY):
        return dL_dY.view((dL_dY.dim.count,) + tuple(self.dimX)[1:])
