import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from gan_errors import ShapeMismatchError
from gan_kernels import Hazard
from gan_layers import ActivationLayer, Layer, LayerMode
from gan_tensor import Dim, TensorInit

logger = logging.getLogger(__name__)


class Conv2DLayer(Layer):
    """2D convolution (no activation).

    Weights are (fc, fh, fw, xd), bias (fc, 1, 1, 1). Output is
    (bs, xh//stride, xw//stride, fc). Input index for output ``yi`` and
    filter row ``fi`` is ``yi*stride + fi - fh//2``; with ``pad=False`` an
    out-of-range index is clamped to the edge, with ``pad=True`` it
    contributes zero. Backward uses in-range positions only in both modes.
    """
    transpose = False

    def __init__(self, engine, dimX, out_channels, kernel_size, stride=1,
                 init=TensorInit.XAVIER, pad=False, disable_bias=False, rng=None):
        dimX = Dim(*dimX)
        if stride < 1 or kernel_size < 1:
            raise ValueError("kernel_size and stride must be positive")
        super().__init__(engine, dimX, self.output_dim(dimX, out_channels, stride))
        self.out_channels = out_channels
        self.kernel_size = kernel_size
        self.stride = stride
        self.pad = pad
        with self._building():
            self.W = self._parameter((out_channels, kernel_size, kernel_size, dimX.depth), init, rng)
            self.B = None if disable_bias else self._parameter((out_channels, 1, 1, 1))
            self.Y = self._tensor(self.dimY)
            self.dL_dX = self._tensor(self.dimX)

    @staticmethod
    def output_dim(dimX, out_channels, stride):
        yh, yw = dimX.height // stride, dimX.width // stride
        if yh < 1 or yw < 1:
            raise ShapeMismatchError(f"stride {stride} too large for input {tuple(dimX)}")
        return Dim(dimX.count, yh, yw, out_channels)

    def _forward(self, mode, bs, X):
        B = self.B.value if self.B is not None else None
        self.engine.dispatch(Hazard.RAW, 'conv_forward', X, self.W.value, B, self.Y,
                             bs, self.stride, self.transpose, not self.pad)
        return self.Y

    def _backward(self, mode, bs, dL_dY):
        self.engine.dispatch(Hazard.RAW, 'conv_backward_dx', dL_dY, self.W.value, self.dL_dX,
                             bs, self.stride, self.transpose)
        if mode is LayerMode.TRAIN:
            self.engine.dispatch(Hazard.NONE, 'conv_backward_dw', dL_dY, self.X, self.W.grad,
                                 bs, self.stride, self.transpose)
            if self.B is not None:
                self.engine.dispatch(Hazard.NONE, 'bias_backward', dL_dY, self.B.grad, bs)
        return self.dL_dX


class ConvTranspose2DLayer(Conv2DLayer):
    """Transposed convolution (for the generator).

    Output is (bs, stride*xh, stride*xw, fc); the index relation is the
    adjoint of Conv2DLayer, ``yi = xi*stride + fi - fh//2``.
    """
    transpose = True

    @staticmethod
    def output_dim(dimX, out_channels, stride):
        return Dim(dimX.count, stride * dimX.height, stride * dimX.width, out_channels)


class BatchNorm2DLayer(Layer):
    """Per-channel batch normalization with learned scale G and shift B.

    TRAIN normalizes with mini-batch statistics and folds them into the
    running averages. TRAIN_NOP and PREDICT apply the running averages as
    they are, so a frozen pass does not depend on the batch it sees.
    """

    def __init__(self, engine, dimX, momentum=0.99, eps=1e-5):
        super().__init__(engine, dimX, dimX)
        self.momentum = momentum
        self.eps = eps
        channel = (1, 1, 1, self.dimX.depth)
        with self._building():
            self.G = self._parameter(channel)
            self.B = self._parameter(channel)
            self.mean = self._tensor(channel)
            self.var = self._tensor(channel)
            self.ra_mean = self._tensor(channel)
            self.ra_var = self._tensor(channel)
            self.Xhat = self._tensor(self.dimX)
            self.Y = self._tensor(self.dimY)
            self.dL_dX = self._tensor(self.dimX)
            self.G.value.initialize(1.0)
            self.ra_var.initialize(1.0)

    def _forward(self, mode, bs, X):
        dispatch = self.engine.dispatch
        if mode is LayerMode.TRAIN:
            mean, var = self.mean, self.var
            dispatch(Hazard.RAW, 'bn_stats', X, mean, var, bs)
            dispatch(Hazard.RAW, 'bn_running', mean, var, self.ra_mean, self.ra_var,
                     self.momentum)
        else:
            mean, var = self.ra_mean, self.ra_var
        dispatch(Hazard.RAW, 'bn_forward', X, self.G.value, self.B.value, mean, var,
                 self.Xhat, self.Y, bs, self.eps)
        return self.Y

    def _backward(self, mode, bs, dL_dY):
        dispatch = self.engine.dispatch
        dispatch(Hazard.RAW, 'bn_params_backward', dL_dY, self.Xhat, self.G.grad, self.B.grad, bs)
        if self.mode is LayerMode.TRAIN:
            # gamma/beta gradients are needed here even in NOP mode, the dX formula uses their sums
            dispatch(Hazard.RAW, 'bn_backward', dL_dY, self.G.value, self.Xhat, self.var,
                     self.G.grad, self.B.grad, self.dL_dX, bs, self.eps)
        else:
            dispatch(Hazard.RAW, 'bn_backward_frozen', dL_dY, self.G.value, self.ra_var,
                     self.dL_dX, bs, self.eps)
        return self.dL_dX


@dataclass
class CoderConfig:
    """Declarative description of a conv -> batch-norm -> activation block."""
    dimX: Tuple[int, int, int, int]
    fc: int
    conv_size: int = 3
    conv_stride: int = 1
    conv_transpose: bool = False
    conv_pad: bool = False
    conv_disable_bias: bool = False
    conv_he: bool = False
    bn: bool = False
    bn_momentum: float = 0.99
    activation: Optional[str] = 'lrelu'


class CoderLayer(Layer):
    """Composite layer built from a CoderConfig.

    Children run in order on forward and in reverse on backward; the
    composite owns them and deletes them with itself.
    """

    def __init__(self, engine, config, rng=None):
        super().__init__(engine, config.dimX, config.dimX)
        self.config = config
        self.layers = []
        with self._building():
            conv_cls = ConvTranspose2DLayer if config.conv_transpose else Conv2DLayer
            init = TensorInit.HE if config.conv_he else TensorInit.XAVIER
            conv = conv_cls(engine, config.dimX, config.fc, config.conv_size,
                            config.conv_stride, init=init, pad=config.conv_pad,
                            disable_bias=config.conv_disable_bias, rng=rng)
            self._add(conv)
            if config.bn:
                self._add(BatchNorm2DLayer(engine, conv.dimY, momentum=config.bn_momentum))
            if config.activation is not None:
                self._add(ActivationLayer(engine, conv.dimY, config.activation))
        self.dimY = self.layers[-1].dimY
        logger.debug("coder %s -> %s (%d children)", tuple(self.dimX), tuple(self.dimY),
                     len(self.layers))

    def _add(self, layer):
        self.layers.append(self._own(layer))

    def parameters(self):
        return [p for layer in self.layers for p in layer.parameters()]

    def _forward(self, mode, bs, X):
        for layer in self.layers:
            X = layer.forward(mode, bs, X)
        return X

    def _backward(self, mode, bs, dL_dY):
        for layer in reversed(self.layers):
            dL_dY = layer.backward(mode, bs, dL_dY)
        return dL_dY
