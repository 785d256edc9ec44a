import numpy as np
import pytest

from gan_adam import ArchState
from gan_errors import ShapeMismatchError
from gan_layers import LayerMode
from gan_layers_conv import (BatchNorm2DLayer, CoderConfig, CoderLayer, Conv2DLayer,
                             ConvTranspose2DLayer)
from gan_tensor import Tensor, TensorMode


def compute(engine, array):
    return Tensor.from_array(engine, np.asarray(array, dtype=np.float32), TensorMode.COMPUTE)


def read(tensor):
    return tensor.engine.backend.read(tensor.buffer)


def ones_conv(engine, pad, stride=1):
    layer = Conv2DLayer(engine, (1, 4, 4, 1), 1, 3, stride, pad=pad, disable_bias=True)
    layer.W.value.initialize(1.0)
    return layer


def test_conv_clamp_replicates_edges(engine):
    layer = ones_conv(engine, pad=False)
    with engine.session():
        Y = layer.forward(LayerMode.PREDICT, 1, compute(engine, np.ones((1, 4, 4, 1))))
    # clamped taps read the edge value, so every output sees nine ones
    assert np.all(read(Y) == 9.0)


def test_conv_pad_zero_fills(engine):
    layer = ones_conv(engine, pad=True)
    with engine.session():
        Y = layer.forward(LayerMode.PREDICT, 1, compute(engine, np.ones((1, 4, 4, 1))))
    y = read(Y)[0, :, :, 0]
    assert y[0, 0] == 4.0
    assert y[0, 1] == 6.0
    assert y[1, 1] == 9.0


def test_conv_output_dims(engine):
    layer = Conv2DLayer(engine, (8, 28, 28, 1), 64, 3, 2)
    assert tuple(layer.dimY) == (8, 14, 14, 64)
    layer = Conv2DLayer(engine, (8, 7, 7, 3), 5, 3, 2)
    assert tuple(layer.dimY) == (8, 3, 3, 5)
    with pytest.raises(ShapeMismatchError):
        Conv2DLayer(engine, (1, 1, 1, 1), 1, 3, 2)


def test_conv_transpose_doubles_spatial_size(engine, rng):
    layer = ConvTranspose2DLayer(engine, (2, 7, 7, 128), 128, 4, 2, rng=rng)
    assert tuple(layer.dimY) == (2, 14, 14, 128)
    with engine.session():
        Y = layer.forward(LayerMode.TRAIN, 2, compute(engine, rng.standard_normal((2, 7, 7, 128))))
        dX = layer.backward(LayerMode.TRAIN, 2, compute(engine, np.ones((2, 14, 14, 128))))
    assert tuple(Y.dim) == (2, 14, 14, 128)
    assert tuple(dX.dim) == (2, 7, 7, 128)
    assert np.all(np.isfinite(read(Y)))


def test_conv_bias_gradient(engine, rng):
    layer = Conv2DLayer(engine, (2, 4, 4, 2), 3, 3, 1, rng=rng)
    dy = rng.standard_normal((2, 4, 4, 3))
    with engine.session():
        layer.forward(LayerMode.TRAIN, 2, compute(engine, rng.standard_normal((2, 4, 4, 2))))
        layer.backward(LayerMode.TRAIN, 2, compute(engine, dy))
    np.testing.assert_allclose(read(layer.B.grad).reshape(3), dy.sum(axis=(0, 1, 2)),
                               rtol=1e-5, atol=1e-5)


def test_conv_nop_backward_skips_weight_gradients(engine, rng):
    layer = Conv2DLayer(engine, (1, 4, 4, 1), 1, 3, 1, rng=rng)
    with engine.session():
        layer.forward(LayerMode.TRAIN_NOP, 1, compute(engine, np.ones((1, 4, 4, 1))))
        dX = layer.backward(LayerMode.TRAIN_NOP, 1, compute(engine, np.ones((1, 4, 4, 1))))
    assert np.all(read(layer.W.grad) == 0.0)
    assert np.any(read(dX) != 0.0)


def batch(rng, shift=3.0, scale=2.0):
    return rng.standard_normal((8, 3, 3, 2)) * scale + shift


def test_batch_norm_train_updates_running_stats(engine, rng):
    layer = BatchNorm2DLayer(engine, (8, 3, 3, 2), momentum=0.9)
    x = batch(rng)
    with engine.session():
        Y = layer.forward(LayerMode.TRAIN, 8, compute(engine, x))
    y = read(Y)
    np.testing.assert_allclose(y.mean(axis=(0, 1, 2)), 0.0, atol=1e-5)
    expected = 0.1 * x.mean(axis=(0, 1, 2))
    np.testing.assert_allclose(read(layer.ra_mean).reshape(2), expected, rtol=1e-4)
    expected_var = 0.9 + 0.1 * x.var(axis=(0, 1, 2))
    np.testing.assert_allclose(read(layer.ra_var).reshape(2), expected_var, rtol=1e-4)


def test_batch_norm_nop_applies_running_stats(engine, rng):
    layer = BatchNorm2DLayer(engine, (8, 3, 3, 2), momentum=0.5)
    with engine.session():
        layer.forward(LayerMode.TRAIN, 8, compute(engine, batch(rng)))
    ra_mean, ra_var = read(layer.ra_mean).copy(), read(layer.ra_var).copy()

    # far from the running statistics, so mini-batch normalization would differ
    X = compute(engine, batch(rng, shift=5.0, scale=3.0))
    with engine.session():
        Y = layer.forward(LayerMode.TRAIN_NOP, 8, X)
    Y_nop = read(Y).copy()
    with engine.session():
        Y = layer.forward(LayerMode.PREDICT, 8, X)
    Y_predict = read(Y).copy()
    np.testing.assert_allclose(Y_nop, Y_predict, rtol=1e-6, atol=1e-6)
    np.testing.assert_array_equal(read(layer.ra_mean), ra_mean)
    np.testing.assert_array_equal(read(layer.ra_var), ra_var)


def test_batch_norm_nop_backward_scales_by_running_variance(engine, rng):
    layer = BatchNorm2DLayer(engine, (8, 3, 3, 2), momentum=0.5)
    with engine.session():
        layer.forward(LayerMode.TRAIN, 8, compute(engine, batch(rng)))
    dY = rng.standard_normal((8, 3, 3, 2))
    with engine.session():
        layer.forward(LayerMode.TRAIN_NOP, 8, compute(engine, batch(rng)))
        dX = layer.backward(LayerMode.TRAIN_NOP, 8, compute(engine, dY))
    expected = dY * read(layer.G.value) / np.sqrt(read(layer.ra_var) + layer.eps)
    np.testing.assert_allclose(read(dX), expected, rtol=1e-5, atol=1e-6)


def test_batch_norm_predict_uses_running_stats(engine, rng):
    layer = BatchNorm2DLayer(engine, (8, 3, 3, 2))
    x = batch(rng)
    with engine.session():
        Y = layer.forward(LayerMode.PREDICT, 8, compute(engine, x))
    # running mean 0 and variance 1 leave the input (almost) unchanged
    np.testing.assert_allclose(read(Y), x / np.sqrt(1.0 + 1e-5), rtol=1e-5, atol=1e-5)


def test_batch_norm_gradient_sums_to_zero(engine, rng):
    layer = BatchNorm2DLayer(engine, (8, 3, 3, 2))
    with engine.session():
        layer.forward(LayerMode.TRAIN, 8, compute(engine, batch(rng)))
        dX = layer.backward(LayerMode.TRAIN, 8, compute(engine, rng.standard_normal((8, 3, 3, 2))))
    # the normalized output is invariant to a per-channel shift of the input
    np.testing.assert_allclose(read(dX).sum(axis=(0, 1, 2)), 0.0, atol=1e-4)


def test_coder_children_and_shapes(engine, rng):
    config = CoderConfig((4, 7, 7, 16), 8, conv_size=4, conv_stride=2, conv_transpose=True,
                         bn=True, activation='lrelu')
    coder = CoderLayer(engine, config, rng)
    assert [type(c).__name__ for c in coder.layers] == [
        'ConvTranspose2DLayer', 'BatchNorm2DLayer', 'ActivationLayer']
    assert tuple(coder.dimY) == (4, 14, 14, 8)
    # conv W and B, bn G and B
    assert len(coder.parameters()) == 4
    with engine.session():
        Y = coder.forward(LayerMode.TRAIN, 4, compute(engine, rng.standard_normal((4, 7, 7, 16))))
        dX = coder.backward(LayerMode.TRAIN, 4, compute(engine, np.ones((4, 14, 14, 8))))
    assert tuple(Y.dim) == (4, 14, 14, 8)
    assert tuple(dX.dim) == (4, 7, 7, 16)


def test_coder_without_bn_or_activation(engine, rng):
    coder = CoderLayer(engine, CoderConfig((1, 4, 4, 1), 2, activation=None), rng)
    assert len(coder.layers) == 1
    assert tuple(coder.dimY) == (1, 4, 4, 2)


def test_coder_construction_failure_releases_children(engine, rng, monkeypatch):
    built = []

    def failing_init(self, *args, **kwargs):
        raise MemoryError('no room for batch norm')

    original_conv_init = Conv2DLayer.__init__

    def tracking_init(self, *args, **kwargs):
        original_conv_init(self, *args, **kwargs)
        built.append(self)

    monkeypatch.setattr(Conv2DLayer, '__init__', tracking_init)
    monkeypatch.setattr(BatchNorm2DLayer, '__init__', failing_init)
    with pytest.raises(MemoryError):
        CoderLayer(engine, CoderConfig((1, 4, 4, 1), 2, bn=True), rng)
    assert len(built) == 1
    assert built[0].W.value.deleted


def test_coder_update_delegates_to_children(engine, rng):
    coder = CoderLayer(engine, CoderConfig((2, 4, 4, 1), 2, bn=True), rng)
    conv = coder.layers[0]
    before = read(conv.W.value).copy()
    state = ArchState()
    with engine.session():
        coder.forward(LayerMode.TRAIN, 2, compute(engine, rng.standard_normal((2, 4, 4, 1))))
        coder.backward(LayerMode.TRAIN, 2, compute(engine, rng.standard_normal((2, 4, 4, 2))))
        state.advance()
        coder.update(state)
    assert np.any(read(conv.W.value) != before)
