import numpy as np
import pytest

from gan_adam import ArchState
from gan_arch import Architecture
from gan_errors import ShapeMismatchError, StateError
from gan_layers import ActivationLayer, LayerMode, LinearLayer, ReshapeLayer
from gan_layers_conv import CoderConfig, CoderLayer
from gan_loss import LossLayer
from gan_tensor import Tensor, TensorMode


def compute(engine, array):
    return Tensor.from_array(engine, np.asarray(array, dtype=np.float32), TensorMode.COMPUTE)


def read(tensor):
    return tensor.engine.backend.read(tensor.buffer)


def small_arch(engine, bs=4, loss='mse'):
    arch = Architecture(engine, bs)
    arch.attach(CoderLayer(engine, CoderConfig((bs, 4, 4, 1), 2, conv_stride=2, bn=True),
                           arch.rng), own=True)
    arch.attach(ReshapeLayer(engine, arch.dimY, (bs, 1, 1, 8)), own=True)
    arch.attach(LinearLayer(engine, arch.dimY, 1, rng=arch.rng), own=True)
    arch.attach(ActivationLayer(engine, arch.dimY, 'logistic'), own=True)
    arch.attach_loss(LossLayer(engine, arch.dimY, loss), own=True)
    return arch


def snapshot(arch):
    return [read(t).copy() for p in arch.parameters() for t in p.tensors()]


def test_attach_checks_dimensions(engine, rng):
    arch = Architecture(engine, 2)
    arch.attach(LinearLayer(engine, (2, 1, 1, 3), 4, rng=rng))
    with pytest.raises(ShapeMismatchError):
        arch.attach(LinearLayer(engine, (2, 1, 1, 5), 1, rng=rng))
    arch.attach(LinearLayer(engine, (2, 1, 1, 4), 1, rng=rng))
    assert len(arch.layers) == 2


def test_attach_after_loss_is_rejected(engine, rng):
    arch = small_arch(engine)
    with pytest.raises(StateError):
        arch.attach(ActivationLayer(engine, (4, 1, 1, 1), 'linear'))


def test_forward_stages_io_input(engine, rng):
    arch = small_arch(engine)
    X = Tensor.from_array(engine, rng.uniform(size=(4, 4, 4, 1)))
    Y = arch.forward(LayerMode.PREDICT, 4, X)
    y = read(Y)
    assert y.shape == (4, 1, 1, 1)
    assert np.all((y > 0) & (y < 1))


def test_forward_batch_size_limits(engine, rng):
    arch = small_arch(engine)
    X = Tensor.from_array(engine, rng.uniform(size=(2, 4, 4, 1)))
    with pytest.raises(ShapeMismatchError):
        arch.forward(LayerMode.PREDICT, 3, X)
    with pytest.raises(ShapeMismatchError):
        arch.forward(LayerMode.PREDICT, 0, X)


def test_train_step_counter_and_running_powers(engine, rng):
    arch = small_arch(engine)
    X = Tensor.from_array(engine, rng.uniform(size=(4, 4, 4, 1)))
    Yt = compute(engine, np.ones((4, 1, 1, 1)))
    before = snapshot(arch)
    arch.train(4, X, Yt)
    arch.train(4, X, Yt)
    assert arch.t == 2
    assert arch.state.adam_beta1t == pytest.approx(0.5 ** 2)
    assert arch.state.adam_beta2t == pytest.approx(0.999 ** 2)
    after = snapshot(arch)
    assert any(np.any(a != b) for a, b in zip(before, after))


def test_training_reduces_loss(engine, rng):
    arch = small_arch(engine, loss='mse')
    arch.state.adam_alpha = 0.01
    X = Tensor.from_array(engine, rng.uniform(size=(4, 4, 4, 1)))
    Yt = compute(engine, np.full((4, 1, 1, 1), 0.9))
    arch.train(4, X, Yt)
    first = arch.loss.loss
    for _ in range(30):
        arch.train(4, X, Yt)
    assert arch.loss.loss < first


def test_nop_backward_leaves_layers_untouched(engine, rng):
    arch = small_arch(engine)
    X = Tensor.from_array(engine, rng.uniform(size=(4, 4, 4, 1)))
    Yt = compute(engine, np.zeros((4, 1, 1, 1)))
    bn = arch.layers[0].layers[1]
    ra_before = read(bn.ra_mean).copy()
    before = snapshot(arch)
    with engine.session():
        Y = arch.forward(LayerMode.TRAIN_NOP, 4, X)
        dL = arch.loss.compute(4, Y, Yt)
        dX = arch.backward(LayerMode.TRAIN_NOP, 4, dL)
    assert arch.t == 0
    assert arch.state.adam_beta1t == 1.0
    params = [read(p.value) for p in arch.parameters()]
    values_before = before[::4]
    for a, b in zip(params, values_before):
        np.testing.assert_array_equal(a, b)
    np.testing.assert_array_equal(read(bn.ra_mean), ra_before)
    assert np.any(read(dX) != 0.0)


def test_nop_layers_are_skipped_by_update(engine, rng):
    arch = small_arch(engine)
    X = Tensor.from_array(engine, rng.uniform(size=(4, 4, 4, 1)))
    Yt = compute(engine, np.zeros((4, 1, 1, 1)))
    dense = arch.layers[2]
    W_before = read(dense.W.value).copy()
    with engine.session():
        Y = arch.forward(LayerMode.TRAIN, 4, X)
        dL = arch.loss.compute(4, Y, Yt)
        arch.backward(LayerMode.TRAIN, 4, dL, nop_layers=[dense])
    assert arch.t == 1
    np.testing.assert_array_equal(read(dense.W.value), W_before)


def test_backward_in_predict_mode_is_rejected(engine, rng):
    arch = small_arch(engine)
    with pytest.raises(StateError):
        arch.backward(LayerMode.PREDICT, 1, compute(engine, np.zeros((4, 1, 1, 1))))


def test_predict_copies_into_io_tensor(engine, rng):
    arch = small_arch(engine)
    X = Tensor.from_array(engine, rng.uniform(size=(4, 4, 4, 1)))
    Y = Tensor(engine, (4, 1, 1, 1), mode=TensorMode.IO)
    arch.predict(3, X, Y)
    assert np.all((Y.array[:3] > 0) & (Y.array[:3] < 1))
    assert Y.array[3, 0, 0, 0] == 0.0


def test_shared_state_object(engine):
    state = ArchState(adam_alpha=0.001)
    arch = Architecture(engine, 1, state)
    assert arch.state is state


def test_delete_releases_owned_layers(engine):
    arch = small_arch(engine)
    W = arch.layers[2].W.value
    arch.delete()
    assert W.deleted
