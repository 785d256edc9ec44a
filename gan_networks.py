from gan_arch import Architecture
from gan_layers import ActivationLayer, LinearLayer, ReshapeLayer
from gan_layers_conv import CoderConfig, CoderLayer
from gan_loss import LossLayer
from gan_tensor import TensorInit

# MNIST DCGAN-style networks; images are (28, 28, 1) in [0, 1]

NOISE_DIM = 100
IMG_SHAPE = (28, 28, 1)


def build_generator(engine, max_batch_size, state=None, rng=None, noise_dim=NOISE_DIM):
    """(bs, 1, 1, noise_dim) noise -> (bs, 28, 28, 1) image."""
    arch = Architecture(engine, max_batch_size, state, rng)
    bs = max_batch_size
    momentum = arch.state.bn_momentum
    try:
        arch.attach(LinearLayer(engine, (bs, 1, 1, noise_dim), 7 * 7 * 128,
                                init=TensorInit.HE, rng=arch.rng), own=True)
        arch.attach(ActivationLayer(engine, arch.dimY, 'lrelu'), own=True)
        arch.attach(ReshapeLayer(engine, arch.dimY, (bs, 7, 7, 128)), own=True)
        for _ in range(2):
            # 7x7 -> 14x14 -> 28x28
            arch.attach(CoderLayer(engine, CoderConfig(
                arch.dimY, 128, conv_size=4, conv_stride=2, conv_transpose=True,
                conv_he=True, bn=True, bn_momentum=momentum, activation='lrelu'),
                arch.rng), own=True)
        arch.attach(CoderLayer(engine, CoderConfig(
            arch.dimY, IMG_SHAPE[2], conv_size=7, conv_stride=1, activation='logistic'),
            arch.rng), own=True)
    except BaseException:
        arch.delete()
        raise
    return arch


def build_discriminator(engine, max_batch_size, state=None, rng=None):
    """(bs, 28, 28, 1) image -> (bs, 1, 1, 1) probability of being real, BCE loss attached."""
    arch = Architecture(engine, max_batch_size, state, rng)
    bs = max_batch_size
    dimX = (bs,) + IMG_SHAPE
    try:
        for _ in range(2):
            # 28x28 -> 14x14 -> 7x7
            arch.attach(CoderLayer(engine, CoderConfig(
                arch.dimY or dimX, 64, conv_size=3, conv_stride=2, conv_he=True,
                activation='lrelu'), arch.rng), own=True)
        arch.attach(ReshapeLayer(engine, arch.dimY, (bs, 1, 1, arch.dimY.elements)), own=True)
        arch.attach(LinearLayer(engine, arch.dimY, 1, init=TensorInit.XAVIER, rng=arch.rng),
                    own=True)
        arch.attach(ActivationLayer(engine, arch.dimY, 'logistic'), own=True)
        arch.attach_loss(LossLayer(engine, arch.dimY, 'bce'), own=True)
    except BaseException:
        arch.delete()
        raise
    return arch
