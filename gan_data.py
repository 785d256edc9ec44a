import logging

import numpy as np
from torchvision import datasets

from gan_tensor import Tensor, TensorMode

logger = logging.getLogger(__name__)


def load_mnist(engine, root='./data', train=True, limit=None):
    """MNIST digits as an IO tensor of shape (N, 28, 28, 1) with values in [0, 1]."""
    dataset = datasets.MNIST(root=root, train=train, download=True)
    images = dataset.data.numpy()
    if limit is not None:
        images = images[:limit]
    images = images.astype(np.float32)[..., np.newaxis] / 255.0
    logger.info("loaded %d MNIST images from %s", len(images), root)
    return Tensor.from_array(engine, images, TensorMode.IO)
