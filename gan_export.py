import logging
import os

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)


def export_png(tensor, fname, n=0, k=0, vmin=0.0, vmax=1.0):
    """Write channel k of item n of an IO tensor as a grayscale PNG."""
    plt.imsave(fname, tensor.image(n, k, vmin, vmax), cmap='gray', vmin=0, vmax=255)


def save_samples(tensor, fname, count=8, vmin=0.0, vmax=1.0):
    """Write the first ``count`` items of an IO image tensor side by side."""
    count = min(count, tensor.dim.count)
    fig, axes = plt.subplots(1, count, figsize=(count, 1))
    for i, ax in enumerate(np.atleast_1d(axes)):
        ax.imshow(tensor.image(i, 0, vmin, vmax), cmap='gray', vmin=0, vmax=255)
        ax.axis('off')
    plt.tight_layout()
    plt.savefig(fname)
    plt.close(fig)


class LossLog:
    """Appends ``epoch step g_loss d_loss`` lines to a text file and keeps the history."""

    def __init__(self, fname):
        self.fname = fname
        self.g_losses = []
        self.d_losses = []
        directory = os.path.dirname(fname)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(fname, 'w') as f:
            f.write('epoch step g_loss d_loss\n')

    def append(self, epoch, step, g_loss, d_loss):
        self.g_losses.append(g_loss)
        self.d_losses.append(d_loss)
        with open(self.fname, 'a') as f:
            f.write(f'{epoch} {step} {g_loss:.6f} {d_loss:.6f}\n')

    def summary(self, window=100):
        """avg/min/max of each loss over the last ``window`` steps."""
        out = {}
        for name, values in (('g_loss', self.g_losses), ('d_loss', self.d_losses)):
            recent = np.asarray(values[-window:], dtype=np.float64)
            if len(recent):
                out[name] = (float(recent.mean()), float(recent.min()), float(recent.max()))
        return out

    def plot(self, fname):
        plt.figure()
        plt.plot(self.d_losses, label='Discriminator Loss')
        plt.plot(self.g_losses, label='Generator Loss')
        plt.legend()
        plt.xlabel('Iteration')
        plt.ylabel('Loss')
        plt.title('GAN Training Losses')
        plt.savefig(fname)
        plt.close()
        logger.info("loss curve written to %s", fname)
