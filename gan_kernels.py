"""NumPy kernels for the cpu backend.

Every kernel takes raw buffers (float32 arrays shaped (count, height, width,
depth)) and scalars, operates on the first ``bs`` items and writes its
outputs in place. The cuda backend in gan_cuda.py implements the same names
with the same argument order.
"""
from enum import IntEnum

import numpy as np

LRELU_ALPHA = 0.01
BCE_EPSILON = 1e-7


class Hazard(IntEnum):
    """Ordering requirement of a dispatch against earlier work in a session."""
    NONE = 0  # independent of everything still in flight
    RAW = 1   # reads data written by an earlier dispatch


# --- Data movement ---

def fill(dst, n, count, value):
    dst[n:n + count] = value


def copy(src, dst, src_n, dst_n, count):
    dst[dst_n:dst_n + count] = src[src_n:src_n + count]


def upload(dst, dst_n, data):
    # data is a host snapshot taken at dispatch time
    dst[dst_n:dst_n + len(data)] = data


def download(src, src_n, dst, dst_n, count):
    dst[dst_n:dst_n + count] = src[src_n:src_n + count]


# --- Convolution ---

def conv_pairs(f, s, xn, yn, transpose, clamp):
    """Return per filter offset the (output, input) index arrays that pair up.

    Standard convolution maps output ``y`` to input ``y*s + fo - f//2``.
    The transposed form is the adjoint relation, so an output ``y`` pairs
    with input ``(y - fo + f//2)/s`` when that division is exact. With
    ``clamp`` the input index is clamped into range (edge replication),
    otherwise out-of-range pairs are dropped.
    """
    y = np.arange(yn)
    pairs = []
    for fo in range(f):
        if transpose:
            num = y - fo + f // 2
            keep = num % s == 0
            x = num // s
        else:
            keep = np.ones(yn, dtype=bool)
            x = y * s + fo - f // 2
        if clamp:
            x = np.clip(x, 0, xn - 1)
        else:
            keep &= (x >= 0) & (x < xn)
        pairs.append((y[keep], x[keep]))
    return pairs


def conv_forward(X, W, B, Y, bs, stride, transpose, clamp):
    fc, fh, fw, _ = W.shape
    _, xh, xw, _ = X.shape
    _, yh, yw, _ = Y.shape
    rows = conv_pairs(fh, stride, xh, yh, transpose, clamp)
    cols = conv_pairs(fw, stride, xw, yw, transpose, clamp)
    acc = np.zeros((bs, yh, yw, fc), dtype=np.float32)
    for fi, (yr, xr) in enumerate(rows):
        for fj, (yc, xc) in enumerate(cols):
            if len(yr) == 0 or len(yc) == 0:
                continue
            x = X[:bs, xr[:, None], xc[None, :], :]
            acc[:, yr[:, None], yc[None, :], :] += x @ W[:, fi, fj, :].T
    if B is not None:
        acc += B.reshape(fc)
    Y[:bs] = acc


def conv_backward_dx(dY, W, dX, bs, stride, transpose):
    # only in-range pairs contribute, whatever the forward boundary mode
    fc, fh, fw, _ = W.shape
    _, xh, xw, _ = dX.shape
    _, yh, yw, _ = dY.shape
    rows = conv_pairs(fh, stride, xh, yh, transpose, False)
    cols = conv_pairs(fw, stride, xw, yw, transpose, False)
    acc = np.zeros((bs,) + dX.shape[1:], dtype=np.float32)
    for fi, (yr, xr) in enumerate(rows):
        for fj, (yc, xc) in enumerate(cols):
            if len(yr) == 0 or len(yc) == 0:
                continue
            dy = dY[:bs, yr[:, None], yc[None, :], :]
            acc[:, xr[:, None], xc[None, :], :] += dy @ W[:, fi, fj, :]
    dX[:bs] = acc


def conv_backward_dw(dY, X, dW, bs, stride, transpose):
    fc, fh, fw, _ = dW.shape
    _, xh, xw, _ = X.shape
    _, yh, yw, _ = dY.shape
    rows = conv_pairs(fh, stride, xh, yh, transpose, False)
    cols = conv_pairs(fw, stride, xw, yw, transpose, False)
    dW[...] = 0.0
    for fi, (yr, xr) in enumerate(rows):
        for fj, (yc, xc) in enumerate(cols):
            if len(yr) == 0 or len(yc) == 0:
                continue
            dy = dY[:bs, yr[:, None], yc[None, :], :]
            x = X[:bs, xr[:, None], xc[None, :], :]
            dW[:, fi, fj, :] = np.tensordot(dy, x, axes=([0, 1, 2], [0, 1, 2]))


def bias_backward(dY, dB, bs):
    dB[...] = dY[:bs].sum(axis=(0, 1, 2)).reshape(dB.shape)


# --- Activations ---

def _activate(kind, x):
    if kind == 'linear':
        return x
    if kind == 'logistic':
        return 0.5 * (1.0 + np.tanh(0.5 * x))
    if kind == 'lrelu':
        return np.where(x > 0, x, LRELU_ALPHA * x)
    if kind == 'relu':
        return np.maximum(x, 0)
    if kind == 'tanh':
        return np.tanh(x)
    raise ValueError(f"unknown activation '{kind}'")


def _derivative(kind, x):
    if kind == 'linear':
        return np.ones_like(x)
    if kind == 'logistic':
        y = _activate(kind, x)
        return y * (1.0 - y)
    if kind == 'lrelu':
        return np.where(x > 0, 1.0, LRELU_ALPHA).astype(np.float32)
    if kind == 'relu':
        return (x > 0).astype(np.float32)
    if kind == 'tanh':
        y = np.tanh(x)
        return 1.0 - y * y
    raise ValueError(f"unknown activation '{kind}'")


def activation_forward(kind, X, Y, bs):
    Y[:bs] = _activate(kind, X[:bs])


def activation_backward(kind, X, dY, dX, bs):
    dX[:bs] = dY[:bs] * _derivative(kind, X[:bs])


# --- Batch normalization ---

def bn_stats(X, mean, var, bs):
    x = X[:bs]
    mu = x.mean(axis=(0, 1, 2))
    mean[...] = mu.reshape(mean.shape)
    var[...] = ((x - mu) ** 2).mean(axis=(0, 1, 2)).reshape(var.shape)


def bn_running(mean, var, ra_mean, ra_var, momentum):
    ra_mean[...] = momentum * ra_mean + (1.0 - momentum) * mean
    ra_var[...] = momentum * ra_var + (1.0 - momentum) * var


def bn_forward(X, G, B, mean, var, Xhat, Y, bs, eps):
    xhat = (X[:bs] - mean) / np.sqrt(var + eps)
    Xhat[:bs] = xhat
    Y[:bs] = G * xhat + B


def bn_params_backward(dY, Xhat, dG, dB, bs):
    dy = dY[:bs]
    dG[...] = (dy * Xhat[:bs]).sum(axis=(0, 1, 2)).reshape(dG.shape)
    dB[...] = dy.sum(axis=(0, 1, 2)).reshape(dB.shape)


def bn_backward(dY, G, Xhat, var, dG, dB, dX, bs, eps):
    # sum(dL/dXhat) = G*dB and sum(dL/dXhat*Xhat) = G*dG per channel
    _, h, w, _ = dY.shape
    M = bs * h * w
    dxhat = dY[:bs] * G
    b = G * dB
    c = G * dG
    dX[:bs] = (M * dxhat - b - Xhat[:bs] * c) / (M * np.sqrt(var + eps))


def bn_backward_frozen(dY, G, ra_var, dX, bs, eps):
    # statistics are constants here, so normalization is a per-channel scale
    dX[:bs] = dY[:bs] * G / np.sqrt(ra_var + eps)


# --- Optimizer ---

def adam_update(W, dW, M, V, alpha, beta1, beta2, beta1t, beta2t, epsilon):
    m = beta1 * M + (1.0 - beta1) * dW
    v = beta2 * V + (1.0 - beta2) * dW * dW
    m_hat = m / (1.0 - beta1t)
    v_hat = v / (1.0 - beta2t)
    W -= alpha * m_hat / (np.sqrt(v_hat) + epsilon)
    M[...] = m
    V[...] = v


# --- Losses ---

def loss_mse(Y, Yt, dY, loss, bs):
    d = Y[:bs] - Yt[:bs]
    dY[:bs] = d
    loss[...] = np.mean(d * d)


def loss_mae(Y, Yt, dY, loss, bs):
    d = Y[:bs] - Yt[:bs]
    dY[:bs] = np.sign(d)
    loss[...] = np.mean(np.abs(d))


def loss_bce(Y, Yt, dY, loss, bs):
    y = np.clip(Y[:bs], BCE_EPSILON, 1.0 - BCE_EPSILON)
    t = Yt[:bs]
    dY[:bs] = (y - t) / (y * (1.0 - y))
    loss[...] = -np.mean(t * np.log(y) + (1.0 - t) * np.log(1.0 - y))
