"""PyCUDA backend: the gan_kernels interface on the GPU.

All kernels of a session are launched on one stream, which executes them
in dispatch order, so both hazard kinds are satisfied without extra waits.
"""
import logging

import numpy as np
import pycuda.autoinit  # noqa: F401
import pycuda.driver as cuda
import pycuda.gpuarray as gpuarray
from pycuda.compiler import SourceModule

from gan_errors import AllocationError
from gan_kernels import BCE_EPSILON, LRELU_ALPHA

logger = logging.getLogger(__name__)

BLOCK = 256

ACTIVATION_CODES = {'linear': 0, 'logistic': 1, 'lrelu': 2, 'relu': 3, 'tanh': 4}
LOSS_CODES = {'mse': 0, 'mae': 1, 'bce': 2}

KERNEL_SOURCE = r"""
#define LRELU_ALPHA %(lrelu_alpha)ff
#define BCE_EPSILON %(bce_epsilon)ef
#define BLOCK %(block)d

__device__ int conv_input_index(int y, int f, int fn, int s, int xn,
                                int transpose, int clamp)
{
    int x;
    if (transpose) {
        int num = y - f + fn/2;
        int mag = num < 0 ? -num : num;
        if (mag %% s) return -1;
        x = num < 0 ? -(mag/s) : mag/s;
    } else {
        x = y*s + f - fn/2;
    }
    if (clamp) return x < 0 ? 0 : (x >= xn ? xn - 1 : x);
    return (x < 0 || x >= xn) ? -1 : x;
}

__device__ int conv_output_index(int x, int f, int fn, int s, int yn, int transpose)
{
    int y;
    if (transpose) {
        y = x*s + f - fn/2;
    } else {
        int num = x - f + fn/2;
        if (num < 0 || num %% s) return -1;
        y = num/s;
    }
    return (y < 0 || y >= yn) ? -1 : y;
}

__global__ void fill(float* dst, int offset, int size, float value)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx < size) dst[offset + idx] = value;
}

__global__ void conv_forward(const float* X, const float* W, const float* B, float* Y,
                             int bs, int xh, int xw, int xd, int yh, int yw, int fc,
                             int fh, int fw, int s, int transpose, int clamp, int has_bias)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx >= bs*yh*yw*fc) return;
    int f  = idx %% fc;
    int yj = (idx/fc) %% yw;
    int yi = (idx/(fc*yw)) %% yh;
    int n  = idx/(fc*yw*yh);
    float sum = has_bias ? B[f] : 0.0f;
    for (int fi = 0; fi < fh; ++fi) {
        int xi = conv_input_index(yi, fi, fh, s, xh, transpose, clamp);
        if (xi < 0) continue;
        for (int fj = 0; fj < fw; ++fj) {
            int xj = conv_input_index(yj, fj, fw, s, xw, transpose, clamp);
            if (xj < 0) continue;
            const float* x = X + ((n*xh + xi)*xw + xj)*xd;
            const float* w = W + ((f*fh + fi)*fw + fj)*xd;
            for (int k = 0; k < xd; ++k) sum += x[k]*w[k];
        }
    }
    Y[idx] = sum;
}

__global__ void conv_backward_dx(const float* dY, const float* W, float* dX,
                                 int bs, int xh, int xw, int xd, int yh, int yw, int fc,
                                 int fh, int fw, int s, int transpose)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx >= bs*xh*xw*xd) return;
    int k  = idx %% xd;
    int xj = (idx/xd) %% xw;
    int xi = (idx/(xd*xw)) %% xh;
    int n  = idx/(xd*xw*xh);
    float sum = 0.0f;
    for (int fi = 0; fi < fh; ++fi) {
        int yi = conv_output_index(xi, fi, fh, s, yh, transpose);
        if (yi < 0) continue;
        for (int fj = 0; fj < fw; ++fj) {
            int yj = conv_output_index(xj, fj, fw, s, yw, transpose);
            if (yj < 0) continue;
            const float* dy = dY + ((n*yh + yi)*yw + yj)*fc;
            for (int f = 0; f < fc; ++f) sum += dy[f]*W[((f*fh + fi)*fw + fj)*xd + k];
        }
    }
    dX[idx] = sum;
}

__global__ void conv_backward_dw(const float* dY, const float* X, float* dW,
                                 int bs, int xh, int xw, int xd, int yh, int yw, int fc,
                                 int fh, int fw, int s, int transpose)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx >= fc*fh*fw*xd) return;
    int k  = idx %% xd;
    int fj = (idx/xd) %% fw;
    int fi = (idx/(xd*fw)) %% fh;
    int f  = idx/(xd*fw*fh);
    float sum = 0.0f;
    for (int n = 0; n < bs; ++n) {
        for (int yi = 0; yi < yh; ++yi) {
            int xi = conv_input_index(yi, fi, fh, s, xh, transpose, 0);
            if (xi < 0) continue;
            for (int yj = 0; yj < yw; ++yj) {
                int xj = conv_input_index(yj, fj, fw, s, xw, transpose, 0);
                if (xj < 0) continue;
                sum += dY[((n*yh + yi)*yw + yj)*fc + f]*X[((n*xh + xi)*xw + xj)*xd + k];
            }
        }
    }
    dW[idx] = sum;
}

__global__ void channel_sum(const float* A, const float* B, float* out, int rows, int depth)
{
    // out[k] = sum_r A[r, k] * (B ? B[r, k] : 1)
    int k = blockIdx.x*blockDim.x + threadIdx.x;
    if (k >= depth) return;
    float sum = 0.0f;
    for (int r = 0; r < rows; ++r) {
        float a = A[r*depth + k];
        sum += B ? a*B[r*depth + k] : a;
    }
    out[k] = sum;
}

__device__ float activate(int kind, float x)
{
    switch (kind) {
        case 1: return 1.0f/(1.0f + expf(-x));
        case 2: return x > 0.0f ? x : LRELU_ALPHA*x;
        case 3: return x > 0.0f ? x : 0.0f;
        case 4: return tanhf(x);
        default: return x;
    }
}

__device__ float derivative(int kind, float x)
{
    float y;
    switch (kind) {
        case 1: y = 1.0f/(1.0f + expf(-x)); return y*(1.0f - y);
        case 2: return x > 0.0f ? 1.0f : LRELU_ALPHA;
        case 3: return x > 0.0f ? 1.0f : 0.0f;
        case 4: y = tanhf(x); return 1.0f - y*y;
        default: return 1.0f;
    }
}

__global__ void activation_forward(int kind, const float* X, float* Y, int size)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx < size) Y[idx] = activate(kind, X[idx]);
}

__global__ void activation_backward(int kind, const float* X, const float* dY, float* dX, int size)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx < size) dX[idx] = dY[idx]*derivative(kind, X[idx]);
}

__global__ void bn_stats(const float* X, float* mean, float* var, int rows, int depth)
{
    int k = blockIdx.x*blockDim.x + threadIdx.x;
    if (k >= depth) return;
    float sum = 0.0f;
    for (int r = 0; r < rows; ++r) sum += X[r*depth + k];
    float mu = sum/rows;
    float sq = 0.0f;
    for (int r = 0; r < rows; ++r) {
        float d = X[r*depth + k] - mu;
        sq += d*d;
    }
    mean[k] = mu;
    var[k] = sq/rows;
}

__global__ void bn_running(const float* mean, const float* var, float* ra_mean, float* ra_var,
                           float momentum, int depth)
{
    int k = blockIdx.x*blockDim.x + threadIdx.x;
    if (k >= depth) return;
    ra_mean[k] = momentum*ra_mean[k] + (1.0f - momentum)*mean[k];
    ra_var[k] = momentum*ra_var[k] + (1.0f - momentum)*var[k];
}

__global__ void bn_forward(const float* X, const float* G, const float* B,
                           const float* mean, const float* var, float* Xhat, float* Y,
                           int size, int depth, float eps)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx >= size) return;
    int k = idx %% depth;
    float xhat = (X[idx] - mean[k])/sqrtf(var[k] + eps);
    Xhat[idx] = xhat;
    Y[idx] = G[k]*xhat + B[k];
}

__global__ void bn_backward(const float* dY, const float* G, const float* Xhat, const float* var,
                            const float* dG, const float* dB, float* dX,
                            int size, int depth, float eps)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx >= size) return;
    int k = idx %% depth;
    float M = (float) (size/depth);
    float dxhat = dY[idx]*G[k];
    float b = G[k]*dB[k];
    float c = G[k]*dG[k];
    dX[idx] = (M*dxhat - b - Xhat[idx]*c)/(M*sqrtf(var[k] + eps));
}

__global__ void bn_backward_frozen(const float* dY, const float* G, const float* ra_var, float* dX,
                                   int size, int depth, float eps)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx >= size) return;
    int k = idx %% depth;
    dX[idx] = dY[idx]*G[k]/sqrtf(ra_var[k] + eps);
}

__global__ void adam_update(float* W, const float* dW, float* M, float* V, int size,
                            float alpha, float beta1, float beta2,
                            float beta1t, float beta2t, float epsilon)
{
    int idx = blockIdx.x*blockDim.x + threadIdx.x;
    if (idx >= size) return;
    float g = dW[idx];
    float m = beta1*M[idx] + (1.0f - beta1)*g;
    float v = beta2*V[idx] + (1.0f - beta2)*g*g;
    float m_hat = m/(1.0f - beta1t);
    float v_hat = v/(1.0f - beta2t);
    W[idx] -= alpha*m_hat/(sqrtf(v_hat) + epsilon);
    M[idx] = m;
    V[idx] = v;
}

// launched as a single block of BLOCK threads
__global__ void loss(int kind, const float* Y, const float* Yt, float* dY, float* out, int size)
{
    __shared__ float partial[BLOCK];
    float sum = 0.0f;
    for (int idx = threadIdx.x; idx < size; idx += BLOCK) {
        float y = Y[idx];
        float t = Yt[idx];
        float d = y - t;
        if (kind == 0) {
            dY[idx] = d;
            sum += d*d;
        } else if (kind == 1) {
            dY[idx] = (d > 0.0f) - (d < 0.0f);
            sum += fabsf(d);
        } else {
            y = fminf(fmaxf(y, BCE_EPSILON), 1.0f - BCE_EPSILON);
            dY[idx] = (y - t)/(y*(1.0f - y));
            sum -= t*logf(y) + (1.0f - t)*logf(1.0f - y);
        }
    }
    partial[threadIdx.x] = sum;
    __syncthreads();
    for (int stride = BLOCK/2; stride > 0; stride /= 2) {
        if (threadIdx.x < stride) partial[threadIdx.x] += partial[threadIdx.x + stride];
        __syncthreads();
    }
    if (threadIdx.x == 0) out[0] = partial[0]/size;
}
""" % {'lrelu_alpha': LRELU_ALPHA, 'bce_epsilon': BCE_EPSILON, 'block': BLOCK}


def _grid(size):
    return ((size + BLOCK - 1) // BLOCK, 1)


def _ptr(array, offset=0):
    """Device address of ``array`` plus ``offset`` float32 elements."""
    return np.intp(int(array.gpudata) + offset * 4)


class CudaBackend:
    name = 'cuda'

    def __init__(self):
        self.module = SourceModule(KERNEL_SOURCE)
        self.kernels = {}
        self.stream = None
        logger.info("CUDA kernels compiled on %s", pycuda.autoinit.device.name())

    def _launch(self, name, size, *args, grid=None):
        if name not in self.kernels:
            self.kernels[name] = self.module.get_function(name)
        self.kernels[name](*args, block=(BLOCK, 1, 1), grid=grid or _grid(size),
                           stream=self.stream)

    # --- Storage ---

    def alloc(self, shape):
        try:
            return gpuarray.zeros(tuple(shape), dtype=np.float32)
        except cuda.MemoryError as e:
            raise AllocationError(f"cannot allocate device buffer {tuple(shape)}") from e

    def write(self, buffer, array):
        buffer.set(np.ascontiguousarray(array, dtype=np.float32))

    def read(self, buffer):
        return buffer.get()

    # --- Session ---

    def begin(self):
        if self.stream is None:
            self.stream = cuda.Stream()

    def submit(self, hazard, kernel, args):
        # the single stream already orders every launch
        getattr(self, kernel)(*args)

    def end(self):
        self.stream.synchronize()

    def close(self):
        self.stream = None

    # --- Data movement ---

    def fill(self, dst, n, count, value):
        elements = int(np.prod(dst.shape[1:]))
        size = count * elements
        self._launch('fill', size, dst.gpudata, np.int32(n * elements), np.int32(size),
                     np.float32(value))

    def copy(self, src, dst, src_n, dst_n, count):
        elements = int(np.prod(src.shape[1:]))
        cuda.memcpy_dtod_async(_ptr(dst, dst_n * elements), _ptr(src, src_n * elements),
                               count * elements * 4, self.stream)

    def upload(self, dst, dst_n, data):
        elements = int(np.prod(dst.shape[1:]))
        self.stream.synchronize()
        cuda.memcpy_htod(_ptr(dst, dst_n * elements), np.ascontiguousarray(data, dtype=np.float32))

    def download(self, src, src_n, dst, dst_n, count):
        elements = int(np.prod(src.shape[1:]))
        self.stream.synchronize()
        cuda.memcpy_dtoh(dst[dst_n:dst_n + count], _ptr(src, src_n * elements))

    # --- Convolution ---

    def conv_forward(self, X, W, B, Y, bs, stride, transpose, clamp):
        _, xh, xw, xd = X.shape
        _, yh, yw, fc = Y.shape
        _, fh, fw, _ = W.shape
        bias = B.gpudata if B is not None else np.intp(0)
        self._launch('conv_forward', bs * yh * yw * fc,
                     X.gpudata, W.gpudata, bias, Y.gpudata,
                     np.int32(bs), np.int32(xh), np.int32(xw), np.int32(xd),
                     np.int32(yh), np.int32(yw), np.int32(fc), np.int32(fh), np.int32(fw),
                     np.int32(stride), np.int32(transpose), np.int32(clamp),
                     np.int32(B is not None))

    def conv_backward_dx(self, dY, W, dX, bs, stride, transpose):
        _, xh, xw, xd = dX.shape
        _, yh, yw, fc = dY.shape
        _, fh, fw, _ = W.shape
        self._launch('conv_backward_dx', bs * xh * xw * xd,
                     dY.gpudata, W.gpudata, dX.gpudata,
                     np.int32(bs), np.int32(xh), np.int32(xw), np.int32(xd),
                     np.int32(yh), np.int32(yw), np.int32(fc), np.int32(fh), np.int32(fw),
                     np.int32(stride), np.int32(transpose))

    def conv_backward_dw(self, dY, X, dW, bs, stride, transpose):
        _, xh, xw, xd = X.shape
        _, yh, yw, fc = dY.shape
        _, fh, fw, _ = dW.shape
        self._launch('conv_backward_dw', fc * fh * fw * xd,
                     dY.gpudata, X.gpudata, dW.gpudata,
                     np.int32(bs), np.int32(xh), np.int32(xw), np.int32(xd),
                     np.int32(yh), np.int32(yw), np.int32(fc), np.int32(fh), np.int32(fw),
                     np.int32(stride), np.int32(transpose))

    def bias_backward(self, dY, dB, bs):
        _, h, w, fc = dY.shape
        self._launch('channel_sum', fc, dY.gpudata, np.intp(0), dB.gpudata,
                     np.int32(bs * h * w), np.int32(fc))

    # --- Activations ---

    def activation_forward(self, kind, X, Y, bs):
        size = bs * int(np.prod(X.shape[1:]))
        self._launch('activation_forward', size, np.int32(ACTIVATION_CODES[kind]),
                     X.gpudata, Y.gpudata, np.int32(size))

    def activation_backward(self, kind, X, dY, dX, bs):
        size = bs * int(np.prod(X.shape[1:]))
        self._launch('activation_backward', size, np.int32(ACTIVATION_CODES[kind]),
                     X.gpudata, dY.gpudata, dX.gpudata, np.int32(size))

    # --- Batch normalization ---

    def bn_stats(self, X, mean, var, bs):
        _, h, w, depth = X.shape
        self._launch('bn_stats', depth, X.gpudata, mean.gpudata, var.gpudata,
                     np.int32(bs * h * w), np.int32(depth))

    def bn_running(self, mean, var, ra_mean, ra_var, momentum):
        depth = mean.shape[-1]
        self._launch('bn_running', depth, mean.gpudata, var.gpudata, ra_mean.gpudata,
                     ra_var.gpudata, np.float32(momentum), np.int32(depth))

    def bn_forward(self, X, G, B, mean, var, Xhat, Y, bs, eps):
        depth = X.shape[-1]
        size = bs * int(np.prod(X.shape[1:]))
        self._launch('bn_forward', size, X.gpudata, G.gpudata, B.gpudata, mean.gpudata,
                     var.gpudata, Xhat.gpudata, Y.gpudata, np.int32(size), np.int32(depth),
                     np.float32(eps))

    def bn_params_backward(self, dY, Xhat, dG, dB, bs):
        _, h, w, depth = dY.shape
        rows = np.int32(bs * h * w)
        self._launch('channel_sum', depth, dY.gpudata, Xhat.gpudata, dG.gpudata,
                     rows, np.int32(depth))
        self._launch('channel_sum', depth, dY.gpudata, np.intp(0), dB.gpudata,
                     rows, np.int32(depth))

    def bn_backward(self, dY, G, Xhat, var, dG, dB, dX, bs, eps):
        depth = dY.shape[-1]
        size = bs * int(np.prod(dY.shape[1:]))
        self._launch('bn_backward', size, dY.gpudata, G.gpudata, Xhat.gpudata, var.gpudata,
                     dG.gpudata, dB.gpudata, dX.gpudata, np.int32(size), np.int32(depth),
                     np.float32(eps))

    def bn_backward_frozen(self, dY, G, ra_var, dX, bs, eps):
        depth = dY.shape[-1]
        size = bs * int(np.prod(dY.shape[1:]))
        self._launch('bn_backward_frozen', size, dY.gpudata, G.gpudata, ra_var.gpudata,
                     dX.gpudata, np.int32(size), np.int32(depth), np.float32(eps))

    # --- Optimizer ---

    def adam_update(self, W, dW, M, V, alpha, beta1, beta2, beta1t, beta2t, epsilon):
        size = W.size
        self._launch('adam_update', size, W.gpudata, dW.gpudata, M.gpudata, V.gpudata,
                     np.int32(size), np.float32(alpha), np.float32(beta1), np.float32(beta2),
                     np.float32(beta1t), np.float32(beta2t), np.float32(epsilon))

    # --- Losses ---

    def _loss(self, kind, Y, Yt, dY, loss, bs):
        size = bs * int(np.prod(Y.shape[1:]))
        self._launch('loss', size, np.int32(LOSS_CODES[kind]), Y.gpudata, Yt.gpudata,
                     dY.gpudata, loss.gpudata, np.int32(size), grid=(1, 1))

    def loss_mse(self, Y, Yt, dY, loss, bs):
        self._loss('mse', Y, Yt, dY, loss, bs)

    def loss_mae(self, Y, Yt, dY, loss, bs):
        self._loss('mae', Y, Yt, dY, loss, bs)

    def loss_bce(self, Y, Yt, dY, loss, bs):
        self._loss('bce', Y, Yt, dY, loss, bs)
