"""
Interchangeable algorithm bodies for :class:`convlab.nn.Conv2D`.

Every backend implements the same cross-correlation (unit stride, no padding)
and its three partial derivatives::

    y[s,oc,i,j]    = b[oc] + sum_{ic,di,dj} w[oc,ic,di,dj] * x[s,ic,i+di,j+dj]
    gw[oc,ic,di,dj] = sum_{s,i,j} gy[s,oc,i,j] * x[s,ic,i+di,j+dj]
    gb[oc]          = sum_{s,i,j} gy[s,oc,i,j]
    gx[s,ic,i,j]    = sum_{oc,di,dj} gy[s,oc,i-di,j-dj] * w[oc,ic,di,dj]

where the last sum only runs over ``(i-di, j-dj)`` inside the output plane.

The layer validates shapes, sets leading extents and remembers its input
before calling a backend; backends only do arithmetic.
"""
from typing import Any, Callable, Dict

import numpy as np

from convlab.options import Algo, Options
from convlab.tensor import _HAS_CUPY, Tensor, cp, real

class Backend:
    """
    Interface of an execution strategy.

    Attributes
    ----------
    name : str
        Name used in log records.
    on_device : bool
        True if the backend reads and writes device mirrors instead of host
        buffers.
    """
    name = "backend"
    on_device = False

    def forward(self, layer: Any, x: Tensor) -> None:
        """Compute ``layer.y[:x.n0]`` from ``x``, ``layer.w`` and ``layer.b``."""
        raise NotImplementedError

    def backward(self, layer: Any, gy: Tensor) -> None:
        """Compute ``layer.gw``, ``layer.gb`` and ``layer.gx[:gy.n0]`` from ``gy`` and ``layer.x``."""
        raise NotImplementedError

    def update(self, layer: Any) -> None:
        """Apply ``layer.gw``/``layer.gb`` to ``layer.w``/``layer.b`` through the optimizers."""
        layer.opt_w.update(layer.w, layer.gw, on_device=self.on_device)
        layer.opt_b.update(layer.b, layer.gb, on_device=self.on_device)

    def __repr__(self):
        return f"{self.__class__.__name__}()"

def _forward_pixel(layer: Any, x: Tensor, s: int, oc: int, i: int, j: int) -> None:
    w = layer.w
    v = real(0)
    for ic in range(layer.in_channels):
        for di in range(layer.kernel_size):
            for dj in range(layer.kernel_size):
                v += w[oc, ic, di, dj] * x[s, ic, i + di, j + dj]
    layer.y[s, oc, i, j] = v + layer.b[oc]

def _grad_input_pixel(layer: Any, gy: Tensor, s: int, ic: int, i: int, j: int) -> None:
    K = layer.kernel_size
    OH, OW = layer.out_height, layer.out_width
    w = layer.w
    v = real(0)
    for oc in range(layer.out_channels):
        for di in range(K):
            for dj in range(K):
                if 0 <= i - di < OH and 0 <= j - dj < OW:
                    v += gy[s, oc, i - di, j - dj] * w[oc, ic, di, dj]
    layer.gx[s, ic, i, j] = v

class ScalarBackend(Backend):
    """
    Sequential nested loops through the bounds-checked element accessor.

    This is the reference semantics; the other backends must agree with it up
    to floating-point summation order.
    """
    name = "cpu_base"

    def forward(self, layer: Any, x: Tensor) -> None:
        for s in range(x.n0):                                   # each sample
            for oc in range(layer.out_channels):                # each output channel
                for i in range(layer.out_height):               # each output pixel
                    for j in range(layer.out_width):
                        _forward_pixel(layer, x, s, oc, i, j)

    def backward(self, layer: Any, gy: Tensor) -> None:
        x = layer.x
        B = gy.n0
        K = layer.kernel_size
        OH, OW = layer.out_height, layer.out_width
        for oc in range(layer.out_channels):
            for ic in range(layer.in_channels):
                for di in range(K):
                    for dj in range(K):
                        v = real(0)
                        for s in range(B):
                            for i in range(OH):
                                for j in range(OW):
                                    v += gy[s, oc, i, j] * x[s, ic, i + di, j + dj]
                        layer.gw[oc, ic, di, dj] = v

        for oc in range(layer.out_channels):
            v = real(0)
            for s in range(B):
                for i in range(OH):
                    for j in range(OW):
                        v += gy[s, oc, i, j]
            layer.gb[oc] = v

        for s in range(B):
            for ic in range(layer.in_channels):
                for i in range(layer.height):
                    for j in range(layer.width):
                        _grad_input_pixel(layer, gy, s, ic, i, j)

class SimdBackend(Backend):
    """
    The scalar arithmetic with the innermost spatial loop split into lanes.

    Each group of ``width`` adjacent columns is processed as one ``float32``
    vector read through :meth:`Tensor.wide_at`; the columns left over when the
    row length is not a multiple of ``width`` go through the scalar tail.

    Notes
    -----
    - Forward and the input gradient keep the scalar summation order per
      element, so they agree bit for bit with :class:`ScalarBackend`.
    - Weight and bias gradients accumulate lane-wise partial sums and reduce
      them horizontally at the end, so they may differ from the scalar
      baseline in the last bits.
    - The input gradient is written as a scatter from each output row into the
      shifted input row. A gather over input columns would need per-lane range
      masks at the borders.
    """
    name = "cpu_simd"

    def __init__(self, width: int = 4) -> None:
        if width < 1:
            raise ValueError(f"lane width must be positive, got {width}")
        self.width = width

    def __repr__(self):
        return f"{self.__class__.__name__}(width={self.width})"

    def forward(self, layer: Any, x: Tensor) -> None:
        L = self.width
        K = layer.kernel_size
        OW = layer.out_width
        main = OW - OW % L
        w, b, y = layer.w, layer.b, layer.y
        for s in range(x.n0):
            for oc in range(layer.out_channels):
                for i in range(layer.out_height):
                    for j in range(0, main, L):
                        vec = np.zeros(L, dtype=real)
                        for ic in range(layer.in_channels):
                            for di in range(K):
                                for dj in range(K):
                                    vec += x.wide_at(s, ic, i + di, j + dj, width=L) * w[oc, ic, di, dj]
                        y.set_wide_at((s, oc, i, j), vec + b[oc])
                    for j in range(main, OW):                   # remainder
                        _forward_pixel(layer, x, s, oc, i, j)

    def backward(self, layer: Any, gy: Tensor) -> None:
        L = self.width
        x = layer.x
        B = gy.n0
        K = layer.kernel_size
        OH, OW = layer.out_height, layer.out_width
        main = OW - OW % L

        for oc in range(layer.out_channels):
            for ic in range(layer.in_channels):
                for di in range(K):
                    for dj in range(K):
                        v = real(0)
                        vec = np.zeros(L, dtype=real)
                        for s in range(B):
                            for i in range(OH):
                                for j in range(0, main, L):
                                    vec += gy.wide_at(s, oc, i, j, width=L) * x.wide_at(s, ic, i + di, j + dj, width=L)
                                for j in range(main, OW):
                                    v += gy[s, oc, i, j] * x[s, ic, i + di, j + dj]
                        layer.gw[oc, ic, di, dj] = v + vec.sum(dtype=real)

        for oc in range(layer.out_channels):
            v = real(0)
            vec = np.zeros(L, dtype=real)
            for s in range(B):
                for i in range(OH):
                    for j in range(0, main, L):
                        vec += gy.wide_at(s, oc, i, j, width=L)
                    for j in range(main, OW):
                        v += gy[s, oc, i, j]
            layer.gb[oc] = v + vec.sum(dtype=real)

        gx, w = layer.gx, layer.w
        gx.init_const(B, 0.0)
        for s in range(B):
            for ic in range(layer.in_channels):
                for i in range(layer.height):
                    for oc in range(layer.out_channels):
                        for di in range(K):
                            io = i - di
                            if not 0 <= io < OH:
                                continue
                            for dj in range(K):
                                wv = w[oc, ic, di, dj]
                                for jo in range(0, main, L):
                                    acc = gx.wide_at(s, ic, i, jo + dj, width=L)
                                    acc += gy.wide_at(s, oc, io, jo, width=L) * wv
                                    gx.set_wide_at((s, ic, i, jo + dj), acc)
                                for jo in range(main, OW):
                                    gx[s, ic, i, jo + dj] += gy[s, oc, io, jo] * wv

def conv2d_forward_kernel(xp: Any, x: Any, w: Any, b: Any, y: Any) -> None:
    """
    Whole-array forward on raw arrays of module ``xp`` (``numpy`` or ``cupy``).

    Every output element is computed independently with the scalar summation
    order ``(ic, di, dj)`` followed by the bias.

    Parameters
    ----------
    x : array, shape ``(B, IC, H, W)``
    w : array, shape ``(OC, IC, K, K)``
    b : array, shape ``(OC,)``
    y : array, shape ``(B, OC, H-K+1, W-K+1)``, written in place.
    """
    IC, K = w.shape[1], w.shape[2]
    OH, OW = y.shape[2], y.shape[3]
    y[...] = 0
    for ic in range(IC):
        for di in range(K):
            for dj in range(K):
                y += w[:, ic, di, dj][None, :, None, None] * x[:, ic, None, di:di + OH, dj:dj + OW]
    y += b[None, :, None, None]

def conv2d_backward_kernel(xp: Any, x: Any, w: Any, gy: Any, gw: Any, gb: Any, gx: Any) -> None:
    """
    Whole-array backward on raw arrays of module ``xp``; writes ``gw``, ``gb``, ``gx`` in place.

    The weight and bias gradients are reductions (``tensordot``/``sum``); the
    input gradient accumulates shifted output planes in the scalar order
    ``(oc, di, dj)``, which also realises the implicit zero padding of ``gy``.
    """
    OC, K = w.shape[0], w.shape[2]
    OH, OW = gy.shape[2], gy.shape[3]
    for di in range(K):
        for dj in range(K):
            xs = x[:, :, di:di + OH, dj:dj + OW]
            gw[:, :, di, dj] = xp.tensordot(gy, xs, axes=([0, 2, 3], [0, 2, 3]))
    gb[...] = gy.sum(axis=(0, 2, 3))
    gx[...] = 0
    for oc in range(OC):
        for di in range(K):
            for dj in range(K):
                gx[:, :, di:di + OH, dj:dj + OW] += gy[:, oc, None, :, :] * w[oc, :, di, dj][None, :, None, None]

class CudaBackend(Backend):
    """
    The same arithmetic on the device mirrors, with CuPy kernels.

    All of ``layer``'s tensors and the input/gradient tensors passed in must
    have device mirrors (see :meth:`Tensor.mirror_to_device`). Results are left
    on the device; the host copies are stale until ``sync_to_host``. Every
    call blocks until the device has finished.

    Raises
    ------
    RuntimeError
        On construction, if CuPy is not installed/available.
    """
    name = "cuda_base"
    on_device = True

    def __init__(self) -> None:
        if not _HAS_CUPY:
            raise RuntimeError("algorithm cuda_base requested but CuPy is not installed/available.")

    @staticmethod
    def _sync() -> None:
        cp.cuda.get_current_stream().synchronize()

    def forward(self, layer: Any, x: Tensor) -> None:
        conv2d_forward_kernel(cp, x.dev_view(), layer.w.dev, layer.b.dev, layer.y.dev_view())
        self._sync()
        layer.y.version += 1

    def backward(self, layer: Any, gy: Tensor) -> None:
        conv2d_backward_kernel(
            cp, layer.x.dev_view(), layer.w.dev, gy.dev_view(),
            layer.gw.dev, layer.gb.dev, layer.gx.dev_view(),
        )
        self._sync()
        for t in (layer.gw, layer.gb, layer.gx):
            t.version += 1

    def update(self, layer: Any) -> None:
        super().update(layer)
        self._sync()

_BACKENDS: Dict[Algo, Callable[[Options], Backend]] = {
    Algo.CPU_BASE: lambda opt: ScalarBackend(),
    Algo.CPU_SIMD: lambda opt: SimdBackend(opt.simd_width),
    Algo.CUDA_BASE: lambda opt: CudaBackend(),
}

def select_backend(opt: Options) -> Backend:
    """
    Pick the backend for ``opt.algo``.

    Known modes map to their backend. Any other value falls back to the
    accelerator when ``opt.prefer_cuda`` is set and to the scalar baseline
    otherwise.

    Raises
    ------
    RuntimeError
        If the accelerator is selected (explicitly or by fallback) and CuPy is
        not installed/available.
    """
    factory = _BACKENDS.get(opt.algo)
    if factory is not None:
        return factory(opt)
    if opt.prefer_cuda:
        return CudaBackend()
    return ScalarBackend()
