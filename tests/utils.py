import numpy as np
import torch

from convlab.nn import Conv2D
from convlab.options import Algo, Options
from convlab.tensor import Tensor

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if isinstance(x, Tensor):
        return x.to_numpy()
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def make_tensor(x_np: np.ndarray, max_n0: int = None) -> Tensor:
    return Tensor.from_array(np.asarray(x_np, dtype=np.float32), max_n0=max_n0)

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert a.shape == b.shape, f"shape {a.shape} != {b.shape}"
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"

def make_layer(algo: Algo, ic: int, h: int, w: int, k: int, oc: int, rng, max_batch: int = 4,
               simd_width: int = 4, lr: float = 1.0) -> Conv2D:
    opt = Options(algo=algo, prefer_cuda=False, simd_width=simd_width, lr=lr)
    return Conv2D(max_batch, ic, h, w, k, oc).init(opt, rng)

def run_forward(layer: Conv2D, x_np: np.ndarray):
    """Forward a numpy batch; handles device mirrors. Returns ``(x_tensor, y_numpy)``."""
    x = make_tensor(x_np, max_n0=layer.max_batch)
    on_device = layer.backend().on_device
    if on_device:
        if layer.w.dev is None:
            layer.mirror_to_device()
        x.mirror_to_device()
    y = layer.forward(x)
    if on_device:
        y.sync_to_host()
    return x, y.to_numpy()

def run_backward(layer: Conv2D, gy_np: np.ndarray):
    """Backward a numpy gradient; returns ``(gx, gw, gb)`` as numpy arrays."""
    gy = make_tensor(gy_np, max_n0=layer.max_batch)
    on_device = layer.backend().on_device
    if on_device:
        gy.mirror_to_device()
    gx = layer.backward(gy)
    if on_device:
        layer.sync_to_host()
    return gx.to_numpy(), layer.gw.to_numpy(), layer.gb.to_numpy()

def torch_reference(x_np, w_np, b_np, gy_np):
    """Forward and gradients of ``(conv2d(x, w, b) * gy).sum()`` from torch autograd."""
    xt = make_torch(x_np)
    wt = make_torch(w_np)
    bt = make_torch(b_np)
    yt = torch.nn.functional.conv2d(xt, wt, bt)
    (yt * torch.tensor(np.asarray(gy_np, dtype=np.float32))).sum().backward()
    return (yt.detach().cpu().numpy(), xt.grad.detach().cpu().numpy(),
            wt.grad.detach().cpu().numpy(), bt.grad.detach().cpu().numpy())
