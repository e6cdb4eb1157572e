import math
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from convlab.backends import Backend, select_backend
from convlab.logger import Logger
from convlab.optim import AdaDelta
from convlab.options import MAX_BATCH_SIZE, Options
from convlab.tensor import Tensor

class Module:
    """
    Base class for layers.

    A module owns its tensors. Learnable tensors are listed in
    ``_param_names``; every tensor attribute (parameters, outputs, gradients)
    and every optimizer attribute is mirrored to and from the device by
    :meth:`mirror_to_device` / :meth:`sync_to_host`.
    """
    _param_names: Tuple[str, ...] = ()
    _borrowed_names: Tuple[str, ...] = ()

    def __init__(self) -> None:
        """
        Attributes
        ----------
        training : bool
            If True, the module is in training mode. Passed to ``forward``
            by :meth:`__call__`.
        """
        self.training = True

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        kwargs.setdefault("training", self.training)
        return self.forward(*args, **kwargs)

    def forward(self, *args: Any, **kwargs: Any) -> Any:
        """Compute the module output. Subclasses must override this."""
        raise NotImplementedError

    def train(self, mode: bool = True) -> "Module":
        """Set training mode; returns ``self``."""
        self.training = mode
        return self

    def eval(self) -> "Module":
        """Set evaluation mode; returns ``self``."""
        return self.train(False)

    def parameters(self) -> List[Tensor]:
        """Return the learnable tensors in declaration order."""
        return [getattr(self, name) for name in self._param_names]

    def _owned_tensors(self) -> List[Tensor]:
        return [v for k, v in vars(self).items()
                if isinstance(v, Tensor) and k not in self._borrowed_names]

    def _owned_optimizers(self) -> List[AdaDelta]:
        return [v for v in vars(self).values() if isinstance(v, AdaDelta)]

    def mirror_to_device(self) -> "Module":
        """
        Allocate device mirrors for every owned tensor and optimizer state and
        copy the host content to them.

        The borrowed input (if any) is not owned and is not mirrored.
        """
        for t in self._owned_tensors():
            t.mirror_to_device()
        for o in self._owned_optimizers():
            o.mirror_to_device()
        return self

    def sync_to_host(self) -> "Module":
        """Copy every owned device mirror back to the host."""
        for t in self._owned_tensors():
            if t.dev is not None:
                t.sync_to_host()
        for o in self._owned_optimizers():
            if o.avg_sq_grad.dev is not None:
                o.sync_to_host()
        return self

    def state_dict(self) -> Dict[str, Any]:
        """
        Return copies of the learnable tensors (host side) and optimizer states.

        Returns
        -------
        dict
            Maps parameter names to arrays; optimizer states use the key
            ``"opt_<name>"`` when the module defines such an attribute.
        """
        state = {}
        for name in self._param_names:
            state[name] = getattr(self, name).to_numpy()
            opt = getattr(self, f"opt_{name}", None)
            if opt is not None:
                state[f"opt_{name}"] = opt.state_dict()
        return state

    def load_state_dict(self, state_dict: Dict[str, Any]) -> None:
        """
        Load parameter values (host side) from a state dictionary.

        Raises
        ------
        KeyError
            If a parameter key is missing.
        ValueError
            If a stored array does not match the parameter's shape.
        """
        for name in self._param_names:
            if name not in state_dict:
                raise KeyError(f"{name} not found in state_dict")
            getattr(self, name).copy_from(Tensor.from_array(state_dict[name]))
            opt = getattr(self, f"opt_{name}", None)
            if opt is not None and f"opt_{name}" in state_dict:
                opt.load_state_dict(state_dict[f"opt_{name}"])

class Conv2D(Module):
    """
    2D convolution layer (NCHW), unit stride, no padding.

    Converts each ``IC x H x W`` image into an ``OC x (H-K+1) x (W-K+1)``
    image by applying an ``IC x K x K`` stencil (cross-correlation) per output
    channel and adding a bias.

    Parameters
    ----------
    max_batch : int
        Largest batch the layer's buffers are allocated for.
    in_channels : int
        Number of input channels ``IC``.
    height, width : int
        Input image size ``H`` and ``W``.
    kernel_size : int
        Square kernel size ``K`` (``1 <= K <= min(H, W)``).
    out_channels : int
        Number of output channels ``OC``.

    Notes
    -----
    - Owned tensors: ``w (OC,IC,K,K)``, ``b (OC)``, ``y (maxB,OC,OH,OW)``,
      ``gw``, ``gb``, ``gx (maxB,IC,H,W)``; optimizers ``opt_w``, ``opt_b``.
    - ``x`` is a *borrowed* reference to the last input of :meth:`forward`.
      The caller must not modify or reuse that tensor before the matching
      :meth:`backward`; a changed ``version`` is reported as an error.
    - The algorithm is chosen per call from ``opt.algo`` (see
      :func:`convlab.backends.select_backend`).
    """
    _param_names = ("w", "b")
    _borrowed_names = ("x",)

    def __init__(
        self,
        max_batch: int,
        in_channels: int,
        height: int,
        width: int,
        kernel_size: int,
        out_channels: int,
    ) -> None:
        super().__init__()
        if max_batch < 1 or max_batch > MAX_BATCH_SIZE:
            raise ValueError(f"max_batch must be in [1, {MAX_BATCH_SIZE}], got {max_batch}")
        if not 1 <= kernel_size <= min(height, width):
            raise ValueError(f"kernel_size must be in [1, {min(height, width)}], got {kernel_size}")
        self.max_batch = max_batch
        self.in_channels = in_channels
        self.height = height
        self.width = width
        self.kernel_size = kernel_size
        self.out_channels = out_channels
        self.out_height = height - kernel_size + 1
        self.out_width = width - kernel_size + 1

        IC, K, OC = in_channels, kernel_size, out_channels
        self.w = Tensor(OC, IC, K, K)
        self.b = Tensor(OC)
        self.y = Tensor(max_batch, OC, self.out_height, self.out_width)
        self.gw = Tensor(OC, IC, K, K)
        self.gb = Tensor(OC)
        self.gx = Tensor(max_batch, IC, height, width)
        self.opt_w = AdaDelta(OC, IC, K, K)
        self.opt_b = AdaDelta(OC)

        self.opt = Options()
        self.lgr = Logger()
        self.x: Optional[Tensor] = None
        self._x_version = -1

    def __repr__(self):
        return (f"{self.__class__.__name__}(max_batch={self.max_batch}, in_channels={self.in_channels}, "
                f"height={self.height}, width={self.width}, kernel_size={self.kernel_size}, "
                f"out_channels={self.out_channels})")

    @property
    def input_shape(self) -> Tuple[int, int, int]:
        """tuple of int: ``(IC, H, W)``, the per-sample input shape."""
        return (self.in_channels, self.height, self.width)

    @property
    def output_shape(self) -> Tuple[int, int, int]:
        """tuple of int: ``(OC, H-K+1, W-K+1)``, the per-sample output shape."""
        return (self.out_channels, self.out_height, self.out_width)

    def init(self, opt: Options, rng: np.random.Generator, lgr: Optional[Logger] = None) -> "Conv2D":
        """
        Initialize parameters and optimizers.

        Parameters
        ----------
        opt : Options
            Run configuration; read here and kept for dispatch.
        rng : numpy.random.Generator
            Source of the initial weights.
        lgr : Logger or None, default=None
            Logger receiving start/end markers. A private one is used if None.

        Notes
        -----
        ``w`` and ``b`` are drawn from ``U(-1/sqrt(IC*K*K), +1/sqrt(IC*K*K))``;
        both optimizers are reset to zero state with learning rate ``opt.lr``.
        """
        self.opt = opt
        if lgr is not None:
            self.lgr = lgr
        bound = 1.0 / math.sqrt(self.in_channels * self.kernel_size * self.kernel_size)
        self.w.init_uniform(self.out_channels, rng, -bound, bound)
        self.b.init_uniform(self.out_channels, rng, -bound, bound)
        self.opt_w.reset(opt.lr)
        self.opt_b.reset(opt.lr)
        for t in (self.w, self.b):
            if t.dev is not None:
                t.sync_to_device()
        return self

    def backend(self) -> Backend:
        """Return the backend selected by the current options (re-evaluated on every call)."""
        return select_backend(self.opt)

    def _check_input(self, x: Tensor) -> None:
        if x.shape[1:] != self.input_shape:
            raise ValueError(f"input has per-sample shape {x.shape[1:]}, expected {self.input_shape}")
        if x.n0 > self.max_batch:
            raise ValueError(f"batch of {x.n0} exceeds max_batch={self.max_batch}")

    def _check_grad_output(self, gy: Tensor) -> None:
        if self.x is None:
            raise RuntimeError("backward called before forward")
        if self.x.version != self._x_version:
            raise RuntimeError("input of forward was modified before backward (stale activation)")
        if gy.shape[1:] != self.output_shape or gy.n0 != self.y.n0:
            raise ValueError(
                f"gradient has shape {gy.extents}, expected {(self.y.n0,) + self.output_shape}"
            )

    def forward(self, x: Tensor, training: bool = False) -> Tensor:
        """
        Compute ``y = w * x + b`` for the ``x.n0`` samples of ``x``.

        Parameters
        ----------
        x : Tensor
            Input of shape ``(B, IC, H, W)`` with ``B = x.n0 <= max_batch``.
            Borrowed until the matching :meth:`backward`.
        training : bool, default=False
            Accepted for interface symmetry; has no effect on this layer.

        Returns
        -------
        Tensor
            ``self.y`` with ``n0 = B``; overwritten by the next call.

        Raises
        ------
        ValueError
            If the per-sample shape differs or the batch is too large.
        RuntimeError
            On a configuration error (accelerator without CuPy) or a missing
            device mirror in accelerator mode.
        """
        with self.lgr.span("Conv2D.forward"):
            self._check_input(x)
            backend = self.backend()
            if backend.on_device and (x.dev is None or self.y.dev is None):
                raise RuntimeError(
                    f"{backend.name} needs device mirrors of the input and the layer; call mirror_to_device() first"
                )
            self.y.set_n0(x.n0)
            backend.forward(self, x)
            self.x = x
            self._x_version = x.version
        return self.y

    def backward(self, gy: Tensor) -> Tensor:
        """
        Compute ``gw``, ``gb`` and ``gx`` from ``gy = dL/dy``.

        Parameters
        ----------
        gy : Tensor
            Gradient of shape ``(B, OC, H-K+1, W-K+1)``; ``B`` must equal the
            batch of the last :meth:`forward`.

        Returns
        -------
        Tensor
            ``self.gx`` (``dL/dx``) with ``n0 = B``.

        Raises
        ------
        RuntimeError
            If no forward preceded this call or its input was modified since.
        ValueError
            If ``gy`` does not match the last output shape.
        """
        with self.lgr.span("Conv2D.backward"):
            self._check_grad_output(gy)
            backend = self.backend()
            self.gw.set_n0(self.out_channels)
            self.gb.set_n0(self.out_channels)
            self.gx.set_n0(gy.n0)
            backend.backward(self, gy)
        return self.gx

    def update(self) -> None:
        """Apply the gradients of the last :meth:`backward` to ``w`` and ``b``."""
        with self.lgr.span("Conv2D.update"):
            self.backend().update(self)

    # The methods below work on host data and only serve gradient checking.

    def randomize_gradients(self, rng: np.random.Generator, lo: float, hi: float) -> None:
        """Set ``gw`` and ``gb`` to i.i.d. samples from ``U(lo, hi)``."""
        self.gw.init_uniform(self.out_channels, rng, lo, hi)
        self.gb.init_uniform(self.out_channels, rng, lo, hi)

    def copy_gradients_from(self, other: "Conv2D") -> None:
        """Copy ``gw`` and ``gb`` from ``other``."""
        self.gw.copy_from(other.gw)
        self.gb.copy_from(other.gb)

    def accumulate_into_weights(self, alpha: float) -> None:
        """``w += alpha * gw`` and ``b += alpha * gb``."""
        self.w.add_(alpha, self.gw)
        self.b.add_(alpha, self.gb)

    def gradient_dot(self, other: "Conv2D") -> float:
        """Inner product of this layer's ``(gw, gb)`` with ``other``'s."""
        return self.gw.dot(other.gw) + self.gb.dot(other.gb)

    def clone(self) -> "Conv2D":
        """
        Return a new layer with the same geometry, options, logger and a copy
        of the parameters (host side). Gradients, optimizer state, device
        mirrors and the borrowed input are not copied.
        """
        other = Conv2D(self.max_batch, self.in_channels, self.height, self.width,
                       self.kernel_size, self.out_channels)
        other.opt = self.opt
        other.lgr = self.lgr
        other.opt_w.reset(self.opt.lr)
        other.opt_b.reset(self.opt.lr)
        other.w.copy_from(self.w)
        other.b.copy_from(self.b)
        return other
