from typing import Any, Dict

import numpy as np

from convlab.tensor import Tensor, cp, real

def adadelta_step(
    xp: Any,
    p: Any,
    g: Any,
    avg_sq_grad: Any,
    avg_sq_delta: Any,
    lr: float,
    rho: float,
    eps: float,
) -> None:
    """
    One AdaDelta step on raw arrays, in place.

    ``xp`` is the array module owning the arrays (``numpy`` on the host,
    ``cupy`` on the device). The recurrence is closed per element, so the same
    function serves every execution path.
    """
    rho = real(rho)
    one_minus_rho = real(1) - rho
    eps = real(eps)
    avg_sq_grad *= rho
    avg_sq_grad += one_minus_rho * g * g                                       # E[g^2]
    delta = -g * xp.sqrt(avg_sq_delta + eps) / xp.sqrt(avg_sq_grad + eps)
    p += real(lr) * delta
    avg_sq_delta *= rho
    avg_sq_delta += one_minus_rho * delta * delta                              # E[dx^2]

class AdaDelta:
    """
    AdaDelta state for a single learnable tensor.

    Parameters
    ----------
    *shape : int
        Shape of the parameter this optimizer updates.
    lr : float, default=1.0
        Scale applied to each delta before it is added to the parameter.
    rho : float, default=0.95
        Decay of both running averages.
    eps : float, default=1e-6
        Term added inside both square roots.

    Notes
    -----
    - State: ``avg_sq_grad`` (running average of squared gradients) and
      ``avg_sq_delta`` (running average of squared deltas), both shaped like
      the parameter and zero after construction or :meth:`reset`.
    - With ``lr=1`` a step is exactly
      ``delta = -g * sqrt(avg_sq_delta + eps) / sqrt(avg_sq_grad + eps)``,
      the same update as ``torch.optim.Adadelta`` with ``weight_decay=0``.
    """
    def __init__(self, *shape: int, lr: float = 1.0, rho: float = 0.95, eps: float = 1e-6) -> None:
        self.lr = lr
        self.rho = rho
        self.eps = eps
        self.avg_sq_grad = Tensor(*shape)
        self.avg_sq_delta = Tensor(*shape)

    def reset(self, lr: float) -> None:
        """Set the learning rate and zero both accumulators."""
        self.lr = lr
        for t in (self.avg_sq_grad, self.avg_sq_delta):
            t.init_const(t.shape[0], 0.0)
            if t.dev is not None:
                t.sync_to_device()

    def update(self, param: Tensor, grad: Tensor, on_device: bool = False) -> None:
        """
        Update ``param`` in place from ``grad``.

        Parameters
        ----------
        param : Tensor
            Parameter to update (full extent).
        grad : Tensor
            Gradient with the same shape as ``param``.
        on_device : bool, default=False
            If True, operate on the device mirrors of all four tensors; the
            host copies are left stale until synchronised.

        Raises
        ------
        ValueError
            If ``param``, ``grad`` and the state do not share one shape.
        RuntimeError
            If ``on_device`` is True and a device mirror is missing.
        """
        if param.shape != self.avg_sq_grad.shape or grad.shape != param.shape:
            raise ValueError(
                f"optimizer shape {self.avg_sq_grad.shape} does not match param {param.shape} / grad {grad.shape}"
            )
        tensors = (param, grad, self.avg_sq_grad, self.avg_sq_delta)
        if on_device:
            arrays = [t.dev_view() for t in tensors]
            xp = cp
        else:
            arrays = [t.view() for t in tensors]
            xp = np
        adadelta_step(xp, *arrays, lr=self.lr, rho=self.rho, eps=self.eps)
        param.version += 1

    def mirror_to_device(self) -> None:
        """Allocate device mirrors of both accumulators and copy the host state to them."""
        self.avg_sq_grad.mirror_to_device()
        self.avg_sq_delta.mirror_to_device()

    def sync_to_host(self) -> None:
        """Copy both accumulators back from the device."""
        self.avg_sq_grad.sync_to_host()
        self.avg_sq_delta.sync_to_host()

    def state_dict(self) -> Dict[str, Any]:
        """
        Return hyperparameters and copies of both accumulators (host side).

        Returns
        -------
        dict
            ``{"hyperparams": {...}, "state": {"avg_sq_grad": ..., "avg_sq_delta": ...}}``
        """
        return {
            "hyperparams": {"lr": self.lr, "rho": self.rho, "eps": self.eps},
            "state": {
                "avg_sq_grad": self.avg_sq_grad.to_numpy(),
                "avg_sq_delta": self.avg_sq_delta.to_numpy(),
            },
        }

    def load_state_dict(self, state_dict: Dict[str, Any]) -> None:
        """Restore a state produced by :meth:`state_dict` (host side)."""
        hp = state_dict["hyperparams"]
        self.lr = hp["lr"]
        self.rho = hp["rho"]
        self.eps = hp["eps"]
        self.avg_sq_grad.copy_from(Tensor.from_array(state_dict["state"]["avg_sq_grad"]))
        self.avg_sq_delta.copy_from(Tensor.from_array(state_dict["state"]["avg_sq_delta"]))
