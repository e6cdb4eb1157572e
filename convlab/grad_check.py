import sys
from typing import Callable, List, Optional, Sequence

import numpy as np

from convlab.logger import Logger
from convlab.nn import Conv2D
from convlab.options import MAX_BATCH_SIZE, Options, parse_args
from convlab.tensor import Tensor

def _perturbed(x: Tensor, alpha: float, d: Tensor) -> Tensor:
    return Tensor.zeros_like(x).copy_from(x).add_(alpha, d)

def grad_check(
    opt: Options,
    rng: np.random.Generator,
    layer_factory: Callable[[], Conv2D],
    batch_size: int,
    lgr: Optional[Logger] = None,
    h: float = 1e-2,
) -> float:
    """
    Compare the analytic directional derivative of a layer with a central
    finite difference.

    With ``L(w, x) = gy . y(w, x)`` for a random ``gy`` and a random direction
    ``(d, dx)`` in weight and input space::

        A = L(w + h d, x + h dx) - L(w - h d, x - h dx)
        B = 2 h (gx . dx + gw . d)

    where ``gx``/``gw`` come from :meth:`Conv2D.backward`. ``L`` is quadratic
    in ``h`` along the direction, so ``A`` equals ``B`` up to rounding.

    Parameters
    ----------
    opt : Options
        Options handed to every layer (selects the backend).
    rng : numpy.random.Generator
        Source of weights, data and directions.
    layer_factory : callable
        Returns a fresh, uninitialised layer.
    batch_size : int
        Number of samples in the checked batch.
    lgr : Logger or None, default=None
        Logger passed to the layers.
    h : float, default=1e-2
        Step along the direction.

    Returns
    -------
    float
        ``|A - B| / max(|A|, |B|)``, or 0 when both vanish.
    """
    layer = layer_factory().init(opt, rng, lgr)
    max_b = layer.max_batch

    x = Tensor(max_b, *layer.input_shape)
    x.init_uniform(batch_size, rng, -1.0, 1.0)
    dx = Tensor(max_b, *layer.input_shape)
    dx.init_uniform(batch_size, rng, -1.0, 1.0)
    gy = Tensor(max_b, *layer.output_shape)
    gy.init_uniform(batch_size, rng, -1.0, 1.0)

    direction = layer.clone()
    direction.randomize_gradients(rng, -1.0, 1.0)
    plus, minus = layer.clone(), layer.clone()
    plus.copy_gradients_from(direction)
    plus.accumulate_into_weights(h)
    minus.copy_gradients_from(direction)
    minus.accumulate_into_weights(-h)
    x_plus = _perturbed(x, h, dx)
    x_minus = _perturbed(x, -h, dx)

    on_device = layer.backend().on_device
    if on_device:
        for m in (layer, plus, minus):
            m.mirror_to_device()
        for t in (x, gy, x_plus, x_minus):
            t.mirror_to_device()

    layer.forward(x, training=True)
    gx = layer.backward(gy)
    y_plus = plus.forward(x_plus, training=True)
    y_minus = minus.forward(x_minus, training=True)

    if on_device:
        for m in (layer, plus, minus):
            m.sync_to_host()

    a = gy.dot(y_plus) - gy.dot(y_minus)
    b = 2.0 * h * (gx.dot(dx) + layer.gradient_dot(direction))
    denom = max(abs(a), abs(b))
    e = abs(a - b) / denom if denom > 0 else 0.0
    print(f"A = {a:.9f}")
    print(f"B = {b:.9f}")
    print(f"relative error = |A-B|/max(|A|,|B|) = {e:.9f}")
    return e

def run(opt: Options, lgr: Optional[Logger] = None) -> List[float]:
    """Run ``opt.epochs`` gradient checks on the layer geometry described by ``opt``."""
    batch_size = min(MAX_BATCH_SIZE, opt.batch_size)
    rng = np.random.default_rng(opt.weight_seed)

    def factory() -> Conv2D:
        return Conv2D(MAX_BATCH_SIZE, opt.in_channels, opt.height, opt.width,
                      opt.kernel_size, opt.out_channels)

    errors = []
    for it in range(opt.epochs):
        print(f"==== {it} ====")
        errors.append(grad_check(opt, rng, factory, batch_size, lgr))
    return errors

def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Entry point of ``convlab-grad-check``.

    Parameters
    ----------
    argv : sequence of str or None, default=None
        Command line arguments; ``sys.argv[1:]`` if None.

    Returns
    -------
    int
        0 on success, 1 if a configuration error (such as the accelerator
        without CuPy) stopped the run. The error is printed to stderr.
    """
    opt = parse_args(argv)
    lgr = Logger()
    lgr.start_log(opt)
    try:
        errors = run(opt, lgr)
    except RuntimeError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        lgr.end_log()
    if errors:
        print(f"max relative error = {max(errors):.9f}")
        print(f"avg relative error = {sum(errors) / len(errors):.9f}")
    return 0

if __name__ == "__main__":
    sys.exit(main())
