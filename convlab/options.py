import argparse
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

logger = logging.getLogger("convlab")

MAX_BATCH_SIZE = 64
"""int: Largest batch any buffer is allocated for."""

### If an ENV flag asks to prefer the accelerator we capture it here ###
PREFER_CUDA = os.getenv("CONVLAB_PREFER_CUDA", "False").lower() in ("1", "true", "yes")

class Algo(Enum):
    """Execution mode selecting which backend runs forward/backward/update."""
    CPU_BASE = "cpu_base"
    CPU_SIMD = "cpu_simd"
    CUDA_BASE = "cuda_base"
    AUTO = "auto"

    @classmethod
    def from_name(cls, name: str) -> "Algo":
        """
        Map an algorithm name to an :class:`Algo`.

        Accepts the canonical names plus the aliases ``scalar``, ``simd``,
        ``vectorized``, ``cuda`` and ``accelerator``. Unknown names map to
        ``AUTO`` (the dispatcher's fallback) with a warning.
        """
        key = name.strip().lower().replace("-", "_")
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            logger.warning("unknown algorithm %r, using the default fallback", name)
            return cls.AUTO

_ALIASES = {
    "scalar": Algo.CPU_BASE,
    "base": Algo.CPU_BASE,
    "simd": Algo.CPU_SIMD,
    "vectorized": Algo.CPU_SIMD,
    "cuda": Algo.CUDA_BASE,
    "accelerator": Algo.CUDA_BASE,
}

@dataclass
class Options:
    """
    Run configuration read by a layer at ``init`` time.

    Attributes
    ----------
    algo : Algo
        Selected execution mode.
    prefer_cuda : bool
        Fallback target when ``algo`` is not a known mode: the accelerator if
        True, the scalar baseline otherwise.
    lr : float
        Learning-rate-like scale handed to every optimizer.
    batch_size : int
        Requested batch size (clamped to ``MAX_BATCH_SIZE`` by drivers).
    epochs : int
        Number of iterations of the verification driver.
    weight_seed : int
        Seed of the random generator used for weights and check data.
    simd_width : int
        Lane count of the vectorised backend.
    log_file : str or None
        If set, log records are also written to this file.
    verbose : int
        0 = warnings only, 1 = info, 2 = debug (per-call markers).
    """
    algo: Algo = Algo.AUTO
    prefer_cuda: bool = field(default_factory=lambda: PREFER_CUDA)
    lr: float = 1.0
    batch_size: int = 4
    epochs: int = 1
    weight_seed: int = 45678
    simd_width: int = 4
    log_file: Optional[str] = None
    verbose: int = 0
    in_channels: int = 1
    out_channels: int = 32
    height: int = 28
    width: int = 28
    kernel_size: int = 3

    @property
    def algo_s(self) -> str:
        """str: The algorithm name, as printed in messages."""
        return self.algo.value

def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser of the ``convlab-grad-check`` driver (no validation)."""
    parser = argparse.ArgumentParser(
        prog="convlab-grad-check",
        description="Check the analytic gradients of a 2D convolution layer against finite differences.",
    )
    parser.add_argument("-a", "--algo", default="auto",
                        help="cpu_base | cpu_simd | cuda_base | auto (default: auto)")
    parser.add_argument("--prefer-cuda", action="store_true", default=PREFER_CUDA,
                        help="fall back to the accelerator instead of the scalar baseline")
    parser.add_argument("-b", "--batch-size", type=int, default=4)
    parser.add_argument("-e", "--epochs", type=int, default=1,
                        help="number of gradient checks to run")
    parser.add_argument("-l", "--lr", type=float, default=1.0)
    parser.add_argument("--weight-seed", type=int, default=45678)
    parser.add_argument("--simd-width", type=int, default=4)
    parser.add_argument("--log", dest="log_file", default=None)
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("--in-channels", type=int, default=1)
    parser.add_argument("--out-channels", type=int, default=32)
    parser.add_argument("--height", type=int, default=28)
    parser.add_argument("--width", type=int, default=28)
    parser.add_argument("--kernel-size", type=int, default=3)
    return parser

def parse_args(argv: Optional[Sequence[str]] = None) -> Options:
    """
    Parse command line arguments into :class:`Options`.

    Raises
    ------
    SystemExit
        On ``--help`` or invalid arguments (argparse behaviour), or when a
        numeric option is out of range.
    """
    parser = build_parser()
    ns = parser.parse_args(argv)
    if ns.batch_size < 1:
        parser.error("--batch-size must be positive")
    if ns.epochs < 0:
        parser.error("--epochs must be non-negative")
    if ns.simd_width < 1:
        parser.error("--simd-width must be positive")
    for flag, value in (("--in-channels", ns.in_channels), ("--out-channels", ns.out_channels),
                        ("--height", ns.height), ("--width", ns.width)):
        if value < 1:
            parser.error(f"{flag} must be positive")
    if ns.kernel_size < 1 or ns.kernel_size > min(ns.height, ns.width):
        parser.error("--kernel-size must be in [1, min(height, width)]")
    return Options(
        algo=Algo.from_name(ns.algo),
        prefer_cuda=ns.prefer_cuda,
        lr=ns.lr,
        batch_size=ns.batch_size,
        epochs=ns.epochs,
        weight_seed=ns.weight_seed,
        simd_width=ns.simd_width,
        log_file=ns.log_file,
        verbose=ns.verbose,
        in_channels=ns.in_channels,
        out_channels=ns.out_channels,
        height=ns.height,
        width=ns.width,
        kernel_size=ns.kernel_size,
    )
