import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

class Logger:
    """
    Start/end markers for timed operations.

    Records go to the ``"convlab"`` logger at DEBUG level, so they cost nothing
    unless a handler is configured (``start_log`` with ``verbose >= 2`` or a
    ``log_file``). Purely observational: no effect on results.
    """
    def __init__(self, name: str = "convlab") -> None:
        self.log = logging.getLogger(name)
        self._handler = None
        self._saved_level = None

    def start_log(self, opt: Any) -> None:
        """
        Configure verbosity and the optional log file from ``opt`` and record the options.

        The previous level of the underlying logger is kept and restored by
        :meth:`end_log`.
        """
        level = {0: logging.WARNING, 1: logging.INFO}.get(opt.verbose, logging.DEBUG)
        if self._saved_level is None:
            self._saved_level = self.log.level
        self.log.setLevel(logging.DEBUG if opt.log_file else level)
        if self._handler is None and (opt.log_file or opt.verbose > 0):
            if opt.log_file:
                self._handler = logging.FileHandler(opt.log_file, mode="w")
            else:
                self._handler = logging.StreamHandler()
            self._handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            self.log.addHandler(self._handler)
        self.log.info("start log: %s", opt)

    def end_log(self) -> None:
        """Record the end of the run, detach the handler and restore the previous level."""
        self.log.info("end log")
        if self._handler is not None:
            self.log.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
        if self._saved_level is not None:
            self.log.setLevel(self._saved_level)
            self._saved_level = None

    def log_start(self, name: str) -> int:
        """Log the start marker of ``name`` and return its timestamp (ns)."""
        t0 = time.perf_counter_ns()
        self.log.debug("start %s t=%d", name, t0)
        return t0

    def log_end(self, name: str, t0: int, t1: Optional[int] = None) -> int:
        """Log the end marker of ``name`` with the time elapsed since ``t0``; return ``t1``."""
        if t1 is None:
            t1 = time.perf_counter_ns()
        self.log.debug("end %s t=%d dt=%d ns", name, t1, t1 - t0)
        return t1

    @contextmanager
    def span(self, name: str) -> Iterator[None]:
        """
        Bracket a block with the start and end markers of ``name``.

        The end marker is written even if the block raises.
        """
        t0 = self.log_start(name)
        try:
            yield
        finally:
            self.log_end(name, t0)
