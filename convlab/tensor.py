from typing import Any, Optional, Sequence, Tuple

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

real = np.float32
"""numpy.dtype: The single floating-point type used by every buffer."""

def _is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    This is safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)

def _require_cupy() -> None:
    if not _HAS_CUPY:
        raise RuntimeError("CUDA requested but CuPy is not installed/available.")

class Tensor:
    """
    A fixed-shape numeric buffer with a mutable leading (batch) extent.

    The first extent passed to the constructor is the *maximum* leading extent;
    the active one, ``n0``, can be changed at runtime with :meth:`set_n0` and is
    the extent every accessor and iteration respects. All remaining extents are
    fixed for the lifetime of the tensor.

    The tensor owns a host buffer (NumPy) and, optionally, a device mirror
    (CuPy). The two are never kept coherent automatically: content moves only
    through :meth:`mirror_to_device`, :meth:`sync_to_device` and
    :meth:`sync_to_host`.

    Notes
    -----
    - DType is always ``float32`` (``real``).
    - ``version`` is bumped by every mutating method. Writes made directly into
      ``data`` or ``dev`` bypass it; code that writes device buffers in place
      bumps it itself.
    """
    def __init__(self, *shape: int) -> None:
        """
        Allocate a zero-filled host buffer.

        Parameters
        ----------
        *shape : int
            Maximum extents. ``shape[0]`` is the maximum leading extent; ``n0``
            starts at that value.

        Raises
        ------
        ValueError
            If no extent is given or an extent is not positive.

        Examples
        --------
        >>> x = Tensor(64, 1, 28, 28)     # up to 64 grey 28x28 images
        >>> x.set_n0(8)                   # 8 of them are in use
        """
        if len(shape) == 0:
            raise ValueError("Tensor needs at least one extent")
        if any(int(n) <= 0 for n in shape):
            raise ValueError(f"Tensor extents must be positive, got {shape}")
        self.shape = tuple(int(n) for n in shape)
        self.n0 = self.shape[0]
        self.data = np.zeros(self.shape, dtype=real)
        self.dev = None
        self.version = 0

    @property
    def ndim(self) -> int:
        """int: The rank of the tensor."""
        return len(self.shape)

    @property
    def extents(self) -> Tuple[int, ...]:
        """tuple of int: The active shape ``(n0,) + shape[1:]``."""
        return (self.n0,) + self.shape[1:]

    def set_n0(self, n: int) -> None:
        """
        Set the active leading extent.

        Raises
        ------
        ValueError
            If ``n`` is negative or exceeds the maximum leading extent.
        """
        n = int(n)
        if not 0 <= n <= self.shape[0]:
            raise ValueError(f"leading extent {n} outside [0, {self.shape[0]}]")
        if n != self.n0:
            self.n0 = n
            self.version += 1

    def _check_index(self, idx: Tuple[int, ...]) -> None:
        if len(idx) != self.ndim:
            raise IndexError(f"expected {self.ndim} indices, got {len(idx)}")
        for axis, (i, n) in enumerate(zip(idx, self.extents)):
            if not 0 <= i < n:
                raise IndexError(f"index {i} out of range [0, {n}) on axis {axis}")

    def __getitem__(self, idx: Any) -> Any:
        """
        Read one element.

        Parameters
        ----------
        idx : int or tuple of int
            A full multi-index. Every index must lie in ``[0, extent)``; the
            leading extent is ``n0``, not the maximum.

        Raises
        ------
        IndexError
            If the index has the wrong rank or is out of range.
        """
        if not isinstance(idx, tuple):
            idx = (idx,)
        self._check_index(idx)
        return self.data[idx]

    def __setitem__(self, idx: Any, value: Any) -> None:
        """Write one element; same index rules as :meth:`__getitem__`."""
        if not isinstance(idx, tuple):
            idx = (idx,)
        self._check_index(idx)
        self.data[idx] = value
        self.version += 1

    def _check_wide(self, idx: Tuple[int, ...], width: int) -> None:
        self._check_index(idx)
        if idx[-1] + width > self.extents[-1]:
            raise IndexError(
                f"lane run [{idx[-1]}, {idx[-1] + width}) exceeds innermost extent {self.extents[-1]}"
            )

    def wide_at(self, *idx: int, width: int) -> np.ndarray:
        """
        Read ``width`` adjacent elements along the innermost axis.

        Parameters
        ----------
        *idx : int
            Multi-index of the first lane.
        width : int
            Number of lanes.

        Returns
        -------
        numpy.ndarray
            A ``float32`` vector of length ``width`` (a copy).

        Raises
        ------
        IndexError
            If the start index is out of range or the run does not fit inside
            the innermost axis. Callers handle the tail with scalar accesses.
        """
        self._check_wide(idx, width)
        return self.data[idx[:-1]][idx[-1]:idx[-1] + width].copy()

    def set_wide_at(self, idx: Sequence[int], vec: np.ndarray) -> None:
        """Write a lane vector starting at ``idx`` along the innermost axis."""
        idx = tuple(idx)
        self._check_wide(idx, len(vec))
        self.data[idx[:-1]][idx[-1]:idx[-1] + len(vec)] = vec
        self.version += 1

    def init_uniform(self, count: int, rng: np.random.Generator, lo: float, hi: float) -> None:
        """
        Fill the first ``count`` rows with i.i.d. samples from ``U(lo, hi)``.

        Sets ``n0 = count``.
        """
        self.set_n0(count)
        self.data[:count] = rng.uniform(lo, hi, size=self.extents).astype(real)
        self.version += 1

    def init_const(self, count: int, c: float) -> None:
        """Fill the first ``count`` rows with ``c`` and set ``n0 = count``."""
        self.set_n0(count)
        self.data[:count] = c
        self.version += 1

    def _check_same(self, other: "Tensor") -> None:
        if self.shape != other.shape or self.n0 != other.n0:
            raise ValueError(
                f"shape mismatch: {self.extents} (max {self.shape}) vs {other.extents} (max {other.shape})"
            )

    def add_(self, alpha: float, other: "Tensor") -> "Tensor":
        """In-place ``self += alpha * other`` over the active rows."""
        self._check_same(other)
        self.data[:self.n0] += real(alpha) * other.data[:other.n0]
        self.version += 1
        return self

    def dot(self, other: "Tensor") -> float:
        """
        Elementwise inner product over the active rows, accumulated in float64.

        Only meant for verification; no performance path calls it.
        """
        self._check_same(other)
        a = self.data[:self.n0].astype(np.float64)
        b = other.data[:other.n0].astype(np.float64)
        return float(np.sum(a * b))

    def copy_from(self, other: "Tensor") -> "Tensor":
        """Copy ``n0`` and the active host rows of a tensor with the same maximum shape."""
        if self.shape != other.shape:
            raise ValueError(f"shape mismatch: {self.shape} vs {other.shape}")
        self.set_n0(other.n0)
        self.data[:self.n0] = other.data[:other.n0]
        self.version += 1
        return self

    def view(self) -> np.ndarray:
        """numpy.ndarray: A view of the active host rows."""
        return self.data[:self.n0]

    def dev_view(self) -> Any:
        """cupy.ndarray: A view of the active device rows."""
        if self.dev is None:
            raise RuntimeError("tensor has no device mirror; call mirror_to_device() first")
        return self.dev[:self.n0]

    def to_numpy(self) -> np.ndarray:
        """numpy.ndarray: A copy of the active host rows."""
        return self.data[:self.n0].copy()

    def mirror_to_device(self) -> "Tensor":
        """
        Allocate the device buffer (if needed) and copy the full host buffer to it.

        Raises
        ------
        RuntimeError
            If CuPy is not installed/available.
        """
        _require_cupy()
        if self.dev is None:
            self.dev = cp.empty(self.shape, dtype=real)
        return self.sync_to_device()

    def sync_to_device(self) -> "Tensor":
        """Copy the full host buffer into the existing device buffer."""
        if self.dev is None:
            raise RuntimeError("tensor has no device mirror; call mirror_to_device() first")
        self.dev.set(self.data)
        return self

    def sync_to_host(self) -> "Tensor":
        """Copy the full device buffer back into the host buffer."""
        if self.dev is None:
            raise RuntimeError("tensor has no device mirror; call mirror_to_device() first")
        self.data[...] = cp.asnumpy(self.dev)
        self.version += 1
        return self

    def drop_device(self) -> None:
        """Release the device buffer. Host content is left untouched."""
        self.dev = None

    def __repr__(self) -> str:
        """
        Returns a readable string representation of the active rows.

        Examples
        --------
        >>> t = Tensor.from_array([[1, 2], [3, 4]])
        >>> print(t)
        tensor([[1., 2.],
                [3., 4.]], n0=2, shape=(2, 2), mirrored=False)
        """
        data_str = np.array2string(self.view(), separator=', ', prefix='tensor(')
        return f"tensor({data_str}, n0={self.n0}, shape={self.shape}, mirrored={self.dev is not None})"

    @staticmethod
    def from_array(data: Any, max_n0: Optional[int] = None) -> "Tensor":
        """
        Create a tensor holding a copy of ``data``.

        Parameters
        ----------
        data : array-like
            Content; its first axis becomes the active rows. CuPy arrays are
            copied to the host.
        max_n0 : int or None, default=None
            Maximum leading extent. Defaults to ``data.shape[0]``.

        Raises
        ------
        ValueError
            If ``data`` is a scalar or has more rows than ``max_n0``.
        """
        if _is_cupy_array(data):
            data = cp.asnumpy(data)
        arr = np.asarray(data, dtype=real)
        if arr.ndim == 0:
            raise ValueError("Tensor.from_array needs at least one axis")
        n = arr.shape[0]
        max_n0 = n if max_n0 is None else int(max_n0)
        if n > max_n0:
            raise ValueError(f"{n} rows exceed max_n0={max_n0}")
        t = Tensor(max_n0, *arr.shape[1:])
        t.set_n0(n)
        t.data[:n] = arr
        return t

    @staticmethod
    def zeros_like(other: "Tensor") -> "Tensor":
        """Create a zero tensor with ``other``'s maximum shape and ``n0``."""
        t = Tensor(*other.shape)
        t.set_n0(other.n0)
        return t
