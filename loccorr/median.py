"""Median computations: small-array median, running median, median filter and box statistics."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import numpy as np

# Sizes for which the exact median is used; an even size yields the
# integer mean of the two middle values.
_EXACT_SIZES = frozenset(range(2, 10)) | {16, 25}


def _half(i: int) -> int:
    """Integer halving that truncates toward zero."""
    return i // 2 if i >= 0 else -((-i) // 2)


class RunningMedian:
    """Median of the last ``size`` inserted values, kept in O(log size) per insert.

    Values live in a circular queue; a combined max/median/min heap holds
    indexes into that queue. Heap slot 0 is the median, negative slots form
    the max-heap of lower values, positive slots the min-heap of upper values.
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("running median window must hold at least one value")
        self._n = size
        self._data = [0] * size
        self._pos = [0] * size
        self._offset = size // 2
        self._heap = [0] * size
        self._idx = 0
        self._count = 0
        for k in range(size - 1, -1, -1):
            p = ((k + 1) // 2) * (-1 if k & 1 else 1)
            self._pos[k] = p
            self._heap[p + self._offset] = k

    def __len__(self) -> int:
        return self._count

    @property
    def _min_count(self) -> int:
        return (self._count - 1) // 2

    @property
    def _max_count(self) -> int:
        return self._count // 2

    def _value(self, i: int):
        return self._data[self._heap[i + self._offset]]

    def _less(self, i: int, j: int) -> bool:
        return self._value(i) < self._value(j)

    def _exchange(self, i: int, j: int) -> bool:
        off = self._offset
        heap = self._heap
        heap[i + off], heap[j + off] = heap[j + off], heap[i + off]
        self._pos[heap[i + off]] = i
        self._pos[heap[j + off]] = j
        return True

    def _cmp_exchange(self, i: int, j: int) -> bool:
        return self._less(i, j) and self._exchange(i, j)

    def _min_sort_down(self, i: int) -> None:
        while i <= self._min_count:
            if i > 1 and i < self._min_count and self._less(i + 1, i):
                i += 1
            if not self._cmp_exchange(i, _half(i)):
                break
            i *= 2

    def _max_sort_down(self, i: int) -> None:
        while i >= -self._max_count:
            if i < -1 and i > -self._max_count and self._less(i, i - 1):
                i -= 1
            if not self._cmp_exchange(_half(i), i):
                break
            i *= 2

    def _min_sort_up(self, i: int) -> bool:
        while i > 0 and self._cmp_exchange(i, _half(i)):
            i = _half(i)
        return i == 0

    def _max_sort_up(self, i: int) -> bool:
        while i < 0 and self._cmp_exchange(_half(i), i):
            i = _half(i)
        return i == 0

    def insert(self, value) -> None:
        """Add a value, dropping the oldest one once the window is full."""
        is_new = self._count < self._n
        p = self._pos[self._idx]
        old = self._data[self._idx]
        self._data[self._idx] = value
        self._idx = (self._idx + 1) % self._n
        if is_new:
            self._count += 1
        if p > 0:
            if not is_new and old < value:
                self._min_sort_down(p * 2)
            elif self._min_sort_up(p):
                self._max_sort_down(-1)
        elif p < 0:
            if not is_new and value < old:
                self._max_sort_down(p * 2)
            elif self._max_sort_up(p):
                self._min_sort_down(1)
        else:
            if self._max_count:
                self._max_sort_down(-1)
            if self._min_count:
                self._min_sort_down(1)

    def median(self):
        """Current median; the integer mean of the two middle values for an even count."""
        if not self._count:
            raise ValueError("running median is empty")
        v = self._value(0)
        if self._count % 2 == 0:
            v = (v + self._value(-1)) // 2
        return v


def calc_median(values: Iterable) -> int:
    """Median of integer values.

    For 2..9, 16 and 25 values the exact median is returned (even sizes give
    the floored mean of the middle pair); other sizes give the lower median.
    """
    data: Sequence = sorted(values)
    n = len(data)
    if n < 1:
        raise ValueError("cannot take the median of no values")
    if n == 1:
        return data[0]
    if n in _EXACT_SIZES and n % 2 == 0:
        return (data[n // 2 - 1] + data[n // 2]) // 2
    return data[(n - 1) // 2]


def _windows(image: np.ndarray, seed: int) -> np.ndarray:
    size = 2 * seed + 1
    return np.lib.stride_tricks.sliding_window_view(image, (size, size))


def median_filter(image: np.ndarray, seed: int) -> np.ndarray:
    """Median filter with a (2*seed+1) square box; border pixels are left zero."""
    if seed < 1:
        raise ValueError("median filter radius must be at least 1")
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("image must be two-dimensional")
    out = np.zeros_like(img)
    h, w = img.shape
    if h <= 2 * seed or w <= 2 * seed:
        return out
    med = np.median(_windows(img, seed), axis=(-2, -1))
    out[seed:h - seed, seed:w - seed] = med.astype(img.dtype)
    return out


def box_stat(image: np.ndarray, seed: int) -> tuple[np.ndarray, np.ndarray]:
    """Mean and standard deviation over a (2*seed+1) square box.

    Returns two images of the input's type; border pixels are left zero.
    """
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("image must be two-dimensional")
    h, w = img.shape
    if seed < 1 or seed > (w - 1) // 2 or seed > (h - 1) // 2:
        raise ValueError(f"box radius {seed} does not fit a {w}x{h} image")
    win = _windows(img.astype(np.float64), seed)
    mean = win.mean(axis=(-2, -1))
    sq = (win * win).mean(axis=(-2, -1))
    std = np.sqrt(np.clip(sq - mean * mean, 0.0, None))
    mean_img = np.zeros_like(img)
    std_img = np.zeros_like(img)
    mean_img[seed:h - seed, seed:w - seed] = mean.astype(img.dtype)
    std_img[seed:h - seed, seed:w - seed] = std.astype(img.dtype)
    return mean_img, std_img