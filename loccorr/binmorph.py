"""Morphology and connected-component labelling of binary images.

Binary images are kept packed, eight pixels per byte, with the leftmost
pixel in the most significant bit. Each row takes ``(width + 7) // 8``
bytes, and the padding bits at the end of a row are zero.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Smallest image size the morphological operations accept.
MINWIDTH = 9
MINHEIGHT = 3


@dataclass(frozen=True)
class Box:
    """Bounding box of a connected component and its pixel count."""

    xmin: int
    xmax: int
    ymin: int
    ymax: int
    area: int


def pack_bits(mask) -> np.ndarray:
    """Pack a 2-D boolean mask into rows of bytes, leftmost pixel in the high bit."""
    m = np.asarray(mask)
    if m.ndim != 2:
        raise ValueError("mask must be two-dimensional")
    return np.packbits(m.astype(bool), axis=1)


def unpack_bits(packed, width: int) -> np.ndarray:
    """Unpack rows of bytes into a boolean mask ``width`` pixels wide."""
    p = np.asarray(packed, dtype=np.uint8)
    if p.ndim != 2:
        raise ValueError("packed image must be two-dimensional")
    if width < 1 or p.shape[1] != (width + 7) // 8:
        raise ValueError(f"{p.shape[1]} bytes per row do not hold {width} pixels")
    return np.unpackbits(p, axis=1)[:, :width].astype(bool)


def _shape(image, width: int) -> tuple[np.ndarray, int]:
    p = np.asarray(image, dtype=np.uint8)
    if p.ndim != 2:
        raise ValueError("packed image must be two-dimensional")
    if width < 1 or p.shape[1] != (width + 7) // 8:
        raise ValueError(f"{p.shape[1]} bytes per row do not hold {width} pixels")
    return p, p.shape[0]


def _unpack_checked(image, width: int) -> np.ndarray:
    p, height = _shape(image, width)
    if width < MINWIDTH or height < MINHEIGHT:
        raise ValueError(
            f"image {width}x{height} is smaller than {MINWIDTH}x{MINHEIGHT}"
        )
    return unpack_bits(p, width)


def _dilate(m: np.ndarray) -> np.ndarray:
    out = m.copy()
    out[1:, :] |= m[:-1, :]
    out[:-1, :] |= m[1:, :]
    out[:, 1:] |= m[:, :-1]
    out[:, :-1] |= m[:, 1:]
    return out


def _erode(m: np.ndarray) -> np.ndarray:
    p = np.pad(m, 1, constant_values=False)
    return (
        p[1:-1, 1:-1]
        & p[:-2, 1:-1]
        & p[2:, 1:-1]
        & p[1:-1, :-2]
        & p[1:-1, 2:]
    )


def dilation(image, width: int) -> np.ndarray:
    """Dilate a packed image by a 3x3 cross."""
    return pack_bits(_dilate(_unpack_checked(image, width)))


def erosion(image, width: int) -> np.ndarray:
    """Erode a packed image by a 3x3 cross; pixels on the image border are cleared."""
    return pack_bits(_erode(_unpack_checked(image, width)))


def _repeat(image, width: int, n: int, op) -> np.ndarray:
    p, height = _shape(image, width)
    if width < MINWIDTH or height < MINHEIGHT or n < 1:
        return p.copy()
    m = unpack_bits(p, width)
    for _ in range(n):
        m = op(m)
    return pack_bits(m)


def dilation_n(image, width: int, n: int) -> np.ndarray:
    """Dilate ``n`` times; a too small image or ``n < 1`` gives an unchanged copy."""
    return _repeat(image, width, n, _dilate)


def erosion_n(image, width: int, n: int) -> np.ndarray:
    """Erode ``n`` times; a too small image or ``n < 1`` gives an unchanged copy."""
    return _repeat(image, width, n, _erode)


def _check_n(image, width: int, n: int) -> np.ndarray:
    p, height = _shape(image, width)
    if width < MINWIDTH or height < MINHEIGHT:
        raise ValueError(
            f"image {width}x{height} is smaller than {MINWIDTH}x{MINHEIGHT}"
        )
    if n < 1:
        raise ValueError("number of iterations must be at least 1")
    return p


def opening_n(image, width: int, n: int) -> np.ndarray:
    """``n`` erosions followed by ``n`` dilations."""
    p = _check_n(image, width, n)
    return dilation_n(erosion_n(p, width, n), width, n)


def closing_n(image, width: int, n: int) -> np.ndarray:
    """``n`` dilations followed by ``n`` erosions."""
    p = _check_n(image, width, n)
    return erosion_n(dilation_n(p, width, n), width, n)


def top_hat(image, width: int, n: int) -> np.ndarray:
    """Pixels of the image that its opening removes."""
    p = _check_n(image, width, n)
    return p & ~opening_n(p, width, n)


def bot_hat(image, width: int, n: int) -> np.ndarray:
    """Pixels that closing adds to the image."""
    p = _check_n(image, width, n)
    return closing_n(p, width, n) & ~p


def _root(assoc: list[int], i: int) -> int:
    i = assoc[i]
    while assoc[i] != i:
        i = assoc[i]
    return i


def label_components(mask) -> tuple[np.ndarray, int]:
    """Label 4-connected components of a boolean mask.

    Returns the label image (0 for background, components numbered from 1
    in order of their first pixel in scan order) and the number of components.
    """
    m = np.asarray(mask).astype(bool)
    if m.ndim != 2:
        raise ValueError("mask must be two-dimensional")
    height, width = m.shape
    if width < MINWIDTH or height < MINHEIGHT:
        raise ValueError(
            f"image {width}x{height} is smaller than {MINWIDTH}x{MINHEIGHT}"
        )
    labels = np.zeros((height, width), dtype=np.intp)
    assoc = [0]
    prev_row = [0] * width
    for y, row in enumerate(m.tolist()):
        cur_row = [0] * width
        found = False
        curmark = 0
        for x, pixel in enumerate(row):
            if not pixel:
                found = False
                continue
            upper = prev_row[x]
            if found:
                if upper and upper != curmark:
                    a, b = _root(assoc, upper), _root(assoc, curmark)
                    if a > b:
                        assoc[a] = b
                    else:
                        assoc[b] = a
                    curmark = upper
            else:
                found = True
                if upper:
                    curmark = upper
                else:
                    curmark = len(assoc)
                    assoc.append(curmark)
            cur_row[x] = curmark
        labels[y] = cur_row
        prev_row = cur_row

    indexes = [0] * len(assoc)
    count = 0
    for i in range(1, len(assoc)):
        root = _root(assoc, i)
        if root == i:
            count += 1
            indexes[i] = count
        else:
            indexes[i] = indexes[root]
    return np.asarray(indexes, dtype=np.intp)[labels], count


def component_boxes(labels, count: int) -> list[Box]:
    """Bounding boxes and areas of components 1..count; item ``k`` describes label ``k + 1``."""
    lab = np.asarray(labels)
    if lab.ndim != 2:
        raise ValueError("label image must be two-dimensional")
    if count < 0:
        raise ValueError("component count cannot be negative")
    height, width = lab.shape
    if lab.size and (lab.min() < 0 or lab.max() > count):
        raise ValueError("label image holds labels outside 0..count")
    ys, xs = np.nonzero(lab)
    marks = lab[ys, xs]
    area = np.bincount(marks, minlength=count + 1)
    xmin = np.full(count + 1, width, dtype=np.int64)
    ymin = np.full(count + 1, height, dtype=np.int64)
    xmax = np.zeros(count + 1, dtype=np.int64)
    ymax = np.zeros(count + 1, dtype=np.int64)
    np.minimum.at(xmin, marks, xs)
    np.minimum.at(ymin, marks, ys)
    np.maximum.at(xmax, marks, xs)
    np.maximum.at(ymax, marks, ys)
    return [
        Box(int(xmin[k]), int(xmax[k]), int(ymin[k]), int(ymax[k]), int(area[k]))
        for k in range(1, count + 1)
    ]