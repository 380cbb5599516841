"""Small fixed-dimension linear algebra on tuples.

Matrices are row-major tuples of tuples and vectors are flat tuples.  The
filter only ever works with 4x4, 4x2, 2x4 and 2x2 shapes, so immutable
tuples keep each predict/update step free of nested list bookkeeping.
"""

from __future__ import annotations

import math

Vector = tuple[float, ...]
Matrix = tuple[tuple[float, ...], ...]

#: Determinant magnitude below which a 2x2 matrix is treated as singular.
SINGULAR_EPSILON = 1e-10

IDENTITY_2: Matrix = ((1.0, 0.0), (0.0, 1.0))


def identity(size: int) -> Matrix:
    return tuple(tuple(1.0 if i == j else 0.0 for j in range(size)) for i in range(size))


def diagonal(value: float, size: int) -> Matrix:
    return tuple(tuple(value if i == j else 0.0 for j in range(size)) for i in range(size))


def transpose(m: Matrix) -> Matrix:
    return tuple(zip(*m, strict=True))


def mat_mul(a: Matrix, b: Matrix) -> Matrix:
    if len(a[0]) != len(b):
        raise ValueError(f"Shape mismatch: {len(a)}x{len(a[0])} @ {len(b)}x{len(b[0])}")
    cols = tuple(zip(*b, strict=True))
    return tuple(tuple(sum(x * y for x, y in zip(row, col, strict=True)) for col in cols) for row in a)


def mat_vec(m: Matrix, v: Vector) -> Vector:
    return tuple(sum(x * y for x, y in zip(row, v, strict=True)) for row in m)


def mat_add(a: Matrix, b: Matrix) -> Matrix:
    return tuple(tuple(x + y for x, y in zip(ra, rb, strict=True)) for ra, rb in zip(a, b, strict=True))


def mat_sub(a: Matrix, b: Matrix) -> Matrix:
    return tuple(tuple(x - y for x, y in zip(ra, rb, strict=True)) for ra, rb in zip(a, b, strict=True))


def vec_add(a: Vector, b: Vector) -> Vector:
    return tuple(x + y for x, y in zip(a, b, strict=True))


def vec_sub(a: Vector, b: Vector) -> Vector:
    return tuple(x - y for x, y in zip(a, b, strict=True))


def determinant_2x2(m: Matrix) -> float:
    (a, b), (c, d) = m
    return a * d - b * c


def invert_2x2(m: Matrix, eps: float = SINGULAR_EPSILON) -> tuple[Matrix, bool]:
    """Closed-form 2x2 inverse.

    Returns ``(inverse, singular)``.  When ``|det| < eps`` the inverse is
    the identity matrix and ``singular`` is ``True``.  A non-finite
    determinant counts as singular.  Callers decide how to treat the
    degenerate step.  Never raises on singular input.
    """
    (a, b), (c, d) = m
    det = a * d - b * c
    if not math.isfinite(det) or abs(det) < eps:
        return IDENTITY_2, True
    return ((d / det, -b / det), (-c / det, a / det)), False
