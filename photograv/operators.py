"""Cartesian multipole (M) and local (L) expansion operators for the tree force.

Expansions are flat arrays. Their components are ordered by degree and, within
a degree, lexicographically by axis: ``[1, x, y, z, xx, xy, xz, yy, yz, zz,
xxx, ...]``. A component with multi-index ``alpha`` holds

* multipoles: ``sum m * (-dx)**alpha / alpha!`` about the node centre;
* locals: the ``alpha`` derivative of the far-field potential at the centre.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from itertools import combinations_with_replacement
from typing import Optional, Sequence

import numpy as np

MAX_ORDER = 4
MAX_M2L_ORDER = 3
_COINCIDENT_R2 = 1.0e-15

Exponent = tuple[int, int, int]


def _build_exponents(order: int) -> tuple[Exponent, ...]:
    exponents = []
    for degree in range(order + 1):
        for axes in combinations_with_replacement(range(3), degree):
            exponents.append(tuple(axes.count(axis) for axis in range(3)))
    return tuple(exponents)


_EXPONENTS = _build_exponents(MAX_ORDER)
_INDEX = {alpha: i for i, alpha in enumerate(_EXPONENTS)}
_FACTORIAL = {
    alpha: math.factorial(alpha[0]) * math.factorial(alpha[1]) * math.factorial(alpha[2])
    for alpha in _EXPONENTS
}
_UNIT = ((1, 0, 0), (0, 1, 0), (0, 0, 1))


def n_multi(order: int) -> int:
    """Number of expansion components kept at the given order (1 to 4)."""
    if not isinstance(order, int) or isinstance(order, bool) or not 1 <= order <= MAX_ORDER:
        raise ValueError(f"expansion order must be an integer in 1..{MAX_ORDER}, got {order!r}")
    return math.comb(order + 3, 3)


def _as_expansion(values, order: int) -> np.ndarray:
    size = n_multi(order)
    array = np.array(values, dtype=float)
    if array.shape != (size,):
        raise ValueError(f"order {order} expansion needs {size} components, got shape {array.shape}")
    return array


def _as_positions(positions) -> np.ndarray:
    array = np.atleast_2d(np.asarray(positions, dtype=float))
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"positions must have shape (N, 3), got {array.shape}")
    return array


def _degree(alpha: Exponent) -> int:
    return alpha[0] + alpha[1] + alpha[2]


def _difference(alpha: Exponent, beta: Exponent) -> Optional[Exponent]:
    gamma = (alpha[0] - beta[0], alpha[1] - beta[1], alpha[2] - beta[2])
    return None if min(gamma) < 0 else gamma


def _add(alpha: Exponent, beta: Exponent) -> Exponent:
    return (alpha[0] + beta[0], alpha[1] + beta[1], alpha[2] + beta[2])


def _monomial(d: Sequence[float], alpha: Exponent) -> float:
    return d[0] ** alpha[0] * d[1] ** alpha[1] * d[2] ** alpha[2]


def p2m(positions, mass, center, order: int) -> np.ndarray:
    """Multipole moments of point masses about ``center``."""
    size = n_multi(order)
    pos = _as_positions(positions)
    masses = np.broadcast_to(np.asarray(mass, dtype=float), (pos.shape[0],))
    neg = -(pos - np.asarray(center, dtype=float))
    moments = np.zeros(size)
    for i, alpha in enumerate(_EXPONENTS[:size]):
        terms = np.prod(neg ** np.array(alpha), axis=1)
        moments[i] = float(np.sum(masses * terms)) / _FACTORIAL[alpha]
    return moments


def m2m(dx, dy, dz, moments, order: int) -> np.ndarray:
    """Shift multipole moments by ``(dx, dy, dz)`` = parent centre minus child centre.

    The result is the child's contribution to the parent's moments.
    """
    size = n_multi(order)
    source = _as_expansion(moments, order)
    d = (dx, dy, dz)
    exponents = _EXPONENTS[:size]
    shifted = np.zeros(size)
    for i, alpha in enumerate(exponents):
        total = 0.0
        for j, beta in enumerate(exponents):
            gamma = _difference(alpha, beta)
            if gamma is not None:
                total += source[j] * _monomial(d, gamma) / _FACTORIAL[gamma]
        shifted[i] = total
    return shifted


def _radial_factors(r2: float, split_radius: float, long_short: bool) -> tuple[float, ...]:
    dr = math.sqrt(r2)
    ir = 1.0 / dr
    ir2 = ir * ir
    ir3 = ir2 * ir
    ir4 = ir3 * ir
    ir5 = ir4 * ir
    ir6 = ir5 * ir
    ir7 = ir6 * ir
    if not long_short:
        return (ir, -ir3, 3.0 * ir5, -15.0 * ir7)
    irs = 1.0 / split_radius
    irs3 = irs ** 3
    irs5 = irs ** 5
    drs = 0.5 * dr * irs
    fac_exp = math.exp(-drs * drs) / math.sqrt(math.pi)
    fac_erc = math.erfc(drs)
    return (
        ir * fac_erc,
        -ir3 * (fac_erc + dr * fac_exp * irs),
        3.0 * ir5 * fac_erc + (3.0 * irs * ir4 + 0.5 * ir2 * irs3) * fac_exp,
        -15.0 * ir7 * fac_erc - (15.0 * ir6 * irs + 2.5 * ir4 * irs3 + 0.25 * ir2 * irs5) * fac_exp,
    )


def _kernel_derivative(alpha: Exponent, d: Sequence[float], fac: Sequence[float]) -> float:
    axes = [axis for axis in range(3) for _ in range(alpha[axis])]
    rank = len(axes)
    if rank == 0:
        return fac[0]
    if rank == 1:
        return fac[1] * d[axes[0]]
    if rank == 2:
        i, j = axes
        return fac[2] * d[i] * d[j] + (fac[1] if i == j else 0.0)
    i, j, k = axes
    trace = (
        (d[i] if j == k else 0.0)
        + (d[j] if i == k else 0.0)
        + (d[k] if i == j else 0.0)
    )
    return fac[3] * d[i] * d[j] * d[k] + fac[2] * trace


def m2l(dx, dy, dz, moments, split_radius, order: int, long_short: bool = True) -> np.ndarray:
    """Local expansion produced by ``moments`` at separation ``(dx, dy, dz)``.

    With ``long_short`` the kernel is the short-range part of a split at
    ``split_radius``. Coincident centres contribute nothing.
    """
    if order > MAX_M2L_ORDER:
        raise ValueError(f"m2l supports orders up to {MAX_M2L_ORDER}, got {order}")
    size = n_multi(order)
    source = _as_expansion(moments, order)
    if long_short and not split_radius > 0:
        raise ValueError(f"split radius must be positive, got {split_radius!r}")
    r2 = dx * dx + dy * dy + dz * dz
    if abs(r2) <= _COINCIDENT_R2:
        return np.zeros(size)
    fac = _radial_factors(r2, split_radius, long_short)
    d = (dx, dy, dz)
    exponents = _EXPONENTS[:size]
    derivatives = {alpha: _kernel_derivative(alpha, d, fac) for alpha in exponents}
    local = np.zeros(size)
    for i, alpha in enumerate(exponents):
        total = 0.0
        for j, beta in enumerate(exponents):
            if _degree(alpha) + _degree(beta) <= order:
                total += source[j] * derivatives[_add(alpha, beta)]
        local[i] = total
    return local


def l2l(dx, dy, dz, local, order: int) -> np.ndarray:
    """Re-expand a local expansion about a centre shifted by ``(dx, dy, dz)``.

    The result is the contribution to add to the child's local expansion.
    """
    size = n_multi(order)
    source = _as_expansion(local, order)
    d = (dx, dy, dz)
    exponents = _EXPONENTS[:size]
    shifted = np.zeros(size)
    for i, alpha in enumerate(exponents):
        total = 0.0
        for j, beta in enumerate(exponents):
            gamma = _difference(beta, alpha)
            if gamma is not None:
                total += source[j] * _monomial(d, gamma) / _FACTORIAL[gamma]
        shifted[i] = total
    return shifted


def l2p(positions, center, local, order: int) -> np.ndarray:
    """Accelerations, shape (N, 3), from a local expansion about ``center``."""
    size = n_multi(order)
    coeffs = _as_expansion(local, order)
    pos = _as_positions(positions)
    dx = pos - np.asarray(center, dtype=float)
    forces = np.zeros_like(dx)
    for alpha in _EXPONENTS[:size]:
        if _degree(alpha) >= order:
            continue
        mono = np.prod(dx ** np.array(alpha), axis=1) / _FACTORIAL[alpha]
        for axis, unit in enumerate(_UNIT):
            forces[:, axis] += coeffs[_INDEX[_add(alpha, unit)]] * mono
    return forces


def l2p_active(positions, center, local, active, level, order: int) -> np.ndarray:
    """Like :func:`l2p`, with zero force for particles whose level is below ``level``."""
    forces = l2p(positions, center, local, order)
    levels = np.asarray(active)
    if levels.shape != (forces.shape[0],):
        raise ValueError(f"active levels need shape ({forces.shape[0]},), got {levels.shape}")
    forces[levels < level] = 0.0
    return forces


@dataclass(eq=False)
class TreeNode:
    """Tree cell with a centre, child cells and its two expansions."""

    center: np.ndarray
    children: list[TreeNode] = field(default_factory=list)
    multipole: Optional[np.ndarray] = None
    local: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.center = np.asarray(self.center, dtype=float)
        if self.center.shape != (3,):
            raise ValueError(f"node centre must have 3 components, got {self.center.shape}")

    @property
    def is_leaf(self) -> bool:
        return not self.children


def _ensure(values: Optional[np.ndarray], order: int) -> np.ndarray:
    if values is None:
        return np.zeros(n_multi(order))
    return _as_expansion(values, order)


def walk_m2m(node: TreeNode, order: int) -> None:
    """Accumulate child multipoles upward into ``node``; leaves must hold theirs."""
    node.multipole = _ensure(node.multipole, order)
    for child in node.children:
        if not child.is_leaf:
            walk_m2m(child, order)
        child.multipole = _ensure(child.multipole, order)
        shift = node.center - child.center
        node.multipole += m2m(shift[0], shift[1], shift[2], child.multipole, order)


def walk_l2l(node: TreeNode, order: int) -> None:
    """Push the local expansion of ``node`` down into all of its descendants."""
    if node.is_leaf:
        return
    node.local = _ensure(node.local, order)
    for child in node.children:
        shift = child.center - node.center
        child.local = _ensure(child.local, order) + l2l(
            shift[0], shift[1], shift[2], node.local, order
        )
        if not child.is_leaf:
            walk_l2l(child, order)