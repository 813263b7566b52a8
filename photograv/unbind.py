"""Gravitational unbinding of subhalo candidates.

Potentials come from a kd-tree walk with a geometric opening criterion and
spline-softened monopoles. The unbinding procedure strips particles with
positive binding energy until the remaining set is self-bound.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .subfind_kernels import (
    DES_LINK_NGB,
    ERR_TOL_THETA,
    GRAV_CONST,
    SOFTFAC4,
    cosmology_factors,
    force_softening,
    softened_potential_factor,
)

MAX_ITER_UNBIND = 500
MAX_UNBOUND_FRAC_BEFORE_BULK_VELOCITY_UPDATE = 0.02
MAX_UNBOUND_FRAC_BEFORE_POTENTIAL_UPDATE = 0.20
_MIN_ENERGY_RANK = 5
# Softened self-interaction is -SOFTFAC4 / h; this is its magnitude times h.
_SELF_FACTOR = -SOFTFAC4


def _as_points(values, name: str) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"{name} must have shape (N, 3), got {array.shape}")
    return array


@dataclass
class _Node:
    center: np.ndarray
    width: float
    count: int
    points: Optional[np.ndarray] = None
    children: tuple[int, ...] = ()


class PotentialTree:
    """Kd-tree over particle positions for softened potential evaluation."""

    def __init__(self, positions, leaf_size: int = 16):
        points = _as_points(positions, "positions")
        if points.shape[0] == 0:
            raise ValueError("a potential tree needs at least one particle")
        if isinstance(leaf_size, bool) or int(leaf_size) != leaf_size or leaf_size < 1:
            raise ValueError(f"leaf size must be a positive integer, got {leaf_size!r}")
        self.positions = points
        self.leaf_size = int(leaf_size)
        self._nodes: list[_Node] = []
        self._root = self._build(points)

    def __len__(self) -> int:
        return self.positions.shape[0]

    def _build(self, points: np.ndarray) -> int:
        low = points.min(axis=0)
        high = points.max(axis=0)
        extent = high - low
        node = _Node(center=0.5 * (low + high), width=float(extent.max()), count=len(points))
        index = len(self._nodes)
        self._nodes.append(node)
        if len(points) <= self.leaf_size:
            node.points = points
            return index
        axis = int(np.argmax(extent))
        order = np.argsort(points[:, axis], kind="stable")
        half = len(points) // 2
        left = self._build(points[order[:half]])
        right = self._build(points[order[half:]])
        node.children = (left, right)
        return index

    def potential(self, point, softening: float) -> float:
        """Unit-mass potential at ``point``: minus the sum of softened ``1/r`` factors."""
        if not softening > 0:
            raise ValueError(f"softening length must be positive, got {softening!r}")
        target = np.asarray(point, dtype=float)
        if target.shape != (3,):
            raise ValueError(f"point must have 3 components, got {target.shape}")
        theta2 = ERR_TOL_THETA * ERR_TOL_THETA
        total = 0.0
        stack = [self._root]
        while stack:
            node = self._nodes[stack.pop()]
            if node.points is not None:
                distances = np.sqrt(np.sum((node.points - target) ** 2, axis=1))
                total -= sum(softened_potential_factor(float(r), softening) for r in distances)
                continue
            offset = target - node.center
            r2 = float(offset @ offset)
            if r2 * theta2 >= node.width * node.width:
                total -= softened_potential_factor(math.sqrt(r2), softening) * node.count
            else:
                stack.extend(node.children)
        return total


def compute_potentials(positions, mass: float, softening: float) -> np.ndarray:
    """Potential of each particle due to all the others, per unit of ``G``.

    Every particle has mass ``mass``; the softened self-interaction is removed.
    """
    points = _as_points(positions, "positions")
    tree = PotentialTree(points)
    raw = np.array([tree.potential(p, softening) for p in points])
    return mass * raw + mass * _SELF_FACTOR / softening


@dataclass
class UnbindContext:
    """Particle mass, softening and cosmology used when unbinding."""

    mass: float
    softening: float
    redshift: float = 0.0
    omega_m: float = 0.3
    omega_lambda: float = 0.7
    grav_const: float = GRAV_CONST

    def __post_init__(self) -> None:
        if not self.mass > 0:
            raise ValueError(f"particle mass must be positive, got {self.mass!r}")
        if not self.softening > 0:
            raise ValueError(f"softening length must be positive, got {self.softening!r}")
        if self.redshift <= -1:
            raise ValueError(f"redshift must exceed -1, got {self.redshift!r}")

    @classmethod
    def for_redshift(cls, mass, redshift, omega_m=0.3, omega_lambda=0.7) -> "UnbindContext":
        """Context whose softening follows the comoving/physical softening rule."""
        return cls(
            mass=mass,
            softening=force_softening(redshift),
            redshift=redshift,
            omega_m=omega_m,
            omega_lambda=omega_lambda,
        )

    @property
    def factors(self) -> tuple[float, float, float]:
        """``(vel_to_phys, hubble_flow, comoving_to_phys)`` at this redshift."""
        return cosmology_factors(self.redshift, self.omega_m, self.omega_lambda)


def unbind(
    context: UnbindContext, positions, velocities, indices: Sequence[int]
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Strip unbound particles from the set ``indices``.

    Returns the indices still bound, in their final order, with their
    potentials and binding energies aligned to them.
    """
    pos = _as_points(positions, "positions")
    vel = _as_points(velocities, "velocities")
    if pos.shape != vel.shape:
        raise ValueError("positions and velocities must have the same shape")
    members = [int(i) for i in indices]
    if not members:
        raise ValueError("cannot unbind an empty set of particles")
    if min(members) < 0 or max(members) >= len(pos):
        raise ValueError("particle index out of range")
    if len(set(members)) != len(members):
        raise ValueError("particle indices must be unique")

    vel_to_phys, hubble_flow, comov_to_phys = context.factors
    scale = context.grav_const / comov_to_phys
    mass = context.mass
    potential = np.zeros(len(pos))
    energy = np.zeros(len(pos))

    count_unbind = max(0, int(10.0 * (1.0 - math.log(len(members)) / 10.5)))
    recompute = True
    removed_last: list[int] = []
    iterations = 0

    while True:
        current = np.array(members)
        if recompute:
            potential[current] = compute_potentials(pos[current], mass, context.softening) * scale
        else:
            tree = PotentialTree(pos[removed_last])
            for p in members:
                potential[p] -= mass * tree.potential(pos[p], context.softening) * scale

        min_index = members[int(np.argmin(potential[current]))]

        removed_last = []
        while True:
            num = len(members)
            limit_rank = max(_MIN_ENERGY_RANK, int(MAX_UNBOUND_FRAC_BEFORE_BULK_VELOCITY_UPDATE * num))
            if limit_rank >= num:
                raise ValueError(f"too few particles to unbind: {num}")
            current = np.array(members)
            centre_of_mass = (pos[current] - pos[min_index]).mean(axis=0) + pos[min_index]
            bulk_velocity = vel[current].mean(axis=0)
            dv = vel_to_phys * (vel[current] - bulk_velocity)
            dv += hubble_flow * comov_to_phys * (pos[current] - centre_of_mass)
            energy[current] = potential[current] + 0.5 * np.sum(dv * dv, axis=1)
            energy_limit = np.sort(energy[current])[limit_rank]

            num_unbound = 0
            i = 0
            while i < len(members):
                p = members[i]
                if energy[p] > 0 and energy[p] > energy_limit:
                    num_unbound += 1
                    removed_last.append(p)
                    members[i] = members[-1]
                    members.pop()
                    continue
                i += 1

            if not (
                count_unbind
                and num_unbound > 0
                and len(members) >= DES_LINK_NGB
                and len(removed_last) < MAX_UNBOUND_FRAC_BEFORE_POTENTIAL_UPDATE * len(members)
            ):
                break

        iterations += 1
        if iterations > MAX_ITER_UNBIND:
            raise RuntimeError("too many unbinding iterations")
        removed = len(removed_last)
        if recompute:
            if removed > 0:
                recompute = False
        elif removed == 0:
            recompute = True
            removed = 1

        proceed = count_unbind != 0
        count_unbind -= 1
        if not (proceed and removed > 0 and len(members) >= DES_LINK_NGB):
            break

    final = np.array(members, dtype=np.int64)
    return final, potential[final].copy(), energy[final].copy()