"""Subhalo finding inside friends-of-friends groups.

Densities come from a 64-neighbour spline kernel. Every particle is linked to
its two nearest denser neighbours, which grows groups out of density peaks.
Saddle points where two large groups meet become subhalo candidates. The
candidates are unbound from the innermost outwards, and the self-bound ones
end up in a catalogue with their properties.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree

from .subfind_kernels import (
    DES_LINK_NGB,
    DES_NUM_NGB,
    GRAV_CONST,
    KERNEL_COEFF_1,
    Candidate,
    LinkNode,
    find_coll_candidates,
    force_softening,
    spline_density_kernel,
)
from .unbind import UnbindContext, unbind

HIGHBIT = 1 << 30


def _points(values, name: str) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"{name} must have shape (N, 3), got {array.shape}")
    return array


@dataclass
class SimInfo:
    """Particles of one process and the simulation parameters they belong to."""

    positions: np.ndarray
    velocities: np.ndarray
    mass: float
    boxsize: float
    redshift: float = 0.0
    omega_m: float = 0.3
    omega_lambda: float = 0.7
    hubble0: float = 0.7
    npart_total: Optional[int] = None
    fof_group_min_len: int = 20
    fof_linklength: float = 0.2
    rank: int = 0
    size: int = 1

    def __post_init__(self) -> None:
        self.positions = _points(self.positions, "positions")
        self.velocities = _points(self.velocities, "velocities")
        if self.positions.shape != self.velocities.shape:
            raise ValueError("positions and velocities must have the same shape")
        if not self.mass > 0:
            raise ValueError(f"particle mass must be positive, got {self.mass!r}")
        if not self.boxsize > 0:
            raise ValueError(f"box size must be positive, got {self.boxsize!r}")
        if self.npart_total is None:
            self.npart_total = self.npart
        if self.npart_total <= 0:
            raise ValueError(f"total particle count must be positive, got {self.npart_total!r}")

    @property
    def npart(self) -> int:
        return self.positions.shape[0]


@dataclass
class SubGroup:
    """A self-bound subhalo and its properties."""

    length: int = 0
    pos: np.ndarray = field(default_factory=lambda: np.zeros(3))
    cm: np.ndarray = field(default_factory=lambda: np.zeros(3))
    vel: np.ndarray = field(default_factory=lambda: np.zeros(3))
    spin: np.ndarray = field(default_factory=lambda: np.zeros(3))
    mass: float = 0.0
    vmax: float = 0.0
    vmax_rad: float = 0.0
    half_mass_rad: float = 0.0
    most_bound_id: int = -1
    rank_in_group: int = 0
    parent_rank: int = 0
    in_group: int = 0
    pidx: list[int] = field(default_factory=list)


@dataclass
class SubGroupCatalog:
    """Subhalos found so far, in the order they were found."""

    subgroups: list[SubGroup] = field(default_factory=list)

    def append(self, subgroup: SubGroup) -> None:
        self.subgroups.append(subgroup)

    @property
    def count(self) -> int:
        return len(self.subgroups)

    def __len__(self) -> int:
        return len(self.subgroups)

    def __iter__(self) -> Iterator[SubGroup]:
        return iter(self.subgroups)


def _walk(links: Sequence[LinkNode], head: int, length: int) -> Iterator[int]:
    p = head
    for _ in range(length):
        if p < 0:
            raise RuntimeError("candidate chain ends before its length")
        yield p
        p = links[p].next


def _rank_key(cand: Candidate) -> tuple[int, int]:
    return cand.rank, -cand.length


class SubFind:
    """Subhalo finder working on the particles of one :class:`SimInfo`."""

    def __init__(self, sim: SimInfo):
        self.sim = sim
        self.time = 1.0 / (1.0 + sim.redshift)
        self.vel_fac = math.sqrt(self.time) * self.time
        self.softening = force_softening(sim.redshift)
        self.context = UnbindContext(
            mass=sim.mass,
            softening=self.softening,
            redshift=sim.redshift,
            omega_m=sim.omega_m,
            omega_lambda=sim.omega_lambda,
        )
        self.group_number = 0

    @property
    def mean_separation(self) -> float:
        return self.sim.boxsize / float(self.sim.npart_total) ** 0.333333333

    def density(self, group_indices, link_length: float) -> tuple[np.ndarray, np.ndarray]:
        """Spline-kernel density and smoothing length of the given particles.

        Neighbours are searched among all particles of the process. Returns
        ``(density, hsml)`` aligned with ``group_indices``.
        """
        idx = np.asarray(group_indices, dtype=np.int64).reshape(-1)
        sim = self.sim
        if idx.size and (idx.min() < 0 or idx.max() >= sim.npart):
            raise ValueError("group index out of range")
        k = DES_NUM_NGB
        if sim.npart < k + 1:
            raise ValueError(f"density needs at least {k + 1} particles, got {sim.npart}")
        estimate_h = k * link_length * self.mean_separation
        limit = estimate_h / 3.0
        while limit <= estimate_h:
            limit *= 1.5

        tree = cKDTree(sim.positions)
        densities = np.zeros(idx.size)
        hsml = np.zeros(idx.size)
        if idx.size == 0:
            return densities, hsml
        dist, nbr = tree.query(sim.positions[idx], k=k + 1)
        for n, (row_d, row_n, i) in enumerate(zip(dist, nbr, idx)):
            others = row_d[row_n != i][:k]
            if others[-1] > limit:
                raise ValueError(
                    f"particle {int(i)} has fewer than {k} neighbours within {limit}"
                )
            h0, h1 = others[k - 2], others[k - 1]
            h = min(h0 * 1.001, 0.5 * (h0 + h1))
            if not h > 0:
                raise ValueError(f"particle {int(i)} has coincident neighbours")
            hinv = 1.0 / h
            rho = sum(spline_density_kernel(float(r) * hinv, hinv) for r in others[: k - 1])
            rho += hinv**3 * KERNEL_COEFF_1
            densities[n] = rho * sim.mass
            hsml[n] = h
        return densities, hsml

    def find_nearest_two(
        self, positions, hsml, density, link_length: float
    ) -> tuple[np.ndarray, list[list[int]]]:
        """Up to two nearest denser neighbours of each particle in a group.

        Neighbours are taken from the ``DES_LINK_NGB - 1`` nearest ones. Returns
        the new smoothing lengths (distance to the farthest of those) and, per
        particle, the chosen neighbour indices.
        """
        pts = _points(positions, "positions")
        n = pts.shape[0]
        hsml = np.asarray(hsml, dtype=float)
        density = np.asarray(density, dtype=float)
        if hsml.shape != (n,) or density.shape != (n,):
            raise ValueError("hsml and density must have one entry per particle")
        nngb = DES_LINK_NGB - 1
        if n < DES_LINK_NGB:
            raise ValueError(f"a group needs at least {DES_LINK_NGB} particles, got {n}")
        estimate_h = DES_LINK_NGB * link_length * self.mean_separation

        tree = cKDTree(pts)
        dist, nbr = tree.query(pts, k=nngb + 1)
        new_hsml = np.zeros(n)
        nearest: list[list[int]] = []
        for i, (row_d, row_n) in enumerate(zip(dist, nbr)):
            mask = row_n != i
            d = row_d[mask][:nngb]
            nb = row_n[mask][:nngb]
            start = min(2.0 * hsml[i], estimate_h)
            limit = estimate_h if start >= estimate_h else estimate_h * 1.00001
            if d[-1] > limit:
                raise ValueError(
                    f"particle {i} has fewer than {nngb} neighbours within {limit}"
                )
            new_hsml[i] = d[-1]
            chosen: list[int] = []
            chosen_d: list[float] = []
            for j, r in zip(nb, d):
                if density[j] > density[i]:
                    if len(chosen) < 2:
                        chosen.append(int(j))
                        chosen_d.append(float(r))
                    else:
                        slot = 0 if chosen_d[0] > chosen_d[1] else 1
                        if r < chosen_d[slot]:
                            chosen[slot] = int(j)
                            chosen_d[slot] = float(r)
            nearest.append(chosen)
        return new_hsml, nearest

    def determine_properties(self, indices, potentials, energies, in_group: int) -> SubGroup:
        """Properties of a bound set of particles with known potentials and energies."""
        idx = np.asarray(indices, dtype=np.int64).reshape(-1)
        pots = np.asarray(potentials, dtype=float)
        ens = np.asarray(energies, dtype=float)
        num = idx.size
        if num == 0:
            raise ValueError("a subhalo needs at least one particle")
        if pots.shape != (num,) or ens.shape != (num,):
            raise ValueError("potentials and energies must align with indices")
        sim = self.sim
        vel_to_phys, hubble_flow, comov = self.context.factors
        m = sim.mass
        mass = num * m

        pos_all = sim.positions[idx]
        vel_all = sim.velocities[idx]
        pos = pos_all[int(np.argmin(pots))].copy()
        most_bound = int(np.argmin(ens))

        s = (pos_all - pos).mean(axis=0)
        v = vel_all.mean(axis=0)
        vel = vel_to_phys * v
        cm = s + pos_all[most_bound]

        dx = (pos_all - cm) * comov
        dv = vel_to_phys * (vel_all - v) + hubble_flow * dx
        spin = m * np.cross(dx, dv).sum(axis=0) / mass

        radii = np.sort(np.linalg.norm((pos_all - pos) * comov, axis=1))
        cumulative = m * np.arange(1, num + 1, dtype=float)
        radii = np.append(radii, 0.0)
        cumulative = np.append(cumulative, 0.0)
        half_mass_rad = 0.0
        best = 0.0
        best_rad = 0.0
        for i in range(num - 1, -1, -1):
            r = radii[i]
            if i > 5 and r > 0 and cumulative[i] > best * r:
                best = cumulative[i] / r
                best_rad = r
            if cumulative[i] < 0.5 * mass and cumulative[i + 1] >= 0.5 * mass:
                half_mass_rad = 0.5 * (radii[i] + radii[i + 1])

        order = np.argsort(pots, kind="stable")
        return SubGroup(
            length=num,
            pos=pos,
            cm=cm,
            vel=vel,
            spin=spin,
            mass=mass,
            vmax=math.sqrt(GRAV_CONST * best),
            vmax_rad=float(best_rad),
            half_mass_rad=float(half_mass_rad),
            most_bound_id=int(idx[most_bound]),
            in_group=in_group,
            pidx=[int(p) for p in idx[order]],
        )

    def _unbind_local(
        self, members: list[int], pidx: np.ndarray, pot: np.ndarray, energy: np.ndarray
    ) -> list[int]:
        if len(members) < DES_LINK_NGB:
            return []
        local_of = {int(pidx[p]): p for p in members}
        final, final_pot, final_energy = unbind(
            self.context, self.sim.positions, self.sim.velocities, [int(pidx[p]) for p in members]
        )
        bound = [local_of[int(g)] for g in final]
        pot[bound] = final_pot
        energy[bound] = final_energy
        return bound

    def process_single_group(self, catalog: SubGroupCatalog, pidx, density, hsml, link_length) -> int:
        """Find the subhalos of one group and append them to ``catalog``.

        ``pidx`` are the group's particle indices; ``density`` and ``hsml`` are
        aligned with it. Returns the number of subhalos found.
        """
        pidx = np.asarray(pidx, dtype=np.int64).reshape(-1)
        npart = pidx.size
        if npart and (pidx.min() < 0 or pidx.max() >= self.sim.npart):
            raise ValueError("group index out of range")
        density = np.asarray(density, dtype=float)
        hsml = np.asarray(hsml, dtype=float)
        in_group = self.group_number
        self.group_number += 1
        totnpart = self.sim.npart

        _, nearest = self.find_nearest_two(self.sim.positions[pidx], hsml, density, link_length)
        max_cand = int(max(npart / 50.0, 200.0))
        cands, links = find_coll_candidates(list(density), nearest, max_cand)
        cands.sort(key=lambda c: c.length)

        bound_to = [-1] * npart
        pot = np.zeros(npart)
        energy = np.zeros(npart)
        for cand in cands:
            cand.parent = 0

        while True:
            for k, cand in enumerate(cands):
                cand.nsub = k
                cand.subnr = k
            cands.sort(key=_rank_key)
            for k, cand in enumerate(cands):
                if cand.parent < 0:
                    continue
                cand.parent = 0
                end = cand.rank + cand.length
                for other in cands[k + 1 :]:
                    if other.rank > end:
                        break
                    if other.parent < 0:
                        continue
                    if end >= other.rank + other.length:
                        cand.parent += 1
                    else:
                        raise RuntimeError("candidates overlap without nesting")
            cands.sort(key=lambda c: c.subnr)

            leaves = [c for c in cands if c.parent == 0]
            if not leaves:
                break
            if max(c.length for c in leaves) > 0.5 * totnpart:
                break

            submark = [HIGHBIT] * npart
            for cand in leaves:
                for p in _walk(links, cand.head, cand.length):
                    if submark[p] != HIGHBIT:
                        raise RuntimeError("particle belongs to two independent candidates")
                    submark[p] = cand.nsub

            members_of: dict[int, list[int]] = {}
            for i, mark in enumerate(submark):
                if mark != HIGHBIT:
                    members_of.setdefault(mark, []).append(i)
            for cand in leaves:
                members = members_of.get(cand.nsub, [])
                for p in members:
                    submark[p] = HIGHBIT
                to_unbind = [p for p in members if bound_to[p] < 0]
                bound = self._unbind_local(to_unbind, pidx, pot, energy)
                if len(bound) >= DES_LINK_NGB:
                    cand.bound_length = len(bound)
                    for p in bound:
                        submark[p] = cand.nsub
                else:
                    cand.bound_length = 0

            nsubs = len(cands)
            for i, mark in enumerate(submark):
                if 0 <= mark < nsubs:
                    bound_to[i] = mark
            for cand in leaves:
                cand.parent = -1

        for cand in cands:
            if cand.parent >= 0:
                members = [p for p in _walk(links, cand.head, cand.length) if bound_to[p] < 0]
                bound = self._unbind_local(members, pidx, pot, energy)
                if len(bound) >= DES_LINK_NGB:
                    for p in bound:
                        bound_to[p] = cand.nsub
                    cand.bound_length = len(bound)
                else:
                    cand.bound_length = 0

        for cand in cands:
            if cand.bound_length >= DES_LINK_NGB and cand.length < DES_LINK_NGB:
                raise RuntimeError("bound length exceeds candidate length")

        cands.sort(key=lambda c: (-c.bound_length, c.rank))
        for k, cand in enumerate(cands):
            cand.subnr = k
            cand.parent = 0
        cands.sort(key=_rank_key)
        for k, cand in enumerate(cands):
            end = cand.rank + cand.length
            for other in cands[k + 1 :]:
                if other.rank > end:
                    break
                if end >= other.rank + other.length:
                    if cand.bound_length >= DES_LINK_NGB:
                        other.parent = cand.subnr
                else:
                    raise RuntimeError("candidates overlap without nesting")
        cands.sort(key=lambda c: c.subnr)

        found = 0
        for cand in cands:
            if cand.bound_length > 0:
                members = [
                    p for p in _walk(links, cand.head, cand.length) if bound_to[p] == cand.nsub
                ]
                subgroup = self.determine_properties(
                    pidx[members], pot[members], energy[members], in_group
                )
                subgroup.rank_in_group = found
                subgroup.parent_rank = cand.parent
                catalog.append(subgroup)
                found += 1
        return found