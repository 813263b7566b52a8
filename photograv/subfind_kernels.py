"""Kernels, cosmology factors and candidate search used by subhalo finding."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

DES_NUM_NGB = 64
DES_LINK_NGB = 20
MAX_NUM_NGB_DEVIATION = 1
ERR_TOL_THETA = 0.66
GRAV_CONST = 43007.105732
HUBBLE = 0.1

KERNEL_COEFF_1 = 2.546479089470
KERNEL_COEFF_2 = 15.278874536822
KERNEL_COEFF_5 = 5.092958178941

SOFTFAC1 = 32.0 / 3
SOFTFAC4 = -2.8
SOFTFAC5 = 16.0 / 3
SOFTFAC6 = 6.4
SOFTFAC7 = -9.6
SOFTFAC13 = -3.2
SOFTFAC14 = 1.0 / 15
SOFTFAC15 = -16.0
SOFTFAC16 = 9.6
SOFTFAC17 = -64.0 / 30

SOFTENING_MAX_PHYS = 0.0005
SOFTENING_COMOVING = 0.001


@dataclass
class Candidate:
    """A subhalo candidate: a run of ``length`` particles starting at ``head``."""

    head: int = -1
    length: int = 0
    rank: int = 0
    parent: int = 0
    nsub: int = 0
    subnr: int = 0
    bound_length: int = 0


@dataclass
class LinkNode:
    """Linked-list entry of one particle: group head, next member, group tail.

    ``length`` is the group size while the particle is a head; ``rank`` is the
    particle's position in the final ordering of all particles.
    """

    head: int = -1
    length: int = 0
    next: int = -1
    tail: int = -1
    rank: int = -1


def softened_potential_factor(r: float, hmax: float) -> float:
    """Spline-softened ``1/r`` factor of the potential; plain ``1/r`` beyond ``hmax``."""
    if not hmax > 0:
        raise ValueError(f"softening length must be positive, got {hmax!r}")
    if r >= hmax:
        return 1.0 / r if r > 0 else 0.0
    h_inv = 1.0 / hmax
    u = r * h_inv
    u2 = u * u
    if u < 0.5:
        return -h_inv * (SOFTFAC4 + u2 * (SOFTFAC5 + u2 * (SOFTFAC6 * u + SOFTFAC7)))
    return -h_inv * (
        SOFTFAC13
        + SOFTFAC14 / u
        + u2 * (SOFTFAC1 + u * (SOFTFAC15 + u * (SOFTFAC16 + SOFTFAC17 * u)))
    )


def spline_density_kernel(u: float, hinv: float) -> float:
    """Cubic spline SPH kernel at ``u = r/h`` for a smoothing length ``1/hinv``."""
    hinv3 = hinv * hinv * hinv
    if u < 0.5:
        return hinv3 * (KERNEL_COEFF_1 + KERNEL_COEFF_2 * (u - 1) * u * u)
    return hinv3 * KERNEL_COEFF_5 * (1.0 - u) ** 3


def hubble_function(a: float, omega_m: float, omega_lambda: float) -> float:
    """Hubble rate at scale factor ``a`` in internal units (H0 = 0.1)."""
    h2 = omega_m / a**3 + (1 - omega_m - omega_lambda) / a**2 + omega_lambda
    return HUBBLE * math.sqrt(h2)


def cosmology_factors(redshift: float, omega_m: float, omega_lambda: float) -> tuple[float, float, float]:
    """Return ``(vel_to_phys, hubble_flow, comoving_to_phys)`` at ``redshift``."""
    time = 1.0 / (1.0 + redshift)
    return 1.0 / time, hubble_function(time, omega_m, omega_lambda), time


def force_softening(redshift: float) -> float:
    """Gravitational softening: comoving, capped at a maximum physical length."""
    time = 1.0 / (1.0 + redshift)
    if SOFTENING_COMOVING * time > SOFTENING_MAX_PHYS:
        table = SOFTENING_MAX_PHYS / time
    else:
        table = SOFTENING_COMOVING
    return 2.8 * table


def _head_of(links: list[LinkNode], index: int) -> int:
    head = links[index].head
    if head == -1:
        raise ValueError(f"particle {index} is referenced before its group was formed")
    return head


def _append(links: list[LinkNode], head: int, i: int) -> None:
    old_tail = links[head].tail
    links[head].tail = i
    links[head].length += 1
    links[i].head = head
    links[old_tail].next = i


def find_coll_candidates(
    densities: Sequence[float],
    nearest: Sequence[Sequence[int]],
    max_candidates: int,
) -> tuple[list[Candidate], list[LinkNode]]:
    """Grow groups from density peaks and collect saddle-point candidates.

    ``nearest[i]`` holds up to two indices of denser neighbours of particle
    ``i``. Particles are visited from densest to least dense. When two groups
    of at least ``DES_LINK_NGB`` members meet, the smaller one becomes a
    candidate; the whole set is appended as a final candidate. At most
    ``max_candidates`` are kept.
    """
    npart = len(densities)
    if len(nearest) != npart:
        raise ValueError("densities and nearest must have the same length")
    if npart == 0:
        return [], []
    links = [LinkNode() for _ in range(npart)]
    candidates: list[Candidate] = []
    order = sorted(range(npart), key=lambda k: -densities[k])

    for i in order:
        neighbours = list(nearest[i])
        if len(neighbours) > 2:
            raise ValueError(f"particle {i} has more than two denser neighbours")
        if not neighbours:
            links[i].head = i
            links[i].tail = i
            links[i].length = 1
        elif len(neighbours) == 1:
            _append(links, _head_of(links, neighbours[0]), i)
        else:
            head = _head_of(links, neighbours[0])
            head_attach = _head_of(links, neighbours[1])
            if head != head_attach:
                length, tail = links[head].length, links[head].tail
                len_attach, tail_attach = links[head_attach].length, links[head_attach].tail
                if len_attach > length or (len_attach == length and head_attach < head):
                    head, head_attach = head_attach, head
                    tail, tail_attach = tail_attach, tail
                    length, len_attach = len_attach, length
                if len_attach >= DES_LINK_NGB and length >= DES_LINK_NGB:
                    if len(candidates) < max_candidates:
                        candidates.append(Candidate(head=head_attach, length=len_attach))
                links[head].tail = tail_attach
                links[head].length += len_attach
                links[tail].next = head_attach
                ss = head_attach
                while ss >= 0:
                    links[ss].head = head
                    ss = links[ss].next
            _append(links, head, i)

    first = -1
    prev = -1
    for i, node in enumerate(links):
        if node.head == i and links[node.tail].next == -1:
            if prev < 0:
                first = i
            else:
                links[prev].next = i
            prev = node.tail
    if len(candidates) < max_candidates:
        candidates.append(Candidate(head=first, length=npart))

    p, rank = first, 0
    while p >= 0:
        links[p].rank = rank
        rank += 1
        p = links[p].next
    for cand in candidates:
        cand.rank = links[cand.head].rank
    return candidates, links