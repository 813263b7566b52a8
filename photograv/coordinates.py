"""Conversion between floating-point positions and fixed-point integer positions.

A box of side ``boxsize`` is mapped onto the integer range ``[0, bitwidth)``.
The default width is 2**30, so coordinates fit in a signed 32-bit integer.
"""

from __future__ import annotations

import numpy as np

BITWIDTH = 1073741824


def _check(boxsize, bitwidth) -> tuple[float, int]:
    if not boxsize > 0:
        raise ValueError(f"box size must be positive, got {boxsize!r}")
    if isinstance(bitwidth, bool) or int(bitwidth) != bitwidth or bitwidth <= 0:
        raise ValueError(f"bit width must be a positive integer, got {bitwidth!r}")
    return float(boxsize), int(bitwidth)


def position_scale(boxsize, bitwidth=BITWIDTH) -> tuple[float, float]:
    """Return ``(pos2int, int2pos)``: integer units per length unit and its inverse."""
    box, width = _check(boxsize, bitwidth)
    return width / box, box / width


def pos_to_int(pos, boxsize, bitwidth=BITWIDTH):
    """Integer coordinates of ``pos``, truncated toward zero."""
    pos2int, _ = position_scale(boxsize, bitwidth)
    scaled = np.trunc(np.asarray(pos, dtype=float) * pos2int).astype(np.int64)
    return int(scaled) if scaled.ndim == 0 else scaled


def int_to_pos(posi, boxsize, bitwidth=BITWIDTH):
    """Floating-point positions of integer coordinates ``posi``."""
    _, int2pos = position_scale(boxsize, bitwidth)
    values = np.asarray(posi, dtype=float) * int2pos
    return float(values) if values.ndim == 0 else values