"""Time-stepping bookkeeping for the simulation driver.

This module covers:

* the hierarchy of active step levels inside one global step;
* the logarithmic scale-factor grid of the global steps;
* the sub-step kick intervals of every level;
* the option banner;
* the restart file and the output schedule file.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, NamedTuple, Union

from .coordinates import BITWIDTH

PathLike = Union[str, Path]

_MESSAGE_RANKS = 57

# Build options in the order the banner lists them, with the label shown.
_OPTION_LABELS: tuple[tuple[str, str], ...] = (
    ("MTHKDTree", "MTHKTree"),
    ("ICPOTGRAD", "ICPOTGRAD"),
    ("INTRA_LB", "INTRA_LB"),
    ("GPUP2P", "GPUP2P"),
    ("FIXEDSTEP", "FIXEDSTEP"),
    ("SPI", "SPI"),
    ("SPI_T2", "SPI_T2"),
    ("ACT_OPT", "ACT_OPT"),
    ("GPUCUTOFF", "GPUCUTOFF"),
    ("JSPLIT", "JSPLIT"),
    ("COMPRESS", "COMPRESS"),
    ("GPU_DP", "GPU_DP"),
    ("CPU_DP", "CPU_DP"),
    ("SAVE_MEM", "SAVE_MEM"),
    ("MESHOUT", "MESHOUT"),
    ("HALO_FOF", "HALO_FOF"),
    ("HALO_FOF_SORT", "HALO_FOF_SORT"),
    ("SUBHALO", "SUBHALO"),
    ("SUBHALO_SORT", "SUBHALO_SORT"),
    ("POW_SPEC_DAUB", "POW_SPEC_DAUB"),
    ("IOBLK", "IOBLK"),
    ("POW_SPEC", "POW_SPEC"),
    ("INTXYZ", "INTXYZ"),
    ("HDF5", "HDF5"),
)
KNOWN_OPTIONS = frozenset(name for name, _ in _OPTION_LABELS)


def _check_int(value, name: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"{name} must be an integer >= {minimum}, got {value!r}")
    return value


def grav_level_active(step: int, level_max: int) -> int:
    """Deepest level whose forces are due at sub-step ``step``.

    Level 0 is the whole global step; level ``level_max`` is the finest one.
    Step 0 is the start of the global step and gives level 0.
    """
    _check_int(step, "step", 0)
    _check_int(level_max, "level_max", 0)
    if step == 0:
        return 0
    for tra in range(level_max - 1, -1, -1):
        if step % (1 << tra) == 0:
            return level_max - tra
    return 0


def print_msg(rank: int, size: int) -> bool:
    """Whether process ``rank`` of ``size`` is one of the few that report timings."""
    _check_int(size, "size", 1)
    _check_int(rank, "rank", 0)
    if rank >= size:
        raise ValueError(f"rank {rank} is outside a run of {size} processes")
    return rank % ((size + _MESSAGE_RANKS - 1) // _MESSAGE_RANKS) == 0


class LoopLogA(NamedTuple):
    """Logarithms of the scale factor at the points of one global step."""

    initial: float
    mid: float
    final: float
    next_mid: float
    next_final: float


def loop_log_a(loop: int, nstep: int, ai: float, af: float) -> LoopLogA:
    """``log a`` at the start, middle and end of global step ``loop`` and of the next one.

    The ``nstep`` global steps are spaced evenly in ``log a`` from ``ai`` to ``af``.
    """
    _check_int(nstep, "nstep", 1)
    _check_int(loop, "loop", 0)
    if not ai > 0 or not af > 0:
        raise ValueError(f"scale factors must be positive, got {ai!r} and {af!r}")
    base = math.log(ai)
    dloga = (math.log(af) - base) / nstep
    return LoopLogA(
        initial=loop * dloga + base,
        mid=(loop + 0.5) * dloga + base,
        final=(loop + 1.0) * dloga + base,
        next_mid=(loop + 1.5) * dloga + base,
        next_final=(loop + 2.0) * dloga + base,
    )


def substep_intervals(
    loga_i: float, loga_f: float, level_max: int, n: int
) -> list[tuple[float, float, float]]:
    """Kick intervals ``(start, middle, end)`` in ``log a`` for every level at sub-step ``n``.

    The global step from ``loga_i`` to ``loga_f`` is cut into ``2**level_max``
    sub-steps. Entry ``m`` of the result is the level-``m`` step containing
    sub-step ``n``.
    """
    _check_int(level_max, "level_max", 0)
    nstep_active = 1 << level_max
    _check_int(n, "n", 0)
    if n >= nstep_active:
        raise ValueError(f"sub-step {n} is outside 0..{nstep_active - 1}")
    dloga_step = (loga_f - loga_i) / nstep_active
    intervals = []
    for m in range(level_max + 1):
        wid = 1 << (level_max - m)
        mi = n // wid
        intervals.append(
            (
                loga_i + mi * wid * dloga_step,
                loga_i + (mi + 0.5) * wid * dloga_step,
                loga_i + (mi + 1.0) * wid * dloga_step,
            )
        )
    return intervals


def option_banner(options: Iterable[str], bitwidth: int = BITWIDTH) -> str:
    """Start-up banner listing the enabled build options and the position bit width."""
    enabled = set(options)
    unknown = enabled - KNOWN_OPTIONS
    if unknown:
        raise ValueError(f"unknown options: {', '.join(sorted(unknown))}")
    lines = ["\n\n\n\n   / PHOTONS-3 / \n\n", "\n   OPTIONS\n"]
    lines.extend(f"    + {label}\n" for name, label in _OPTION_LABELS if name in enabled)
    lines.append(f"\n   BIT = {int(bitwidth)}\n")
    return "".join(lines)


@dataclass
class RestartState:
    """Where a run stopped: next loop, snapshot index, sub-steps done and wall time."""

    loop: int
    snap_idx: int
    step_total: int
    walltime: float

    def __post_init__(self) -> None:
        _check_int(self.loop, "loop", 0)
        _check_int(self.snap_idx, "snap_idx", 0)
        _check_int(self.step_total, "step_total", 0)
        if not self.walltime >= 0:
            raise ValueError(f"wall time must be non-negative, got {self.walltime!r}")


def read_restart(path: PathLike) -> RestartState:
    """Read a restart file of the form ``loop snap_idx step_total walltime``."""
    tokens = Path(path).read_text().split()
    if len(tokens) < 4:
        raise ValueError(f"restart file {path} needs 4 fields, found {len(tokens)}")
    try:
        loop, snap_idx, step_total = (int(t) for t in tokens[:3])
        walltime = float(tokens[3])
    except ValueError as exc:
        raise ValueError(f"malformed restart file {path}: {exc}") from exc
    return RestartState(loop=loop, snap_idx=snap_idx, step_total=step_total, walltime=walltime)


def write_restart(path: PathLike, state: RestartState) -> None:
    """Write ``state`` in the restart file format."""
    Path(path).write_text(
        f"{state.loop} {state.snap_idx} {state.step_total} {state.walltime:f}"
    )


@dataclass(frozen=True)
class ScheduleEntry:
    """One output of the schedule: snapshot index, loop, redshift, scale factor, time."""

    index: int
    loop: int
    redshift: float
    scale_factor: float
    time: float


def parse_output_schedule(path: PathLike) -> list[ScheduleEntry]:
    """Read an output schedule: a five-column header, then one row per output."""
    tokens = Path(path).read_text().split()
    if len(tokens) < 5:
        raise ValueError(f"output schedule {path} lacks its header")
    body = tokens[5:]
    if len(body) % 5:
        raise ValueError(f"output schedule {path} has an incomplete row")
    entries = []
    for start in range(0, len(body), 5):
        row = body[start : start + 5]
        try:
            entries.append(
                ScheduleEntry(
                    index=int(row[0]),
                    loop=int(row[1]),
                    redshift=float(row[2]),
                    scale_factor=float(row[3]),
                    time=float(row[4]),
                )
            )
        except ValueError as exc:
            raise ValueError(f"malformed row in output schedule {path}: {exc}") from exc
    return entries