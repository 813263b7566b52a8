# photograv

Parts of a cosmological N-body gravity code that can be used from Python on
their own. Everything is a library; there is no command to run.

## Modules

### `photograv.operators`

Cartesian multipole and local expansions, stored as flat NumPy arrays with
components ordered by degree (`[1, x, y, z, xx, xy, xz, yy, yz, zz, ...]`).

- `n_multi(order)`: number of components for an order from 1 to 4.
- `p2m(positions, mass, center, order)`: multipole moments of point masses.
- `m2m(dx, dy, dz, moments, order)`: shift moments from a child centre to a
  parent centre.
- `m2l(dx, dy, dz, moments, split_radius, order, long_short=True)`: local
  expansion at a separation; with `long_short` the kernel is the short-range
  (erfc) part of a split at `split_radius`. Supports orders up to 3;
  coincident centres give zeros.
- `l2l(dx, dy, dz, local, order)`: shift a local expansion to a child centre.
- `l2p(positions, center, local, order)`: accelerations at particles.
- `l2p_active(positions, center, local, active, level, order)`: the same,
  with zero force for particles whose level is below `level`.
- `TreeNode`, `walk_m2m(node, order)`, `walk_l2l(node, order)`: pass
  expansions up and down a tree of nodes.

### `photograv.coordinates`

Fixed-point positions: `position_scale`, `pos_to_int` and `int_to_pos` map a
box onto the integer range `[0, bitwidth)`, with `BITWIDTH = 2**30` by default.

### `photograv.subfind_kernels`, `photograv.unbind`, `photograv.subfind`

Subhalo finding inside a group of particles.

- `subfind_kernels`: `softened_potential_factor`, `spline_density_kernel`,
  `hubble_function`, `cosmology_factors`, `force_softening`, and
  `find_coll_candidates`, which grows groups from density peaks and returns
  `Candidate` records and the `LinkNode` chain.
- `unbind`: `PotentialTree` (kd-tree potential walk), `compute_potentials`,
  `UnbindContext` and `unbind`, which strips particles with positive binding
  energy and returns the bound indices with their potentials and energies.
- `subfind`: `SimInfo` holds positions, velocities and simulation parameters;
  `SubFind(sim)` offers `density`, `find_nearest_two`, `determine_properties`
  and `process_single_group`, which appends `SubGroup` records to a
  `SubGroupCatalog` and returns how many it found.

### `photograv.stepping`

Bookkeeping of hierarchical time steps: `grav_level_active`, `loop_log_a`,
`substep_intervals`, `print_msg`, `option_banner`, the restart file
(`RestartState`, `read_restart`, `write_restart`) and the output schedule
(`parse_output_schedule`, returning `ScheduleEntry` rows).

## Examples

```python
import numpy as np
from photograv.operators import p2m, m2l, n_multi

rng = np.random.default_rng(0)
positions = rng.uniform(0.0, 1.0, size=(100, 3))
center = positions.mean(axis=0)

moments = p2m(positions, 1.0, center, 2)
assert len(moments) == n_multi(2)

local = m2l(10.0, 0.0, 0.0, moments, 5.0, 2, True)
```

```python
from photograv.stepping import RestartState, grav_level_active, loop_log_a, read_restart, write_restart

grav_level_active(4, 3)            # 1: sub-step 4 of 8 starts a level-1 step
steps = loop_log_a(0, 10, 1 / 128, 1 / 100)
steps.initial, steps.final

write_restart("restart.txt", RestartState(loop=3, snap_idx=1, step_total=24, walltime=12.5))
read_restart("restart.txt")
```

## What the package does not do

It does not run a simulation. There is no driver loop, no particle-mesh
force or FFT convolution, no domain decomposition or multi-process
communication, no initial-condition generation, no friends-of-friends group
finder, and no snapshot or power-spectrum output. `SubFind` works on particle
arrays you pass in, all held by one process.

## Requirements

Python 3.10 or later, with NumPy and SciPy. Tests use pytest
(`pip install photograv[test]`).