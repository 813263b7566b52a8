import numpy as np
import pytest

from photograv.subfind_kernels import SOFTFAC4, softened_potential_factor
from photograv.unbind import (
    PotentialTree,
    UnbindContext,
    compute_potentials,
    unbind,
)


def _cluster(n, seed=1):
    rng = np.random.default_rng(seed)
    return rng.uniform(0.0, 1.0, size=(n, 3))


def test_single_particle_far_field():
    tree = PotentialTree([[0.0, 0.0, 0.0]], leaf_size=16)
    assert tree.potential([10.0, 0.0, 0.0], 1.0) == pytest.approx(-1.0 / 10.0)


def test_self_interaction_is_softened():
    h = 0.5
    tree = PotentialTree([[1.0, 2.0, 3.0]])
    assert tree.potential([1.0, 2.0, 3.0], h) == pytest.approx(SOFTFAC4 / h)


def test_exact_when_single_leaf():
    points = _cluster(30)
    tree = PotentialTree(points, leaf_size=30)
    query = np.array([0.3, 0.4, 0.5])
    direct = -sum(
        softened_potential_factor(float(np.linalg.norm(p - query)), 0.05) for p in points
    )
    assert tree.potential(query, 0.05) == pytest.approx(direct)


def test_far_query_sees_total_mass():
    points = _cluster(50)
    tree = PotentialTree(points, leaf_size=4)
    value = tree.potential([1000.0, 0.0, 0.0], 0.01)
    assert value == pytest.approx(-50 / 1000.0, rel=1e-3)


def test_tree_matches_direct_sum_within_tolerance():
    points = _cluster(200, seed=3)
    tree = PotentialTree(points, leaf_size=8)
    exact_tree = PotentialTree(points, leaf_size=200)
    query = np.array([5.0, 5.0, 5.0])
    assert tree.potential(query, 0.01) == pytest.approx(exact_tree.potential(query, 0.01), rel=0.05)


@pytest.mark.parametrize("leaf_size", [0, -1, 2.5])
def test_invalid_leaf_size(leaf_size):
    with pytest.raises(ValueError):
        PotentialTree(_cluster(5), leaf_size=leaf_size)


def test_empty_tree_rejected():
    with pytest.raises(ValueError):
        PotentialTree(np.zeros((0, 3)))


def test_nonpositive_softening_rejected():
    tree = PotentialTree(_cluster(5))
    with pytest.raises(ValueError):
        tree.potential([0.0, 0.0, 0.0], 0.0)


def test_compute_potentials_pair_excludes_self():
    positions = [[0.0, 0.0, 0.0], [4.0, 0.0, 0.0]]
    result = compute_potentials(positions, 2.0, 0.1)
    assert result[0] == pytest.approx(-2.0 / 4.0)
    assert result[1] == pytest.approx(result[0])


def test_compute_potentials_are_negative_for_cluster():
    result = compute_potentials(_cluster(40), 1.0, 0.01)
    assert result.shape == (40,)
    assert np.all(result < 0)


def test_context_validation():
    with pytest.raises(ValueError):
        UnbindContext(mass=0.0, softening=0.1)
    with pytest.raises(ValueError):
        UnbindContext(mass=1.0, softening=-1.0)


def test_context_for_redshift_uses_softening_rule():
    from photograv.subfind_kernels import force_softening

    ctx = UnbindContext.for_redshift(1.0, 2.0)
    assert ctx.softening == pytest.approx(force_softening(2.0))
    assert ctx.factors[2] == pytest.approx(1.0 / 3.0)


def test_bound_cluster_keeps_everyone():
    positions = _cluster(60, seed=5)
    velocities = np.zeros_like(positions)
    ctx = UnbindContext(mass=1.0, softening=0.01)
    bound, pots, energies = unbind(ctx, positions, velocities, range(60))
    assert sorted(bound.tolist()) == list(range(60))
    assert np.all(pots < 0)
    assert np.all(energies - pots >= 0)


def test_fast_particles_are_removed():
    positions = _cluster(100, seed=7)
    velocities = np.zeros_like(positions)
    fast = [3, 17, 42, 88]
    velocities[3, 0] = 1.0e5
    velocities[17, 0] = -1.0e5
    velocities[42, 1] = 1.0e5
    velocities[88, 1] = -1.0e5
    ctx = UnbindContext(mass=1.0, softening=0.01)
    bound, pots, energies = unbind(ctx, positions, velocities, range(100))
    kept = set(bound.tolist())
    assert kept.isdisjoint(fast)
    assert kept == set(range(100)) - set(fast)
    assert len(pots) == len(bound) == len(energies)
    assert np.all(energies < 0)


def test_unbind_subset_of_particles():
    positions = _cluster(120, seed=9)
    velocities = np.zeros_like(positions)
    subset = list(range(10, 110))
    ctx = UnbindContext(mass=1.0, softening=0.01)
    bound, _, _ = unbind(ctx, positions, velocities, subset)
    assert set(bound.tolist()) <= set(subset)
    assert len(bound) == len(subset)


def test_too_few_particles():
    positions = _cluster(5)
    ctx = UnbindContext(mass=1.0, softening=0.01)
    with pytest.raises(ValueError):
        unbind(ctx, positions, np.zeros_like(positions), range(5))


def test_bad_indices():
    positions = _cluster(10)
    ctx = UnbindContext(mass=1.0, softening=0.01)
    with pytest.raises(ValueError):
        unbind(ctx, positions, np.zeros_like(positions), [0, 1, 2, 3, 4, 5, 20])
    with pytest.raises(ValueError):
        unbind(ctx, positions, np.zeros_like(positions), [])
    with pytest.raises(ValueError):
        unbind(ctx, positions, np.zeros_like(positions), [0, 0, 1, 2, 3, 4, 5])


def test_mismatched_velocity_shape():
    positions = _cluster(10)
    ctx = UnbindContext(mass=1.0, softening=0.01)
    with pytest.raises(ValueError):
        unbind(ctx, positions, np.zeros((9, 3)), range(10))