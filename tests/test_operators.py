import numpy as np
import pytest

from photograv.operators import (
    TreeNode,
    l2l,
    l2p,
    l2p_active,
    m2l,
    m2m,
    n_multi,
    p2m,
    walk_l2l,
    walk_m2m,
)


def _cloud(n, scale, seed, offset=(0.0, 0.0, 0.0)):
    rng = np.random.default_rng(seed)
    return rng.uniform(-scale, scale, size=(n, 3)) + np.asarray(offset)


def _random_expansion(order, seed):
    rng = np.random.default_rng(seed)
    return rng.normal(size=n_multi(order))


def test_n_multi_counts():
    assert n_multi(1) == 4
    assert n_multi(4) == 35
    assert n_multi(1) < n_multi(2) < n_multi(3) < n_multi(4)


@pytest.mark.parametrize("order", [0, 5, -1, 2.0])
def test_n_multi_rejects_bad_order(order):
    with pytest.raises(ValueError):
        n_multi(order)


def test_p2m_monopole_and_dipole():
    pos = _cloud(20, 1.0, 1)
    center = np.array([0.1, -0.2, 0.3])
    mass = 0.5
    moments = p2m(pos, mass, center, 2)
    assert moments[0] == pytest.approx(20 * mass)
    np.testing.assert_allclose(moments[1:4], -mass * (pos - center).sum(axis=0))


@pytest.mark.parametrize("order", [1, 2, 3, 4])
def test_m2m_matches_direct_expansion(order):
    pos = _cloud(15, 0.5, 2)
    child_center = np.array([0.05, 0.02, -0.03])
    parent_center = np.array([0.4, -0.3, 0.2])
    child = p2m(pos, 1.5, child_center, order)
    shift = parent_center - child_center
    shifted = m2m(shift[0], shift[1], shift[2], child, order)
    np.testing.assert_allclose(shifted, p2m(pos, 1.5, parent_center, order), atol=1e-12)


def test_m2m_zero_shift_is_identity():
    moments = _random_expansion(4, 3)
    np.testing.assert_allclose(m2m(0.0, 0.0, 0.0, moments, 4), moments)


@pytest.mark.parametrize("order", [1, 2, 3, 4])
def test_l2l_preserves_forces(order):
    local = _random_expansion(order, 4)
    c0 = np.array([0.0, 0.0, 0.0])
    c1 = np.array([0.3, -0.1, 0.2])
    shift = c1 - c0
    shifted = l2l(shift[0], shift[1], shift[2], local, order)
    pos = _cloud(10, 0.5, 5, offset=c1)
    np.testing.assert_allclose(l2p(pos, c1, shifted, order), l2p(pos, c0, local, order), atol=1e-12)


def test_l2l_zero_shift_is_identity():
    local = _random_expansion(3, 6)
    np.testing.assert_allclose(l2l(0.0, 0.0, 0.0, local, 3), local)


def test_l2p_order_one_is_uniform():
    local = _random_expansion(1, 7)
    forces = l2p(_cloud(6, 2.0, 8), np.zeros(3), local, 1)
    assert forces.shape == (6, 3)
    for row in forces:
        np.testing.assert_allclose(row, local[1:4])


def test_l2p_active_masks_inactive_particles():
    local = _random_expansion(2, 9)
    pos = _cloud(5, 1.0, 10)
    center = np.array([0.1, 0.1, 0.1])
    active = np.array([0, 2, 1, 3, 2])
    full = l2p(pos, center, local, 2)
    masked = l2p_active(pos, center, local, active, 2, 2)
    for row, full_row, level in zip(masked, full, active):
        if level >= 2:
            np.testing.assert_allclose(row, full_row)
        else:
            np.testing.assert_array_equal(row, np.zeros(3))


def test_l2p_active_rejects_wrong_length():
    with pytest.raises(ValueError):
        l2p_active(_cloud(4, 1.0, 11), np.zeros(3), _random_expansion(2, 12), [1, 2], 1, 2)


def test_m2l_far_field_matches_direct_sum():
    src_center = np.zeros(3)
    pos = _cloud(12, 0.1, 13)
    mass = 2.0
    moments = p2m(pos, mass, src_center, 3)
    target = np.array([10.0, 3.0, -4.0])
    sep = target - src_center
    local = m2l(sep[0], sep[1], sep[2], moments, 1.0, 3, long_short=False)
    rel = target - pos
    dist = np.linalg.norm(rel, axis=1)
    assert local[0] == pytest.approx(np.sum(mass / dist), rel=1e-6)
    expected_grad = -np.sum(mass * rel / dist[:, None] ** 3, axis=0)
    np.testing.assert_allclose(local[1:4], expected_grad, rtol=1e-5)


def test_m2l_coincident_centres_give_nothing():
    moments = _random_expansion(2, 14)
    np.testing.assert_array_equal(m2l(0.0, 0.0, 0.0, moments, 1.0, 2), np.zeros(n_multi(2)))


@pytest.mark.parametrize("order", [1, 2, 3])
def test_m2l_huge_split_radius_matches_plain_kernel(order):
    moments = _random_expansion(order, 15)
    split = m2l(2.0, -1.0, 1.5, moments, 1.0e8, order, long_short=True)
    plain = m2l(2.0, -1.0, 1.5, moments, 1.0e8, order, long_short=False)
    np.testing.assert_allclose(split, plain, rtol=1e-6)


def test_m2l_short_range_vanishes_far_beyond_split():
    moments = _random_expansion(3, 16)
    local = m2l(10.0, 0.0, 0.0, moments, 0.1, 3, long_short=True)
    assert np.max(np.abs(local)) < 1e-12


def test_m2l_rejects_order_four():
    with pytest.raises(ValueError):
        m2l(1.0, 0.0, 0.0, _random_expansion(4, 17), 1.0, 4)


def test_m2l_rejects_non_positive_split_radius():
    with pytest.raises(ValueError):
        m2l(1.0, 0.0, 0.0, _random_expansion(2, 18), 0.0, 2, long_short=True)


def test_expansion_length_mismatch_raises():
    with pytest.raises(ValueError):
        m2m(0.1, 0.2, 0.3, np.zeros(5), 2)


@pytest.mark.parametrize("order", [1, 2, 3, 4])
def test_walk_m2m_equals_direct_moments(order):
    groups = [
        (_cloud(6, 0.1, 19, offset=(0.2, 0.2, 0.2)), np.array([0.2, 0.2, 0.2])),
        (_cloud(6, 0.1, 20, offset=(-0.2, 0.2, 0.2)), np.array([-0.2, 0.2, 0.2])),
        (_cloud(6, 0.1, 21, offset=(0.0, -0.3, 0.1)), np.array([0.0, -0.3, 0.1])),
    ]
    leaves = [TreeNode(center=c, multipole=p2m(p, 1.0, c, order)) for p, c in groups]
    inner = TreeNode(center=[0.0, 0.2, 0.2], children=leaves[:2])
    root = TreeNode(center=[0.0, 0.0, 0.0], children=[inner, leaves[2]])
    walk_m2m(root, order)
    everything = np.vstack([p for p, _ in groups])
    np.testing.assert_allclose(root.multipole, p2m(everything, 1.0, root.center, order), atol=1e-12)
    assert inner.multipole[0] == pytest.approx(12.0)


def test_walk_l2l_propagates_local_expansion():
    order = 3
    root_local = _random_expansion(order, 22)
    leaf_a = TreeNode(center=[0.25, 0.25, 0.25])
    leaf_b = TreeNode(center=[0.25, -0.25, 0.25])
    inner = TreeNode(center=[0.25, 0.0, 0.25], children=[leaf_a, leaf_b])
    leaf_c = TreeNode(center=[-0.25, 0.0, -0.25])
    root = TreeNode(center=[0.0, 0.0, 0.0], children=[inner, leaf_c], local=root_local)
    walk_l2l(root, order)
    for leaf in (leaf_a, leaf_b, leaf_c):
        pos = _cloud(5, 0.1, 23, offset=leaf.center)
        np.testing.assert_allclose(
            l2p(pos, leaf.center, leaf.local, order),
            l2p(pos, root.center, root_local, order),
            atol=1e-12,
        )


def test_tree_node_rejects_bad_center():
    with pytest.raises(ValueError):
        TreeNode(center=[0.0, 1.0])