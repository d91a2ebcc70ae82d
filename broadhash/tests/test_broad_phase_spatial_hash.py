# SPDX-FileCopyrightText: Copyright (c) 2025 The Newton Developers
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the spatial hash broad phase pipeline."""

import unittest
import warnings

import numpy as np
import warp as wp

from broadhash._src.core import GrowableArray, HostReadback
from broadhash._src.geometry.cell_record import INVALID_BUCKET, INVALID_OBJECT, SLOTS_PER_OBJECT
from broadhash.geometry import (
    BroadPhaseSpatialHash,
    SpatialPartitionField,
    SpatialPartitionLauncher,
    collision_pairs_to_host,
    make_spheres,
    sort_collision_pairs,
)
from broadhash.tests.unittest_utils import add_function_test, assert_np_equal, get_test_devices


def find_overlapping_sphere_pairs_np(centers: np.ndarray, radii: np.ndarray) -> list[tuple[int, int]]:
    """
    Brute-force n^2 algorithm to find all overlapping sphere pairs.
    Returns a sorted list of (i, j) pairs with i < j whose spheres overlap or touch.
    """
    centers = np.asarray(centers, dtype=np.float64)
    radii = np.asarray(radii, dtype=np.float64)
    d2 = np.sum((centers[:, None, :] - centers[None, :, :]) ** 2, axis=-1)
    r = radii[:, None] + radii[None, :]
    i, j = np.nonzero(np.triu(d2 <= r * r, k=1))
    return sorted(zip(i.tolist(), j.tolist(), strict=True))


def random_spheres(rng, count: int, extent: float, max_radius: float, min_radius: float = 1.0 / 64.0):
    """Random spheres with coordinates and radii on a 1/64 grid, so float32 distances are exact."""
    centers = rng.integers(-int(extent * 64), int(extent * 64) + 1, size=(count, 3)) / 64.0
    radii = rng.integers(int(min_radius * 64), int(max_radius * 64) + 1, size=count) / 64.0
    return centers.astype(np.float32), radii.astype(np.float32)


def run_launcher(device, centers, radii, cell_size=None, origin=(0.0, 0.0, 0.0), field=None, pairs=None):
    if field is None:
        field = SpatialPartitionField(device=device)
    if pairs is None:
        pairs = GrowableArray(wp.vec2i, device=device)
    result = (
        SpatialPartitionLauncher(field)
        .set_cell_size(cell_size)
        .config_spatial_hash(origin)
        .setup_spatial_data_structure(make_spheres(centers, radii, device=device))
        .create_collision_pair_list(pairs)
        .wait()
    )
    return result, field


def check_against_brute_force(test, device, centers, radii, **kwargs):
    result, field = run_launcher(device, centers, radii, **kwargs)
    pairs_np = result.numpy()
    expected = find_overlapping_sphere_pairs_np(centers, radii)

    test.assertEqual(field.pair_count, len(expected))
    test.assertEqual(pairs_np.shape[0], len(expected))
    if len(expected) > 0:
        # Canonical order inside every pair, and no pair twice
        test.assertTrue(np.all(pairs_np[:, 0] < pairs_np[:, 1]))
        test.assertEqual(len({tuple(p) for p in pairs_np.tolist()}), pairs_np.shape[0])
    test.assertEqual([tuple(p) for p in collision_pairs_to_host(result)], expected)
    return field


@wp.func
def count_pair_contacts(id_low: int, id_high: int, counts: wp.array(dtype=wp.int32)):
    wp.atomic_add(counts, id_low, 1)
    wp.atomic_add(counts, id_high, 1)


# =============================================================================
# Test class
# =============================================================================


class TestBroadPhaseSpatialHash(unittest.TestCase):
    """Test cases for the spatial hash broad phase."""

    pass


# =============================================================================
# Test functions
# =============================================================================


def test_three_spheres(test, device):
    """Two overlapping unit spheres and one far away yield exactly one pair."""
    centers = np.array([[0.0, 0.0, 0.0], [0.5, 0.0, 0.0], [10.0, 10.0, 10.0]], dtype=np.float32)
    radii = np.ones(3, dtype=np.float32)
    # The cell size is below the sphere diameter, which is reported by default
    with test.assertWarns(UserWarning):
        result, field = run_launcher(device, centers, radii, cell_size=1.0)
    test.assertEqual(collision_pairs_to_host(result), [(0, 1)])
    test.assertEqual(field.pair_count, 1)
    test.assertEqual(field.valid_cell_count, field.unique_bucket_count - 1)


def test_random_uniform_radius(test, device):
    rng = np.random.Generator(np.random.PCG64(42))
    for _ in range(3):
        centers, radii = random_spheres(rng, 400, extent=2.0, max_radius=0.125, min_radius=0.125)
        check_against_brute_force(test, device, centers, radii)


def test_random_mixed_radii(test, device):
    """Large and small spheres mixed; the automatic cell size follows the largest one."""
    rng = np.random.Generator(np.random.PCG64(7))
    for _ in range(3):
        centers, radii = random_spheres(rng, 500, extent=2.0, max_radius=0.25)
        check_against_brute_force(test, device, centers, radii)


def test_random_dense(test, device):
    """Many spheres per cell, most pairs overlap through several shared cells."""
    rng = np.random.Generator(np.random.PCG64(123))
    centers, radii = random_spheres(rng, 300, extent=0.5, max_radius=0.25, min_radius=0.125)
    check_against_brute_force(test, device, centers, radii)


def test_random_explicit_cell_size(test, device):
    """A cell size of at least the largest diameter finds every pair."""
    rng = np.random.Generator(np.random.PCG64(99))
    centers, radii = random_spheres(rng, 400, extent=2.0, max_radius=0.25)
    check_against_brute_force(test, device, centers, radii, cell_size=0.5, origin=(-0.3, 0.1, 0.7))
    check_against_brute_force(test, device, centers, radii, cell_size=1.25, origin=(0.0, 0.0, 0.0))


def test_touching_spheres(test, device):
    """Touching counts as overlapping, including across cell faces and corners."""
    centers = np.array(
        [
            [0.0, 0.0, 0.0],
            [0.5, 0.0, 0.0],
            [0.5, 0.5, 0.0],
            [0.5, 0.5, 0.5],
            [-1.0, -1.0, -1.0],
        ],
        dtype=np.float32,
    )
    radii = np.full(5, 0.25, dtype=np.float32)
    check_against_brute_force(test, device, centers, radii)
    check_against_brute_force(test, device, centers, radii, cell_size=0.5)


def test_pair_shared_only_by_phantoms(test, device):
    """Two spheres whose only shared cells are phantom cells of both are still reported."""
    z = 1.125
    centers = np.array([[1.05, 2.15, z], [2.45, 3.4, z]], dtype=np.float32)
    radii = np.ones(2, dtype=np.float32)
    result, field = run_launcher(device, centers, radii)
    test.assertEqual(collision_pairs_to_host(result), [(0, 1)])


def test_pair_in_chain_of_cells(test, device):
    """Two spheres touching cells of equal parity on opposite sides of the one cell they share."""
    y = z = 1.125
    centers = np.array([[0.95 * 2.25, y, z], [1.8 * 2.25, y, z]], dtype=np.float32)
    radii = np.ones(2, dtype=np.float32)
    result, field = run_launcher(device, centers, radii)
    test.assertEqual(collision_pairs_to_host(result), [(0, 1)])


def test_zero_objects(test, device):
    result, field = run_launcher(device, np.zeros((0, 3), dtype=np.float32), np.zeros(0, dtype=np.float32))
    test.assertEqual(result.shape[0], 0)
    test.assertEqual(field.pair_count, 0)
    test.assertEqual(field.unique_bucket_count, 0)
    test.assertEqual(field.valid_cell_count, 0)
    test.assertEqual(len(field.sorted_records), 0)


def test_one_object(test, device):
    result, field = run_launcher(device, np.array([[0.3, -0.2, 5.0]], dtype=np.float32), np.array([0.5]))
    test.assertEqual(result.shape[0], 0)
    test.assertGreaterEqual(field.valid_cell_count, 1)
    test.assertEqual(field.valid_cell_count, field.unique_bucket_count - 1)


def test_records_of_centered_object(test, device):
    """A small sphere at a cell center only occupies its home cell."""
    centers = np.array([[0.5, 0.5, 0.5]], dtype=np.float32)
    result, field = run_launcher(device, centers, np.array([0.1]), cell_size=1.0)

    records = field.cell_records.numpy()
    test.assertEqual(records.shape[0], SLOTS_PER_OBJECT + 1)
    test.assertEqual(records["object_id"][0], 0)
    assert_np_equal(records["cell_coord"][0], np.zeros(3, dtype=np.int32))
    # pass type 0, home type 0, overlap mask 0b1, octant 0
    test.assertEqual(int(records["control"][0]), 1 << 6)
    assert_np_equal(records["object_id"][1:], np.full(SLOTS_PER_OBJECT, INVALID_OBJECT, dtype=np.int32))
    assert_np_equal(records["bucket"][1:], np.full(SLOTS_PER_OBJECT, INVALID_BUCKET, dtype=np.int32))

    test.assertEqual(field.unique_bucket_count, 2)
    test.assertEqual(field.valid_cell_count, 1)


def test_records_of_corner_object(test, device):
    """A sphere near a cell corner occupies all eight cells of its block."""
    centers = np.array([[0.875, 0.875, 0.875]], dtype=np.float32)
    result, field = run_launcher(device, centers, np.array([0.25]), cell_size=1.0)

    records = field.cell_records.numpy()
    valid = records[:SLOTS_PER_OBJECT]
    assert_np_equal(valid["object_id"], np.zeros(SLOTS_PER_OBJECT, dtype=np.int32))
    test.assertEqual(
        sorted(tuple(c) for c in valid["cell_coord"].tolist()),
        [(i, j, k) for i in range(2) for j in range(2) for k in range(2)],
    )
    controls = valid["control"].astype(np.int64)
    assert_np_equal((controls >> 6) & 0xFF, np.full(SLOTS_PER_OBJECT, 0xFF, dtype=np.int64))
    assert_np_equal((controls >> 14) & 0x7, np.full(SLOTS_PER_OBJECT, 7, dtype=np.int64))
    assert_np_equal((controls >> 3) & 0x7, np.zeros(SLOTS_PER_OBJECT, dtype=np.int64))
    test.assertEqual(records["object_id"][SLOTS_PER_OBJECT], INVALID_OBJECT)


def test_sentinel_bucket(test, device):
    """The sentinel bucket sorts last and contributes no pairs."""
    rng = np.random.Generator(np.random.PCG64(5))
    centers, radii = random_spheres(rng, 200, extent=1.0, max_radius=0.25)
    field = check_against_brute_force(test, device, centers, radii)

    unique = field.unique_bucket_count
    test.assertEqual(field.valid_cell_count, unique - 1)
    test.assertEqual(field.unique_buckets.numpy()[-1], INVALID_BUCKET)
    test.assertEqual(field.pair_counts.numpy()[-1], 0)
    test.assertTrue(np.all(field.unique_buckets.numpy()[:-1] < INVALID_BUCKET))
    test.assertEqual(int(np.sum(field.bucket_sizes.numpy())), field.slot_count)
    test.assertEqual(int(np.sum(field.pair_counts.numpy())), field.pair_count)


def test_deterministic_reinvocation(test, device):
    rng = np.random.Generator(np.random.PCG64(11))
    centers, radii = random_spheres(rng, 300, extent=1.5, max_radius=0.25)

    field = SpatialPartitionField(device=device)
    first, _ = run_launcher(device, centers, radii, field=field)
    first = collision_pairs_to_host(first)
    second, _ = run_launcher(device, centers, radii, field=field)
    second = collision_pairs_to_host(second)
    fresh, _ = run_launcher(device, centers, radii)
    fresh = collision_pairs_to_host(fresh)

    test.assertEqual(first, second)
    test.assertEqual(first, fresh)


def test_grow_only_reuse(test, device):
    """A field shrinks its logical sizes but keeps its storage across calls of varying size."""
    rng = np.random.Generator(np.random.PCG64(3))
    field = SpatialPartitionField(device=device)
    pairs = GrowableArray(wp.vec2i, device=device)

    big = random_spheres(rng, 300, extent=1.0, max_radius=0.25)
    small = random_spheres(rng, 40, extent=1.0, max_radius=0.25)

    check_against_brute_force(test, device, *big, field=field, pairs=pairs)
    key_capacity = field.cell_keys.capacity
    record_capacity = field.cell_records.capacity

    check_against_brute_force(test, device, *small, field=field, pairs=pairs)
    test.assertEqual(field.cell_keys.capacity, key_capacity)
    test.assertEqual(field.cell_records.capacity, record_capacity)
    test.assertEqual(len(field.cell_records), 40 * SLOTS_PER_OBJECT + 1)

    check_against_brute_force(test, device, *big, field=field, pairs=pairs)
    test.assertEqual(field.cell_keys.capacity, key_capacity)


def test_staged_readbacks(test, device):
    """The pipeline can be driven stage by stage with explicit read-backs."""
    centers = np.array([[0.0, 0.0, 0.0], [0.25, 0.0, 0.0], [3.0, 0.0, 0.0]], dtype=np.float32)
    radii = np.array([0.25, 0.125, 0.25], dtype=np.float32)

    field = SpatialPartitionField(device=device)
    field.set_origin((0.0, 0.0, 0.0))
    field.begin(make_spheres(centers, radii, device=device))

    readback = field.begin_calculate_cell_size()
    test.assertIsInstance(readback, HostReadback)
    test.assertEqual(readback.wait(), 0.25)
    test.assertAlmostEqual(field.end_calculate_cell_size(readback), 0.25 * 2.25, places=6)

    field.fill_hash_cells()
    field.sort_hash_cells()

    readback = field.begin_count_collision_per_cell()
    unique = readback.wait()
    field.end_count_collision_per_cell(readback)
    test.assertEqual(field.unique_bucket_count, unique)

    pairs = GrowableArray(wp.vec2i, device=device)
    readback = field.begin_create_collision_pair_list(pairs)
    test.assertEqual(readback.wait(), 1)
    result = field.end_create_collision_pair_list(readback, pairs)
    test.assertEqual(collision_pairs_to_host(result), [(0, 1)])


def test_cell_size_warning(test, device):
    centers = np.array([[0.0, 0.0, 0.0], [0.5, 0.0, 0.0]], dtype=np.float32)
    radii = np.ones(2, dtype=np.float32)

    # Checked by default
    field = SpatialPartitionField(device=device)
    with test.assertWarns(UserWarning):
        run_launcher(device, centers, radii, cell_size=1.0, field=field)

    # Large enough, no warning
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        run_launcher(device, centers, radii, cell_size=2.0, field=field)
    test.assertFalse(any("Cell size" in str(w.message) for w in caught))

    # Unchecked, the largest radius is not read back
    field = SpatialPartitionField(device=device, check_cell_size=False)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        run_launcher(device, centers, radii, cell_size=1.0, field=field)
    test.assertFalse(any("Cell size" in str(w.message) for w in caught))


def test_configuration_errors(test, device):
    spheres = make_spheres(np.zeros((2, 3)), 0.5, device=device)
    pairs = GrowableArray(wp.vec2i, device=device)

    # Origin not set
    with test.assertRaises(RuntimeError):
        SpatialPartitionLauncher(SpatialPartitionField(device=device)).setup_spatial_data_structure(spheres)

    # Stages out of order
    field = SpatialPartitionField(device=device)
    launcher = SpatialPartitionLauncher(field).config_spatial_hash((0.0, 0.0, 0.0))
    with test.assertRaises(RuntimeError):
        launcher.create_collision_pair_list(pairs)
    with test.assertRaises(RuntimeError):
        launcher.apply_on_each_collision_pair(count_pair_contacts, wp.zeros(2, dtype=wp.int32, device=device))
    with test.assertRaises(RuntimeError):
        field.fill_hash_cells()

    # Not a Sphere array
    with test.assertRaises(ValueError):
        launcher.setup_spatial_data_structure(wp.zeros(2, dtype=wp.vec3, device=device))

    # Wrong output type
    launcher.setup_spatial_data_structure(spheres)
    with test.assertRaises(ValueError):
        launcher.create_collision_pair_list(GrowableArray(wp.int32, device=device))

    with test.assertRaises(ValueError):
        launcher.config_spatial_hash((0.0, float("nan"), 0.0))
    with test.assertRaises(ValueError):
        launcher.set_cell_size(float("inf"))
    with test.assertRaises(ValueError):
        SpatialPartitionLauncher(field, light_block_dim=0)

    # A non-positive cell size selects the automatic estimate
    launcher.set_cell_size(-1.0)
    test.assertIsNone(field.cell_size)

    # Point spheres still get an automatic cell size
    result = (
        launcher.setup_spatial_data_structure(make_spheres(np.zeros((2, 3)), 0.0, device=device))
        .create_collision_pair_list(pairs)
        .wait()
    )
    test.assertEqual(collision_pairs_to_host(result), [(0, 1)])


def test_point_spheres(test, device):
    """Spheres of radius 0 overlap only when their centers coincide."""
    centers = np.array([[1.0, 1.0, 1.0], [1.0, 1.0, 1.0], [3.0, 3.0, 3.0]], dtype=np.float32)
    broad_phase = BroadPhaseSpatialHash(device=device)
    result = broad_phase.launch(make_spheres(centers, 0.0, device=device))
    test.assertEqual(collision_pairs_to_host(result), [(0, 1)])
    test.assertEqual(broad_phase.pair_count, 1)


def test_apply_on_each_collision_pair(test, device):
    rng = np.random.Generator(np.random.PCG64(21))
    centers, radii = random_spheres(rng, 200, extent=1.0, max_radius=0.25)
    expected = find_overlapping_sphere_pairs_np(centers, radii)
    expected_counts = np.zeros(200, dtype=np.int32)
    for i, j in expected:
        expected_counts[i] += 1
        expected_counts[j] += 1

    counts = wp.zeros(200, dtype=wp.int32, device=device)
    (
        SpatialPartitionLauncher(SpatialPartitionField(device=device))
        .config_spatial_hash((0.0, 0.0, 0.0))
        .setup_spatial_data_structure(make_spheres(centers, radii, device=device))
        .create_collision_pair_list(GrowableArray(wp.vec2i, device=device))
        .apply_on_each_collision_pair(count_pair_contacts, counts)
        .wait()
    )
    assert_np_equal(counts.numpy(), expected_counts)


def test_sort_collision_pairs(test, device):
    rng = np.random.Generator(np.random.PCG64(8))
    centers, radii = random_spheres(rng, 200, extent=1.0, max_radius=0.25)
    result, _ = run_launcher(device, centers, radii)
    sorted_pairs = sort_collision_pairs(result).numpy()
    test.assertEqual([tuple(p) for p in sorted_pairs.tolist()], find_overlapping_sphere_pairs_np(centers, radii))


def test_broad_phase_launch(test, device):
    rng = np.random.Generator(np.random.PCG64(17))
    centers, radii = random_spheres(rng, 300, extent=1.5, max_radius=0.25)
    broad_phase = BroadPhaseSpatialHash(origin=(-1.5, -1.5, -1.5), device=device)
    spheres = make_spheres(centers, radii, device=device)

    expected = find_overlapping_sphere_pairs_np(centers, radii)
    for _ in range(2):
        result = broad_phase.launch(spheres)
        test.assertEqual(broad_phase.pair_count, len(expected))
        test.assertEqual([tuple(p) for p in collision_pairs_to_host(result)], expected)


def test_launch_on_stream(test, device):
    rng = np.random.Generator(np.random.PCG64(31))
    centers, radii = random_spheres(rng, 300, extent=1.5, max_radius=0.25)
    stream = wp.Stream(device)
    field = SpatialPartitionField(device=device)
    spheres = make_spheres(centers, radii, device=device)
    # The inputs are written on the default stream
    wp.synchronize_device(device)

    result = (
        SpatialPartitionLauncher(field, stream=stream, light_block_dim=128, heavy_block_dim=32)
        .config_spatial_hash((0.0, 0.0, 0.0))
        .setup_spatial_data_structure(spheres)
        .create_collision_pair_list(GrowableArray(wp.vec2i, device=device))
        .wait()
    )
    expected = find_overlapping_sphere_pairs_np(centers, radii)
    test.assertEqual([tuple(p) for p in collision_pairs_to_host(result)], expected)


devices = get_test_devices()
cuda_devices = [d for d in devices if d.is_cuda]
add_function_test(TestBroadPhaseSpatialHash, "test_three_spheres", test_three_spheres, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_random_uniform_radius", test_random_uniform_radius, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_random_mixed_radii", test_random_mixed_radii, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_random_dense", test_random_dense, devices=devices)
add_function_test(
    TestBroadPhaseSpatialHash, "test_random_explicit_cell_size", test_random_explicit_cell_size, devices=devices
)
add_function_test(TestBroadPhaseSpatialHash, "test_touching_spheres", test_touching_spheres, devices=devices)
add_function_test(
    TestBroadPhaseSpatialHash, "test_pair_shared_only_by_phantoms", test_pair_shared_only_by_phantoms, devices=devices
)
add_function_test(
    TestBroadPhaseSpatialHash, "test_pair_in_chain_of_cells", test_pair_in_chain_of_cells, devices=devices
)
add_function_test(TestBroadPhaseSpatialHash, "test_zero_objects", test_zero_objects, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_one_object", test_one_object, devices=devices)
add_function_test(
    TestBroadPhaseSpatialHash, "test_records_of_centered_object", test_records_of_centered_object, devices=devices
)
add_function_test(
    TestBroadPhaseSpatialHash, "test_records_of_corner_object", test_records_of_corner_object, devices=devices
)
add_function_test(TestBroadPhaseSpatialHash, "test_sentinel_bucket", test_sentinel_bucket, devices=devices)
add_function_test(
    TestBroadPhaseSpatialHash, "test_deterministic_reinvocation", test_deterministic_reinvocation, devices=devices
)
add_function_test(TestBroadPhaseSpatialHash, "test_grow_only_reuse", test_grow_only_reuse, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_staged_readbacks", test_staged_readbacks, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_cell_size_warning", test_cell_size_warning, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_configuration_errors", test_configuration_errors, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_point_spheres", test_point_spheres, devices=devices)
add_function_test(
    TestBroadPhaseSpatialHash, "test_apply_on_each_collision_pair", test_apply_on_each_collision_pair, devices=devices
)
add_function_test(TestBroadPhaseSpatialHash, "test_sort_collision_pairs", test_sort_collision_pairs, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_broad_phase_launch", test_broad_phase_launch, devices=devices)
add_function_test(TestBroadPhaseSpatialHash, "test_launch_on_stream", test_launch_on_stream, devices=cuda_devices)


if __name__ == "__main__":
    wp.init()
    unittest.main(verbosity=2)
