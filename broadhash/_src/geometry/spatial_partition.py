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

"""
Spatial partition of bounding spheres into hashed grid cells.

:class:`SpatialPartitionField` owns every device array of the broad phase and
runs the pipeline that fills them:

1. estimate the cell size from the largest radius (optional),
2. write one record per (object, occupied cell),
3. sort the records by hash bucket,
4. run-length encode the buckets and prefix sum their sizes,
5. count the accepted pairs per bucket, prefix sum the counts and write the
   pairs into an exactly sized output.

The stages enqueue work on one stream and only block the host in three
places, each exposed as a :class:`HostReadback`: the largest radius, the number
of unique buckets and the total number of pairs.
"""

from __future__ import annotations

import math
import warnings
from enum import IntEnum

import warp as wp

from ..core.buffer import GrowableArray
from ..core.readback import HostReadback
from ..utils import logger as msg
from .cell_record import (
    CELL_SIZE_SCALE,
    PROXY_SCALE,
    SLOTS_PER_OBJECT,
    CellRecord,
    invalid_record,
    make_control,
    make_record,
    may_ignore,
    octant_sign,
    pass_type,
)
from .collide import Sphere, sphere_aabb_overlap, sphere_sphere_overlap
from .collision_pair import make_collision_pair
from .spatial_hash import SpatialHashConfig, cell_center, cell_min_corner, cell_of, hash_of, make_spatial_hash_config

wp.set_module_options({"enable_backward": False})

_PROXY_SCALE = wp.constant(PROXY_SCALE)
_SLOTS_PER_OBJECT = wp.constant(SLOTS_PER_OBJECT)


class PairPassMode(IntEnum):
    """Mode of the pair enumeration kernel."""

    COUNT = 0
    """Count the accepted pairs of every bucket."""

    EMIT = 1
    """Write the accepted pairs at the prefix-summed offsets."""


_PAIR_PASS_EMIT = wp.constant(int(PairPassMode.EMIT))


class PipelineStage(IntEnum):
    """Last completed stage of a :class:`SpatialPartitionField`."""

    IDLE = 0
    CELL_SIZE = 1
    FILLED = 2
    SORTED = 3
    COUNTED = 4
    PAIRS = 5


###
# Kernels
###


@wp.kernel
def _max_radius_kernel(
    spheres: wp.array(dtype=Sphere),
    # Outputs
    max_radius: wp.array(dtype=float),
):
    tid = wp.tid()
    wp.atomic_max(max_radius, 0, spheres[tid].radius)


@wp.func
def _block_neighbor(home: wp.vec3i, direction: wp.vec3i, n: int) -> wp.vec3i:
    # Bits of n select the axes along which the neighbor is offset from home
    return wp.vec3i(
        home[0] + ((n >> 2) & 1) * direction[0],
        home[1] + ((n >> 1) & 1) * direction[1],
        home[2] + (n & 1) * direction[2],
    )


@wp.func
def _write_slot(
    slot: int,
    r: CellRecord,
    keys: wp.array(dtype=wp.int32),
    slots: wp.array(dtype=wp.int32),
    records: wp.array(dtype=CellRecord),
):
    keys[slot] = r.bucket
    slots[slot] = wp.int32(slot)
    records[slot] = r


@wp.kernel
def _fill_hash_cells_kernel(
    spheres: wp.array(dtype=Sphere),
    config: SpatialHashConfig,
    object_count: int,
    # Outputs
    keys: wp.array(dtype=wp.int32),
    slots: wp.array(dtype=wp.int32),
    records: wp.array(dtype=CellRecord),
):
    tid = wp.tid()

    # The extra last thread writes the trailing sentinel slot
    if tid == object_count:
        _write_slot(object_count * _SLOTS_PER_OBJECT, invalid_record(), keys, slots, records)
        return

    s = spheres[tid]
    home = cell_of(config, s.center)
    center = cell_center(config, home)

    # The block extends from home toward the side of the cell the center leans to
    octant = int(0)
    if s.center[0] > center[0]:
        octant = octant | 4
    if s.center[1] > center[1]:
        octant = octant | 2
    if s.center[2] > center[2]:
        octant = octant | 1
    direction = wp.vec3i(octant_sign(octant, 0), octant_sign(octant, 1), octant_sign(octant, 2))

    proxy = Sphere()
    proxy.center = s.center
    proxy.radius = s.radius * _PROXY_SCALE

    # All touched cells are found before any record is written so every record
    # carries the complete overlap mask
    home_t = pass_type(home)
    overlap = int(1) << home_t
    touched = int(0)
    for n in range(1, 8):
        c = _block_neighbor(home, direction, n)
        lower = cell_min_corner(config, c)
        upper = lower + wp.vec3(config.cell_size, config.cell_size, config.cell_size)
        if sphere_aabb_overlap(proxy, lower, upper):
            touched = touched | (1 << n)
            overlap = overlap | (1 << pass_type(c))

    base = tid * _SLOTS_PER_OBJECT
    home_record = make_record(hash_of(home), tid, make_control(home_t, home_t, overlap, octant), home)
    _write_slot(base, home_record, keys, slots, records)

    used = int(1)
    for n in range(1, 8):
        if ((touched >> n) & 1) != 0:
            c = _block_neighbor(home, direction, n)
            control = make_control(pass_type(c), home_t, overlap, octant)
            _write_slot(base + used, make_record(hash_of(c), tid, control, c), keys, slots, records)
            used += 1

    for k in range(used, _SLOTS_PER_OBJECT):
        _write_slot(base + k, invalid_record(), keys, slots, records)


@wp.kernel
def _gather_sorted_records_kernel(
    sorted_slots: wp.array(dtype=wp.int32),
    records: wp.array(dtype=CellRecord),
    # Outputs
    sorted_records: wp.array(dtype=CellRecord),
):
    tid = wp.tid()
    sorted_records[tid] = records[sorted_slots[tid]]


@wp.func
def enumerate_bucket_pairs(
    spheres: wp.array(dtype=Sphere),
    sorted_records: wp.array(dtype=CellRecord),
    begin: int,
    size: int,
    mode: int,
    pair_offset: int,
    pairs: wp.array(dtype=wp.vec2i),
) -> int:
    """Visit the record pairs of one bucket and return how many were accepted.

    A pair is accepted when no other bucket owns it and the spheres overlap. In
    EMIT mode the accepted pairs are written to ``pairs`` from ``pair_offset`` on.
    """
    count = int(0)
    for i in range(size):
        a = sorted_records[begin + i]
        for j in range(i + 1, size):
            b = sorted_records[begin + j]
            if not may_ignore(a, b):
                if sphere_sphere_overlap(spheres[a.object_id], spheres[b.object_id]):
                    if mode == _PAIR_PASS_EMIT:
                        out = pair_offset + count
                        assert out < pairs.shape[0]
                        if out < pairs.shape[0]:
                            pairs[out] = make_collision_pair(a.object_id, b.object_id)
                    count += 1
    return count


@wp.kernel
def _collision_pair_kernel(
    spheres: wp.array(dtype=Sphere),
    sorted_records: wp.array(dtype=CellRecord),
    bucket_sizes: wp.array(dtype=wp.int32),
    bucket_offsets: wp.array(dtype=wp.int32),
    valid_cell_count: int,
    mode: int,
    pair_offsets: wp.array(dtype=wp.int32),
    # Outputs
    pair_counts: wp.array(dtype=wp.int32),
    pairs: wp.array(dtype=wp.vec2i),
):
    bucket = wp.tid()

    # The sentinel bucket holds no objects and contributes no pairs
    if bucket >= valid_cell_count:
        if mode != _PAIR_PASS_EMIT:
            pair_counts[bucket] = 0
        return

    pair_offset = int(0)
    if mode == _PAIR_PASS_EMIT:
        pair_offset = int(pair_offsets[bucket])

    count = enumerate_bucket_pairs(
        spheres,
        sorted_records,
        int(bucket_offsets[bucket]),
        int(bucket_sizes[bucket]),
        mode,
        pair_offset,
        pairs,
    )
    if mode != _PAIR_PASS_EMIT:
        pair_counts[bucket] = wp.int32(count)


###
# Interfaces
###


class SpatialPartitionField:
    """
    Device arrays and pipeline stages of the spatial hash broad phase.

    A field is reusable across calls: its arrays only grow, and every call
    resets their logical lengths. The stages must run in order; calling one out
    of order raises ``RuntimeError`` before anything is launched.

    Attributes:
        device: Warp device holding all arrays
        origin: Corner of cell (0, 0, 0), set by :meth:`set_origin`
        cell_size: Explicit cell size, or ``None`` to estimate it on every call
        check_cell_size: Warn when an explicit cell size is smaller than the largest sphere diameter.
            On by default; turning it off saves the largest-radius read-back for explicit cell sizes.
        stream: Stream for all launches, or ``None`` for the current stream of ``device``
        light_block_dim: Block size of the per-object and per-slot kernels
        heavy_block_dim: Block size of the per-bucket pair kernels
        config: Hash parameters of the current call
    """

    def __init__(self, device=None, check_cell_size: bool = True):
        self.device = wp.get_device(device)
        self.origin: wp.vec3 | None = None
        self.cell_size: float | None = None
        self.check_cell_size = check_cell_size
        self.stream: wp.Stream | None = None
        self.light_block_dim = 256
        self.heavy_block_dim = 64
        self.config: SpatialHashConfig | None = None

        self.spheres: wp.array | None = None
        self.object_count = 0
        self.stage = PipelineStage.IDLE

        self._unique_bucket_count = 0
        self._pair_count = 0

        def buffer(dtype, name):
            return GrowableArray(dtype, device=self.device, name=name)

        # Sort keys and slot permutation, sized twice the slot count as radix sort scratch
        self.cell_keys = buffer(wp.int32, "cell_keys")
        self.cell_slots = buffer(wp.int32, "cell_slots")
        self.cell_records = buffer(CellRecord, "cell_records")
        self.sorted_records = buffer(CellRecord, "sorted_records")
        self.unique_buckets = buffer(wp.int32, "unique_buckets")
        self.bucket_sizes = buffer(wp.int32, "bucket_sizes")
        self.bucket_offsets = buffer(wp.int32, "bucket_offsets")
        self.pair_counts = buffer(wp.int32, "pair_counts")
        self.pair_offsets = buffer(wp.int32, "pair_offsets")

        self._max_radius = wp.zeros(1, dtype=float, device=self.device)
        self._unique_count = wp.zeros(1, dtype=wp.int32, device=self.device)

    ###
    # Configuration
    ###

    def set_origin(self, origin):
        """Set the corner of cell (0, 0, 0)."""
        origin = [float(x) for x in origin]
        if len(origin) != 3 or not all(math.isfinite(x) for x in origin):
            raise ValueError(f"origin must be a finite 3-vector, got {origin}")
        self.origin = wp.vec3(*origin)

    def set_cell_size(self, cell_size: float | None):
        """Set an explicit cell size. ``None`` or a non-positive value selects the automatic estimate."""
        if cell_size is None or cell_size <= 0.0:
            self.cell_size = None
            return
        cell_size = float(cell_size)
        if not math.isfinite(cell_size):
            raise ValueError(f"cell_size must be finite, got {cell_size}")
        self.cell_size = cell_size

    def set_stream(self, stream: wp.Stream | None):
        if stream is not None and stream.device != self.device:
            raise ValueError(f"stream is on device {stream.device}, but the field is on {self.device}")
        self.stream = stream

    def set_block_dims(self, light_block_dim: int, heavy_block_dim: int):
        if light_block_dim <= 0 or heavy_block_dim <= 0:
            raise ValueError(
                f"block dimensions must be positive, got light={light_block_dim} heavy={heavy_block_dim}"
            )
        self.light_block_dim = int(light_block_dim)
        self.heavy_block_dim = int(heavy_block_dim)

    ###
    # Properties
    ###

    @property
    def slot_count(self) -> int:
        """Number of record slots of the current call, including the trailing sentinel slot."""
        return self.object_count * SLOTS_PER_OBJECT + 1

    @property
    def unique_bucket_count(self) -> int:
        """Number of distinct buckets among the records, including the sentinel bucket."""
        return self._unique_bucket_count

    @property
    def valid_cell_count(self) -> int:
        """Number of occupied buckets, i.e. unique buckets without the sentinel bucket."""
        return max(self._unique_bucket_count - 1, 0)

    @property
    def pair_count(self) -> int:
        """Number of collision pairs found by the last call."""
        return self._pair_count

    ###
    # Stages
    ###

    def launch_scope(self):
        """Context that routes launches to the field stream, or to the current stream of the field device."""
        if self.stream is not None:
            return wp.ScopedStream(self.stream)
        return wp.ScopedDevice(self.device)

    def _require_stage(self, stage: PipelineStage, operation: str):
        if self.stage != stage:
            raise RuntimeError(
                f"{operation} requires the pipeline to be at stage {stage.name}, but it is at {self.stage.name}"
            )

    def begin(self, spheres: wp.array):
        """Start a new call on ``spheres`` and reset all logical lengths."""
        if not isinstance(spheres, wp.array) or spheres.dtype != Sphere:
            raise ValueError("spheres must be a wp.array(dtype=Sphere)")
        if spheres.ndim != 1:
            raise ValueError(f"spheres must be one-dimensional, got {spheres.ndim} dimensions")
        if spheres.device != self.device:
            raise ValueError(f"spheres are on device {spheres.device}, but the field is on {self.device}")
        if self.origin is None:
            raise RuntimeError("the spatial hash origin must be set before the first setup")

        self.spheres = spheres
        self.object_count = spheres.shape[0]
        self.stage = PipelineStage.IDLE
        self._unique_bucket_count = 0
        self._pair_count = 0
        for array in (
            self.cell_keys,
            self.cell_slots,
            self.cell_records,
            self.sorted_records,
            self.unique_buckets,
            self.bucket_sizes,
            self.bucket_offsets,
            self.pair_counts,
            self.pair_offsets,
        ):
            array.clear()

    def begin_calculate_cell_size(self) -> HostReadback | None:
        """Launch the largest-radius reduction when the cell size needs it.

        Returns:
            The read-back of the largest radius, or ``None`` when the explicit cell size is used unchecked.
        """
        self._require_stage(PipelineStage.IDLE, "calculate_cell_size")
        if self.cell_size is not None and not self.check_cell_size:
            return None
        if self.object_count == 0:
            return None

        with self.launch_scope():
            self._max_radius.zero_()
            wp.launch(
                _max_radius_kernel,
                dim=self.object_count,
                inputs=[self.spheres],
                outputs=[self._max_radius],
                block_dim=self.light_block_dim,
                device=self.device,
            )
            return HostReadback(self._max_radius)

    def end_calculate_cell_size(self, readback: HostReadback | None) -> float:
        """Finish the cell size stage and build the hash parameters of this call.

        With an automatic cell size and a largest radius of 0, every sphere is a
        point and any positive cell size finds all coincident points.
        """
        self._require_stage(PipelineStage.IDLE, "calculate_cell_size")
        max_radius = readback.wait() if readback is not None else None

        if self.cell_size is not None:
            cell_size = self.cell_size
            if max_radius is not None and 2.0 * max_radius > cell_size:
                warnings.warn(
                    f"Cell size {cell_size} is smaller than the largest sphere diameter {2.0 * max_radius}; "
                    "overlapping pairs may be missed.",
                    stacklevel=2,
                )
        elif self.object_count == 0 or not max_radius > 0.0:
            # Nothing is hashed or all spheres are points, any positive size will do
            cell_size = 1.0
        else:
            cell_size = max_radius * CELL_SIZE_SCALE

        self.config = make_spatial_hash_config(cell_size, self.origin)
        self.stage = PipelineStage.CELL_SIZE
        msg.debug(f"Cell size: {cell_size} (objects: {self.object_count})")
        return cell_size

    def calculate_cell_size(self) -> float:
        """Settle the cell size of this call, estimating it from the largest radius if needed."""
        return self.end_calculate_cell_size(self.begin_calculate_cell_size())

    def fill_hash_cells(self):
        """Write the home and phantom records of every object, plus the trailing sentinel slot."""
        self._require_stage(PipelineStage.CELL_SIZE, "fill_hash_cells")
        if self.object_count > 0:
            slot_count = self.slot_count
            with self.launch_scope():
                self.cell_keys.ensure_capacity(2 * slot_count)
                self.cell_slots.ensure_capacity(2 * slot_count)
                self.cell_keys.resize(slot_count)
                self.cell_slots.resize(slot_count)
                self.cell_records.resize(slot_count)

                wp.launch(
                    _fill_hash_cells_kernel,
                    dim=self.object_count + 1,
                    inputs=[self.spheres, self.config, self.object_count],
                    outputs=[self.cell_keys.storage, self.cell_slots.storage, self.cell_records.storage],
                    block_dim=self.light_block_dim,
                    device=self.device,
                )
        self.stage = PipelineStage.FILLED

    def sort_hash_cells(self):
        """Sort the records by bucket. Sentinel slots end up in the last bucket."""
        self._require_stage(PipelineStage.FILLED, "sort_hash_cells")
        if self.object_count > 0:
            slot_count = self.slot_count
            with self.launch_scope():
                self.sorted_records.resize(slot_count)
                wp.utils.radix_sort_pairs(self.cell_keys.storage, self.cell_slots.storage, slot_count)
                wp.launch(
                    _gather_sorted_records_kernel,
                    dim=slot_count,
                    inputs=[self.cell_slots.storage, self.cell_records.storage],
                    outputs=[self.sorted_records.storage],
                    block_dim=self.light_block_dim,
                    device=self.device,
                )
        self.stage = PipelineStage.SORTED

    def begin_count_collision_per_cell(self) -> HostReadback | None:
        """Run-length encode the sorted buckets.

        Returns:
            The read-back of the number of unique buckets, or ``None`` when there are no objects.
        """
        self._require_stage(PipelineStage.SORTED, "count_collision_per_cell")
        if self.object_count == 0:
            return None

        slot_count = self.slot_count
        with self.launch_scope():
            self.unique_buckets.ensure_capacity(slot_count)
            self.bucket_sizes.ensure_capacity(slot_count)
            wp.utils.runlength_encode(
                self.cell_keys.storage,
                self.unique_buckets.storage,
                self.bucket_sizes.storage,
                run_count=self._unique_count,
                value_count=slot_count,
            )
            return HostReadback(self._unique_count)

    def end_count_collision_per_cell(self, readback: HostReadback | None):
        """Size the per-bucket arrays and prefix sum the bucket sizes into bucket offsets."""
        self._require_stage(PipelineStage.SORTED, "count_collision_per_cell")
        unique = readback.wait() if readback is not None else 0
        self._unique_bucket_count = unique
        with self.launch_scope():
            for array in (
                self.unique_buckets,
                self.bucket_sizes,
                self.bucket_offsets,
                self.pair_counts,
                self.pair_offsets,
            ):
                array.resize(unique)
            if unique > 0:
                wp.utils.array_scan(self.bucket_sizes.array, self.bucket_offsets.array, inclusive=False)

        self.stage = PipelineStage.COUNTED
        msg.debug(f"Unique buckets: {unique} (valid cells: {self.valid_cell_count})")

    def count_collision_per_cell(self):
        """Find the unique buckets and where each starts in the sorted records."""
        self.end_count_collision_per_cell(self.begin_count_collision_per_cell())

    def _launch_pair_pass(self, mode: PairPassMode, pairs: wp.array):
        wp.launch(
            _collision_pair_kernel,
            dim=self._unique_bucket_count,
            inputs=[
                self.spheres,
                self.sorted_records.storage,
                self.bucket_sizes.storage,
                self.bucket_offsets.storage,
                self.valid_cell_count,
                int(mode),
                self.pair_offsets.storage,
            ],
            outputs=[self.pair_counts.storage, pairs],
            block_dim=self.heavy_block_dim,
            device=self.device,
        )

    def begin_create_collision_pair_list(self, pairs: GrowableArray) -> HostReadback | None:
        """Count the pairs of every bucket and prefix sum the counts.

        Returns:
            The read-back of the total pair count, or ``None`` when there are no objects.
        """
        self._require_stage(PipelineStage.COUNTED, "create_collision_pair_list")
        if pairs.dtype != wp.vec2i or pairs.device != self.device:
            raise ValueError(f"pairs must be a GrowableArray of wp.vec2i on {self.device}")
        if self._unique_bucket_count == 0:
            return None

        with self.launch_scope():
            self._launch_pair_pass(PairPassMode.COUNT, pairs.array)
            wp.utils.array_scan(self.pair_counts.array, self.pair_offsets.array, inclusive=False)
            # The exclusive sum at the sentinel bucket is the total over all valid buckets
            return HostReadback(self.pair_offsets.storage, self._unique_bucket_count - 1)

    def end_create_collision_pair_list(self, readback: HostReadback | None, pairs: GrowableArray) -> wp.array:
        """Size ``pairs`` exactly and write the pairs of every bucket.

        Returns:
            A view of the ``pair_count`` pairs.
        """
        self._require_stage(PipelineStage.COUNTED, "create_collision_pair_list")
        total = readback.wait() if readback is not None else 0
        self._pair_count = total
        with self.launch_scope():
            pairs.resize(total)
            if total > 0:
                self._launch_pair_pass(PairPassMode.EMIT, pairs.array)

        self.stage = PipelineStage.PAIRS
        msg.debug(f"Collision pairs: {total}")
        return pairs.array

    def create_collision_pair_list(self, pairs: GrowableArray) -> wp.array:
        """Write every overlapping sphere pair exactly once into ``pairs``."""
        return self.end_create_collision_pair_list(self.begin_create_collision_pair_list(pairs), pairs)

    def wait(self):
        """Block until all work enqueued by the field has completed."""
        if self.stream is not None:
            wp.synchronize_stream(self.stream)
        else:
            wp.synchronize_device(self.device)
