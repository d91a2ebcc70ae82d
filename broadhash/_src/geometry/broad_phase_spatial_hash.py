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

"""Spatial hash broad phase for bounding spheres.

Spheres are binned into a uniform grid; each object is recorded in its home
cell and in the neighboring cells its enlarged proxy touches. Pairs are only
tested inside a cell, and every overlapping pair is reported by exactly one
cell, so the result needs no deduplication.

Example:

.. code-block:: python

    field = SpatialPartitionField(device="cuda:0")
    pairs = GrowableArray(wp.vec2i, device="cuda:0")
    result = (
        SpatialPartitionLauncher(field)
        .config_spatial_hash(wp.vec3(0.0, 0.0, 0.0))
        .setup_spatial_data_structure(spheres)
        .create_collision_pair_list(pairs)
        .wait()
    )
"""

from __future__ import annotations

import warp as wp

from ..core.buffer import GrowableArray
from .pair_visitor import apply_on_each_collision_pair
from .spatial_partition import PipelineStage, SpatialPartitionField


class SpatialPartitionLauncher:
    """Fluent driver of the :class:`SpatialPartitionField` pipeline.

    All methods except :meth:`wait` return the launcher, so a whole call reads
    as one chain. Work goes to ``stream`` (or the current stream of the field
    device); the host only blocks inside the stages on the three scalar
    read-backs and in :meth:`wait`.
    """

    def __init__(
        self,
        field: SpatialPartitionField,
        stream: wp.Stream | None = None,
        light_block_dim: int = 256,
        heavy_block_dim: int = 64,
    ):
        """
        Args:
            field: The field holding the arrays. Reused across calls.
            stream: Stream for all launches, or ``None`` for the current stream of the field device.
            light_block_dim: Block size of the per-object and per-slot kernels.
            heavy_block_dim: Block size of the per-bucket pair kernels.
        """
        field.set_stream(stream)
        field.set_block_dims(light_block_dim, heavy_block_dim)
        self.field = field
        self.collision_pairs: wp.array | None = None

    def set_cell_size(self, cell_size: float | None) -> SpatialPartitionLauncher:
        """Use a fixed cell size. ``None`` or a non-positive value estimates it from the largest radius."""
        self.field.set_cell_size(cell_size)
        return self

    def config_spatial_hash(self, origin) -> SpatialPartitionLauncher:
        """Set the corner of grid cell (0, 0, 0)."""
        self.field.set_origin(origin)
        return self

    def setup_spatial_data_structure(self, spheres: wp.array) -> SpatialPartitionLauncher:
        """Bin ``spheres`` into hash buckets, blocking on the cell size and unique bucket read-backs."""
        field = self.field
        self.collision_pairs = None
        field.begin(spheres)
        field.calculate_cell_size()
        field.fill_hash_cells()
        field.sort_hash_cells()
        field.count_collision_per_cell()
        return self

    def create_collision_pair_list(self, pairs: GrowableArray) -> SpatialPartitionLauncher:
        """Write every overlapping pair once into ``pairs``, resized to exactly the pair count."""
        self.collision_pairs = self.field.create_collision_pair_list(pairs)
        return self

    def apply_on_each_collision_pair(self, func: wp.Function, data: wp.array) -> SpatialPartitionLauncher:
        """Call the ``@wp.func`` ``func(id_low, id_high, data)`` on every pair of the last pair list."""
        if self.field.stage != PipelineStage.PAIRS or self.collision_pairs is None:
            raise RuntimeError("apply_on_each_collision_pair requires create_collision_pair_list to run first")
        with self.field.launch_scope():
            apply_on_each_collision_pair(func, self.collision_pairs, data, block_dim=self.field.light_block_dim)
        return self

    def wait(self) -> wp.array | None:
        """Block until the enqueued work has completed.

        Returns:
            The pairs written by :meth:`create_collision_pair_list`, or ``None`` if it has not run.
        """
        self.field.wait()
        return self.collision_pairs


class BroadPhaseSpatialHash:
    """Spatial hash broad phase with its own field and output buffer.

    Example:

    .. code-block:: python

        broad_phase = BroadPhaseSpatialHash(origin=(0.0, 0.0, 0.0))
        pairs = broad_phase.launch(make_spheres(centers, radii))
    """

    def __init__(
        self,
        origin=(0.0, 0.0, 0.0),
        cell_size: float | None = None,
        light_block_dim: int = 256,
        heavy_block_dim: int = 64,
        check_cell_size: bool = True,
        device=None,
    ):
        """
        Args:
            origin: Corner of grid cell (0, 0, 0).
            cell_size: Fixed cell size. ``None`` estimates it as 2.25 times the largest radius on every launch.
            light_block_dim: Block size of the per-object and per-slot kernels.
            heavy_block_dim: Block size of the per-bucket pair kernels.
            check_cell_size: Warn when a fixed cell size is smaller than the largest sphere diameter.
            device: Warp device. ``None`` uses the current device.
        """
        self.field = SpatialPartitionField(device=device, check_cell_size=check_cell_size)
        self.field.set_origin(origin)
        self.field.set_cell_size(cell_size)
        self.light_block_dim = light_block_dim
        self.heavy_block_dim = heavy_block_dim
        self.pairs = GrowableArray(wp.vec2i, device=self.field.device, name="collision_pairs")

    @property
    def device(self) -> wp.Device:
        return self.field.device

    @property
    def pair_count(self) -> int:
        return self.field.pair_count

    def launch(self, spheres: wp.array, stream: wp.Stream | None = None) -> wp.array:
        """Find all overlapping pairs of ``spheres``.

        Args:
            spheres: ``wp.array(dtype=Sphere)`` on the broad phase device.
            stream: Stream for all launches, or ``None`` for the current stream.

        Returns:
            ``wp.array(dtype=wp.vec2i)`` of canonical pairs ``(id_low, id_high)``. The array is a view
            into a buffer reused by the next launch.
        """
        return (
            SpatialPartitionLauncher(self.field, stream, self.light_block_dim, self.heavy_block_dim)
            .setup_spatial_data_structure(spheres)
            .create_collision_pair_list(self.pairs)
            .wait()
        )
