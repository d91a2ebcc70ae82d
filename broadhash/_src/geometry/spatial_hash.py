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

"""Uniform spatial hashing of 3D positions.

Space is cut into cubic cells of edge ``cell_size`` anchored at ``origin``. A cell
is addressed by its integer coordinate ``(i, j, k)`` and hashed to a bucket in
``[0, HASH_MODULUS)``. Distinct cells may share a bucket; consumers that need the
cell identity compare coordinates.
"""

from __future__ import annotations

import math

import warp as wp

wp.set_module_options({"enable_backward": False})

HASH_MODULUS = 1 << 30
"""Number of hash buckets. Bucket ids always fit in a non-negative int32."""

_HASH_MASK = wp.constant(wp.uint32(HASH_MODULUS - 1))

# Per-axis multipliers of the Teschner et al. spatial hash
_HASH_PRIME_I = wp.constant(wp.uint32(73856093))
_HASH_PRIME_J = wp.constant(wp.uint32(19349663))
_HASH_PRIME_K = wp.constant(wp.uint32(83492791))


@wp.struct
class SpatialHashConfig:
    """
    Device-side spatial hash parameters.

    Attributes:
        cell_size: Edge length of a grid cell (positive)
        origin: World-space position of the corner of cell (0, 0, 0)
    """

    cell_size: float
    origin: wp.vec3


@wp.func
def cell_of(config: SpatialHashConfig, position: wp.vec3) -> wp.vec3i:
    """Integer coordinate of the cell containing ``position``."""
    rel = (position - config.origin) / config.cell_size
    return wp.vec3i(int(wp.floor(rel[0])), int(wp.floor(rel[1])), int(wp.floor(rel[2])))


@wp.func
def hash_of(ijk: wp.vec3i) -> int:
    """Hash bucket of a cell coordinate. Sensitive to the order of the components."""
    h = (
        (wp.uint32(ijk[0]) * _HASH_PRIME_I)
        ^ (wp.uint32(ijk[1]) * _HASH_PRIME_J)
        ^ (wp.uint32(ijk[2]) * _HASH_PRIME_K)
    )
    return int(h & _HASH_MASK)


@wp.func
def cell_min_corner(config: SpatialHashConfig, ijk: wp.vec3i) -> wp.vec3:
    return config.origin + config.cell_size * wp.vec3(float(ijk[0]), float(ijk[1]), float(ijk[2]))


@wp.func
def cell_center(config: SpatialHashConfig, ijk: wp.vec3i) -> wp.vec3:
    return config.origin + config.cell_size * wp.vec3(
        float(ijk[0]) + 0.5, float(ijk[1]) + 0.5, float(ijk[2]) + 0.5
    )


def make_spatial_hash_config(cell_size: float, origin) -> SpatialHashConfig:
    """Create a :class:`SpatialHashConfig` after validating its values on the host.

    Args:
        cell_size: Edge length of a grid cell. Must be positive and finite.
        origin: Corner of cell (0, 0, 0), any 3-sequence or ``wp.vec3``.

    Raises:
        ValueError: If ``cell_size`` is not positive and finite, or ``origin`` is not a finite 3-vector.
    """
    cell_size = float(cell_size)
    if not (math.isfinite(cell_size) and cell_size > 0.0):
        raise ValueError(f"cell_size must be positive and finite, got {cell_size}")

    origin = [float(x) for x in origin]
    if len(origin) != 3 or not all(math.isfinite(x) for x in origin):
        raise ValueError(f"origin must be a finite 3-vector, got {origin}")

    config = SpatialHashConfig()
    config.cell_size = cell_size
    config.origin = wp.vec3(*origin)
    return config
