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

from ._src.geometry import (
    BroadPhaseSpatialHash,
    SpatialPartitionField,
    SpatialPartitionLauncher,
    apply_on_each_collision_pair,
    collision_pairs_to_host,
    make_spheres,
    sort_collision_pairs,
    sphere_aabb_overlap,
    sphere_sphere_overlap,
)
from ._src.geometry.cell_record import (
    is_home,
    is_phantom,
    is_valid,
    may_ignore,
    pass_type,
)
from ._src.geometry.spatial_hash import cell_center, cell_min_corner, cell_of, hash_of, make_spatial_hash_config

__all__ = [
    "BroadPhaseSpatialHash",
    "SpatialPartitionField",
    "SpatialPartitionLauncher",
    "apply_on_each_collision_pair",
    "cell_center",
    "cell_min_corner",
    "cell_of",
    "collision_pairs_to_host",
    "hash_of",
    "is_home",
    "is_phantom",
    "is_valid",
    "make_spatial_hash_config",
    "make_spheres",
    "may_ignore",
    "pass_type",
    "sort_collision_pairs",
    "sphere_aabb_overlap",
    "sphere_sphere_overlap",
]
