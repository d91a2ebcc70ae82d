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

from .broad_phase_spatial_hash import BroadPhaseSpatialHash, SpatialPartitionLauncher
from .cell_record import (
    CELL_SIZE_SCALE,
    INVALID_BUCKET,
    INVALID_OBJECT,
    PROXY_SCALE,
    SLOTS_PER_OBJECT,
    CellRecord,
)
from .collide import Sphere, make_spheres, sphere_aabb_overlap, sphere_sphere_overlap
from .collision_pair import CollisionPair, collision_pairs_to_host, make_collision_pair, sort_collision_pairs
from .pair_visitor import apply_on_each_collision_pair, create_pair_visitor_kernel
from .spatial_hash import HASH_MODULUS, SpatialHashConfig, make_spatial_hash_config
from .spatial_partition import PairPassMode, PipelineStage, SpatialPartitionField

__all__ = [
    "CELL_SIZE_SCALE",
    "HASH_MODULUS",
    "INVALID_BUCKET",
    "INVALID_OBJECT",
    "PROXY_SCALE",
    "SLOTS_PER_OBJECT",
    "BroadPhaseSpatialHash",
    "CellRecord",
    "CollisionPair",
    "PairPassMode",
    "PipelineStage",
    "SpatialHashConfig",
    "SpatialPartitionField",
    "SpatialPartitionLauncher",
    "Sphere",
    "apply_on_each_collision_pair",
    "collision_pairs_to_host",
    "create_pair_visitor_kernel",
    "make_collision_pair",
    "make_spatial_hash_config",
    "make_spheres",
    "sort_collision_pairs",
    "sphere_aabb_overlap",
    "sphere_sphere_overlap",
]
