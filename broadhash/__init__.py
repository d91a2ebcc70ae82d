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

# ==================================================================================
# core
# ==================================================================================
from ._src.core import GrowableArray
from ._version import __version__

__all__ = [
    "GrowableArray",
    "__version__",
]

# ==================================================================================
# geometry
# ==================================================================================
from ._src.geometry import (  # noqa: E402
    INVALID_BUCKET,
    INVALID_OBJECT,
    SLOTS_PER_OBJECT,
    BroadPhaseSpatialHash,
    CellRecord,
    CollisionPair,
    SpatialHashConfig,
    SpatialPartitionField,
    SpatialPartitionLauncher,
    Sphere,
)

__all__ += [
    "INVALID_BUCKET",
    "INVALID_OBJECT",
    "SLOTS_PER_OBJECT",
    "BroadPhaseSpatialHash",
    "CellRecord",
    "CollisionPair",
    "SpatialHashConfig",
    "SpatialPartitionField",
    "SpatialPartitionLauncher",
    "Sphere",
]

# ==================================================================================
# submodule APIs
# ==================================================================================
from . import geometry, utils  # noqa: E402

__all__ += [
    "geometry",
    "utils",
]
