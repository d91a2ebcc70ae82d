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

"""Collision pairs produced by the broad phase.

On device a pair is a ``wp.vec2i`` holding ``(id_low, id_high)`` with
``id_low < id_high``. On the host pairs are :class:`CollisionPair` tuples, which
order lexicographically.
"""

from __future__ import annotations

from typing import NamedTuple

import numpy as np
import warp as wp

wp.set_module_options({"enable_backward": False})


class CollisionPair(NamedTuple):
    """An unordered pair of object ids stored in canonical order."""

    id_low: int
    id_high: int

    def __str__(self) -> str:
        return f"({self.id_low},{self.id_high})"


@wp.func
def make_collision_pair(a: int, b: int) -> wp.vec2i:
    """Canonical pair of two distinct object ids."""
    return wp.vec2i(wp.min(a, b), wp.max(a, b))


@wp.kernel
def _pair_sort_keys_kernel(
    pairs: wp.array(dtype=wp.vec2i),
    # Outputs
    keys: wp.array(dtype=wp.int64),
    order: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    p = pairs[tid]
    keys[tid] = (wp.int64(p[0]) << wp.int64(32)) | wp.int64(p[1])
    order[tid] = tid


@wp.kernel
def _gather_pairs_kernel(
    pairs: wp.array(dtype=wp.vec2i),
    order: wp.array(dtype=wp.int32),
    # Outputs
    sorted_pairs: wp.array(dtype=wp.vec2i),
):
    tid = wp.tid()
    sorted_pairs[tid] = pairs[order[tid]]


def sort_collision_pairs(pairs: wp.array) -> wp.array:
    """Return a copy of ``pairs`` sorted lexicographically on the device of ``pairs``.

    The broad phase emits pairs grouped by bucket; sorting gives an order that
    does not depend on the hash layout.
    """
    count = pairs.shape[0]
    device = pairs.device
    sorted_pairs = wp.empty(count, dtype=wp.vec2i, device=device)
    if count == 0:
        return sorted_pairs

    # radix_sort_pairs needs twice the element count as scratch space
    keys = wp.empty(2 * count, dtype=wp.int64, device=device)
    order = wp.empty(2 * count, dtype=wp.int32, device=device)
    wp.launch(_pair_sort_keys_kernel, dim=count, inputs=[pairs], outputs=[keys, order], device=device)
    wp.utils.radix_sort_pairs(keys, order, count)
    wp.launch(_gather_pairs_kernel, dim=count, inputs=[pairs, order], outputs=[sorted_pairs], device=device)
    return sorted_pairs


def collision_pairs_to_host(pairs) -> list[CollisionPair]:
    """Copy device pairs to a sorted list of :class:`CollisionPair`."""
    if isinstance(pairs, wp.array):
        pairs = pairs.numpy()
    pairs = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
    return sorted(CollisionPair(int(a), int(b)) for a, b in pairs)
