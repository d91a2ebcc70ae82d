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

"""Kernels that apply a user function to every collision pair on the device."""

import warp as wp

# One kernel per (func, data dtype); entries are never evicted, so the cache grows with every distinct visitor
_VISITOR_KERNELS = {}


def create_pair_visitor_kernel(func: wp.Function, data_dtype):
    """Create (or fetch) a kernel that calls ``func(id_low, id_high, data)`` once per pair.

    Args:
        func: A ``@wp.func`` taking two ``int`` object ids and a ``wp.array(dtype=data_dtype)``.
        data_dtype: Element type of the user data array passed through to ``func``.

    Returns:
        A Warp kernel with inputs ``(pairs: wp.array(dtype=wp.vec2i), data: wp.array(dtype=data_dtype))``.
    """
    key = (func.key, data_dtype)
    kernel = _VISITOR_KERNELS.get(key)
    if kernel is not None:
        return kernel

    @wp.kernel(module="unique", enable_backward=False)
    def visit_collision_pairs(
        pairs: wp.array(dtype=wp.vec2i),
        data: wp.array(dtype=data_dtype),
    ):
        tid = wp.tid()
        p = pairs[tid]
        func(p[0], p[1], data)

    _VISITOR_KERNELS[key] = visit_collision_pairs
    return visit_collision_pairs


def apply_on_each_collision_pair(func: wp.Function, pairs: wp.array, data: wp.array, block_dim: int = 256):
    """Launch ``func`` on every pair of ``pairs``, in no particular order.

    ``func`` runs concurrently for different pairs, so writes to ``data`` that
    several pairs can reach must be atomic.
    """
    if pairs.device != data.device:
        raise ValueError(f"pairs are on device {pairs.device}, but data is on {data.device}")
    count = pairs.shape[0]
    if count == 0:
        return
    kernel = create_pair_visitor_kernel(func, data.dtype)
    wp.launch(kernel, dim=count, inputs=[pairs, data], block_dim=block_dim, device=pairs.device)
