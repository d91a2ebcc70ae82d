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

"""Bounding-volume primitives and the overlap predicates used by the broad phase.

The predicates are closed tests: touching volumes count as overlapping.
"""

from __future__ import annotations

import numpy as np
import warp as wp

wp.set_module_options({"enable_backward": False})


@wp.struct
class Sphere:
    """
    A bounding sphere.

    Attributes:
        center: Center of the sphere in world space
        radius: Radius of the sphere (non-negative)
    """

    center: wp.vec3
    radius: float


@wp.func
def sphere_sphere_overlap(a: Sphere, b: Sphere) -> bool:
    r = a.radius + b.radius
    return wp.length_sq(a.center - b.center) <= r * r


@wp.func
def sphere_aabb_overlap(s: Sphere, lower: wp.vec3, upper: wp.vec3) -> bool:
    """Test a sphere against an axis-aligned box given by its min and max corners."""
    closest = wp.vec3(
        wp.clamp(s.center[0], lower[0], upper[0]),
        wp.clamp(s.center[1], lower[1], upper[1]),
        wp.clamp(s.center[2], lower[2], upper[2]),
    )
    return wp.length_sq(s.center - closest) <= s.radius * s.radius


@wp.kernel
def _pack_spheres_kernel(
    centers: wp.array(dtype=wp.vec3),
    radii: wp.array(dtype=float),
    # Outputs
    spheres: wp.array(dtype=Sphere),
):
    tid = wp.tid()
    s = Sphere()
    s.center = centers[tid]
    s.radius = radii[tid]
    spheres[tid] = s


def make_spheres(centers, radii, device=None) -> wp.array:
    """Build a device array of :class:`Sphere` from host centers and radii.

    Args:
        centers: Array-like of shape ``(n, 3)`` (numpy, list or ``wp.array(dtype=wp.vec3)``).
        radii: Array-like of shape ``(n,)`` or a single radius shared by all spheres.
        device: Warp device for the result. ``None`` uses the device of ``centers`` if it
            is a Warp array, else the current device.

    Returns:
        ``wp.array(dtype=Sphere)`` of length ``n``.
    """
    if isinstance(centers, wp.array):
        if device is None:
            device = centers.device
        centers = centers.numpy()

    centers_np = np.asarray(centers, dtype=np.float32).reshape(-1, 3)
    count = centers_np.shape[0]

    if isinstance(radii, wp.array):
        radii = radii.numpy()
    radii_np = np.asarray(radii, dtype=np.float32)
    if radii_np.ndim == 0:
        radii_np = np.full(count, radii_np, dtype=np.float32)
    if radii_np.shape != (count,):
        raise ValueError(f"radii must have shape ({count},), got {radii_np.shape}")
    if np.any(radii_np < 0.0):
        raise ValueError("radii must be non-negative")

    device = wp.get_device(device)
    spheres = wp.empty(count, dtype=Sphere, device=device)
    if count > 0:
        wp.launch(
            _pack_spheres_kernel,
            dim=count,
            inputs=[
                wp.array(centers_np, dtype=wp.vec3, device=device),
                wp.array(radii_np, dtype=float, device=device),
            ],
            outputs=[spheres],
            device=device,
        )
    return spheres
