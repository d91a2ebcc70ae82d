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

"""Grow-only device arrays with a logical length.

The broad phase rebuilds its acceleration structure every call. Reallocating
every intermediate array each time would dominate small scenes, so the arrays
are arena-style: the storage only ever grows, and a separate logical length
says how much of it the current call uses.
"""

from __future__ import annotations

import numpy as np
import warp as wp

from ..utils import logger as msg


class GrowableArray:
    """A device array whose storage grows on demand and never shrinks.

    Attributes:
        dtype: Warp element type of the array.
        device: The Warp device holding the storage.
    """

    def __init__(self, dtype, capacity: int = 0, device=None, name: str | None = None):
        """Allocate the storage.

        Args:
            dtype: Warp element type (scalar, vector or struct).
            capacity: Initial number of elements to reserve.
            device: Warp device (e.g., "cuda:0", "cpu"). ``None`` uses the current device.
            name: Optional name used in log messages.
        """
        if capacity < 0:
            raise ValueError(f"GrowableArray: capacity must be non-negative, got {capacity}")
        self.dtype = dtype
        self.device = wp.get_device(device)
        self.name = name or "array"
        self._len = 0
        self._data = wp.empty(capacity, dtype=dtype, device=self.device)

    def __len__(self) -> int:
        return self._len

    @property
    def capacity(self) -> int:
        """Number of elements the storage can hold without reallocating."""
        return self._data.shape[0]

    @property
    def storage(self) -> wp.array:
        """The full underlying storage, ``capacity`` elements long."""
        return self._data

    @property
    def array(self) -> wp.array:
        """A view of the first ``len`` elements."""
        if self._len == self.capacity:
            return self._data
        return self._data[: self._len]

    def ensure_capacity(self, n: int) -> bool:
        """Grow the storage to hold at least ``n`` elements.

        Existing contents are not preserved when the storage is reallocated.

        Returns:
            True if the storage was reallocated.
        """
        if n < 0:
            raise ValueError(f"GrowableArray: requested capacity must be non-negative, got {n}")
        if n <= self.capacity:
            return False
        msg.debug(f"Growing {self.name} from {self.capacity} to {n} elements on {self.device}")
        self._data = wp.empty(n, dtype=self.dtype, device=self.device)
        return True

    def resize(self, n: int):
        """Set the logical length to ``n``, growing the storage if needed."""
        self.ensure_capacity(n)
        self._len = n

    def clear(self):
        """Reset the logical length to zero, keeping the storage."""
        self._len = 0

    def fill_(self, value):
        """Fill the first ``len`` elements with ``value``."""
        if self._len > 0:
            self.array.fill_(value)

    def numpy(self) -> np.ndarray:
        """Copy the first ``len`` elements to a NumPy array."""
        return self.array.numpy()
