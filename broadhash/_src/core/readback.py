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

"""Explicit host synchronization points for scalar results computed on device."""

from __future__ import annotations

import warp as wp


class HostReadback:
    """Handle to one scalar being copied from a device array to the host.

    The copy is enqueued on the stream at construction time. :meth:`wait` blocks
    the calling thread until the copy has landed and returns the value. On CUDA
    devices the destination is pinned host memory and completion is tracked with
    a stream event, so work enqueued before :meth:`wait` keeps the GPU busy.
    """

    def __init__(self, src: wp.array, index: int = 0, stream: wp.Stream | None = None):
        """Enqueue the copy of ``src[index]``.

        Args:
            src: One-dimensional device array holding the value.
            index: Element of ``src`` to read.
            stream: Stream to enqueue the copy on. ``None`` uses the current stream of ``src.device``.
        """
        if index < 0 or index >= src.shape[0]:
            raise IndexError(f"HostReadback: index {index} out of range for array of length {src.shape[0]}")

        device = src.device
        self._host = wp.empty(1, dtype=src.dtype, device="cpu", pinned=device.is_cuda)
        self._event = None
        self._value = None

        if device.is_cuda:
            if stream is None:
                stream = wp.get_stream(device)
            wp.copy(self._host, src, src_offset=index, count=1, stream=stream)
            self._event = stream.record_event()
        else:
            wp.copy(self._host, src, src_offset=index, count=1)

    def wait(self):
        """Block until the value is available on the host and return it."""
        if self._value is None:
            if self._event is not None:
                wp.synchronize_event(self._event)
                self._event = None
            self._value = self._host.numpy()[0].item()
        return self._value
