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
# containers
# ==================================================================================
from ._src.core import GrowableArray, HostReadback

__all__ = [
    "GrowableArray",
    "HostReadback",
]

# ==================================================================================
# logging
# ==================================================================================
from ._src.utils.logger import LogLevel, reset_log_level, set_log_header, set_log_level  # noqa: E402

__all__ += [
    "LogLevel",
    "reset_log_level",
    "set_log_header",
    "set_log_level",
]
