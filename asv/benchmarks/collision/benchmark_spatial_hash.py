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

"""ASV benchmarks for the spatial hash broad phase.

Measures:
1. Full pipeline time (setup and pair list) for uniformly scattered spheres
2. Pair list creation alone on a prepared spatial partition
"""

import numpy as np
import warp as wp
from asv_runner.benchmarks.mark import skip_benchmark_if

wp.config.quiet = True

from broadhash._src.geometry.spatial_partition import PipelineStage
from broadhash.geometry import SpatialPartitionField, SpatialPartitionLauncher, make_spheres
from broadhash.utils import GrowableArray


def scatter_spheres(num_spheres: int, density: float, device):
    """Uniform random spheres in a cube sized so that ``density`` spheres share a unit volume."""
    rng = np.random.Generator(np.random.PCG64(42))
    extent = (num_spheres / density) ** (1.0 / 3.0)
    centers = rng.uniform(0.0, extent, size=(num_spheres, 3))
    radii = rng.uniform(0.05, 0.25, size=num_spheres)
    return make_spheres(centers, radii, device=device)


class FastSpatialHashPipeline:
    """Benchmark the full spatial hash pipeline."""

    repeat = 3
    number = 1
    params = [[10_000, 100_000, 1_000_000], [1.0, 8.0]]
    param_names = ["num_spheres", "density"]

    def setup(self, num_spheres, density):
        self.device = wp.get_device("cuda:0")
        self.spheres = scatter_spheres(num_spheres, density, self.device)
        self.field = SpatialPartitionField(device=self.device)
        self.pairs = GrowableArray(wp.vec2i, device=self.device)

        # Warm up, also grows all buffers to their final size
        self.run()

    def run(self):
        (
            SpatialPartitionLauncher(self.field)
            .config_spatial_hash((0.0, 0.0, 0.0))
            .setup_spatial_data_structure(self.spheres)
            .create_collision_pair_list(self.pairs)
            .wait()
        )

    @skip_benchmark_if(wp.get_cuda_device_count() == 0)
    def time_pipeline(self, num_spheres, density):
        self.run()


class FastSpatialHashPairList:
    """Benchmark the count and emit passes on a prepared spatial partition."""

    repeat = 3
    number = 1
    params = [[100_000, 1_000_000], [1.0, 8.0]]
    param_names = ["num_spheres", "density"]

    def setup(self, num_spheres, density):
        self.device = wp.get_device("cuda:0")
        self.spheres = scatter_spheres(num_spheres, density, self.device)
        self.field = SpatialPartitionField(device=self.device)
        self.pairs = GrowableArray(wp.vec2i, device=self.device)
        self.launcher = SpatialPartitionLauncher(self.field).config_spatial_hash((0.0, 0.0, 0.0))
        self.launcher.setup_spatial_data_structure(self.spheres).create_collision_pair_list(self.pairs).wait()

    @skip_benchmark_if(wp.get_cuda_device_count() == 0)
    def time_create_collision_pair_list(self, num_spheres, density):
        # Rewind to the counted stage; the partition itself is unchanged
        self.field.stage = PipelineStage.COUNTED
        self.launcher.create_collision_pair_list(self.pairs).wait()


if __name__ == "__main__":
    import argparse
    import itertools
    import time

    benchmark_list = {
        "FastSpatialHashPipeline": FastSpatialHashPipeline,
        "FastSpatialHashPairList": FastSpatialHashPairList,
    }

    parser = argparse.ArgumentParser(formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument(
        "-b", "--bench", default=None, action="append", choices=benchmark_list.keys(), help="Run a single benchmark."
    )
    args = parser.parse_known_args()[0]

    if args.bench is None:
        benchmarks = benchmark_list.keys()
    else:
        benchmarks = args.bench

    for key in benchmarks:
        benchmark = benchmark_list[key]
        for params in itertools.product(*benchmark.params):
            instance = benchmark()
            instance.setup(*params)
            for name in dir(instance):
                if not name.startswith("time_"):
                    continue
                start = time.perf_counter()
                getattr(instance, name)(*params)
                elapsed = time.perf_counter() - start
                print(f"{key}.{name}{params}: {elapsed * 1000.0:.3f} ms")
