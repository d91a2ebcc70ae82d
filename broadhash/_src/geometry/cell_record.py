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

"""Cell records of the spatial partition and the pair ownership predicate.

Every object occupies its *home* cell (the cell holding its center) and up to
seven *phantom* cells: the neighbors its enlarged proxy sphere touches inside
the 2x2x2 block spanned by the home cell and the octant the center leans
toward. Each occupied cell yields one :class:`CellRecord`.

The 3-bit parity ``(i & 1) << 2 | (j & 1) << 1 | (k & 1)`` of a cell is its
*pass type*. Inside one 2x2x2 block every parity appears exactly once, so an
object's touched cells are fully described by its home parity, its octant and
the mask of parities it touches. Records carry this in a packed control word:

====== ============ ==================================================
 bits   field        meaning
====== ============ ==================================================
 0-2    pass_type    parity of the occupied cell
 3-5    home_type    parity of the object's home cell
 6-13   overlap      OR of ``1 << parity`` over all touched cells
 14-16  octant       per-axis direction of the block (bit set: +1)
====== ============ ==================================================

Axis 0 maps to bit 2, axis 1 to bit 1 and axis 2 to bit 0, in both the parity
and the octant fields.
"""

from __future__ import annotations

import warp as wp

wp.set_module_options({"enable_backward": False})

SLOTS_PER_OBJECT = 8
"""Records reserved per object: one home cell and up to seven phantom cells."""

PROXY_SCALE = 1.5
"""Radius scale of the proxy sphere used to select phantom cells."""

CELL_SIZE_SCALE = 1.5 * 1.5
"""Automatic cell size in units of the largest sphere radius."""

INVALID_BUCKET = 0x7FFFFFFF
"""Bucket of unused slots. Larger than every hash bucket so it sorts last."""

INVALID_OBJECT = -1
"""Object id of unused slots."""

_INVALID_BUCKET = wp.constant(INVALID_BUCKET)
_INVALID_OBJECT = wp.constant(INVALID_OBJECT)

_PASS_SHIFT = wp.constant(0)
_HOME_SHIFT = wp.constant(3)
_OVERLAP_SHIFT = wp.constant(6)
_OCTANT_SHIFT = wp.constant(14)


@wp.struct
class CellRecord:
    """
    One (cell, object) occupancy entry of the spatial partition.

    Attributes:
        bucket: Hash bucket of the occupied cell (``INVALID_BUCKET`` for unused slots)
        object_id: Index of the sphere (``INVALID_OBJECT`` for unused slots)
        control: Packed pass type, home type, overlap mask and octant
        cell_coord: Integer coordinate of the occupied cell
    """

    bucket: wp.int32
    object_id: wp.int32
    control: wp.uint32
    cell_coord: wp.vec3i


###
# Control word
###


@wp.func
def pass_type(ijk: wp.vec3i) -> int:
    """Parity signature of a cell coordinate, in ``[0, 8)``."""
    return ((ijk[0] & 1) << 2) | ((ijk[1] & 1) << 1) | (ijk[2] & 1)


@wp.func
def make_control(pass_t: int, home_t: int, overlap: int, octant: int) -> wp.uint32:
    return wp.uint32(
        (pass_t << _PASS_SHIFT) | (home_t << _HOME_SHIFT) | (overlap << _OVERLAP_SHIFT) | (octant << _OCTANT_SHIFT)
    )


@wp.func
def control_pass_type(control: wp.uint32) -> int:
    return (int(control) >> _PASS_SHIFT) & 0x7


@wp.func
def control_home_type(control: wp.uint32) -> int:
    return (int(control) >> _HOME_SHIFT) & 0x7


@wp.func
def control_overlap_mask(control: wp.uint32) -> int:
    return (int(control) >> _OVERLAP_SHIFT) & 0xFF


@wp.func
def control_octant(control: wp.uint32) -> int:
    return (int(control) >> _OCTANT_SHIFT) & 0x7


@wp.func
def axis_bit(value: int, axis: int) -> int:
    """Bit of a 3-bit parity or octant value that belongs to ``axis``."""
    return (value >> (2 - axis)) & 1


@wp.func
def octant_sign(octant: int, axis: int) -> int:
    if axis_bit(octant, axis) != 0:
        return 1
    return -1


###
# Records
###


@wp.func
def make_record(bucket: int, object_id: int, control: wp.uint32, ijk: wp.vec3i) -> CellRecord:
    r = CellRecord()
    r.bucket = wp.int32(bucket)
    r.object_id = wp.int32(object_id)
    r.control = control
    r.cell_coord = ijk
    return r


@wp.func
def invalid_record() -> CellRecord:
    return make_record(_INVALID_BUCKET, _INVALID_OBJECT, wp.uint32(0), wp.vec3i(-1, -1, -1))


@wp.func
def is_valid(r: CellRecord) -> bool:
    return r.object_id != _INVALID_OBJECT


@wp.func
def is_home(r: CellRecord) -> bool:
    return control_pass_type(r.control) == control_home_type(r.control)


@wp.func
def is_phantom(r: CellRecord) -> bool:
    return control_pass_type(r.control) != control_home_type(r.control)


@wp.func
def _block_axis(r: CellRecord, parity: int, axis: int) -> int:
    # On one axis a block spans {home, home + sign}; parity bits tell the two apart.
    sign = octant_sign(control_octant(r.control), axis)
    home_bit = axis_bit(control_home_type(r.control), axis)
    home = r.cell_coord[axis]
    if axis_bit(control_pass_type(r.control), axis) != home_bit:
        home = home - sign
    if axis_bit(parity, axis) == home_bit:
        return home
    return home + sign


@wp.func
def block_cell(r: CellRecord, parity: int) -> wp.vec3i:
    """Coordinate of the cell with the given parity in the 2x2x2 block of the record's object."""
    return wp.vec3i(_block_axis(r, parity, 0), _block_axis(r, parity, 1), _block_axis(r, parity, 2))


@wp.func
def home_cell(r: CellRecord) -> wp.vec3i:
    """Coordinate of the home cell of the record's object."""
    if is_home(r):
        return r.cell_coord
    return block_cell(r, control_home_type(r.control))


@wp.func
def same_cell(a: wp.vec3i, b: wp.vec3i) -> bool:
    return a[0] == b[0] and a[1] == b[1] and a[2] == b[2]


@wp.func
def may_ignore(a: CellRecord, b: CellRecord) -> bool:
    """Whether the bucket holding ``a`` and ``b`` may skip the pair.

    A pair is reported by exactly one bucket: the one of the lowest-parity cell
    both objects occupy. The pair is ignorable here when

    - the records come from different cells that only share a hash bucket, or
    - both objects also occupy one same cell whose parity is lower than the
      parity of this cell.

    The overlap masks name candidate parities; the cell itself is rebuilt from
    each record's home type and octant, since two objects leaning in opposite
    directions can touch different cells of equal parity.
    """
    if not same_cell(a.cell_coord, b.cell_coord):
        return True

    pass_t = control_pass_type(a.control)
    common = control_overlap_mask(a.control) & control_overlap_mask(b.control)

    ignore = bool(False)
    for parity in range(pass_t):
        if ((common >> parity) & 1) != 0:
            if same_cell(block_cell(a, parity), block_cell(b, parity)):
                ignore = True
    return ignore
