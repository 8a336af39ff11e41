"""
Bit-level packing shared by the MML2 mesh, texture and animation codecs.

Layouts handled here:
- 10-bit signed fields (vertex axes, rotation axes). Bit 9 carries -512,
  bits 0..8 the positive remainder, so the value range is -512..511.
- Packed vertex dword: x | y << 10 | z << 20, bit 30 set when the vertex was
  halved to fit.
- Face dword: four 7-bit corner indices at bits 0, 7, 14, 21 plus a material
  index at bit 28.
- Texel: 5-5-5 BGR with bit 15 as the visibility flag.
- Bitfield: one flag per compression token, MSB-first inside little-endian
  32-bit words.
"""

from __future__ import annotations

import math
import struct
from typing import List, Optional, Sequence, Tuple

from mml2_errors import EncodingError, FieldOverflow, FormatError, TooManyVerticesError

FIELD_MASK = 0x3FF
FIELD_MSB = 0x200
FIELD_LOW = 0x1FF
FIELD_MIN = -512
FIELD_MAX = 511

HALF_SCALE_BIT = 1 << 30

FACE_MASK = 0x7F
FACE_MATERIAL_SHIFT = 28

# Full-scale angle for each rotation magnitude class.
ROTATION_RANGES = (90.0, 180.0, 360.0, 720.0)


def encode_signed_field(value: int, strict: bool = True) -> int:
    if value < 0:
        if value < FIELD_MIN:
            if strict:
                raise FieldOverflow(f"{value} is below {FIELD_MIN}")
            return FIELD_MASK
        return FIELD_MSB | (512 + value)
    if value > FIELD_MAX:
        if strict:
            raise FieldOverflow(f"{value} is above {FIELD_MAX}")
        return FIELD_LOW
    return value


def decode_signed_field(code: int) -> int:
    code &= FIELD_MASK
    return -(code & FIELD_MSB) + (code & FIELD_LOW)


def _pack_fields(x: int, y: int, z: int, strict: bool) -> int:
    return (
        encode_signed_field(x, strict)
        | (encode_signed_field(y, strict) << 10)
        | (encode_signed_field(z, strict) << 20)
    )


def encode_vertex(x: int, y: int, z: int, strict: bool = True) -> int:
    """Pack a model-space vertex, halving it (and flagging bit 30) when an axis overflows."""
    try:
        return _pack_fields(x, y, z, strict)
    except FieldOverflow:
        pass
    hx = int(math.floor(x / 2))
    hy = int(math.floor(y / 2))
    hz = int(math.floor(z / 2))
    try:
        return _pack_fields(hx, hy, hz, strict) | HALF_SCALE_BIT
    except FieldOverflow as e:
        raise EncodingError((x, y, z)) from e


def vertex_scale(scale_byte: int) -> float:
    if scale_byte == -1:
        return 0.5
    return float(1 << scale_byte)


def decode_vertex(dword: int, scale: float = 1) -> Tuple[float, float, float]:
    mult = scale * 2 if (dword & HALF_SCALE_BIT) else scale
    return (
        decode_signed_field(dword) * mult,
        decode_signed_field(dword >> 10) * mult,
        decode_signed_field(dword >> 20) * mult,
    )


def pack_face(a: int, b: int, c: int, d: int = 0, material: int = 0) -> int:
    for idx in (a, b, c, d):
        if idx < 0:
            raise FormatError(f"Negative face index {idx}")
        if idx > FACE_MASK:
            raise TooManyVerticesError(idx + 1)
    return (
        (a & FACE_MASK)
        | ((b & FACE_MASK) << 7)
        | ((c & FACE_MASK) << 14)
        | ((d & FACE_MASK) << 21)
        | ((material & 0x7) << FACE_MATERIAL_SHIFT)
    )


def unpack_face(dword: int) -> Tuple[int, int, int, int, int]:
    return (
        dword & FACE_MASK,
        (dword >> 7) & FACE_MASK,
        (dword >> 14) & FACE_MASK,
        (dword >> 21) & FACE_MASK,
        (dword >> FACE_MATERIAL_SHIFT) & 0x3,
    )


def encode_texel(r, g, b, a):
    """Pack RGBA8 into a 15-bit texel plus visibility bit. Accepts ints or numpy arrays."""
    return ((r >> 3) & 0x1F) | (((g >> 3) & 0x1F) << 5) | (((b >> 3) & 0x1F) << 10) | (0x8000 * (a != 0))


def decode_texel(texel: int) -> Tuple[int, int, int, int]:
    r = (texel & 0x1F) << 3
    g = ((texel >> 5) & 0x1F) << 3
    b = ((texel >> 10) & 0x1F) << 3
    a = 255 if (texel & 0x8000) else 0
    return r, g, b, a


def decode_rotation(dword: int) -> Tuple[float, float, float]:
    """Return XYZ Euler angles in radians, with X and Y flipped into the viewer's axes."""
    full = ROTATION_RANGES[(dword >> 30) & 0x3]
    rx = decode_signed_field(dword) / 512.0 * full
    ry = decode_signed_field(dword >> 10) / 512.0 * full
    rz = decode_signed_field(dword >> 20) / 512.0 * full
    return -math.radians(rx), -math.radians(ry), math.radians(rz)


def euler_to_quaternion(x: float, y: float, z: float) -> Tuple[float, float, float, float]:
    # Intrinsic XYZ order, returned as (x, y, z, w).
    c1, c2, c3 = math.cos(x / 2), math.cos(y / 2), math.cos(z / 2)
    s1, s2, s3 = math.sin(x / 2), math.sin(y / 2), math.sin(z / 2)
    qx = s1 * c2 * c3 + c1 * s2 * s3
    qy = c1 * s2 * c3 - s1 * c2 * s3
    qz = c1 * c2 * s3 + s1 * s2 * c3
    qw = c1 * c2 * c3 - s1 * s2 * s3
    n = math.sqrt(qx * qx + qy * qy + qz * qz + qw * qw)
    if n == 0:
        return 0.0, 0.0, 0.0, 1.0
    return qx / n, qy / n, qz / n, qw / n


def pack_bitfield(bits: Sequence[bool]) -> bytes:
    out = bytearray()
    for i in range(0, len(bits), 32):
        word = 0
        for j, bit in enumerate(bits[i : i + 32]):
            if bit:
                word |= 0x80000000 >> j
        out.extend(struct.pack("<I", word))
    return bytes(out)


def unpack_bitfield(data: bytes, count: Optional[int] = None) -> List[bool]:
    bits: List[bool] = []
    for off in range(0, len(data) - 3, 4):
        word = struct.unpack_from("<I", data, off)[0]
        for j in range(32):
            bits.append(bool(word & (0x80000000 >> j)))
    if count is not None:
        return bits[:count]
    return bits
