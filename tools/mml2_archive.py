"""
Player archive containers.

PL00T (textures): a 0x30-byte TextureHeader, the compression bitfield and the
token payload for the body texture; the secondary palette block on the next
0x800 boundary; then the face texture entry on the following boundary.

PL00P010 (model): a 0x30-byte file header followed by the model blob. Only
the blob from 0x80 onward is replaced; its leading bytes belong to the
original file.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional, Tuple

from mml2_compress import compress, decompress_stream
from mml2_errors import FormatError, NoSpaceError
from mml2_texture import IMAGE_SIZE, PALETTE_COLORS, PALETTE_SIZE, TEXTURE_HEADER_SIZE, TextureHeader

log = logging.getLogger(__name__)

ARCHIVE_STRIDE = 0x800
BODY_HEADER_OFFSET = 0x0000
FACE_HEADER_OFFSET = 0x3800
SECONDARY_PALETTE = (0x3000, 0x30B0)
SPECIAL_WEAPON_SIZE = 0x4000
SPECIAL_WEAPON_OFFSET = IMAGE_SIZE - SPECIAL_WEAPON_SIZE

MODEL_FILE_HEADER = 0x30
MODEL_SPLICE_START = 0x80


def _align(ofs: int, stride: int = ARCHIVE_STRIDE) -> int:
    return (ofs + stride - 1) // stride * stride


def build_texture_entry(header: TextureHeader, texture: bytes) -> bytes:
    """Compress `palette + image` behind a copy of `header` with sizes filled in."""
    bitfield, payload = compress(texture)
    if len(bitfield) > 0xFFFF:
        raise NoSpaceError(f"Bitfield of 0x{len(bitfield):X} bytes does not fit the header")
    hdr = dataclasses.replace(
        header,
        full_size=len(texture),
        color_count=PALETTE_COLORS,
        bitfield_size=len(bitfield),
    )
    log.debug("Texture entry: 0x%X -> 0x%X bytes", len(texture), TEXTURE_HEADER_SIZE + len(bitfield) + len(payload))
    return hdr.pack() + bitfield + payload


def _read_entry(data: bytes, offset: int) -> Tuple[TextureHeader, bytes, int]:
    header = TextureHeader.read(data, offset)
    bits_ofs = offset + TEXTURE_HEADER_SIZE
    payload_ofs = bits_ofs + header.bitfield_size
    if payload_ofs > len(data):
        raise FormatError(f"Texture entry at 0x{offset:X} has bitfield past end of data")
    texture, used = decompress_stream(data[bits_ofs:payload_ofs], data[payload_ofs:], header.full_size)
    return header, texture, payload_ofs + used


def read_texture_entry(data: bytes, offset: int = 0) -> Tuple[TextureHeader, bytes]:
    header, texture, _ = _read_entry(data, offset)
    return header, texture


def split_texture(texture: bytes) -> Tuple[bytes, bytes]:
    return texture[:PALETTE_SIZE], texture[PALETTE_SIZE : PALETTE_SIZE + IMAGE_SIZE]


def apply_special_weapon(face_img: bytes, special_weapon: bytes) -> bytes:
    """Replace the lower half of the face page with the special-weapon strip (last 0x4000 bytes)."""
    if len(special_weapon) < SPECIAL_WEAPON_SIZE:
        raise FormatError(f"Special weapon source needs 0x{SPECIAL_WEAPON_SIZE:X} bytes, got 0x{len(special_weapon):X}")
    strip = special_weapon[-SPECIAL_WEAPON_SIZE:]
    return face_img[:SPECIAL_WEAPON_OFFSET] + strip + face_img[SPECIAL_WEAPON_OFFSET + SPECIAL_WEAPON_SIZE :]


def build_texture_archive(
    template: bytes,
    body: Tuple[bytes, bytes],
    face: Tuple[bytes, bytes],
    special_weapon: Optional[bytes] = None,
) -> bytes:
    """Rebuild PL00T from encoded `(palette, image)` pairs, keeping the template's headers and palette block."""
    if len(template) < FACE_HEADER_OFFSET + TEXTURE_HEADER_SIZE:
        raise FormatError(f"Texture archive template is only 0x{len(template):X} bytes")
    body_header = TextureHeader.read(template, BODY_HEADER_OFFSET)
    face_header = TextureHeader.read(template, FACE_HEADER_OFFSET)
    palette_block = template[SECONDARY_PALETTE[0] : SECONDARY_PALETTE[1]]

    body_pal, body_img = body
    face_pal, face_img = face
    if special_weapon is not None:
        face_img = apply_special_weapon(face_img, special_weapon)

    parts = [
        build_texture_entry(body_header, body_pal + body_img),
        palette_block,
        build_texture_entry(face_header, face_pal + face_img),
    ]

    out = bytearray(len(template))
    ofs = 0
    for i, part in enumerate(parts):
        if i:
            ofs = _align(ofs)
        if ofs + len(part) > len(out):
            raise NoSpaceError(f"Texture archive part {i} (0x{len(part):X} bytes at 0x{ofs:X}) overflows 0x{len(out):X}")
        out[ofs : ofs + len(part)] = part
        ofs += len(part)
    return bytes(out)


def read_texture_archive(data: bytes) -> Tuple[Tuple[TextureHeader, bytes], Tuple[TextureHeader, bytes]]:
    """Return the body and face entries; the face entry follows the palette block on 0x800 boundaries."""
    body_header, body_tex, end = _read_entry(data, BODY_HEADER_OFFSET)
    ofs = _align(_align(end) + (SECONDARY_PALETTE[1] - SECONDARY_PALETTE[0]))
    face_header, face_tex, _ = _read_entry(data, ofs)
    return (body_header, body_tex), (face_header, face_tex)


def splice_model(template: bytes, model: bytes) -> bytes:
    """Copy `model[0x80:]` into the archive at `+0x30`, leaving everything else from `template`."""
    end = MODEL_FILE_HEADER + len(model)
    if end > len(template):
        raise NoSpaceError(f"Model of 0x{len(model):X} bytes does not fit archive of 0x{len(template):X}")
    out = bytearray(template)
    out[MODEL_FILE_HEADER + MODEL_SPLICE_START : end] = model[MODEL_SPLICE_START:]
    return bytes(out)
