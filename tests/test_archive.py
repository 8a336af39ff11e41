import random

import numpy as np
import pytest

from mml2_archive import (
    FACE_HEADER_OFFSET,
    SPECIAL_WEAPON_SIZE,
    build_texture_archive,
    build_texture_entry,
    read_texture_archive,
    read_texture_entry,
    splice_model,
    split_texture,
)
from mml2_errors import NoSpaceError
from mml2_texture import TextureHeader, encode_pixels

PALETTE_BLOCK = bytes(range(0xB0))


def _template(size=0x10000):
    data = bytearray(size)
    data[0:0x30] = TextureHeader(type=3, image_x=0x280, width=0x40, height=0x100, palette_count=2).pack()
    data[FACE_HEADER_OFFSET : FACE_HEADER_OFFSET + 0x30] = TextureHeader(
        type=3, image_x=0x2C0, width=0x40, height=0x100, flag=1
    ).pack()
    data[0x3000:0x30B0] = PALETTE_BLOCK
    return bytes(data)


def _solid(color):
    rgba = np.zeros((256, 256, 4), dtype=np.uint8)
    rgba[:, :] = color
    return encode_pixels(rgba, 256, 256)


def test_texture_entry_round_trip():
    pal, img = _solid((248, 0, 0, 255))
    header = TextureHeader(type=3, image_x=0x280, width=0x40, height=0x100, color_count=4)
    entry = build_texture_entry(header, pal + img)
    got, texture = read_texture_entry(entry)
    assert texture == pal + img
    assert got.full_size == 0x8020
    assert got.color_count == 16
    assert got.image_x == 0x280
    assert got.bitfield_size % 4 == 0
    assert 0x30 + got.bitfield_size < len(entry)


def test_texture_archive_layout_and_readback():
    body = _solid((248, 0, 0, 255))
    face = _solid((0, 0, 248, 255))
    archive = build_texture_archive(_template(), body, face)
    assert len(archive) == 0x10000

    pal_ofs = archive.find(PALETTE_BLOCK)
    assert pal_ofs > 0 and pal_ofs % 0x800 == 0

    (body_hdr, body_tex), (face_hdr, face_tex) = read_texture_archive(archive)
    assert body_tex == body[0] + body[1]
    assert face_tex == face[0] + face[1]
    assert body_hdr.palette_count == 2
    assert face_hdr.flag == 1
    assert face_hdr.image_x == 0x2C0


def test_texture_archive_special_weapon():
    body = _solid((248, 0, 0, 255))
    face = _solid((0, 0, 248, 255))
    rng = random.Random(4)
    pc_file = bytes(rng.getrandbits(8) for _ in range(0x9000))
    archive = build_texture_archive(_template(), body, face, special_weapon=pc_file)
    _, (_, face_tex) = read_texture_archive(archive)
    pal, img = split_texture(face_tex)
    assert pal == face[0]
    assert img[:0x4000] == face[1][:0x4000]
    assert img[0x4000:] == pc_file[-SPECIAL_WEAPON_SIZE:]


def test_texture_archive_overflow():
    rng = random.Random(8)
    noisy = (bytes(0x20), bytes(rng.getrandbits(8) for _ in range(0x8000)))
    with pytest.raises(NoSpaceError):
        build_texture_archive(_template(0x4000), noisy, noisy)


def test_splice_model():
    template = b"\xEE" * 0x3000
    model = bytes(i & 0xFF for i in range(0x2B40))
    out = splice_model(template, model)
    assert len(out) == len(template)
    assert out[:0xB0] == template[:0xB0]
    assert out[0xB0 : 0x30 + 0x2B40] == model[0x80:]
    assert out[0x30 + 0x2B40 :] == template[0x30 + 0x2B40 :]


def test_splice_model_too_large():
    with pytest.raises(NoSpaceError):
        splice_model(bytes(0x100), bytes(0x2B40))
