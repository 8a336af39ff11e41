import math
import struct

import pytest

from mml2_anim import build_clips, parse_definitions, parse_pools, read_pointer_table
from mml2_bits import encode_vertex
from mml2_errors import FormatError
from mml2_mesh import Bone

QUARTER_TURN_Z = (128 << 20) | (2 << 30)


def _anim_block():
    """One bone: two pools (2 frames, 1 frame) followed by one definition."""
    data = bytearray(0x34)
    struct.pack_into("<2I", data, 0x00, 0x08, 0x18)
    struct.pack_into("<2I", data, 0x08, encode_vertex(80, 0, 0), 0)
    struct.pack_into("<2I", data, 0x10, encode_vertex(0, 0, 0), QUARTER_TURN_Z)
    struct.pack_into("<2I", data, 0x18, 0, 0)
    # definition table at 0x20
    struct.pack_into("<I", data, 0x20, 0x04)
    data[0x24:0x28] = bytes([0, 3, 0, 0])
    for i, frame in enumerate((1, 0, 1)):
        data[0x28 + i * 4] = frame
    return bytes(data)


def test_pointer_table_is_self_delimiting():
    assert read_pointer_table(_anim_block(), 0) == [0x08, 0x18]
    assert read_pointer_table(_anim_block(), 0x20) == [0x24]


@pytest.mark.parametrize(
    "words",
    [
        (0x06, 0x10),  # misaligned
        (0x00, 0x10),  # empty
        (0x08, 0x08),  # not increasing
        (0x0C, 0x10, 0x0E),  # misaligned follower
    ],
)
def test_pointer_table_rejects_bad_tables(words):
    data = struct.pack(f"<{len(words)}I", *words) + bytes(0x20)
    with pytest.raises(FormatError):
        read_pointer_table(data, 0)


def test_pointer_table_past_end():
    with pytest.raises(FormatError):
        read_pointer_table(struct.pack("<I", 0x40), 0)


def test_parse_pools_frame_counts():
    pools = parse_pools(_anim_block(), 0x00, 0x20, bone_count=1)
    assert [len(p.frames) for p in pools] == [2, 1]
    assert pools[0].offset == 0x08
    assert pools[0].frames[1].rotations == [QUARTER_TURN_Z]


def test_parse_definitions():
    defs = parse_definitions(_anim_block(), 0x20)
    assert len(defs) == 1
    assert defs[0].source == 0
    assert defs[0].frames == [1, 0, 1]


def test_build_clips_samples_pool_at_30fps():
    data = _anim_block()
    pools = parse_pools(data, 0x00, 0x20, bone_count=1)
    defs = parse_definitions(data, 0x20)
    bone = Bone(0, (0.0, 0.5, 0.0))
    (clip,) = build_clips(pools, defs, [bone])

    assert clip.duration == pytest.approx(2 / 30)
    (track,) = clip.tracks
    assert track.times == pytest.approx([0.0, 1 / 30, 2 / 30])
    assert track.positions == [bone.position] * 3
    h = math.sqrt(0.5)
    assert track.rotations[0] == pytest.approx((0.0, 0.0, h, h))
    assert track.rotations[1] == pytest.approx((0.0, 0.0, 0.0, 1.0))
    assert track.rotations[2] == pytest.approx((0.0, 0.0, h, h))


def test_root_motion_is_a_separate_channel():
    data = _anim_block()
    pools = parse_pools(data, 0x00, 0x20, bone_count=1)
    (clip,) = build_clips(pools, parse_definitions(data, 0x20), [Bone(0, (0.0, 0.0, 0.0))])
    assert clip.root_motion[1] == pytest.approx((0.1, 0.0, 0.0))
    assert clip.root_motion[0] == pytest.approx((0.0, 0.0, 0.0))
    assert clip.tracks[0].positions[1] == (0.0, 0.0, 0.0)


def test_build_clips_rejects_missing_frame():
    data = bytearray(_anim_block())
    data[0x2C] = 5
    pools = parse_pools(bytes(data), 0x00, 0x20, bone_count=1)
    defs = parse_definitions(bytes(data), 0x20)
    with pytest.raises(FormatError):
        build_clips(pools, defs, [Bone(0, (0.0, 0.0, 0.0))])


def test_build_clips_rejects_missing_pool():
    data = bytearray(_anim_block())
    data[0x24] = 2
    pools = parse_pools(bytes(data), 0x00, 0x20, bone_count=1)
    defs = parse_definitions(bytes(data), 0x20)
    with pytest.raises(FormatError):
        build_clips(pools, defs, [Bone(0, (0.0, 0.0, 0.0))])
