"""
MML2 animation codec.

An animation block has two self-delimiting pointer tables:
- keyframe pools: each pointer addresses a run of frames; a frame is one root
  dword followed by one rotation dword per bone.
- definitions: each pointer addresses `source u8, length u8, pad u16` then
  `length` 4-byte entries whose first byte picks a frame of pool `source`.

Pointers are relative to the start of their own table. The first pointer
doubles as the table size, so writers must emit pointers in increasing order
with data following the table directly.
"""

from __future__ import annotations

import dataclasses
import logging
import struct
from typing import List, Optional, Sequence, Tuple

from mml2_bits import decode_rotation, decode_vertex, euler_to_quaternion
from mml2_errors import FormatError
from mml2_mesh import SCALE, Bone

log = logging.getLogger(__name__)

FPS = 30.0
DEFINITION_HEADER_SIZE = 4
DEFINITION_ENTRY_SIZE = 4

Quat = Tuple[float, float, float, float]
Vec3 = Tuple[float, float, float]


def read_pointer_table(data: bytes, offset: int, end: Optional[int] = None) -> List[int]:
    """Return absolute offsets of a pointer table that ends where its first target starts."""
    limit = len(data) if end is None else end
    if offset + 4 > limit:
        raise FormatError(f"Pointer table at 0x{offset:X} runs past end of data")
    first, = struct.unpack_from("<I", data, offset)
    if first == 0 or first % 4:
        raise FormatError(f"Pointer table at 0x{offset:X} starts with invalid pointer 0x{first:X}")
    count = first // 4
    if offset + first > limit:
        raise FormatError(f"Pointer table at 0x{offset:X} claims {count} entries past end of data")

    rel = list(struct.unpack_from(f"<{count}I", data, offset))
    for i in range(1, count):
        if rel[i] % 4 or rel[i] <= rel[i - 1]:
            raise FormatError(
                f"Pointer {i} of table at 0x{offset:X} is 0x{rel[i]:X}, after 0x{rel[i - 1]:X}"
            )
    return [offset + r for r in rel]


@dataclasses.dataclass
class Keyframe:
    root: int
    rotations: List[int]

    def root_position(self) -> Vec3:
        x, y, z = decode_vertex(self.root)
        return x * SCALE, -y * SCALE, -z * SCALE

    def quaternions(self) -> List[Quat]:
        return [euler_to_quaternion(*decode_rotation(r)) for r in self.rotations]


@dataclasses.dataclass
class KeyframePool:
    offset: int
    frames: List[Keyframe]


def parse_pools(data: bytes, pools_ofs: int, end_ofs: int, bone_count: int) -> List[KeyframePool]:
    """Read every pool; the last one runs up to `end_ofs` (the definitions table)."""
    stride = (bone_count + 1) * 4
    starts = read_pointer_table(data, pools_ofs, end_ofs)
    pools: List[KeyframePool] = []
    for i, start in enumerate(starts):
        stop = starts[i + 1] if i + 1 < len(starts) else end_ofs
        if stop > len(data) or stop < start:
            raise FormatError(f"Keyframe pool {i} spans 0x{start:X}..0x{stop:X}, outside data")
        count = (stop - start) // stride
        frames = []
        for f in range(count):
            words = struct.unpack_from(f"<{bone_count + 1}I", data, start + f * stride)
            frames.append(Keyframe(words[0], list(words[1:])))
        log.debug("Pool %d at 0x%X: %d frames", i, start, count)
        pools.append(KeyframePool(start, frames))
    return pools


@dataclasses.dataclass
class AnimationDef:
    source: int
    frames: List[int]


def parse_definitions(data: bytes, defs_ofs: int, end_ofs: Optional[int] = None) -> List[AnimationDef]:
    defs: List[AnimationDef] = []
    for ptr in read_pointer_table(data, defs_ofs, end_ofs):
        if ptr + DEFINITION_HEADER_SIZE > len(data):
            raise FormatError(f"Animation definition at 0x{ptr:X} runs past end of data")
        source, length = data[ptr], data[ptr + 1]
        base = ptr + DEFINITION_HEADER_SIZE
        if base + length * DEFINITION_ENTRY_SIZE > len(data):
            raise FormatError(f"Animation definition at 0x{ptr:X} lists {length} frames past end of data")
        frames = [data[base + i * DEFINITION_ENTRY_SIZE] for i in range(length)]
        defs.append(AnimationDef(source, frames))
    return defs


@dataclasses.dataclass
class BoneTrack:
    bone: int
    times: List[float]
    positions: List[Vec3]
    rotations: List[Quat]


@dataclasses.dataclass
class AnimationClip:
    index: int
    duration: float
    tracks: List[BoneTrack]
    # Decoded root dword per output frame. Not applied to any bone.
    root_motion: List[Vec3] = dataclasses.field(default_factory=list)


def build_clips(
    pools: Sequence[KeyframePool], defs: Sequence[AnimationDef], bones: Sequence[Bone]
) -> List[AnimationClip]:
    clips: List[AnimationClip] = []
    for index, anim in enumerate(defs):
        if anim.source >= len(pools):
            raise FormatError(f"Animation {index} uses pool {anim.source}, only {len(pools)} exist")
        pool = pools[anim.source]
        tracks = [BoneTrack(b.index, [], [], []) for b in bones]
        root_motion: List[Vec3] = []
        for out_frame, frame_index in enumerate(anim.frames):
            if frame_index >= len(pool.frames):
                raise FormatError(
                    f"Animation {index} frame {out_frame} selects frame {frame_index} of pool {anim.source} "
                    f"({len(pool.frames)} frames)"
                )
            frame = pool.frames[frame_index]
            if len(frame.rotations) < len(bones):
                raise FormatError(f"Pool {anim.source} has {len(frame.rotations)} rotations for {len(bones)} bones")
            time = out_frame / FPS
            quats = frame.quaternions()
            root_motion.append(frame.root_position())
            for track, bone in zip(tracks, bones):
                track.times.append(time)
                track.positions.append(bone.position)
                track.rotations.append(quats[bone.index])
        duration = (len(anim.frames) - 1) / FPS if anim.frames else 0.0
        clips.append(AnimationClip(index, duration, tracks, root_motion))
    return clips
