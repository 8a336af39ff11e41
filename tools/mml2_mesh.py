"""
MML2 mesh codec.

Encode side: OBJ text -> packed vertex / triangle / quad arrays, and the
first-fit assembly of those arrays into a fixed-size model blob with one
0x18-byte header per submesh.

Decode side: entity meshes (skeleton, bone hierarchy, 0x10-byte geometry
records, texture table) and assembled player model blobs, flattened into a
triangle list for export.

Primitive records are 12 bytes: four (u, v) byte pairs followed by the face
dword from `mml2_bits.pack_face`. Triangles leave the fourth corner zero.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import pathlib
import struct
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from mml2_bits import decode_vertex, encode_vertex, pack_face, unpack_face, vertex_scale
from mml2_errors import CapacityError, FormatError, NoSpaceError, TooManyVerticesError

log = logging.getLogger(__name__)

# Model units per OBJ unit is 1 / SCALE.
SCALE = 0.00125
UV_PIXEL = 0.00390625
UV_BIAS = 0.001953125

MAX_SUBMESH_VERTICES = 127
PRIMITIVE_SIZE = 12
VERTEX_SIZE = 4
SUBMESH_HEADER_SIZE = 0x18
GEOMETRY_RECORD_SIZE = 0x10
BONE_SIZE = 6
HIERARCHY_SIZE = 4

FLAG_HIDE = 0x80
FLAG_SHARE = 0x40
FLAG_UNKNOWN = 0x3F

Vec3 = Tuple[float, float, float]


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def _rot_x180(x: float, y: float, z: float) -> Vec3:
    return x, -y, -z


# -- OBJ encode ---------------------------------------------------------------


@dataclasses.dataclass
class ObjMesh:
    vertices: List[Vec3]
    uvs: List[Tuple[float, float]]
    tris: List[List[Tuple[int, int]]]
    quads: List[List[Tuple[int, int]]]


@dataclasses.dataclass
class Primitive:
    tri: bytes = b""
    quad: bytes = b""
    vertices: bytes = b""

    @property
    def tri_count(self) -> int:
        return len(self.tri) // PRIMITIVE_SIZE

    @property
    def quad_count(self) -> int:
        return len(self.quad) // PRIMITIVE_SIZE

    @property
    def vert_count(self) -> int:
        return len(self.vertices) // VERTEX_SIZE

    @classmethod
    def from_hex(cls, vertices: str, tri: str, quad: str) -> "Primitive":
        return cls(tri=bytes.fromhex(tri), quad=bytes.fromhex(quad), vertices=bytes.fromhex(vertices))


def _parse_corner(tok: str, line: str) -> Tuple[int, int]:
    parts = tok.split("/")
    try:
        return int(parts[0]) - 1, int(parts[1]) - 1
    except (ValueError, IndexError):
        raise FormatError(f"Face corner '{tok}' needs a vertex and uv index: {line!r}") from None


def parse_obj(text: str) -> ObjMesh:
    mesh = ObjMesh([], [], [], [])
    for raw in text.split("\n"):
        line = raw.strip()
        if line.startswith("v "):
            parts = line.split()
            mesh.vertices.append((float(parts[1]), float(parts[2]), float(parts[3])))
        elif line.startswith("vt "):
            parts = line.split()
            mesh.uvs.append((float(parts[1]), float(parts[2])))
        elif line.startswith("f "):
            toks = [t for t in line.split()[1:] if "/" in t]
            if len(toks) == 3:
                mesh.tris.append([_parse_corner(t, line) for t in toks])
            elif len(toks) == 4:
                mesh.quads.append([_parse_corner(t, line) for t in toks])
            else:
                raise FormatError(f"Face must have 3 or 4 vertex/uv corners: {line!r}")
    return mesh


def obj_vertex_to_model(x: float, y: float, z: float) -> Tuple[int, int, int]:
    mx, my, mz = _rot_x180(x / SCALE, y / SCALE, z / SCALE)
    return _round_half_up(mx), _round_half_up(my), _round_half_up(mz)


def obj_uv_to_pixel(u: float, v: float) -> Tuple[int, int]:
    pu = int(math.floor(u / UV_PIXEL + UV_BIAS))
    pv = int(math.floor((1.0 - v) / UV_PIXEL + UV_BIAS))
    return max(0, min(255, pu)), max(0, min(255, pv))


def _lookup(items: Sequence[Any], idx: int, what: str) -> Any:
    if idx < 0 or idx >= len(items):
        raise FormatError(f"OBJ {what} index {idx + 1} is out of range (have {len(items)})")
    return items[idx]


def _pack_primitive(
    corners: Sequence[Tuple[int, int]],
    pixels: Sequence[Tuple[int, int]],
    vert_count: int,
    material: int,
) -> bytes:
    out = bytearray(PRIMITIVE_SIZE)
    idx: List[int] = []
    for i, (vi, ti) in enumerate(corners):
        _lookup(range(vert_count), vi, "vertex")
        u, v = _lookup(pixels, ti, "uv")
        out[i * 2] = u
        out[i * 2 + 1] = v
        idx.append(vi)
    while len(idx) < 4:
        idx.append(0)
    struct.pack_into("<I", out, 8, pack_face(idx[0], idx[1], idx[2], idx[3], material))
    return bytes(out)


def encode_obj(text: str, material: int = 0, strict: bool = True) -> Primitive:
    """Encode one OBJ submesh into its vertex, triangle and quad arrays."""
    mesh = parse_obj(text)
    if len(mesh.vertices) > MAX_SUBMESH_VERTICES:
        raise TooManyVerticesError(len(mesh.vertices), MAX_SUBMESH_VERTICES)
    if len(mesh.tris) > 0xFF or len(mesh.quads) > 0xFF:
        raise CapacityError(f"Submesh has {len(mesh.tris)} triangles and {len(mesh.quads)} quads, limit is 255 each")

    vertices = bytearray()
    for x, y, z in mesh.vertices:
        vertices.extend(struct.pack("<I", encode_vertex(*obj_vertex_to_model(x, y, z), strict=strict)))

    pixels = [obj_uv_to_pixel(u, v) for u, v in mesh.uvs]
    n = len(mesh.vertices)

    tri = bytearray()
    for c in mesh.tris:
        # Second OBJ corner leads to keep the game's winding.
        tri.extend(_pack_primitive((c[1], c[0], c[2]), pixels, n, material))

    quad = bytearray()
    for c in mesh.quads:
        quad.extend(_pack_primitive((c[0], c[3], c[1], c[2]), pixels, n, material))

    return Primitive(tri=bytes(tri), quad=bytes(quad), vertices=bytes(vertices))


# -- model assembly -----------------------------------------------------------


@dataclasses.dataclass
class FreeRegion:
    start: int
    end: int

    @property
    def room(self) -> int:
        return self.end - self.start


def allocate(regions: Sequence[FreeRegion], size: int, what: str = "data") -> int:
    """First-fit: place `size` bytes in the first region with room and advance it."""
    for region in regions:
        if size > region.room:
            continue
        off = region.start
        region.start += size
        return off
    raise NoSpaceError(f"No space for {what} (0x{size:X} bytes)")


@dataclasses.dataclass
class ModelLayout:
    size: int
    groups: Dict[str, Tuple[int, int]]
    regions: List[Tuple[int, int]]
    shadow_offset: int
    fills: List[Tuple[int, int, int]] = dataclasses.field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "ModelLayout":
        def num(v: Any) -> int:
            return int(v, 0) if isinstance(v, str) else int(v)

        groups: Dict[str, Tuple[int, int]] = {}
        for name, g in (cfg.get("groups") or {}).items():
            groups[str(name)] = (num(g["header"]), num(g["count"]))
        return cls(
            size=num(cfg["size"]),
            groups=groups,
            regions=[(num(r["start"]), num(r["end"])) for r in cfg.get("regions") or []],
            shadow_offset=num(cfg.get("shadow_offset", 0)),
            fills=[(num(f["start"]), num(f["end"]), num(f.get("value", 0))) for f in cfg.get("fills") or []],
        )


# Player body without helmet (PL00P010). Only the first three content areas
# take primitive data; the left arm buster area is blanked after assembly.
PLAYER_LAYOUT = ModelLayout(
    size=0x2B40,
    groups={
        "body": (0x0080, 6),
        "head": (0x0B60, 3),
        "feet": (0x1800, 2),
        "left": (0x1DD0, 3),
        "right": (0x26F0, 3),
    },
    regions=[(0x0110, 0x0B60), (0x0BA8, 0x1800), (0x1830, 0x1DD0)],
    shadow_offset=0x2268,
    fills=[(0x2220, 0x2268, 0x00), (0x2268, 0x26F0, 0x80)],
)


@dataclasses.dataclass
class SubmeshHeader:
    tri_count: int
    quad_count: int
    vert_count: int
    scale: int
    tri_ofs: int
    quad_ofs: int
    vert_ofs: int
    shadow_tri_ofs: int = 0
    shadow_quad_ofs: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            "<BBBbIIIII",
            self.tri_count,
            self.quad_count,
            self.vert_count,
            self.scale,
            self.tri_ofs,
            self.quad_ofs,
            self.vert_ofs,
            self.shadow_tri_ofs,
            self.shadow_quad_ofs,
        )

    @classmethod
    def read(cls, data: bytes, off: int) -> "SubmeshHeader":
        if off + SUBMESH_HEADER_SIZE > len(data):
            raise FormatError(f"Submesh header at 0x{off:X} runs past end of data")
        return cls(*struct.unpack_from("<BBBbIIIII", data, off))


def _place(model: bytearray, regions: Sequence[FreeRegion], blob: bytes, what: str) -> int:
    off = allocate(regions, len(blob), what)
    model[off : off + len(blob)] = blob
    return off


def assemble_model(layout: ModelLayout, groups: Mapping[str, Sequence[Primitive]]) -> bytes:
    model = bytearray(layout.size)
    regions = [FreeRegion(s, e) for s, e in layout.regions]
    for name, (header_ofs, slots) in layout.groups.items():
        prims = groups.get(name) or []
        if len(prims) > slots:
            raise FormatError(f"Group '{name}' has {len(prims)} submeshes, layout allows {slots}")
        for i, prim in enumerate(prims):
            label = f"{name}[{i}]"
            if prim.vert_count > MAX_SUBMESH_VERTICES:
                raise TooManyVerticesError(prim.vert_count, MAX_SUBMESH_VERTICES)
            tri_ofs = _place(model, regions, prim.tri, f"{label} triangles")
            quad_ofs = _place(model, regions, prim.quad, f"{label} quads")
            vert_ofs = _place(model, regions, prim.vertices, f"{label} vertices")
            header = SubmeshHeader(
                prim.tri_count,
                prim.quad_count,
                prim.vert_count,
                0,
                tri_ofs,
                quad_ofs,
                vert_ofs,
                layout.shadow_offset,
                layout.shadow_offset,
            )
            off = header_ofs + i * SUBMESH_HEADER_SIZE
            model[off : off + SUBMESH_HEADER_SIZE] = header.pack()
            log.debug("%s: tri@0x%X quad@0x%X vert@0x%X", label, tri_ofs, quad_ofs, vert_ofs)
    for start, end, value in layout.fills:
        model[start:end] = bytes([value]) * (end - start)
    return bytes(model)


def read_submesh_table(data: bytes, off: int, count: int) -> List[SubmeshHeader]:
    return [SubmeshHeader.read(data, off + i * SUBMESH_HEADER_SIZE) for i in range(count)]


def read_primitive(data: bytes, header: SubmeshHeader) -> Primitive:
    return Primitive(
        tri=bytes(data[header.tri_ofs : header.tri_ofs + header.tri_count * PRIMITIVE_SIZE]),
        quad=bytes(data[header.quad_ofs : header.quad_ofs + header.quad_count * PRIMITIVE_SIZE]),
        vertices=bytes(data[header.vert_ofs : header.vert_ofs + header.vert_count * VERTEX_SIZE]),
    )


# -- decode -------------------------------------------------------------------


@dataclasses.dataclass
class Face:
    indices: Tuple[int, int, int, int]
    uvs: Tuple[Tuple[float, float], ...]
    material: int
    is_quad: bool


@dataclasses.dataclass
class Bone:
    index: int
    position: Vec3
    parent: Optional[int] = None
    children: List[int] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class HierarchyEntry:
    polygon_index: int
    parent_bone: int
    bone_index: int
    hide_polygon: bool
    share_vertices: bool


@dataclasses.dataclass
class WeightedVertex:
    position: Vec3
    bone_index: int


@dataclasses.dataclass
class Corner:
    vertex: int
    uv: Tuple[float, float]
    bone_index: int
    material: int


@dataclasses.dataclass
class TextureRef:
    image_coords: int
    palette_coords: int


@dataclasses.dataclass
class Model:
    bones: List[Bone] = dataclasses.field(default_factory=list)
    hierarchy: List[HierarchyEntry] = dataclasses.field(default_factory=list)
    vertices: List[WeightedVertex] = dataclasses.field(default_factory=list)
    corners: List[Corner] = dataclasses.field(default_factory=list)
    textures: List[TextureRef] = dataclasses.field(default_factory=list)

    def draw_calls(self) -> List[Tuple[int, int, int]]:
        """Runs of consecutive corners sharing a material, as (start, count, material)."""
        calls: List[List[int]] = []
        for i, corner in enumerate(self.corners):
            if calls and calls[-1][2] == corner.material:
                calls[-1][1] += 1
            else:
                calls.append([i, 1, corner.material])
        return [(s, n, m) for s, n, m in calls]


def triangulate(face: Face) -> List[Tuple[int, int, int]]:
    """Corner order fed to the renderer: (A, C, B), then (B, C, D) for quads."""
    a, b, c, d = range(4)
    tris = [(a, c, b)]
    if face.is_quad:
        tris.append((b, c, d))
    return tris


def read_vertices(data: bytes, off: int, count: int, scale: float = 1.0) -> List[Vec3]:
    out: List[Vec3] = []
    for i in range(count):
        p = off + i * VERTEX_SIZE
        if p + VERTEX_SIZE > len(data):
            raise FormatError(f"Vertex {i} at 0x{p:X} runs past end of data")
        x, y, z = decode_vertex(struct.unpack_from("<I", data, p)[0], scale)
        out.append(_rot_x180(x * SCALE, y * SCALE, z * SCALE))
    return out


def read_faces(data: bytes, off: int, count: int, is_quad: bool) -> List[Face]:
    faces: List[Face] = []
    for i in range(count):
        p = off + i * PRIMITIVE_SIZE
        if p + PRIMITIVE_SIZE > len(data):
            raise FormatError(f"Face {i} at 0x{p:X} runs past end of data")
        raw = data[p : p + 8]
        a, b, c, d, material = unpack_face(struct.unpack_from("<I", data, p + 8)[0])
        uvs = tuple((raw[j * 2] * UV_PIXEL + UV_BIAS, raw[j * 2 + 1] * UV_PIXEL + UV_BIAS) for j in range(4))
        faces.append(Face((a, b, c, d), uvs, material, is_quad))
    return faces


def _emit_faces(model: Model, faces: Iterable[Face], local: Sequence[int]) -> None:
    for face in faces:
        for tri in triangulate(face):
            for corner in tri:
                li = face.indices[corner]
                if li >= len(local):
                    raise FormatError(f"Face index {li} exceeds submesh vertex count {len(local)}")
                vi = local[li]
                model.corners.append(Corner(vi, face.uvs[corner], model.vertices[vi].bone_index, face.material))


def bone_world_position(bones: Sequence[Bone], index: int) -> Vec3:
    x = y = z = 0.0
    seen = set()
    cur: Optional[int] = index
    while cur is not None and cur not in seen:
        seen.add(cur)
        bx, by, bz = bones[cur].position
        x += bx
        y += by
        z += bz
        cur = bones[cur].parent
    return x, y, z


def _weld_key(pos: Vec3) -> Tuple[str, str, str]:
    # Two-decimal text keys; -0.001 and 0.001 stay apart as "-0.00" and "0.00".
    x, y, z = (f"{c + 0.0:.2f}" for c in pos)
    return x, y, z


def parse_mesh(data: bytes, mesh_ofs: int = 0, strict: bool = True) -> Model:
    """Parse an entity mesh: skeleton, hierarchy, geometry and texture table."""
    if mesh_ofs + 0x24 > len(data):
        raise FormatError(f"Mesh header at 0x{mesh_ofs:X} runs past end of data")
    submesh_count = data[mesh_ofs]
    geometry_ofs, = struct.unpack_from("<I", data, mesh_ofs + 0x04)
    skeleton_ofs, hierarchy_ofs, texture_ofs, collision_ofs, shadow_ofs = struct.unpack_from(
        "<5I", data, mesh_ofs + 0x10
    )

    model = Model()
    for i in range((hierarchy_ofs - skeleton_ofs) // BONE_SIZE):
        x, y, z = struct.unpack_from("<3h", data, skeleton_ofs + i * BONE_SIZE)
        model.bones.append(Bone(i, _rot_x180(x * SCALE, y * SCALE, z * SCALE)))

    table_end = texture_ofs or collision_ofs or shadow_ofs
    entries = (table_end - hierarchy_ofs) // HIERARCHY_SIZE if table_end > hierarchy_ofs else submesh_count
    nb = len(model.bones)
    for i in range(entries):
        p = hierarchy_ofs + i * HIERARCHY_SIZE
        polygon_index, parent_bone, bone_index, flags = struct.unpack_from("<bbBB", data, p)
        if flags & FLAG_UNKNOWN:
            msg = f"Unknown hierarchy flag 0x{flags & FLAG_UNKNOWN:02X} at 0x{p:X} (record {data[p:p + 4].hex()})"
            if strict:
                raise FormatError(msg)
            log.warning(msg)
        # A bone keeps the first parent it is given.
        if 0 <= bone_index < nb and 0 <= parent_bone < nb and bone_index != parent_bone:
            bone = model.bones[bone_index]
            if bone.parent is None:
                bone.parent = parent_bone
                model.bones[parent_bone].children.append(bone_index)
        model.hierarchy.append(
            HierarchyEntry(polygon_index, parent_bone, bone_index, bool(flags & FLAG_HIDE), bool(flags & FLAG_SHARE))
        )

    if submesh_count > len(model.hierarchy):
        raise FormatError(f"{submesh_count} submeshes but only {len(model.hierarchy)} hierarchy records")

    for i in range(submesh_count):
        entry = model.hierarchy[i]
        if entry.bone_index >= nb:
            raise FormatError(f"Submesh {i} references bone {entry.bone_index}, skeleton has {nb}")
        bone = model.bones[entry.bone_index]
        p = geometry_ofs + i * GEOMETRY_RECORD_SIZE
        tri_count, quad_count, vert_count, scale_byte, tri_ofs, quad_ofs, vert_ofs = struct.unpack_from(
            "<BBBbIII", data, p
        )

        # Positions already owned by the parent bone, for welding shared vertices.
        parent_keys = set()
        if bone.parent is not None:
            parent_keys = {_weld_key(v.position) for v in model.vertices if v.bone_index == entry.parent_bone}

        wx, wy, wz = bone_world_position(model.bones, entry.bone_index)
        local: List[int] = []
        for x, y, z in read_vertices(data, vert_ofs, vert_count, vertex_scale(scale_byte)):
            vertex = WeightedVertex((x + wx, y + wy, z + wz), entry.bone_index)
            if entry.share_vertices and _weld_key(vertex.position) in parent_keys:
                vertex.bone_index = entry.parent_bone
            local.append(len(model.vertices))
            model.vertices.append(vertex)

        _emit_faces(model, read_faces(data, tri_ofs, tri_count, False), local)
        _emit_faces(model, read_faces(data, quad_ofs, quad_count, True), local)

    if texture_ofs:
        end = collision_ofs or shadow_ofs
        for i in range(max(0, (end - texture_ofs) // 4)):
            image_coords, palette_coords = struct.unpack_from("<HH", data, texture_ofs + i * 4)
            model.textures.append(TextureRef(image_coords, palette_coords))

    return model


def parse_player_model(data: bytes, layout: ModelLayout = PLAYER_LAYOUT, base: int = 0) -> Model:
    """Decode an assembled player blob; offsets in its headers are relative to `base`."""
    model = Model()
    for name, (header_ofs, slots) in layout.groups.items():
        for header in read_submesh_table(data, base + header_ofs, slots):
            if header.vert_count == 0 and header.tri_count == 0 and header.quad_count == 0:
                continue
            local: List[int] = []
            for pos in read_vertices(data, base + header.vert_ofs, header.vert_count, vertex_scale(header.scale)):
                local.append(len(model.vertices))
                model.vertices.append(WeightedVertex(pos, -1))
            _emit_faces(model, read_faces(data, base + header.tri_ofs, header.tri_count, False), local)
            _emit_faces(model, read_faces(data, base + header.quad_ofs, header.quad_count, True), local)
    return model


def write_obj(model: Model, out_base: pathlib.Path) -> pathlib.Path:
    obj_path = out_base.with_suffix(".obj")
    obj_path.parent.mkdir(parents=True, exist_ok=True)
    with obj_path.open("w", encoding="utf-8", newline="\n") as f:
        for v in model.vertices:
            x, y, z = v.position
            f.write(f"v {x:.6f} {y:.6f} {z:.6f}\n")
        for corner in model.corners:
            u, vv = corner.uv
            f.write(f"vt {u:.6f} {1.0 - vv:.6f}\n")
        for start, count, material in model.draw_calls():
            f.write(f"g material_{material}\n")
            for i in range(start, start + count - 2, 3):
                a, b, c = model.corners[i : i + 3]
                f.write(f"f {a.vertex + 1}/{i + 1} {b.vertex + 1}/{i + 2} {c.vertex + 1}/{i + 3}\n")
    return obj_path
