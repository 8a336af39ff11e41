import logging
import struct

import pytest

from mml2_bits import encode_vertex, pack_face
from mml2_errors import FormatError, NoSpaceError, TooManyVerticesError
from mml2_mesh import (
    PLAYER_LAYOUT,
    Face,
    FreeRegion,
    ModelLayout,
    Primitive,
    _weld_key,
    allocate,
    assemble_model,
    encode_obj,
    obj_uv_to_pixel,
    obj_vertex_to_model,
    parse_mesh,
    parse_player_model,
    read_primitive,
    read_submesh_table,
    triangulate,
    write_obj,
)

TRI_OBJ = """\
# one triangle
v 0 0 0
v 0.1 0 0
v 0 0.1 0
vt 0 0
vt 1 0
vt 0 1
f 1/1 2/2 3/3
"""

QUAD_OBJ = """\
v 0 0 0
v 0.1 0 0
v 0.1 0.1 0
v 0 0.1 0
vt 0.5 0.5
f 1/1/1 2/1/1 3/1/1 4/1/1
"""


def test_obj_vertex_transform():
    assert obj_vertex_to_model(0.1, 0.2, -0.05) == (80, -160, 40)
    assert obj_vertex_to_model(0, 0, 0) == (0, 0, 0)


def test_obj_uv_transform_flips_and_clamps():
    assert obj_uv_to_pixel(0, 1) == (0, 0)
    assert obj_uv_to_pixel(0, 0) == (0, 255)
    assert obj_uv_to_pixel(1, 1) == (255, 0)
    assert obj_uv_to_pixel(0.5, 0.5) == (128, 128)
    assert obj_uv_to_pixel(-0.2, 1.5) == (0, 0)


def test_encode_obj_triangle_corner_remap():
    prim = encode_obj(TRI_OBJ)
    assert prim.vert_count == 3
    assert prim.tri_count == 1
    assert prim.quad_count == 0
    verts = struct.unpack("<3I", prim.vertices)
    assert verts == (encode_vertex(0, 0, 0), encode_vertex(80, 0, 0), encode_vertex(0, -80, 0))
    # second OBJ corner leads: (2, 1, 3)
    assert prim.tri[:8] == bytes([255, 255, 0, 255, 0, 0, 0, 0])
    assert struct.unpack_from("<I", prim.tri, 8)[0] == pack_face(1, 0, 2)


def test_encode_obj_quad_corner_remap():
    prim = encode_obj(QUAD_OBJ)
    assert prim.quad_count == 1
    assert prim.tri_count == 0
    # OBJ corners 1, 4, 2, 3
    assert struct.unpack_from("<I", prim.quad, 8)[0] == pack_face(0, 3, 1, 2)
    assert prim.quad[:8] == bytes([128, 128] * 4)


def test_encode_obj_material():
    prim = encode_obj(TRI_OBJ, material=2)
    assert struct.unpack_from("<I", prim.tri, 8)[0] >> 28 == 2


def test_encode_obj_rejects_faces_without_uvs():
    with pytest.raises(FormatError):
        encode_obj("v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 3\n")


def test_encode_obj_rejects_bad_index():
    with pytest.raises(FormatError):
        encode_obj("v 0 0 0\nvt 0 0\nf 1/1 2/1 3/1\n")


def test_encode_obj_vertex_limit():
    lines = [f"v {i * 0.001:.3f} 0 0" for i in range(128)] + ["vt 0 0", "f 1/1 2/1 3/1"]
    with pytest.raises(TooManyVerticesError):
        encode_obj("\n".join(lines))


def test_triangulate_quad_split():
    face = Face((0, 1, 2, 3), ((0.0, 0.0),) * 4, 0, True)
    assert triangulate(face) == [(0, 2, 1), (1, 2, 3)]
    face.is_quad = False
    assert triangulate(face) == [(0, 2, 1)]


def test_allocate_first_fit():
    regions = [FreeRegion(0x00, 0x08), FreeRegion(0x10, 0x40)]
    assert allocate(regions, 12) == 0x10
    assert allocate(regions, 8) == 0x00
    assert allocate(regions, 8) == 0x1C
    assert allocate(regions, 0) == 0x08
    with pytest.raises(NoSpaceError):
        allocate(regions, 0x40)


def test_assemble_player_model_readback():
    prim = encode_obj(TRI_OBJ)
    head = Primitive.from_hex(
        "0060003bb5a32f3b4ba02f3b2d14103bd317103b00ec4f390598bf38fb9bbf38",
        "202b2f2e20360000850100a0102e1f2b1f360000840200a022231f2b1d23000086c201a0",
        "06231d23102e1f2b8103a1a03a232f2e2223202b8281a1a0",
    )
    model = assemble_model(PLAYER_LAYOUT, {"body": [prim, prim], "head": [head]})
    assert len(model) == 0x2B40

    body = read_submesh_table(model, 0x80, 2)
    assert body[0].tri_count == 1 and body[0].vert_count == 3
    assert body[0].tri_ofs == 0x110
    assert body[0].quad_ofs == 0x110 + 12
    assert body[0].vert_ofs == 0x110 + 12
    assert body[1].tri_ofs == 0x110 + 24
    assert body[0].shadow_tri_ofs == body[0].shadow_quad_ofs == 0x2268
    assert read_primitive(model, body[1]) == prim

    head_hdr = read_submesh_table(model, 0xB60, 1)[0]
    assert (head_hdr.tri_count, head_hdr.quad_count, head_hdr.vert_count) == (3, 2, 8)
    assert read_primitive(model, head_hdr) == head

    assert model[0x2220:0x2268] == bytes(0x48)
    assert model[0x2268:0x26F0] == b"\x80" * (0x26F0 - 0x2268)


def test_assemble_spills_into_next_region():
    layout = ModelLayout(
        size=0x100,
        groups={"body": (0x00, 2)},
        regions=[(0x30, 0x48), (0x60, 0x100)],
        shadow_offset=0,
    )
    prim = encode_obj(TRI_OBJ)
    model = assemble_model(layout, {"body": [prim, prim]})
    first, second = read_submesh_table(model, 0x00, 2)
    assert first.tri_ofs == 0x30
    assert first.vert_ofs == 0x3C
    assert second.tri_ofs == 0x60
    assert second.vert_ofs == 0x6C


def test_assemble_no_space():
    layout = ModelLayout(size=0x40, groups={"body": (0x00, 1)}, regions=[(0x18, 0x20)], shadow_offset=0)
    with pytest.raises(NoSpaceError):
        assemble_model(layout, {"body": [encode_obj(TRI_OBJ)]})


def test_assemble_too_many_submeshes():
    with pytest.raises(FormatError):
        assemble_model(PLAYER_LAYOUT, {"feet": [Primitive()] * 3})


def test_layout_from_config():
    layout = ModelLayout.from_config(
        {
            "size": "0x2B40",
            "groups": {"body": {"header": "0x80", "count": 6}},
            "regions": [{"start": "0x110", "end": "0xB60"}],
            "shadow_offset": 0x2268,
            "fills": [{"start": "0x2220", "end": "0x2268"}],
        }
    )
    assert layout.size == 0x2B40
    assert layout.groups == {"body": (0x80, 6)}
    assert layout.regions == [(0x110, 0xB60)]
    assert layout.fills == [(0x2220, 0x2268, 0)]


def test_parse_player_model():
    model = assemble_model(PLAYER_LAYOUT, {"body": [encode_obj(TRI_OBJ)], "feet": [encode_obj(QUAD_OBJ)]})
    parsed = parse_player_model(model, PLAYER_LAYOUT)
    assert len(parsed.vertices) == 7
    assert len(parsed.corners) == 3 + 6
    x, y, z = parsed.vertices[1].position
    assert (x, y, z) == pytest.approx((0.1, 0.0, 0.0))


def _entity_mesh(flags=0x40):
    data = bytearray(0xC0)
    data[0] = 2
    struct.pack_into("<I", data, 0x04, 0x60)
    struct.pack_into("<5I", data, 0x10, 0x40, 0x4C, 0x54, 0x58, 0)
    # bones: root at origin, child 80 units up the model Y axis
    struct.pack_into("<3h", data, 0x40, 0, 0, 0)
    struct.pack_into("<3h", data, 0x46, 0, 80, 0)
    # hierarchy: polygon, parent, bone, flags
    struct.pack_into("<bbBB", data, 0x4C, 0, -1, 0, 0)
    struct.pack_into("<bbBB", data, 0x50, 1, 0, 1, flags)
    struct.pack_into("<HH", data, 0x54, 0x0013, 0x7C20)
    # geometry records
    struct.pack_into("<BBBbIII", data, 0x60, 1, 0, 3, 0, 0x90, 0, 0x80)
    struct.pack_into("<BBBbIII", data, 0x70, 0, 1, 2, 0, 0, 0xB0, 0xA0)
    struct.pack_into("<3I", data, 0x80, encode_vertex(0, 0, 0), encode_vertex(0, 80, 0), encode_vertex(80, 0, 0))
    struct.pack_into("<I", data, 0x98, pack_face(0, 1, 2))
    struct.pack_into("<2I", data, 0xA0, encode_vertex(0, 0, 0), encode_vertex(80, 0, 0))
    data[0xB0:0xB8] = bytes([0, 0, 255, 0, 0, 255, 255, 255])
    struct.pack_into("<I", data, 0xB8, pack_face(0, 1, 0, 1, 1))
    return bytes(data)


def test_parse_mesh_skeleton_and_hierarchy():
    model = parse_mesh(_entity_mesh())
    assert len(model.bones) == 2
    assert model.bones[1].parent == 0
    assert model.bones[0].children == [1]
    assert model.bones[1].position == pytest.approx((0.0, -0.1, 0.0))
    assert [h.share_vertices for h in model.hierarchy] == [False, True]
    assert len(model.textures) == 1
    assert (model.textures[0].image_coords, model.textures[0].palette_coords) == (0x13, 0x7C20)


def test_parse_mesh_welds_shared_vertices():
    model = parse_mesh(_entity_mesh())
    assert len(model.vertices) == 5
    assert model.vertices[3].position == pytest.approx((0.0, -0.1, 0.0))
    assert model.vertices[3].bone_index == 0
    assert model.vertices[4].position == pytest.approx((0.1, -0.1, 0.0))
    assert model.vertices[4].bone_index == 1


def test_weld_key_keeps_sign_of_tiny_offsets():
    assert _weld_key((-0.00125, 0.0, 0.0)) != _weld_key((0.00125, 0.0, 0.0))
    assert _weld_key((-0.0, 0.1, 0.0)) == _weld_key((0.0, 0.1, -0.0))
    assert _weld_key((0.104, -0.1, 0.0)) == ("0.10", "-0.10", "0.00")


def test_parse_mesh_without_share_keeps_bone():
    model = parse_mesh(_entity_mesh(flags=0x00))
    assert model.vertices[3].bone_index == 1


def test_parse_mesh_face_order_and_uvs():
    model = parse_mesh(_entity_mesh())
    assert len(model.corners) == 3 + 6
    assert [c.vertex for c in model.corners[:3]] == [0, 2, 1]
    quad = model.corners[3:]
    assert [c.vertex for c in quad] == [3, 3, 4, 4, 3, 4]
    assert all(c.material == 1 for c in quad)
    assert quad[0].uv == pytest.approx((0.001953125, 0.001953125))
    assert quad[1].uv == pytest.approx((0.001953125, 255 / 256 + 0.001953125))
    assert model.draw_calls() == [(0, 3, 0), (3, 6, 1)]


def test_parse_mesh_unknown_flags(caplog):
    data = _entity_mesh(flags=0x41)
    with pytest.raises(FormatError):
        parse_mesh(data)
    with caplog.at_level(logging.WARNING):
        model = parse_mesh(data, strict=False)
    assert "Unknown hierarchy flag 0x01" in caplog.text
    assert model.hierarchy[1].share_vertices


def test_write_obj(tmp_path):
    model = parse_mesh(_entity_mesh())
    path = write_obj(model, tmp_path / "out" / "entity")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert path.name == "entity.obj"
    assert sum(1 for ln in lines if ln.startswith("v ")) == 5
    assert sum(1 for ln in lines if ln.startswith("vt ")) == 9
    faces = [ln for ln in lines if ln.startswith("f ")]
    assert faces[0] == "f 1/1 3/2 2/3"
    assert len(faces) == 3
    assert "g material_1" in lines
