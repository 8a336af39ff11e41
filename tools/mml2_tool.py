#!/usr/bin/env python3
"""
Mega Man Legends 2 asset tool.

Current capabilities:
- Encode / decode 256x256 4bpp textures (PNG <-> palette + image bytes) and
  render texture pages out of a VRAM dump.
- Compress / decompress with the archive segment coder.
- Rebuild the player texture archive (PL00T) and player model (PL00P010)
  from PNG and OBJ sources.
- Export entity meshes and player models to OBJ, dump animation tables.
- Locate and replace archives inside a raw BIN disc image.

`build --config` runs the whole texture -> model -> ROM chain from a
JSON/YAML file; any failure aborts the batch.
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
from typing import Any, Dict, List, Optional, Sequence

import yaml

from mml2_anim import build_clips, parse_definitions, parse_pools
from mml2_archive import (
    MODEL_FILE_HEADER,
    build_texture_archive,
    read_texture_archive,
    splice_model,
    split_texture,
)
from mml2_compress import compress, decompress
from mml2_mesh import (
    PLAYER_LAYOUT,
    Bone,
    ModelLayout,
    Primitive,
    assemble_model,
    encode_obj,
    parse_mesh,
    parse_player_model,
    read_submesh_table,
    write_obj,
)
from mml2_rom import locate, patch, update_rom
from mml2_texture import (
    PALETTE_SIZE,
    decode_image,
    encode_image,
    load_image,
    render_vram_texture,
    save_image,
)

log = logging.getLogger(__name__)


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


def _to_int(v: Any) -> int:
    if isinstance(v, int):
        return int(v)
    if isinstance(v, str):
        return int(v, 0)
    raise ValueError(f"Expected int-like value, got: {type(v).__name__}")


def _resolve(base: pathlib.Path, value: Any) -> pathlib.Path:
    p = pathlib.Path(str(value))
    return p if p.is_absolute() else base / p


def _emit(report: Dict[str, Any], json_path: Optional[str] = None) -> None:
    if json_path:
        pathlib.Path(json_path).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))


def _write(path: pathlib.Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


# -- textures -----------------------------------------------------------------


def cmd_texture_encode(args: argparse.Namespace) -> int:
    pal, img = encode_image(load_image(pathlib.Path(args.image)), strict=not args.compat)
    out = pathlib.Path(args.out)
    _write(out, pal + img)
    _emit({"image": args.image, "out": str(out), "palette_bytes": len(pal), "image_bytes": len(img)})
    return 0


def cmd_texture_decode(args: argparse.Namespace) -> int:
    raw = pathlib.Path(args.texture).read_bytes()[_to_int(args.offset) :]
    img = decode_image(raw[:PALETTE_SIZE], raw[PALETTE_SIZE:], args.width, args.height)
    save_image(pathlib.Path(args.out), img)
    _emit({"texture": args.texture, "out": args.out, "width": args.width, "height": args.height})
    return 0


def cmd_texture_render_vram(args: argparse.Namespace) -> int:
    vram = pathlib.Path(args.vram).read_bytes()
    img = render_vram_texture(vram, _to_int(args.image_coords), _to_int(args.palette_coords))
    save_image(pathlib.Path(args.out), img)
    _emit({"vram": args.vram, "out": args.out})
    return 0


# -- compression --------------------------------------------------------------


def cmd_compress(args: argparse.Namespace) -> int:
    data = pathlib.Path(args.input).read_bytes()
    bitfield, payload = compress(data)
    _write(pathlib.Path(args.bitfield), bitfield)
    _write(pathlib.Path(args.payload), payload)
    _emit(
        {
            "input": args.input,
            "size": len(data),
            "bitfield": args.bitfield,
            "bitfield_size": len(bitfield),
            "payload": args.payload,
            "payload_size": len(payload),
        }
    )
    return 0


def cmd_decompress(args: argparse.Namespace) -> int:
    bitfield = pathlib.Path(args.bitfield).read_bytes()
    payload = pathlib.Path(args.payload).read_bytes()
    data = decompress(bitfield, payload, _to_int(args.size))
    _write(pathlib.Path(args.out), data)
    _emit({"out": args.out, "size": len(data)})
    return 0


# -- archives -----------------------------------------------------------------


def _build_textures(
    template: pathlib.Path,
    body: pathlib.Path,
    face: pathlib.Path,
    special_weapon: Optional[pathlib.Path],
    out: pathlib.Path,
    strict: bool,
) -> Dict[str, Any]:
    body_tex = encode_image(load_image(body), strict=strict)
    face_tex = encode_image(load_image(face), strict=strict)
    weapon = special_weapon.read_bytes() if special_weapon else None
    archive = build_texture_archive(template.read_bytes(), body_tex, face_tex, weapon)
    _write(out, archive)
    log.info("Wrote texture archive %s", out)
    return {"template": str(template), "out": str(out), "size": len(archive), "special_weapon": bool(weapon)}


def cmd_texture_archive_build(args: argparse.Namespace) -> int:
    report = _build_textures(
        pathlib.Path(args.template),
        pathlib.Path(args.body),
        pathlib.Path(args.face),
        pathlib.Path(args.special_weapon) if args.special_weapon else None,
        pathlib.Path(args.out),
        strict=not args.compat,
    )
    _emit(report)
    return 0


def cmd_texture_archive_extract(args: argparse.Namespace) -> int:
    data = pathlib.Path(args.archive).read_bytes()
    out_dir = pathlib.Path(args.outdir)
    out_dir.mkdir(parents=True, exist_ok=True)
    entries: List[Dict[str, Any]] = []
    for name, (header, texture) in zip(("body", "face"), read_texture_archive(data)):
        pal, img = split_texture(texture)
        png = out_dir / f"{name}.png"
        save_image(png, decode_image(pal, img))
        entries.append(
            {
                "name": name,
                "png": str(png),
                "full_size": header.full_size,
                "bitfield_size": header.bitfield_size,
                "image_x": header.image_x,
                "image_y": header.image_y,
                "palette_x": header.palette_x,
                "palette_y": header.palette_y,
            }
        )
    manifest = out_dir / "manifest.json"
    manifest.write_text(json.dumps({"archive": args.archive, "entries": entries}, indent=2), encoding="utf-8")
    _emit({"outdir": str(out_dir), "manifest": str(manifest), "count": len(entries)})
    return 0


# -- models -------------------------------------------------------------------


def _primitive_hex(prim: Primitive) -> Dict[str, Any]:
    return {
        "vertices": prim.vertices.hex(),
        "tri": prim.tri.hex(),
        "quad": prim.quad.hex(),
        "vert_count": prim.vert_count,
        "tri_count": prim.tri_count,
        "quad_count": prim.quad_count,
    }


def cmd_model_encode_obj(args: argparse.Namespace) -> int:
    text = pathlib.Path(args.obj).read_text(encoding="ascii")
    prim = encode_obj(text, material=args.material, strict=not args.compat)
    _emit({"obj": args.obj, **_primitive_hex(prim)}, args.json)
    return 0


def _load_primitive(base: pathlib.Path, item: Any, strict: bool) -> Primitive:
    if isinstance(item, dict) and "vertices" in item:
        return Primitive.from_hex(str(item["vertices"]), str(item.get("tri", "")), str(item.get("quad", "")))
    material = 0
    if isinstance(item, dict):
        material = _to_int(item.get("material", 0))
        item = item["obj"]
    path = _resolve(base, item)
    log.debug("Encoding %s", path)
    return encode_obj(path.read_text(encoding="ascii"), material=material, strict=strict)


def _build_model(cfg: Dict[str, Any], base: pathlib.Path, strict: bool) -> Dict[str, Any]:
    layout = ModelLayout.from_config(cfg["layout"]) if cfg.get("layout") else PLAYER_LAYOUT
    groups: Dict[str, List[Primitive]] = {}
    for name, items in (cfg.get("groups") or {}).items():
        groups[str(name)] = [_load_primitive(base, item, strict) for item in items or []]
    model = assemble_model(layout, groups)

    template = _resolve(base, cfg["template"])
    out = _resolve(base, cfg["out"])
    _write(out, splice_model(template.read_bytes(), model))
    log.info("Wrote model archive %s", out)
    return {
        "template": str(template),
        "out": str(out),
        "model_size": len(model),
        "submeshes": {name: len(prims) for name, prims in groups.items()},
    }


def cmd_model_build(args: argparse.Namespace) -> int:
    cfg_path = pathlib.Path(args.config)
    cfg = _load_config(cfg_path)
    strict = bool(cfg.get("strict", True)) and not args.compat
    _emit(_build_model(cfg["model"], cfg_path.parent, strict))
    return 0


def cmd_model_export(args: argparse.Namespace) -> int:
    data = pathlib.Path(args.archive).read_bytes()
    if args.player:
        model = parse_player_model(data, PLAYER_LAYOUT, base=MODEL_FILE_HEADER)
    else:
        model = parse_mesh(data, _to_int(args.offset), strict=not args.compat)
    obj = write_obj(model, pathlib.Path(args.out))
    _emit(
        {
            "archive": args.archive,
            "obj": str(obj),
            "bones": len(model.bones),
            "vertices": len(model.vertices),
            "triangles": len(model.corners) // 3,
            "textures": [
                {"image_coords": f"0x{t.image_coords:04X}", "palette_coords": f"0x{t.palette_coords:04X}"}
                for t in model.textures
            ],
        },
        args.json,
    )
    return 0


def cmd_model_inspect(args: argparse.Namespace) -> int:
    data = pathlib.Path(args.archive).read_bytes()
    groups: Dict[str, Any] = {}
    for name, (header_ofs, count) in PLAYER_LAYOUT.groups.items():
        groups[name] = [
            {
                "tri_count": h.tri_count,
                "quad_count": h.quad_count,
                "vert_count": h.vert_count,
                "tri_ofs": f"0x{h.tri_ofs:X}",
                "quad_ofs": f"0x{h.quad_ofs:X}",
                "vert_ofs": f"0x{h.vert_ofs:X}",
            }
            for h in read_submesh_table(data, MODEL_FILE_HEADER + header_ofs, count)
        ]
    _emit({"archive": args.archive, "groups": groups}, args.json)
    return 0


# -- animation ----------------------------------------------------------------


def cmd_anim_dump(args: argparse.Namespace) -> int:
    data = pathlib.Path(args.data).read_bytes()
    if args.mesh_offset is not None:
        bones = parse_mesh(data, _to_int(args.mesh_offset), strict=not args.compat).bones
    else:
        bones = [Bone(i, (0.0, 0.0, 0.0)) for i in range(args.bones)]
    defs_ofs = _to_int(args.defs_offset)
    pools = parse_pools(data, _to_int(args.pools_offset), defs_ofs, len(bones))
    defs = parse_definitions(data, defs_ofs)
    clips = build_clips(pools, defs, bones)
    report = {
        "data": args.data,
        "bones": len(bones),
        "pools": [{"offset": f"0x{p.offset:X}", "frames": len(p.frames)} for p in pools],
        "animations": [
            {
                "index": c.index,
                "source": d.source,
                "frames": d.frames,
                "duration": round(c.duration, 4),
                "root_motion": [[round(v, 4) for v in pos] for pos in c.root_motion],
                "tracks": [
                    {"bone": t.bone, "rotations": [[round(q, 5) for q in quat] for quat in t.rotations]}
                    for t in c.tracks
                ]
                if args.tracks
                else [],
            }
            for c, d in zip(clips, defs)
        ],
    }
    _emit(report, args.json)
    return 0


# -- ROM ----------------------------------------------------------------------


def cmd_rom_locate(args: argparse.Namespace) -> int:
    rom = pathlib.Path(args.rom).read_bytes()
    name = args.name or pathlib.Path(args.file).name
    offset = locate(pathlib.Path(args.file).read_bytes(), rom, name)
    _emit({"rom": args.rom, "name": name, "offset": f"0x{offset:X}"})
    return 0


def cmd_rom_patch(args: argparse.Namespace) -> int:
    rom = bytearray(pathlib.Path(args.rom).read_bytes())
    replacement = pathlib.Path(args.replacement).read_bytes()
    if args.offset is not None:
        name = args.name or pathlib.Path(args.replacement).name
        offset = _to_int(args.offset)
        patch(rom, offset, replacement)
        done = [(name, offset)]
    elif args.original:
        original = pathlib.Path(args.original).read_bytes()
        name = args.name or pathlib.Path(args.original).name
        done = update_rom(rom, [(name, original, replacement)])
    else:
        raise ValueError("rom-patch needs --original or --offset")
    out = pathlib.Path(args.out or args.rom)
    _write(out, bytes(rom))
    _emit({"rom": args.rom, "out": str(out), "patched": [{"name": n, "offset": f"0x{o:X}"} for n, o in done]})
    return 0


def _patch_rom(cfg: Dict[str, Any], base: pathlib.Path) -> Dict[str, Any]:
    image = _resolve(base, cfg["image"])
    rom = bytearray(image.read_bytes())
    entries = []
    for item in cfg.get("archives") or []:
        original = _resolve(base, item["original"])
        replacement = _resolve(base, item["replacement"])
        name = str(item.get("name", original.name))
        entries.append((name, original.read_bytes(), replacement.read_bytes()))
    done = update_rom(rom, entries)
    out = _resolve(base, cfg.get("out", image))
    _write(out, bytes(rom))
    return {"image": str(image), "out": str(out), "patched": [{"name": n, "offset": f"0x{o:X}"} for n, o in done]}


def cmd_build(args: argparse.Namespace) -> int:
    cfg_path = pathlib.Path(args.config)
    cfg = _load_config(cfg_path)
    base = cfg_path.parent
    strict = bool(cfg.get("strict", True)) and not args.compat
    report: Dict[str, Any] = {"config": str(cfg_path), "strict": strict}

    tex = cfg.get("texture")
    if tex:
        report["texture"] = _build_textures(
            _resolve(base, tex["template"]),
            _resolve(base, tex["body"]),
            _resolve(base, tex["face"]),
            _resolve(base, tex["special_weapon"]) if tex.get("special_weapon") else None,
            _resolve(base, tex["out"]),
            strict,
        )
    if cfg.get("model"):
        report["model"] = _build_model(cfg["model"], base, strict)
    if cfg.get("rom") and not args.skip_rom:
        report["rom"] = _patch_rom(cfg["rom"], base)

    _emit(report, args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Mega Man Legends 2 asset tool")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    pte = sub.add_parser("texture-encode", help="Encode a 256x256 PNG into palette + image bytes")
    pte.add_argument("--image", required=True, help="Input PNG")
    pte.add_argument("--out", required=True, help="Output binary (0x20 palette bytes then 0x8000 image bytes)")
    pte.add_argument("--compat", action="store_true", help="Drop colors past 16 instead of failing")
    pte.set_defaults(func=cmd_texture_encode)

    ptd = sub.add_parser("texture-decode", help="Decode palette + image bytes to PNG")
    ptd.add_argument("--texture", required=True, help="Input binary (palette then image)")
    ptd.add_argument("--offset", default="0", help="Start offset inside the input (hex or int)")
    ptd.add_argument("--width", type=int, default=256, help="Image width (default: 256)")
    ptd.add_argument("--height", type=int, default=256, help="Image height (default: 256)")
    ptd.add_argument("--out", required=True, help="Output PNG")
    ptd.set_defaults(func=cmd_texture_decode)

    ptv = sub.add_parser("texture-render-vram", help="Render a texture page from a 1024x512 VRAM dump")
    ptv.add_argument("--vram", required=True, help="Raw VRAM dump (1 MiB)")
    ptv.add_argument("--image-coords", required=True, help="Texture table image coords (hex or int)")
    ptv.add_argument("--palette-coords", required=True, help="Texture table palette coords (hex or int)")
    ptv.add_argument("--out", required=True, help="Output PNG")
    ptv.set_defaults(func=cmd_texture_render_vram)

    pc = sub.add_parser("compress", help="Compress a binary with the segment coder")
    pc.add_argument("--input", required=True, help="Input binary")
    pc.add_argument("--bitfield", required=True, help="Output bitfield path")
    pc.add_argument("--payload", required=True, help="Output token payload path")
    pc.set_defaults(func=cmd_compress)

    pd = sub.add_parser("decompress", help="Decompress a bitfield + payload pair")
    pd.add_argument("--bitfield", required=True, help="Bitfield path")
    pd.add_argument("--payload", required=True, help="Token payload path")
    pd.add_argument("--size", required=True, help="Decompressed size (hex or int)")
    pd.add_argument("--out", required=True, help="Output binary")
    pd.set_defaults(func=cmd_decompress)

    pab = sub.add_parser("texture-archive-build", help="Rebuild the player texture archive (PL00T)")
    pab.add_argument("--template", required=True, help="Original PL00T.BIN")
    pab.add_argument("--body", required=True, help="Body texture PNG")
    pab.add_argument("--face", required=True, help="Face texture PNG")
    pab.add_argument("--special-weapon", help="File whose last 0x4000 bytes replace the lower face page")
    pab.add_argument("--out", required=True, help="Output archive")
    pab.add_argument("--compat", action="store_true", help="Drop colors past 16 instead of failing")
    pab.set_defaults(func=cmd_texture_archive_build)

    pax = sub.add_parser("texture-archive-extract", help="Decode the body and face textures of a PL00T archive")
    pax.add_argument("--archive", required=True, help="PL00T.BIN")
    pax.add_argument("--outdir", required=True, help="Output folder for PNGs and manifest")
    pax.set_defaults(func=cmd_texture_archive_extract)

    pme = sub.add_parser("model-encode-obj", help="Encode one OBJ submesh and print its arrays as hex")
    pme.add_argument("--obj", required=True, help="Input OBJ")
    pme.add_argument("--material", type=int, default=0, help="Material index for every face (default: 0)")
    pme.add_argument("--compat", action="store_true", help="Clamp out-of-range vertices instead of failing")
    pme.add_argument("--json", help="Optional output JSON path")
    pme.set_defaults(func=cmd_model_encode_obj)

    pmb = sub.add_parser("model-build", help="Assemble the player model archive from the config's model section")
    pmb.add_argument("--config", required=True, help="Build config (.yaml/.yml/.json)")
    pmb.add_argument("--compat", action="store_true", help="Clamp out-of-range vertices instead of failing")
    pmb.set_defaults(func=cmd_model_build)

    pmx = sub.add_parser("model-export", help="Export an entity mesh or player model to OBJ")
    pmx.add_argument("--archive", required=True, help="Archive or memory dump containing the mesh")
    pmx.add_argument("--offset", default="0", help="Entity mesh header offset (hex or int)")
    pmx.add_argument("--player", action="store_true", help="Read a PL00P010 player model instead")
    pmx.add_argument("--out", required=True, help="Output OBJ base path")
    pmx.add_argument("--compat", action="store_true", help="Warn on unknown hierarchy flags instead of failing")
    pmx.add_argument("--json", help="Optional output JSON path")
    pmx.set_defaults(func=cmd_model_export)

    pmi = sub.add_parser("model-inspect", help="List the submesh headers of a PL00P010 player model")
    pmi.add_argument("--archive", required=True, help="PL00P010.BIN")
    pmi.add_argument("--json", help="Optional output JSON path")
    pmi.set_defaults(func=cmd_model_inspect)

    pan = sub.add_parser("anim-dump", help="Dump keyframe pools and animation definitions")
    pan.add_argument("--data", required=True, help="Binary holding the animation block")
    pan.add_argument("--pools-offset", required=True, help="Keyframe pool table offset (hex or int)")
    pan.add_argument("--defs-offset", required=True, help="Animation definition table offset (hex or int)")
    pan.add_argument("--mesh-offset", help="Entity mesh header offset for the skeleton (hex or int)")
    pan.add_argument("--bones", type=int, default=0, help="Bone count when no mesh offset is given")
    pan.add_argument("--tracks", action="store_true", help="Include per-bone quaternion tracks")
    pan.add_argument("--compat", action="store_true", help="Warn on unknown hierarchy flags instead of failing")
    pan.add_argument("--json", help="Optional output JSON path")
    pan.set_defaults(func=cmd_anim_dump)

    prl = sub.add_parser("rom-locate", help="Find a file inside a raw BIN track")
    prl.add_argument("--rom", required=True, help="BIN track image")
    prl.add_argument("--file", required=True, help="File to search for")
    prl.add_argument("--name", help="Name used in messages (default: file name)")
    prl.set_defaults(func=cmd_rom_locate)

    prp = sub.add_parser("rom-patch", help="Replace a file inside a raw BIN track")
    prp.add_argument("--rom", required=True, help="BIN track image")
    prp.add_argument("--original", help="Original file as stored in the image")
    prp.add_argument("--offset", help="Write at this image offset instead of searching for --original")
    prp.add_argument("--replacement", required=True, help="Replacement file")
    prp.add_argument("--name", help="Name used in messages (default: original file name)")
    prp.add_argument("--out", help="Optional output path (default: in-place)")
    prp.set_defaults(func=cmd_rom_patch)

    pb = sub.add_parser("build", help="Run the texture, model and ROM steps of a build config")
    pb.add_argument("--config", required=True, help="Build config (.yaml/.yml/.json)")
    pb.add_argument("--skip-rom", action="store_true", help="Only write archives, leave the disc image alone")
    pb.add_argument("--compat", action="store_true", help="Use compatible mode for every codec")
    pb.add_argument("--json", help="Optional output JSON path")
    pb.set_defaults(func=cmd_build)

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
