"""
Meshing of a trap electrode layout.

A layout is either a directory of CAD files, one per electrode, named after
the electrode ("0.step", "1.step", ..., "GROUND.step"), or an already meshed
gmsh file whose physical surface groups carry those names. Both end up as a
tetrahedral vacuum mesh with one named boundary per electrode, plus an
"outer_box" boundary when the vacuum box was generated here.

gmsh is imported where it is used; reading a finished .msh only needs meshio.
"""

import json, pathlib
from typing import Dict, Optional, Tuple

import meshio
import numpy as np
from skfem.io.meshio import from_meshio as skfem_from_meshio

from trap_errors import LayoutImportFailed

CAD_SUFFIXES = [".step", ".stp", ".iges", ".igs", ".brep"]
MESH_SUFFIXES = [".msh"]
OUTER_BOX = "outer_box"


def _infer_unit_scale(points) -> Tuple[float, str]:
    """
    Infer unit scale conversion factor (to meters) for CAD coordinates.

    Returns:
        tuple: (scale_factor, reason_string)
    """
    pts = np.asarray(points)
    if pts.size == 0:
        return 1.0, "default (empty layout)"

    max_abs = float(np.max(np.abs(pts)))
    if not np.isfinite(max_abs) or max_abs == 0:
        return 1.0, "default (degenerate extent: all zeros or NaN)"

    # Most surface traps are ca. 1 mm to 10 cm
    if max_abs > 1e6:
        return 1e-9, f"inferred nanometers (max coord ~ {max_abs:.3g})"
    elif max_abs > 1e4:
        return 1e-6, f"inferred micrometers (max coord ~ {max_abs:.3g})"
    elif max_abs > 100:
        return 1e-3, f"inferred millimeters (max coord ~ {max_abs:.3g})"
    elif max_abs > 10:
        return 1e-2, f"inferred centimeters (max coord ~ {max_abs:.3g})"
    elif max_abs > 1:
        print(f"[mesh] Warning: ambiguous CAD units (max coord ~ {max_abs:.3g}), assuming millimeters.")
        return 1e-3, f"ambiguous (max coord ~ {max_abs:.3g}, assuming millimeters)"
    else:
        return 1.0, f"assume meters (max coord ~ {max_abs:.3g})"


def find_electrode_files(layout_dir) -> Dict[str, pathlib.Path]:
    #name -> CAD file, one solid per electrode
    layout_dir = pathlib.Path(layout_dir)
    files = sorted(p for p in layout_dir.iterdir() if p.suffix.lower() in CAD_SUFFIXES)
    if not files:
        raise LayoutImportFailed(f"No CAD files (.step, .iges, .brep) found in {layout_dir}.")
    return {p.stem: p for p in files}


def mesh_from_cad(electrode_files: Dict[str, pathlib.Path], msh_path,
                  config: dict, refine_levels: int = 0) -> pathlib.Path:
    """
    Cut the electrode volumes out of a vacuum box and mesh the vacuum.

    Each electrode's vacuum-facing surfaces become a physical group named
    after the electrode; the box walls become OUTER_BOX.
    """
    import gmsh

    msh_path = pathlib.Path(msh_path)
    msh_path.parent.mkdir(parents=True, exist_ok=True)
    default_half_m = float(config["vacuum_box_half_extent_m"])
    lc_s_m = float(config["lc_surface_m"])
    lc_v_m = float(config["lc_volume_m"])
    outer_tag = int(config["outer_box_tag"])

    # Avoid signal handling errors when running from a worker process.
    gmsh.initialize(interruptible=False)
    try:
        gmsh.option.setNumber("General.Terminal", 0)
        gmsh.option.setNumber("Mesh.Algorithm3D", 1)  # 1=Delaunay
        gmsh.option.setNumber("Mesh.Optimize", 1)
        gmsh.option.setNumber("Mesh.OptimizeThreshold", 0.3)
        gmsh.option.setNumber("Mesh.CharacteristicLengthFromCurvature", 1)
        gmsh.option.setNumber("Mesh.MinimumCirclePoints", 24)
        gmsh.option.setNumber("Mesh.ElementOrder", 1)
        # near-deterministic meshing across re-primes
        gmsh.option.setNumber("Mesh.RandomFactor", 1e-9)
        gmsh.model.add("SurfaceTrap")

        electrode_volumes = {}
        for name, cad in electrode_files.items():
            print(f"[mesh] Importing {cad.name}...")
            try:
                out = gmsh.model.occ.importShapes(str(cad))
                gmsh.model.occ.synchronize()
            except Exception as exc:
                raise LayoutImportFailed(f"Failed to import {cad.name}: {exc}") from exc
            vols = [tag for dim, tag in out if dim == 3]
            if not vols:
                raise LayoutImportFailed(
                    f"{cad.name} did not produce a 3D volume. Is it a surface mesh?")
            electrode_volumes[name] = vols

        all_elec_tags = [v for vlist in electrode_volumes.values() for v in vlist]
        bboxes = np.array([gmsh.model.getBoundingBox(3, t) for t in all_elec_tags])
        max_coord = float(np.max(np.abs(bboxes)))
        unit_scale, scale_reason = _infer_unit_scale(bboxes)
        print(f"[mesh] CAD unit scale: {unit_scale:g} m per unit ({scale_reason})")

        # meter-based sizes to CAD units
        half = max(default_half_m / unit_scale, max_coord * 1.5)
        lc_s = lc_s_m / unit_scale
        lc_v = lc_v_m / unit_scale

        print(f"[mesh] Creating vacuum box with half-extent: {half:.4f} CAD units")
        box_tag = gmsh.model.occ.addBox(-half, -half, -half, 2*half, 2*half, 2*half)
        gmsh.model.occ.synchronize()

        tool_dimtags = [(3, t) for t in all_elec_tags]
        print(f"[mesh] Cutting {len(tool_dimtags)} electrode volumes from vacuum...")
        vacuum_dimtags, _ = gmsh.model.occ.cut([(3, box_tag)], tool_dimtags,
                                               removeObject=True, removeTool=False)
        gmsh.model.occ.synchronize()

        vacuum_surfaces = set()
        for dim, tag in vacuum_dimtags:
            bnd = gmsh.model.getBoundary([(dim, tag)], combined=False, oriented=False)
            vacuum_surfaces.update(t for d, t in bnd if d == 2)

        tol = 1e-6 * half
        outer_faces = []
        for surf in vacuum_surfaces:
            b = gmsh.model.getBoundingBox(2, surf)
            if any(abs(abs(c) - half) < tol for c in b):
                outer_faces.append(surf)
        pg_out = gmsh.model.addPhysicalGroup(2, outer_faces, tag=outer_tag)
        gmsh.model.setPhysicalName(2, pg_out, OUTER_BOX)

        internal_surfaces = vacuum_surfaces - set(outer_faces)
        for name, vol_tags in electrode_volumes.items():
            candidates = []
            for v in vol_tags:
                bnd = gmsh.model.getBoundary([(3, v)], combined=False, oriented=False)
                candidates.extend(t for d, t in bnd if d == 2)
            interface = sorted(set(candidates) & internal_surfaces)
            if not interface:
                raise LayoutImportFailed(f"Electrode '{name}' has no surface facing the vacuum.")
            print(f"[mesh] Grouping {len(interface)} vacuum-interface surfaces for electrode: {name}")
            pg_tag = gmsh.model.addPhysicalGroup(2, interface)
            gmsh.model.setPhysicalName(2, pg_tag, name)

        pg_vol = gmsh.model.addPhysicalGroup(3, [t for d, t in vacuum_dimtags])
        gmsh.model.setPhysicalName(3, pg_vol, "vacuum")

        # only the vacuum gets meshed
        gmsh.model.occ.remove(tool_dimtags, recursive=True)
        gmsh.model.occ.synchronize()

        gmsh.option.setNumber("Mesh.CharacteristicLengthMin", lc_s * 0.5)
        gmsh.option.setNumber("Mesh.CharacteristicLengthMax", lc_v)
        dist_field = gmsh.model.mesh.field.add("Distance")
        gmsh.model.mesh.field.setNumbers(dist_field, "FacesList", sorted(internal_surfaces))
        thresh_field = gmsh.model.mesh.field.add("Threshold")
        gmsh.model.mesh.field.setNumber(thresh_field, "IField", dist_field)
        gmsh.model.mesh.field.setNumber(thresh_field, "LcMin", lc_s * 0.5)  # fine near electrodes
        gmsh.model.mesh.field.setNumber(thresh_field, "LcMax", lc_v)
        gmsh.model.mesh.field.setNumber(thresh_field, "DistMin", lc_s)
        gmsh.model.mesh.field.setNumber(thresh_field, "DistMax", 0.005 / unit_scale)
        gmsh.model.mesh.field.setAsBackgroundMesh(thresh_field)

        gmsh.model.mesh.generate(3)
        for _ in range(refine_levels):
            gmsh.model.mesh.refine()
        gmsh.write(str(msh_path))
    finally:
        gmsh.finalize()

    meta = {
        "electrodes": sorted(electrode_volumes),
        "outer_box_tag": outer_tag,
        "unit_scale_to_m": unit_scale,
        "unit_scale_reason": scale_reason,
        "refine_levels": refine_levels,
    }
    with open(msh_path.with_suffix(".json"), "w") as f:
        json.dump(meta, f, indent=2)

    print(f"[mesh] Success. Output at {msh_path}")
    return msh_path


def refine_msh(src, dst, refine_levels: int) -> pathlib.Path:
    #Uniformly split an existing gmsh mesh; physical groups carry over
    import gmsh

    dst = pathlib.Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    gmsh.initialize(interruptible=False)
    try:
        gmsh.option.setNumber("General.Terminal", 0)
        gmsh.open(str(src))
        for _ in range(refine_levels):
            gmsh.model.mesh.refine()
        gmsh.write(str(dst))
    finally:
        gmsh.finalize()
    print(f"[mesh] Refined {pathlib.Path(src).name} {refine_levels}x -> {dst}")
    return dst


def _read_msh(msh_path) -> meshio.Mesh:
    # gmsh reader directly: meshio.read exits the process on unreadable input
    try:
        return meshio.gmsh.read(str(msh_path))
    except (meshio.ReadError, OSError, ValueError) as exc:
        raise LayoutImportFailed(f"Cannot read mesh {msh_path}: {exc}") from exc


def physical_names(msh_path) -> list:
    #Names of the 2-D physical groups in a gmsh file
    m = _read_msh(msh_path)
    return sorted(name for name, (tag, dim) in m.field_data.items() if int(dim) == 2)


def read_tagged_mesh(msh_path):
    #gmsh file -> skfem MeshTet with named boundaries
    m = _read_msh(msh_path)
    if "tetra" not in m.cells_dict or "triangle" not in m.cells_dict:
        kinds = ", ".join(m.cells_dict.keys())
        raise LayoutImportFailed(
            "Mesh must contain tetra (3D) and triangle (surface) cells. "
            f"Found: {kinds or 'none'}.")
    return skfem_from_meshio(m)
