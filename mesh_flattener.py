"""
Merge multi-section indexed meshes into one triangle soup.

Each section's index buffer is renumbered by the number of vertices emitted
before it, so the result can be decomposed as a single mesh.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import trimesh

from decomp_geometry import DecompError, TriangleMesh


MIN_VERTICES = 4
MIN_INDICES = 3


@dataclass
class MeshSection:
    """One indexed vertex/index buffer pair; indices are local to the section."""

    vertices: np.ndarray
    indices: np.ndarray


@dataclass
class FlattenResult:
    success: bool
    mesh: TriangleMesh | None = None
    error: DecompError | None = None
    section_count: int = 0


def _as_section(section) -> MeshSection:
    if isinstance(section, MeshSection):
        return section
    if isinstance(section, trimesh.Trimesh):
        return MeshSection(vertices=np.asarray(section.vertices), indices=np.asarray(section.faces).reshape(-1))
    if isinstance(section, (tuple, list)) and len(section) == 2:
        return MeshSection(vertices=np.asarray(section[0]), indices=np.asarray(section[1]).reshape(-1))
    raise TypeError(f"Unsupported mesh section type: {type(section).__name__}")


def flatten_sections(sections) -> FlattenResult:
    """
    Concatenate mesh sections into one `TriangleMesh`.

    Parameters
    ----------
    sections : iterable
        `MeshSection` records, `(vertices, indices)` pairs or
        `trimesh.Trimesh` objects. `None` entries are skipped.

    Returns
    -------
    FlattenResult
        The merged mesh, or `INSUFFICIENT_GEOMETRY` when fewer than 4
        vertices or 3 indices remain.

    Raises
    ------
    ValueError
        If a section index falls outside that section's vertex buffer.
    """

    vertex_chunks: list[np.ndarray] = []
    index_chunks: list[np.ndarray] = []
    offset = 0
    count = 0
    for raw in sections:
        if raw is None:
            continue
        section = _as_section(raw)
        vertices = np.asarray(section.vertices, dtype=np.float64).reshape(-1, 3)
        indices = np.asarray(section.indices, dtype=np.int64).reshape(-1)
        if indices.size and (indices.min() < 0 or indices.max() >= len(vertices)):
            raise ValueError(f"Section {count} references a vertex outside its buffer.")
        vertex_chunks.append(vertices)
        index_chunks.append(indices + offset)
        offset += len(vertices)
        count += 1

    vertices = np.vstack(vertex_chunks) if vertex_chunks else np.zeros((0, 3), dtype=np.float64)
    indices = np.concatenate(index_chunks) if index_chunks else np.zeros(0, dtype=np.int64)
    # Trailing indices that do not form a whole triangle are dropped.
    indices = indices[: indices.size - indices.size % 3]

    if len(vertices) < MIN_VERTICES or indices.size < MIN_INDICES:
        return FlattenResult(success=False, error=DecompError.INSUFFICIENT_GEOMETRY, section_count=count)
    return FlattenResult(success=True, mesh=TriangleMesh(vertices, indices), section_count=count)


def flatten_scene(scene: trimesh.Scene) -> FlattenResult:
    """Flatten every geometry instance of a scene, with its transform applied."""

    return flatten_sections(
        geometry for geometry in scene.dump() if isinstance(geometry, trimesh.Trimesh)
    )


def flatten_any(source) -> FlattenResult:
    """Dispatch on `TriangleMesh`, `trimesh.Scene`, `trimesh.Trimesh` or a section list."""

    if isinstance(source, TriangleMesh):
        if len(source.vertices) < MIN_VERTICES or source.indices.size < MIN_INDICES:
            return FlattenResult(success=False, error=DecompError.INSUFFICIENT_GEOMETRY, section_count=1)
        return FlattenResult(success=True, mesh=source, section_count=1)
    if isinstance(source, trimesh.Scene):
        return flatten_scene(source)
    if isinstance(source, (trimesh.Trimesh, MeshSection)):
        return flatten_sections([source])
    return flatten_sections(source)
