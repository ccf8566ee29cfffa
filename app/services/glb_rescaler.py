"""Normalise the real-world size of a GLB scene.

The largest horizontal (X or Z, glTF is Y-up) extent of the scene's world
bounding box is scaled to ``TARGET_SIZE`` metres. The scale is baked into the
vertex positions rather than a node transform so that viewers ignoring node
transforms (AR Quick Look, Scene Viewer) still show the right size.
"""
import json
import logging
import struct
from contextlib import contextmanager
from dataclasses import dataclass, field

import numpy as np

from app.utils.binary import align
from app.utils.exceptions import FormatError

logger = logging.getLogger(__name__)

TARGET_SIZE = 0.3  # metres, a dinner plate

GLB_MAGIC = 0x46546C67
GLB_VERSION = 2
JSON_CHUNK_TYPE = 0x4E4F534A
BIN_CHUNK_TYPE = 0x004E4942

FLOAT = 5126

# raised by lookups and unpacking on a structurally wrong glTF document
STRUCTURE_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError, struct.error)


@dataclass
class GlbDocument:
    payload: dict
    binary: bytearray
    extra_chunks: list[tuple[int, bytes]] = field(default_factory=list)


def parse_glb(data: bytes) -> GlbDocument:
    if len(data) < 20:
        raise FormatError("GLB too small")

    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLB_MAGIC:
        raise FormatError("Invalid GLB magic")
    if version != GLB_VERSION:
        raise FormatError(f"Unsupported GLB version: {version}")
    if total_length > len(data):
        raise FormatError("GLB truncated")

    offset = 12
    json_chunk: bytes | None = None
    bin_chunk: bytearray | None = None
    extra: list[tuple[int, bytes]] = []

    while offset + 8 <= total_length:
        chunk_len, chunk_type = struct.unpack_from("<II", data, offset)
        offset += 8
        chunk_end = offset + chunk_len
        if chunk_end > total_length:
            raise FormatError("GLB chunk exceeds file size")

        chunk = data[offset:chunk_end]
        offset = chunk_end

        if chunk_type == JSON_CHUNK_TYPE and json_chunk is None:
            json_chunk = chunk
        elif chunk_type == BIN_CHUNK_TYPE and bin_chunk is None:
            bin_chunk = bytearray(chunk)
        else:
            extra.append((chunk_type, bytes(chunk)))

    if json_chunk is None:
        raise FormatError("GLB missing JSON chunk")

    try:
        payload = json.loads(json_chunk.decode("utf-8").rstrip(" \t\r\n\x00"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError(f"GLB JSON chunk is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise FormatError("GLB JSON root is not an object")

    return GlbDocument(payload=payload, binary=bin_chunk if bin_chunk is not None else bytearray(), extra_chunks=extra)


def build_glb(document: GlbDocument) -> bytes:
    json_bytes = json.dumps(document.payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    json_bytes += b" " * (align(len(json_bytes), 4) - len(json_bytes))

    chunks = [(JSON_CHUNK_TYPE, json_bytes)]
    if document.binary:
        binary = bytes(document.binary)
        chunks.append((BIN_CHUNK_TYPE, binary + b"\x00" * (align(len(binary), 4) - len(binary))))
    chunks.extend(document.extra_chunks)

    total_length = 12 + sum(8 + len(chunk) for _, chunk in chunks)
    out = bytearray(struct.pack("<III", GLB_MAGIC, GLB_VERSION, total_length))
    for chunk_type, chunk in chunks:
        out += struct.pack("<II", len(chunk), chunk_type)
        out += chunk
    return bytes(out)


def _node_matrix(node: dict) -> np.ndarray:
    if "matrix" in node:
        # glTF stores matrices column-major
        return np.array(node["matrix"], dtype=np.float64).reshape(4, 4).T

    tx, ty, tz = node.get("translation", (0.0, 0.0, 0.0))
    x, y, z, w = node.get("rotation", (0.0, 0.0, 0.0, 1.0))
    sx, sy, sz = node.get("scale", (1.0, 1.0, 1.0))

    rotation = np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ])
    matrix = np.eye(4)
    matrix[:3, :3] = rotation * np.array([sx, sy, sz])
    matrix[:3, 3] = (tx, ty, tz)
    return matrix


def _position_key(document: GlbDocument, accessor_index: int) -> tuple:
    accessor = document.payload["accessors"][accessor_index]
    view_index = accessor.get("bufferView")
    if view_index is None:
        return ("accessor", accessor_index)
    view = document.payload["bufferViews"][view_index]
    return ("view", view_index, view.get("byteOffset", 0) + accessor.get("byteOffset", 0))


def _positions(document: GlbDocument, accessor_index: int) -> np.ndarray | None:
    """Return a (count, 3) float32 view over the BIN chunk, or None if the
    accessor has no backing buffer view (all zeros)."""
    try:
        accessor = document.payload["accessors"][accessor_index]
    except (KeyError, IndexError, TypeError) as exc:
        raise FormatError(f"Missing accessor {accessor_index}") from exc

    if accessor.get("type") != "VEC3":
        raise FormatError(f"Accessor {accessor_index} is not VEC3")
    if accessor.get("componentType") != FLOAT:
        raise FormatError(f"Unsupported POSITION component type {accessor.get('componentType')}")

    count = int(accessor.get("count", 0))
    view_index = accessor.get("bufferView")
    if view_index is None or count == 0:
        return None

    try:
        view = document.payload["bufferViews"][view_index]
        buffer = document.payload["buffers"][view.get("buffer", 0)]
    except (KeyError, IndexError, TypeError) as exc:
        raise FormatError(f"Accessor {accessor_index} points at a missing buffer view") from exc
    if view.get("buffer", 0) != 0 or "uri" in buffer:
        raise FormatError("Only GLB-embedded buffers are supported")

    offset = view.get("byteOffset", 0) + accessor.get("byteOffset", 0)
    stride = view.get("byteStride") or 12
    end = offset + stride * (count - 1) + 12
    if end > len(document.binary):
        raise FormatError(f"Accessor {accessor_index} exceeds BIN chunk")

    return np.ndarray(
        shape=(count, 3),
        dtype="<f4",
        buffer=document.binary,
        offset=offset,
        strides=(stride, 4),
    )


def _scene(document: GlbDocument) -> dict | None:
    scenes = document.payload.get("scenes") or []
    index = document.payload.get("scene")
    if index is not None and 0 <= index < len(scenes):
        return scenes[index]
    return scenes[0] if scenes else None


def scene_bounds(document: GlbDocument) -> tuple[np.ndarray, np.ndarray] | None:
    """World-space (min, max) of every mesh reachable from the default scene,
    or None when there is no scene or no geometry to measure."""
    scene = _scene(document)
    if scene is None:
        return None

    nodes = document.payload.get("nodes") or []
    meshes = document.payload.get("meshes") or []
    lo = np.full(3, np.inf)
    hi = np.full(3, -np.inf)

    stack = [(index, np.eye(4)) for index in scene.get("nodes", [])]
    visited = set()
    while stack:
        index, parent = stack.pop()
        if index in visited or not 0 <= index < len(nodes):
            continue
        visited.add(index)
        node = nodes[index]
        world = parent @ _node_matrix(node)

        mesh_index = node.get("mesh")
        if mesh_index is not None and 0 <= mesh_index < len(meshes):
            for primitive in meshes[mesh_index].get("primitives", []):
                accessor_index = primitive.get("attributes", {}).get("POSITION")
                if accessor_index is None:
                    continue
                positions = _positions(document, accessor_index)
                if positions is None:
                    # no buffer view: every position is zero, so the node origin
                    points = world[:3, 3].reshape(1, 3)
                else:
                    points = positions.astype(np.float64) @ world[:3, :3].T + world[:3, 3]
                lo = np.minimum(lo, points.min(axis=0))
                hi = np.maximum(hi, points.max(axis=0))

        stack.extend((child, world) for child in node.get("children", []))

    if not np.all(np.isfinite(lo)):
        return None
    return lo, hi


def _factor(document: GlbDocument, target_size: float) -> float | None:
    bounds = scene_bounds(document)
    if bounds is None:
        return None
    lo, hi = bounds
    size = hi - lo
    largest = max(float(size[0]), float(size[2]))
    if not np.isfinite(largest) or largest <= 0:
        return None
    return target_size / largest


@contextmanager
def _malformed_scene():
    try:
        yield
    except STRUCTURE_ERRORS as exc:
        raise FormatError(f"Malformed glTF scene: {exc!r}") from exc


def compute_scale_factor(data: bytes, target_size: float = TARGET_SIZE) -> float | None:
    """Uniform factor mapping the largest horizontal extent to target_size,
    or None if the scene has no root hierarchy or no horizontal extent."""
    document = parse_glb(data)
    with _malformed_scene():
        return _factor(document, target_size)


def _bake(document: GlbDocument, factor: float) -> int:
    accessors = document.payload.get("accessors") or []
    seen = set()
    scaled = set()
    for mesh in document.payload.get("meshes") or []:
        for primitive in mesh.get("primitives", []):
            indices = [primitive.get("attributes", {}).get("POSITION")]
            indices += [target.get("POSITION") for target in primitive.get("targets", [])]
            for accessor_index in indices:
                if accessor_index is None or accessor_index in seen:
                    continue
                seen.add(accessor_index)

                positions = _positions(document, accessor_index)
                if positions is None:
                    continue
                # accessors aliasing the same bytes are scaled once
                key = _position_key(document, accessor_index)
                if key not in scaled:
                    scaled.add(key)
                    positions *= np.float32(factor)
                accessor = accessors[accessor_index]
                if "min" in accessor or "max" in accessor:
                    accessor["min"] = positions.min(axis=0).tolist()
                    accessor["max"] = positions.max(axis=0).tolist()
    return len(scaled)


def rescale(data: bytes, target_size: float = TARGET_SIZE) -> tuple[bytes, float | None]:
    """Bake the normalising scale into the vertex data.

    Returns the input unchanged with a None factor for a degenerate scene;
    raises FormatError for anything that is not a well-formed GLB.
    """
    document = parse_glb(data)
    with _malformed_scene():
        factor = _factor(document, target_size)
        if factor is None:
            logger.warning("GLB has no scene or zero horizontal extent; skipping rescale")
            return data, None
        count = _bake(document, factor)

    logger.info("Rescaled GLB by %.6f (%d position accessors)", factor, count)
    return build_glb(document), factor
