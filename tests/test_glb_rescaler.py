import math
import struct

import numpy as np
import pytest

from app.services.glb_rescaler import (
    TARGET_SIZE,
    build_glb,
    compute_scale_factor,
    parse_glb,
    rescale,
    scene_bounds,
)
from app.utils.exceptions import FormatError
from tests.factories import box, make_glb, read_glb_json


def _horizontal_extent(data: bytes) -> float:
    lo, hi = scene_bounds(parse_glb(data))
    size = hi - lo
    return max(size[0], size[2])


@pytest.mark.parametrize("size", [
    (1.0, 0.2, 0.5),
    (0.05, 0.01, 0.08),
    (12.0, 3.0, 40.0),
    (0.3, 0.3, 0.3),
])
def test_rescaled_horizontal_extent_matches_target(size):
    original = make_glb(box(*size, center=(0.4, 1.0, -2.0)))
    rescaled, factor = rescale(original)

    assert factor == pytest.approx(TARGET_SIZE / max(size[0], size[2]), rel=1e-6)
    assert _horizontal_extent(rescaled) == pytest.approx(TARGET_SIZE, rel=1e-5)


def test_height_is_ignored_for_tall_objects():
    # a tall garnish: narrow footprint, large height
    factor = compute_scale_factor(make_glb(box(0.1, 2.0, 0.05)))
    assert factor == pytest.approx(3.0, rel=1e-6)


def test_scale_preserves_proportions():
    rescaled, factor = rescale(make_glb(box(0.6, 0.2, 0.3)))
    lo, hi = scene_bounds(parse_glb(rescaled))
    assert (hi - lo) == pytest.approx([0.3, 0.1, 0.15], rel=1e-5)


def test_zero_horizontal_extent_returns_input_unchanged():
    # vertical line segment: no footprint at all
    positions = np.array([[0.0, 0.0, 0.0], [0.0, 1.0, 0.0]], dtype=np.float32)
    original = make_glb(positions)

    assert compute_scale_factor(original) is None
    data, factor = rescale(original)
    assert factor is None
    assert data is original


def test_missing_scene_returns_input_unchanged():
    original = make_glb(box(1.0, 1.0, 1.0), with_scene=False)

    assert compute_scale_factor(original) is None
    data, factor = rescale(original)
    assert factor is None
    assert data == original


def test_node_transform_counts_towards_bounds_but_is_not_modified():
    original = make_glb(box(1.0, 1.0, 1.0), node={"scale": [2.0, 1.0, 2.0]})
    assert compute_scale_factor(original) == pytest.approx(0.15)

    rescaled, _ = rescale(original)
    payload = read_glb_json(rescaled)
    assert payload["nodes"][0]["scale"] == [2.0, 1.0, 2.0]
    assert _horizontal_extent(rescaled) == pytest.approx(TARGET_SIZE, rel=1e-5)


def test_node_rotation_is_applied():
    # 90 degrees about X turns the height into depth
    half = math.sqrt(0.5)
    original = make_glb(box(0.1, 1.5, 0.2), node={"rotation": [half, 0.0, 0.0, half]})
    assert compute_scale_factor(original) == pytest.approx(0.2, rel=1e-5)


def test_node_matrix_is_applied():
    matrix = [
        3.0, 0.0, 0.0, 0.0,
        0.0, 1.0, 0.0, 0.0,
        0.0, 0.0, 1.0, 0.0,
        5.0, 0.0, 0.0, 1.0,
    ]
    original = make_glb(box(1.0, 1.0, 1.0), node={"matrix": matrix})
    assert compute_scale_factor(original) == pytest.approx(0.1)


def test_vertices_are_baked_and_accessor_bounds_updated():
    rescaled, factor = rescale(make_glb(box(2.0, 1.0, 1.0)))
    accessor = read_glb_json(rescaled)["accessors"][0]

    assert factor == pytest.approx(0.15)
    assert accessor["max"] == pytest.approx([0.15, 0.075, 0.075], rel=1e-6)
    assert accessor["min"] == pytest.approx([-0.15, -0.075, -0.075], rel=1e-6)


def test_shared_position_accessor_is_scaled_once():
    original = make_glb(box(1.0, 1.0, 1.0))
    document = parse_glb(original)
    document.payload["meshes"].append({"primitives": [{"attributes": {"POSITION": 0}}]})
    document.payload["nodes"].append({"mesh": 1, "translation": [0.0, 0.0, 0.0]})
    document.payload["scenes"][0]["nodes"].append(1)

    rescaled, factor = rescale(build_glb(document))
    assert factor == pytest.approx(0.3)
    assert _horizontal_extent(rescaled) == pytest.approx(TARGET_SIZE, rel=1e-5)


def test_output_is_valid_glb():
    rescaled, _ = rescale(make_glb(box(1.0, 1.0, 1.0)))
    magic, version, length = struct.unpack_from("<III", rescaled, 0)
    assert magic == 0x46546C67
    assert version == 2
    assert length == len(rescaled)
    assert length % 4 == 0


def test_invalid_magic_is_format_error():
    with pytest.raises(FormatError):
        rescale(b"\x00" * 64)


def test_truncated_glb_is_format_error():
    data = make_glb(box(1.0, 1.0, 1.0))
    with pytest.raises(FormatError):
        rescale(data[:40])


def test_non_float_positions_are_format_error():
    data = make_glb(box(1.0, 1.0, 1.0))
    document = parse_glb(data)
    document.payload["accessors"][0]["componentType"] = 5123

    with pytest.raises(FormatError):
        compute_scale_factor(build_glb(document))


@pytest.mark.parametrize("node", [
    {"rotation": [0.0, 0.0, 1.0]},
    {"translation": ["left", 0.0, 0.0]},
    {"matrix": [1.0, 0.0, 0.0]},
    {"children": "none"},
])
def test_malformed_node_transform_is_format_error(node):
    data = make_glb(box(1.0, 0.5, 0.6), node=node)
    with pytest.raises(FormatError):
        compute_scale_factor(data)
    with pytest.raises(FormatError):
        rescale(data)


def test_node_that_is_not_an_object_is_format_error():
    document = parse_glb(make_glb(box(1.0, 1.0, 1.0)))
    document.payload["nodes"].append("not a node")
    document.payload["scenes"][0]["nodes"].append(1)

    with pytest.raises(FormatError):
        rescale(build_glb(document))


def test_accessor_without_buffer_view_counts_node_origin():
    document = parse_glb(make_glb(box(1.0, 1.0, 1.0)))
    document.payload["accessors"].append({"componentType": 5126, "count": 8, "type": "VEC3"})
    document.payload["meshes"].append({"primitives": [{"attributes": {"POSITION": 1}}]})
    document.payload["nodes"].append({"mesh": 1, "translation": [2.0, 0.0, 0.0]})
    document.payload["scenes"][0]["nodes"].append(1)

    # x spans -0.5 (box) to 2.0 (zero-filled mesh at its node origin)
    assert compute_scale_factor(build_glb(document)) == pytest.approx(0.3 / 2.5)
