"""Builders and fakes shared by the test modules."""
import io
import json
import struct
import uuid
import zipfile
from datetime import datetime, timezone

import httpx
import numpy as np

from app.database import async_session
from app.models.dish import Dish, DishPhoto
from app.schemas.generation import JobStatus, ModelUrls
from app.services.glb_rescaler import GlbDocument, build_glb
from app.services.storage import StorageBackend
from app.utils.exceptions import ExternalServiceError


def box(size_x: float, size_y: float, size_z: float, center=(0.0, 0.0, 0.0)) -> np.ndarray:
    cx, cy, cz = center
    corners = [
        (x, y, z)
        for x in (-size_x / 2, size_x / 2)
        for y in (-size_y / 2, size_y / 2)
        for z in (-size_z / 2, size_z / 2)
    ]
    return np.array(corners, dtype=np.float32) + np.array([cx, cy, cz], dtype=np.float32)


def make_glb(positions: np.ndarray, node: dict | None = None, with_scene: bool = True) -> bytes:
    """Single mesh, single primitive GLB with a POSITION accessor."""
    positions = np.asarray(positions, dtype="<f4")
    binary = positions.tobytes()
    payload = {
        "asset": {"version": "2.0"},
        "buffers": [{"byteLength": len(binary)}],
        "bufferViews": [{"buffer": 0, "byteOffset": 0, "byteLength": len(binary)}],
        "accessors": [{
            "bufferView": 0,
            "componentType": 5126,
            "count": len(positions),
            "type": "VEC3",
            "min": positions.min(axis=0).tolist(),
            "max": positions.max(axis=0).tolist(),
        }],
        "meshes": [{"primitives": [{"attributes": {"POSITION": 0}}]}],
        "nodes": [{"mesh": 0, **(node or {})}],
    }
    if with_scene:
        payload["scenes"] = [{"nodes": [0]}]
        payload["scene"] = 0
    return build_glb(GlbDocument(payload=payload, binary=bytearray(binary)))


def read_glb_json(data: bytes) -> dict:
    json_len, _ = struct.unpack_from("<II", data, 12)
    return json.loads(data[20:20 + json_len])


def make_zip(entries: list[tuple[str, bytes]], aligned: bool = True, comment: bytes = b"") -> bytes:
    """Stored zip archive; with ``aligned`` every entry's data starts on a
    64-byte boundary, as USDZ requires."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as archive:
        for name, data in entries:
            info = zipfile.ZipInfo(name, date_time=(2024, 1, 1, 0, 0, 0))
            info.compress_type = zipfile.ZIP_STORED
            if aligned:
                header = 30 + len(name.encode("utf-8"))
                info.extra = b"\x00" * ((64 - (buf.tell() + header) % 64) % 64)
            archive.writestr(info, data)
        archive.comment = comment
    return buf.getvalue()


def data_offsets(archive: bytes) -> dict[str, int]:
    """Absolute offset of each entry's file data."""
    offsets = {}
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        for info in zf.infolist():
            name_len, extra_len = struct.unpack_from("<HH", archive, info.header_offset + 26)
            offsets[info.filename] = info.header_offset + 30 + name_len + extra_len
    return offsets


def corrupt_first_central_entry(archive: bytes, offset: int, value: bytes) -> bytes:
    """Overwrite bytes of the first central-directory record."""
    data = bytearray(archive)
    eocd = data.rfind(b"PK\x05\x06")
    cd_offset = struct.unpack_from("<I", data, eocd + 16)[0]
    data[cd_offset + offset:cd_offset + offset + len(value)] = value
    return bytes(data)


def usdz_entries(count: int) -> list[tuple[str, bytes]]:
    entries = [("temp.usdc", b"PXR-USDC" + bytes(range(256)) * 3)]
    for i in range(1, count):
        entries.append((f"textures/texture_{i}.png", b"\x89PNG" + bytes([i]) * (37 * i + 11)))
    return entries


class FakeMeshClient:
    def __init__(self):
        self.submissions: list[tuple[list[str], str | None]] = []
        self.statuses: dict[str, JobStatus] = {}
        self.fail_submit = False
        self.fail_status = False

    async def submit(self, image_urls: list[str], webhook_url: str | None = None) -> str:
        if self.fail_submit:
            raise ExternalServiceError("Mesh generation service unreachable")
        job_id = f"job-{uuid.uuid4()}"
        self.submissions.append((list(image_urls), webhook_url))
        self.statuses[job_id] = JobStatus(id=job_id, status="PENDING", progress=0)
        return job_id

    async def get_status(self, job_id: str) -> JobStatus:
        if self.fail_status:
            raise ExternalServiceError("Mesh generation service unreachable")
        return self.statuses[job_id]

    def set_status(self, job_id: str, status: str, progress: int = 0, assets_base: str | None = None):
        job = JobStatus(id=job_id, status=status, progress=progress)
        if assets_base:
            job.model_urls = ModelUrls(glb=f"{assets_base}/model.glb", usdz=f"{assets_base}/model.usdz")
            job.thumbnail_url = f"{assets_base}/preview.png"
        self.statuses[job_id] = job
        return job


class MemoryStorage(StorageBackend):
    def __init__(self, fail_paths: set[str] | None = None):
        self.objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.fail_paths = fail_paths or set()

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        if path in self.fail_paths:
            raise ExternalServiceError(f"Upload of {path} rejected")
        self.objects[(bucket, path)] = (data, content_type)
        return self.public_url(bucket, path)

    async def list_files(self, bucket: str, prefix: str) -> list[str]:
        return [
            path[len(prefix) + 1:]
            for b, path in self.objects
            if b == bucket and path.startswith(prefix + "/")
        ]

    async def remove(self, bucket: str, paths: list[str]) -> None:
        for path in paths:
            self.objects.pop((bucket, path), None)

    def public_url(self, bucket: str, path: str) -> str:
        return f"https://storage.test/{bucket}/{path}"


def asset_transport(assets: dict[str, bytes]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        data = assets.get(str(request.url))
        if data is None:
            return httpx.Response(404)
        return httpx.Response(200, content=data)

    return httpx.MockTransport(handler)


async def create_dish(photo_count: int = 3, restaurant_id: str = "resto-1", sort_orders=None) -> Dish:
    """Insert a dish with photos; sort orders default to reversed insertion order."""
    now = datetime.now(timezone.utc).isoformat()
    dish_id = str(uuid.uuid4())
    if sort_orders is None:
        sort_orders = list(reversed(range(photo_count)))
    async with async_session() as db:
        db.add(Dish(
            id=dish_id,
            restaurant_id=restaurant_id,
            name="Margherita",
            model_status="pending",
            progress=0,
            version=0,
            created_at=now,
        ))
        for order in sort_orders:
            db.add(DishPhoto(
                id=str(uuid.uuid4()),
                dish_id=dish_id,
                photo_url=f"https://photos.test/{dish_id}/{order}.jpg",
                sort_order=order,
                created_at=now,
            ))
        await db.commit()
    return await get_dish(dish_id)


async def get_dish(dish_id: str) -> Dish:
    async with async_session() as db:
        return await db.get(Dish, dish_id)
