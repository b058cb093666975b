"""
Input Uploader Tests

Run with:
    python -m pytest tests/test_uploader.py -v
"""

import httpx
import pytest

from services.generation.models import ErrorCode
from services.storage.uploader import StorageUploader, UploadError


@pytest.fixture
def storage_config(config):
    config.storage.supabase_url = "https://proj.supabase.co"
    config.storage.service_role_key = "service-key"
    config.storage.bucket = "images"
    return config


def make_uploader(config, handler) -> StorageUploader:
    return StorageUploader(
        config=config,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_returns_public_url(self, storage_config, tmp_path):
        video = tmp_path / "dance.mp4"
        video.write_bytes(b"\x00\x01video")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["upsert"] = request.headers["x-upsert"]
            seen["body"] = request.content
            return httpx.Response(200, json={"Key": "images/acct/1.mp4"})

        uploader = make_uploader(storage_config, handler)
        url = await uploader.upload("acct", str(video))
        await uploader.close()

        assert seen["path"].startswith("/storage/v1/object/images/acct/")
        assert seen["path"].endswith(".mp4")
        assert seen["auth"] == "Bearer service-key"
        assert seen["upsert"] == "false"
        assert seen["body"] == b"\x00\x01video"
        assert url.startswith("https://proj.supabase.co/storage/v1/object/public/images/acct/")

    @pytest.mark.asyncio
    async def test_storage_rejection(self, storage_config, tmp_path):
        image = tmp_path / "start.png"
        image.write_bytes(b"png")

        uploader = make_uploader(storage_config, lambda request: httpx.Response(409, text="exists"))

        with pytest.raises(UploadError) as exc:
            await uploader.upload("acct", str(image))

        assert exc.value.error_code == ErrorCode.UPLOAD_FAILED

    @pytest.mark.asyncio
    async def test_missing_file(self, storage_config, tmp_path):
        uploader = make_uploader(storage_config, lambda request: httpx.Response(200))

        with pytest.raises(UploadError):
            await uploader.upload("acct", str(tmp_path / "nope.png"))

    @pytest.mark.asyncio
    async def test_unconfigured_storage(self, config, tmp_path):
        config.storage.supabase_url = ""
        uploader = make_uploader(config, lambda request: httpx.Response(200))

        with pytest.raises(UploadError):
            await uploader.upload("acct", str(tmp_path / "a.png"))
