"""Fake registry and image builders shared by the tests."""

import gzip
import hashlib
import io
import json
import tarfile
from typing import Any

from aiohttp import web

from registry_image_puller.core.types import (
    DOCKER_MANIFEST_LIST_V2,
    DOCKER_MANIFEST_V2,
    RegistryConfig,
)

TOKEN = "test-token"
LAYER_MEDIA_TYPE = "application/vnd.docker.image.rootfs.diff.tar.gzip"
CONFIG_MEDIA_TYPE = "application/vnd.docker.container.image.v1+json"


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def make_layer_tar(files: dict[str, bytes]) -> bytes:
    """Build an uncompressed layer tar containing ``files``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mtime = 0
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def make_config(
    diff_ids: list[str],
    architecture: str = "amd64",
    os: str = "linux",
    **extra: Any,
) -> dict[str, Any]:
    config = {
        "architecture": architecture,
        "os": os,
        "created": "2024-01-01T00:00:00.123456789Z",
        "config": {
            "Env": ["PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"],
            "Cmd": ["/bin/sh"],
            "ExposedPorts": {"80/tcp": {}},
        },
        "rootfs": {"type": "layers", "diff_ids": diff_ids},
    }
    config.update(extra)
    return config


def write_gzip_layer(path, files: dict[str, bytes]) -> str:
    """Write a gzip-compressed layer to ``path`` and return its diffID."""
    layer_tar = make_layer_tar(files)
    path.write_bytes(gzip.compress(layer_tar, mtime=0))
    return sha256_digest(layer_tar)


class FakeRegistry:
    """In-process registry with a token service and redirecting blob storage.

    Manifests and blobs require ``Authorization: Bearer test-token``. Blob
    requests are answered with a redirect to ``/cdn/<digest>``, like Docker
    Hub's blob storage.
    """

    def __init__(self) -> None:
        self.server = None
        self.manifests: dict[tuple[str, str], tuple[dict[str, Any], str]] = {}
        self.blobs: dict[str, bytes] = {}
        self.token_requests: list[dict[str, str]] = []
        self.manifest_requests: list[tuple[str, str, str]] = []
        self.blob_requests: list[str] = []
        self.auth_status = 200
        self.token_body: dict[str, Any] | None = None
        self.failing_blobs: set[str] = set()

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/token", self.handle_token)
        app.router.add_get("/v2/{repo:.+}/manifests/{ref}", self.handle_manifest)
        app.router.add_get("/v2/{repo:.+}/blobs/{digest}", self.handle_blob)
        app.router.add_get("/cdn/{digest}", self.handle_cdn)
        return app

    def config(self, **overrides: Any) -> RegistryConfig:
        base = str(self.server.make_url("/")).rstrip("/")
        values = {
            "url": base,
            "auth_url": f"{base}/token",
            "service": "fake-registry",
            "timeout": 5,
            "blob_timeout": 5,
        }
        values.update(overrides)
        return RegistryConfig(**values)

    # Content setup

    def add_image(
        self,
        repository: str,
        tag: str | None,
        layer_tars: list[bytes],
        architecture: str = "amd64",
        os: str = "linux",
        diff_ids: list[str] | None = None,
        config: dict[str, Any] | None = None,
    ) -> tuple[dict[str, Any], str]:
        """Register a single-platform image; returns (manifest, manifest digest)."""
        compressed = [gzip.compress(layer, mtime=0) for layer in layer_tars]
        if diff_ids is None:
            diff_ids = [sha256_digest(layer) for layer in layer_tars]
        if config is None:
            config = make_config(diff_ids, architecture=architecture, os=os)

        config_bytes = json.dumps(config).encode("utf-8")
        config_digest = sha256_digest(config_bytes)
        self.blobs[config_digest] = config_bytes

        layers = []
        for blob in compressed:
            digest = sha256_digest(blob)
            self.blobs[digest] = blob
            layers.append({"mediaType": LAYER_MEDIA_TYPE, "size": len(blob), "digest": digest})

        manifest = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST_V2,
            "config": {
                "mediaType": CONFIG_MEDIA_TYPE,
                "size": len(config_bytes),
                "digest": config_digest,
            },
            "layers": layers,
        }
        digest = self.add_manifest(repository, tag, manifest, DOCKER_MANIFEST_V2)
        return manifest, digest

    def add_manifest(
        self, repository: str, tag: str | None, document: dict[str, Any], media_type: str
    ) -> str:
        digest = sha256_digest(json.dumps(document).encode("utf-8"))
        self.manifests[(repository, digest)] = (document, media_type)
        if tag:
            self.manifests[(repository, tag)] = (document, media_type)
        return digest

    def add_index(
        self, repository: str, tag: str, entries: list[tuple[str, str, str]]
    ) -> dict[str, Any]:
        """Register a manifest list of (digest, os, architecture) entries."""
        document = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST_LIST_V2,
            "manifests": [
                {
                    "mediaType": DOCKER_MANIFEST_V2,
                    "size": 0,
                    "digest": digest,
                    "platform": {"os": os, "architecture": architecture},
                }
                for digest, os, architecture in entries
            ],
        }
        self.add_manifest(repository, tag, document, DOCKER_MANIFEST_LIST_V2)
        return document

    # Handlers

    def _authorized(self, request: web.Request) -> bool:
        return request.headers.get("Authorization") == f"Bearer {TOKEN}"

    async def handle_token(self, request: web.Request) -> web.Response:
        self.token_requests.append(dict(request.query))
        if self.auth_status != 200:
            return web.Response(status=self.auth_status, text="denied")
        body = self.token_body if self.token_body is not None else {"token": TOKEN}
        return web.json_response(body)

    async def handle_manifest(self, request: web.Request) -> web.Response:
        repo = request.match_info["repo"]
        ref = request.match_info["ref"]
        self.manifest_requests.append((repo, ref, request.headers.get("Accept", "")))
        if not self._authorized(request):
            return web.Response(status=401, text="unauthorized")
        if (repo, ref) not in self.manifests:
            return web.json_response({"errors": [{"code": "MANIFEST_UNKNOWN"}]}, status=404)
        document, media_type = self.manifests[(repo, ref)]
        return web.Response(body=json.dumps(document).encode("utf-8"), content_type=media_type)

    async def handle_blob(self, request: web.Request) -> web.Response:
        digest = request.match_info["digest"]
        self.blob_requests.append(digest)
        if not self._authorized(request):
            return web.Response(status=401, text="unauthorized")
        if digest in self.failing_blobs:
            return web.Response(status=500, text="storage unavailable")
        if digest not in self.blobs:
            return web.json_response({"errors": [{"code": "BLOB_UNKNOWN"}]}, status=404)
        raise web.HTTPTemporaryRedirect(f"/cdn/{digest}")

    async def handle_cdn(self, request: web.Request) -> web.Response:
        digest = request.match_info["digest"]
        return web.Response(body=self.blobs[digest], content_type="application/octet-stream")
