"""Docker Registry API v2 async pull client."""

import asyncio
import logging
from pathlib import Path
from typing import Any

import aiofiles
import aiohttp

from ..exceptions import AuthError, ConfigError, DownloadError, ManifestError
from .session import create_session, parse_json_response
from .types import (
    ALL_MANIFEST_MEDIA_TYPES,
    MANIFEST_LIST_MEDIA_TYPES,
    SINGLE_MANIFEST_MEDIA_TYPES,
    ManifestEnvelope,
    RegistryConfig,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB


def classify_manifest(data: dict[str, Any], content_type: str = "") -> str:
    """Return "list" for manifest lists / image indexes, else "single".

    The body's ``mediaType`` wins; OCI indexes may omit it, in which case the
    response Content-Type and the presence of ``manifests`` decide.
    """
    media_type = data.get("mediaType") or content_type.split(";")[0].strip()
    if media_type in MANIFEST_LIST_MEDIA_TYPES:
        return "list"
    if media_type in SINGLE_MANIFEST_MEDIA_TYPES:
        return "single"
    if "manifests" in data and "layers" not in data:
        return "list"
    return "single"


class RegistryClient:
    """Docker Registry API v2 async client for pulling images.

    Bearer tokens are requested from the configured token service, one per
    repository, and cached for the lifetime of the client. Nothing is retried:
    every failure surfaces as the stage's exception.
    """

    def __init__(
        self,
        config: RegistryConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            config: Registry endpoints and timeouts (Docker Hub by default)
            session: Existing aiohttp session to reuse; created on enter otherwise
        """
        self.config = config or RegistryConfig()
        self.session = session
        self._owns_session = session is None
        self._tokens: dict[str, str] = {}

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = await create_session(self.config.timeout)
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session if this client created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self._tokens.clear()

    def _url(self, repository: str, kind: str, reference: str) -> str:
        return f"{self.config.base_url}/v2/{repository}/{kind}/{reference}"

    async def authenticate(self, repository: str) -> str:
        """Request a pull token scoped to one repository.

        Args:
            repository: Repository path (e.g., library/alpine)

        Returns:
            Bearer token (empty when the registry has no token service configured)

        Raises:
            AuthError: If the token service fails or returns no token
        """
        if not self.config.auth_url:
            self._tokens[repository] = ""
            return ""

        logger.info("Authenticating for repository %s", repository)
        params = {
            "service": self.config.service,
            "scope": f"repository:{repository}:pull",
        }

        try:
            async with self.session.get(self.config.auth_url, params=params) as resp:
                status = resp.status
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Token service unreachable for %s: %s", repository, e)
            raise AuthError(f"Token service unreachable for {repository}: {e}") from e

        if status != 200:
            logger.error("Authentication for %s failed: HTTP %s", repository, status)
            raise AuthError(f"Authentication for {repository} failed: HTTP {status}")

        data = parse_json_response(body)
        token = None
        if isinstance(data, dict):
            token = data.get("token") or data.get("access_token")
        if not token:
            logger.error("Token service returned no token for %s", repository)
            raise AuthError(f"Token service returned no token for {repository}")

        self._tokens[repository] = token
        logger.info("Authenticated for repository %s", repository)
        return token

    async def _auth_headers(self, repository: str) -> dict[str, str]:
        if repository not in self._tokens:
            await self.authenticate(repository)
        token = self._tokens[repository]
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _fetch_manifest(
        self, repository: str, reference: str, accept: tuple[str, ...]
    ) -> tuple[dict[str, Any], str]:
        headers = await self._auth_headers(repository)
        headers["Accept"] = ", ".join(accept)
        url = self._url(repository, "manifests", reference)
        logger.info("Fetching manifest %s", url)

        try:
            async with self.session.get(url, headers=headers) as resp:
                status = resp.status
                content_type = resp.headers.get("Content-Type", "")
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Manifest request for %s:%s failed: %s", repository, reference, e)
            raise ManifestError(
                f"Failed to get manifest {repository}:{reference}: {e}"
            ) from e

        if status != 200:
            logger.error(
                "Manifest request for %s:%s failed: HTTP %s", repository, reference, status
            )
            raise ManifestError(
                f"Failed to get manifest {repository}:{reference}: HTTP {status}"
            )

        data = parse_json_response(body)
        if not isinstance(data, dict):
            logger.error(
                "Manifest for %s:%s is not a JSON object: %.200s", repository, reference, body
            )
            raise ManifestError(f"Manifest for {repository}:{reference} is not valid JSON")

        return data, content_type

    async def get_manifest(self, repository: str, reference: str = "latest") -> ManifestEnvelope:
        """Retrieve a tag's manifest, which may be a manifest list.

        Args:
            repository: Repository path
            reference: Tag (or digest)

        Returns:
            Envelope classified as "list" or "single"

        Raises:
            AuthError: If authentication is needed and fails
            ManifestError: If retrieval fails or the body is not JSON
        """
        data, content_type = await self._fetch_manifest(
            repository, reference, ALL_MANIFEST_MEDIA_TYPES
        )
        envelope = ManifestEnvelope(kind=classify_manifest(data, content_type), data=data)
        logger.info("Manifest loaded: %s (%s)", envelope.media_type, envelope.kind)
        return envelope

    async def get_manifest_by_digest(self, repository: str, digest: str) -> dict[str, Any]:
        """Retrieve a single-platform manifest by digest.

        Raises:
            ManifestError: If retrieval fails or the digest points to another list
        """
        data, content_type = await self._fetch_manifest(
            repository, digest, SINGLE_MANIFEST_MEDIA_TYPES
        )
        if classify_manifest(data, content_type) == "list":
            raise ManifestError(
                f"Manifest {digest} in {repository} is itself a manifest list (unsupported)"
            )
        logger.info(
            "Platform manifest loaded with %d layers", len(data.get("layers") or [])
        )
        return data

    async def get_config(self, repository: str, digest: str) -> dict[str, Any]:
        """Fetch and parse the image config blob, following redirects.

        Raises:
            ConfigError: If the blob request fails or the body is not a JSON object
        """
        headers = await self._auth_headers(repository)
        url = self._url(repository, "blobs", digest)
        logger.info("Fetching config blob %s", url)

        try:
            async with self.session.get(url, headers=headers, allow_redirects=True) as resp:
                status = resp.status
                body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Config request %s in %s failed: %s", digest, repository, e)
            raise ConfigError(f"Failed to fetch config {digest}: {e}") from e

        logger.info("Config blob response code: %s", status)
        if status != 200:
            raise ConfigError(f"Failed to fetch config {digest} from {repository}: HTTP {status}")

        config = parse_json_response(body)
        if not isinstance(config, dict):
            logger.error("Config %s is not a JSON object: %.200s", digest, body)
            raise ConfigError(f"Config {digest} is not valid JSON")

        diff_ids = (config.get("rootfs") or {}).get("diff_ids") or []
        logger.info("Config loaded with %d diffIDs", len(diff_ids))
        return config

    async def download_blob(
        self, repository: str, digest: str, destination: str | Path
    ) -> int:
        """Stream a blob to a file without buffering it in memory.

        Args:
            repository: Repository path
            digest: Blob digest
            destination: Target file path; removed again if the transfer fails

        Returns:
            Number of bytes written

        Raises:
            DownloadError: On any non-200 status, transport or file error
        """
        destination = Path(destination)
        headers = await self._auth_headers(repository)
        url = self._url(repository, "blobs", digest)
        timeout = aiohttp.ClientTimeout(total=self.config.blob_timeout)
        written = 0

        try:
            async with self.session.get(
                url, headers=headers, allow_redirects=True, timeout=timeout
            ) as resp:
                if resp.status != 200:
                    raise DownloadError(
                        f"Failed to download blob {digest} from {repository}: HTTP {resp.status}"
                    )
                async with aiofiles.open(destination, "wb") as f:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        await f.write(chunk)
                        written += len(chunk)
        except DownloadError as e:
            logger.error("%s", e)
            destination.unlink(missing_ok=True)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error("Blob %s in %s failed: %s", digest, repository, e)
            destination.unlink(missing_ok=True)
            raise DownloadError(f"Failed to download blob {digest}: {e}") from e

        return written
