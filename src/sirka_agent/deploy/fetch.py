"""Artifact resolution: inline base64 payloads and remote downloads."""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Optional

import httpx
import structlog

from sirka_agent.core.exceptions import (
    ArtifactTooLarge,
    FetchError,
    FetchTimeout,
    InvalidEncoding,
    NoArtifactSource,
)
from sirka_agent.deploy.models import ArtifactRef, DeployStage


logger = structlog.get_logger()

DEFAULT_TIMEOUT_SEC = 300.0
DEFAULT_MAX_SIZE_BYTES = 100 * 1024 * 1024  # 100MB


def _strip_data_uri(data: str) -> str:
    """Accept ``data:application/zip;base64,<payload>`` as well as bare base64."""
    if data.startswith("data:"):
        header, sep, payload = data.partition(",")
        if not sep or not header.endswith(";base64"):
            raise InvalidEncoding("Inline payload data URI must be base64 encoded", stage=DeployStage.RESOLVE.value)
        return payload
    return data


class ArtifactSource:
    """Turns an ``ArtifactRef`` into archive bytes held in memory."""

    def __init__(
        self,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_sec = timeout_sec
        self.max_size_bytes = max_size_bytes
        self._transport = transport

    async def resolve(self, artifact: ArtifactRef) -> bytes:
        has_inline = artifact.zipData is not None
        has_url = artifact.artifactUrl is not None
        if has_inline == has_url:
            raise NoArtifactSource(
                "Exactly one of zipData or artifactUrl is required",
                stage=DeployStage.RESOLVE.value,
            )
        if has_inline:
            return self.decode_inline(artifact.zipData)
        return await self.fetch(str(artifact.artifactUrl))

    def decode_inline(self, data: str) -> bytes:
        payload = "".join(_strip_data_uri(data.strip()).split())
        # base64 inflates by 4/3; reject before decoding a huge string
        if len(payload) * 3 // 4 > self.max_size_bytes:
            raise ArtifactTooLarge("Inline payload exceeds maximum allowed size", stage=DeployStage.RESOLVE.value)
        try:
            decoded = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidEncoding(f"Inline payload is not valid base64: {e}", stage=DeployStage.RESOLVE.value) from e
        if not decoded:
            raise InvalidEncoding("Inline payload is empty", stage=DeployStage.RESOLVE.value)
        return decoded

    async def fetch(self, url: str) -> bytes:
        """Download ``url`` with a total timeout and a streaming size cap."""
        logger.info("Downloading artifact", url=url, timeout_sec=self.timeout_sec)
        try:
            data = await asyncio.wait_for(self._download(url), timeout=self.timeout_sec)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning("Artifact download timed out", url=url, timeout_sec=self.timeout_sec)
            raise FetchTimeout(
                f"Timed out after {self.timeout_sec:g}s fetching {url}",
                stage=DeployStage.RESOLVE.value,
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("Artifact download rejected", url=url, status=status)
            raise FetchError(
                f"Artifact server returned HTTP {status} for {url}",
                status_code=status,
                stage=DeployStage.RESOLVE.value,
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Artifact download failed", url=url, error=str(e))
            raise FetchError(f"Failed to fetch {url}: {e}", stage=DeployStage.RESOLVE.value) from e
        logger.info("Downloaded artifact", url=url, bytes=len(data))
        return data

    async def _download(self, url: str) -> bytes:
        timeout = httpx.Timeout(self.timeout_sec)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True) as client:
            async with client.stream("GET", url) as resp:
                resp.raise_for_status()
                declared = resp.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.max_size_bytes:
                    raise ArtifactTooLarge(
                        f"Artifact declares {declared} bytes, limit is {self.max_size_bytes}",
                        stage=DeployStage.RESOLVE.value,
                    )
                buf = bytearray()
                async for chunk in resp.aiter_bytes():
                    buf.extend(chunk)
                    if len(buf) > self.max_size_bytes:
                        raise ArtifactTooLarge(
                            "Artifact exceeds maximum allowed size",
                            stage=DeployStage.RESOLVE.value,
                        )
                return bytes(buf)
