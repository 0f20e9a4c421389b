"""Evidence storage: pins milestone submission files to IPFS via Pinata.

Uploads go through an explicit RetryPolicy (bounded attempts, exponential
backoff) built on tenacity. Once started, a retry sequence runs to
completion or final failure; the final failure surfaces as StorageError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from milestone_escrow.domain.exceptions import StorageError
from milestone_escrow.domain.protocols import StoredFile, UploadedFile
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from milestone_escrow.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: waits base_delay, base_delay*multiplier, ..."""

    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.upload_max_attempts,
            base_delay=settings.upload_base_delay_seconds,
            multiplier=settings.upload_backoff_multiplier,
        )

    def retrying(self, should_retry: Callable[[BaseException], bool]) -> AsyncRetrying:
        """Build a tenacity controller for one retry sequence."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_delay,
                exp_base=self.multiplier,
                max=self.max_delay,
            ),
            retry=retry_if_exception(should_retry),
            reraise=True,
        )


def _is_transient(exc: BaseException) -> bool:
    """Network failures, 429 and 5xx are worth another attempt; other 4xx are not."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


class PinataUploader:
    """StorageUploader backed by Pinata's pinFileToIPFS endpoint."""

    def __init__(
        self,
        jwt: str,
        api_url: str = "https://api.pinata.cloud",
        gateway_url: str = "https://gateway.pinata.cloud/ipfs",
        retry_policy: RetryPolicy | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._jwt = jwt
        self._api_url = api_url.rstrip("/")
        self._gateway_url = gateway_url.rstrip("/")
        self._retry_policy = retry_policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> PinataUploader:
        return cls(
            jwt=settings.pinata_jwt,
            api_url=settings.pinata_api_url,
            gateway_url=settings.ipfs_gateway_url,
            retry_policy=RetryPolicy.from_settings(settings),
            timeout=settings.upload_timeout_seconds,
        )

    async def store(self, file: UploadedFile) -> StoredFile:
        """Pin one file and return its gateway URL and CID."""
        if not self._jwt:
            raise StorageError("Pinning service is not configured (PINATA_JWT is empty)")

        logger.info("storage.upload_started", filename=file.filename, size=len(file.content))
        try:
            async for attempt in self._retry_policy.retrying(_is_transient):
                with attempt:
                    body = await self._pin(file)
        except httpx.HTTPError as exc:
            logger.error("storage.upload_failed", filename=file.filename, error=str(exc))
            raise StorageError(f"Failed to upload {file.filename}: {exc}") from exc

        ipfs_hash = body.get("IpfsHash")
        if not ipfs_hash:
            raise StorageError(f"Pinning service returned no CID for {file.filename}")

        logger.info("storage.upload_succeeded", filename=file.filename, ipfs_hash=ipfs_hash)
        return StoredFile(
            filename=file.filename,
            url=f"{self._gateway_url}/{ipfs_hash}",
            ipfs_hash=ipfs_hash,
            size=len(file.content),
            content_type=file.content_type,
        )

    async def _pin(self, file: UploadedFile) -> dict:
        response = await self._client.post(
            f"{self._api_url}/pinning/pinFileToIPFS",
            headers={"Authorization": f"Bearer {self._jwt}"},
            files={"file": (file.filename, file.content, file.content_type)},
            data={
                "pinataMetadata": json.dumps({"name": file.filename}),
                "pinataOptions": json.dumps({"cidVersion": 1}),
            },
        )
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
