"""
Content-addressed store interface.

Deliverables live outside the ledger; the ledger only records their ids.
``IpfsContentStore`` talks to an IPFS HTTP API node; ``InMemoryContentStore``
derives ids from a sha256 digest for tests and local development.
"""

import hashlib
import logging
from typing import Dict, Optional, Protocol

import httpx

from checkpay.errors import CollaboratorFailure, NotFoundError

logger = logging.getLogger(__name__)


class ContentStore(Protocol):
    """Protocol for content-addressed storage backends."""

    def put(self, data: bytes, name: str = "") -> str:
        """Store bytes. Returns the content id."""
        ...

    def get(self, content_id: str) -> bytes:
        """Fetch bytes by content id."""
        ...


class InMemoryContentStore:
    """In-memory content store for testing and local development."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    @staticmethod
    def content_id(data: bytes) -> str:
        return "mem" + hashlib.sha256(data).hexdigest()[:44]

    def put(self, data: bytes, name: str = "") -> str:
        cid = self.content_id(data)
        self._blobs[cid] = bytes(data)
        return cid

    def get(self, content_id: str) -> bytes:
        try:
            return self._blobs[content_id]
        except KeyError:
            raise NotFoundError(f"Content {content_id} not found")

    def __len__(self) -> int:
        return len(self._blobs)


class IpfsContentStore:
    """Content store backed by the IPFS HTTP API."""

    def __init__(
        self,
        api_url: str,
        gateway_url: str = "https://ipfs.io/ipfs/",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url if gateway_url.endswith("/") else gateway_url + "/"
        self._client = client or httpx.Client(timeout=timeout)

    def put(self, data: bytes, name: str = "") -> str:
        try:
            response = self._client.post(
                f"{self.api_url}/api/v0/add",
                params={"pin": "true"},
                files={"file": (name or "blob", data)},
            )
            response.raise_for_status()
            cid = response.json()["Hash"]
        except httpx.HTTPError as e:
            logger.error(f"IPFS upload failed for {name or 'blob'}: {e}")
            raise CollaboratorFailure(f"Failed to upload file to IPFS: {e}") from e
        except (KeyError, ValueError) as e:
            raise CollaboratorFailure(f"Unexpected IPFS add response: {e}") from e
        logger.debug(f"Uploaded {len(data)} bytes to IPFS as {cid}")
        return cid

    def get(self, content_id: str) -> bytes:
        try:
            response = self._client.post(f"{self.api_url}/api/v0/cat", params={"arg": content_id})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"IPFS retrieval failed for {content_id}: {e}")
            raise CollaboratorFailure(f"Failed to retrieve {content_id} from IPFS: {e}") from e
        return response.content

    def gateway_url_for(self, content_id: str) -> str:
        return f"{self.gateway_url}{content_id}"

    def close(self) -> None:
        self._client.close()
