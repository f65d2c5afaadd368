"""Content store client for pinning images and metadata documents.

Uploads go to a pinning service over HTTP and come back as
``ipfs://<content-hash>`` locators. Locators are translated to gateway
URLs only for display; the ``ipfs://`` form is what gets stored and
embedded in on-chain metadata.
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://gateway.pinata.cloud/ipfs/"
DEFAULT_API_URL = "https://api.pinata.cloud"
LOCATOR_SCHEME = "ipfs://"
MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10MB

CIDV0_PATTERN = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
CIDV1_PATTERN = re.compile(r"^b[A-Za-z2-7]{58,}$")


class ContentStoreError(Exception):
    """Raised when the pinning service or gateway fails"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def is_valid_content_hash(content_hash: str) -> bool:
    """Check for a CIDv0 (Qm...) or base32 CIDv1 (b...) content hash"""
    if not content_hash:
        return False
    return bool(CIDV0_PATTERN.match(content_hash) or CIDV1_PATTERN.match(content_hash))


def extract_content_hash(locator: str) -> str:
    """Content hash from an ipfs:// locator, a gateway URL or a bare hash.

    Returns an empty string when no hash can be found.
    """
    if not locator:
        return ""
    if locator.startswith(LOCATOR_SCHEME):
        return locator[len(LOCATOR_SCHEME):].strip("/")
    if locator.startswith(("http://", "https://")):
        marker = "/ipfs/"
        if marker in locator:
            return locator.split(marker, 1)[1].split("?", 1)[0].strip("/")
        return ""
    return locator


def to_gateway_url(locator: str, gateway_url: str = DEFAULT_GATEWAY_URL) -> str:
    """Rewrite a content locator into an HTTP(S) URL for clients.

    ``ipfs://<hash>`` and bare hashes map onto the gateway, HTTP(S) URLs
    pass through unchanged and an empty locator stays empty.
    """
    if not locator:
        return ""
    if locator.startswith(("http://", "https://")):
        return locator
    if not gateway_url.endswith("/"):
        gateway_url += "/"
    if locator.startswith(LOCATOR_SCHEME):
        return f"{gateway_url}{locator[len(LOCATOR_SCHEME):]}"
    return f"{gateway_url}{locator}"


class ContentStore:
    """Pinning service client.

    Network calls run in a worker thread so they never block the event loop.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        jwt: str = "",
        gateway_url: str = DEFAULT_GATEWAY_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url
        self.timeout = timeout
        self.session = session or requests.Session()
        if jwt:
            self.session.headers['Authorization'] = f"Bearer {jwt}"

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "ContentStore":
        return cls(
            api_url=settings.get('content_api_url', DEFAULT_API_URL),
            jwt=settings.get('content_jwt', ''),
            gateway_url=settings.get('gateway_url', DEFAULT_GATEWAY_URL),
        )

    def gateway(self, locator: str) -> str:
        return to_gateway_url(locator, self.gateway_url)

    def _pinned_hash(self, response: requests.Response, action: str) -> str:
        try:
            response.raise_for_status()
            content_hash = response.json()['IpfsHash']
        except requests.HTTPError as e:
            raise ContentStoreError(
                f"Failed to {action}: {e}", status_code=response.status_code
            ) from e
        except (ValueError, KeyError) as e:
            raise ContentStoreError(f"Failed to {action}: malformed response ({e})") from e
        return content_hash

    def _upload(self, data: bytes, name: str, content_type: str) -> str:
        try:
            response = self.session.post(
                f"{self.api_url}/pinning/pinFileToIPFS",
                files={'file': (name, data, content_type)},
                data={'pinataMetadata': json.dumps({'name': name})},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ContentStoreError(f"Failed to upload {name}: {e}") from e
        return self._pinned_hash(response, f"upload {name}")

    def _upload_json(self, document: Dict[str, Any], name: str) -> str:
        try:
            response = self.session.post(
                f"{self.api_url}/pinning/pinJSONToIPFS",
                json={'pinataContent': document, 'pinataMetadata': {'name': name}},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ContentStoreError(f"Failed to upload {name}: {e}") from e
        return self._pinned_hash(response, f"upload {name}")

    def _fetch_json(self, url: str) -> Dict[str, Any]:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise ContentStoreError(f"Failed to fetch {url}: {e}") from e
        except ValueError as e:
            raise ContentStoreError(f"Content at {url} is not JSON") from e

    async def upload(
        self,
        data: bytes,
        name: str,
        content_type: str = "application/octet-stream"
    ) -> str:
        """Pin a binary blob.

        Returns:
            Locator in ``ipfs://<hash>`` form

        Raises:
            ContentStoreError: If the blob is empty or too large, or the upload fails
        """
        if not data:
            raise ContentStoreError(f"Refusing to upload empty content {name}")
        if len(data) > MAX_UPLOAD_SIZE:
            raise ContentStoreError(
                f"{name} is {len(data)} bytes, limit is {MAX_UPLOAD_SIZE}"
            )
        content_hash = await asyncio.to_thread(self._upload, data, name, content_type)
        logger.info(f"Uploaded {name} as {content_hash}")
        return f"{LOCATOR_SCHEME}{content_hash}"

    async def upload_json(self, document: Dict[str, Any], name: Optional[str] = None) -> str:
        """Pin a JSON document and return its ``ipfs://`` locator"""
        if not document:
            raise ContentStoreError("No metadata provided")
        name = name or document.get('name') or 'carbon-credit-metadata'
        content_hash = await asyncio.to_thread(self._upload_json, document, name)
        logger.info(f"Uploaded JSON {name} as {content_hash}")
        return f"{LOCATOR_SCHEME}{content_hash}"

    async def fetch_json(self, locator: str) -> Dict[str, Any]:
        """Fetch a JSON document through the gateway"""
        if not locator:
            raise ContentStoreError("Empty locator")
        return await asyncio.to_thread(self._fetch_json, self.gateway(locator))

    def close(self) -> None:
        self.session.close()


__all__ = [
    'ContentStore',
    'ContentStoreError',
    'to_gateway_url',
    'extract_content_hash',
    'is_valid_content_hash',
    'DEFAULT_GATEWAY_URL',
    'LOCATOR_SCHEME',
]
