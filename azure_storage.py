from base64 import b64decode, b64encode
from email.utils import formatdate
from hashlib import sha256
from hmac import HMAC
from json import dumps
from typing import AsyncGenerator, List, Optional, Tuple
from urllib.parse import quote
from xml.etree import ElementTree

from aiohttp import ClientResponse, ClientSession
from config import get_logger

logger = get_logger("azure")


class BlobClient:
    """Minimal Azure Blob Storage REST API client (SharedKeyLite).

    Only implements what the blob artifact store needs: container creation,
    block blob upload and prefix listing.
    """

    def __init__(self, account: str, auth: str | None = None, session: ClientSession | None = None,
                 endpoint: str | None = None) -> None:
        assert auth, "Storage account key (auth) is required"
        self.account = account
        self.auth = b64decode(auth)
        self.endpoint = (endpoint or f"https://{account}.blob.core.windows.net").rstrip("/")
        self.session = session or ClientSession(json_serialize=dumps)

    async def close(self) -> None:
        await self.session.close()

    def _headers(self, headers: dict | None = None, date: str | None = None) -> dict:
        """Default headers for REST requests"""
        return {
            'x-ms-date': date or formatdate(usegmt=True),  # the API rejects non-GMT dates
            'x-ms-version': '2018-03-28',
            'Content-Type': 'application/octet-stream',
            **(headers or {}),
        }

    def _sign(self, verb: str, canonicalized: str, headers: dict | None = None, length: int = 0) -> dict:
        """Compute the SharedKeyLite authorization header and add standard headers"""
        headers = self._headers(headers)
        signing_headers = sorted(k for k in headers if k.startswith('x-ms-'))
        canon_headers = "\n".join(f"{k}:{headers[k]}" for k in signing_headers)
        to_sign = "\n".join([verb, '', headers['Content-Type'], '', canon_headers, canonicalized]).encode('utf-8')
        signature = b64encode(HMAC(self.auth, to_sign, sha256).digest()).decode('utf-8')
        return {
            'Authorization': f'SharedKeyLite {self.account}:{signature}',
            'Content-Length': str(length),
            **headers,
        }

    async def create_container(self, container_name: str) -> ClientResponse:
        """Create a container (409 if it already exists)"""
        canon = f'/{self.account}/{container_name}'
        uri = f'{self.endpoint}/{container_name}?restype=container'
        return await self.session.put(uri, headers=self._sign("PUT", canon))

    async def put_blob(self, container_name: str, blob_path: str, payload: bytes,
                       mimetype: str | None = None) -> ClientResponse:
        """Upload (or overwrite) a block blob"""
        blob_path = quote(blob_path)
        canon = f'/{self.account}/{container_name}/{blob_path}'
        uri = f'{self.endpoint}/{container_name}/{blob_path}'
        mimetype = mimetype or "application/octet-stream"
        headers = {
            'x-ms-blob-type': 'BlockBlob',
            'x-ms-blob-content-type': mimetype,
            'Content-Type': mimetype,
        }
        return await self.session.put(uri, data=payload, headers=self._sign("PUT", canon, headers, len(payload)))

    @staticmethod
    def _parse_blob_list_xml(xml_text: str) -> Tuple[List[str], Optional[str]]:
        """Parse Azure List Blobs XML and return (names, next_marker)."""
        doc = ElementTree.fromstring(xml_text)
        names = [blob.findtext("Name") for blob in doc.findall(".//Blob") if blob.findtext("Name")]
        return names, (doc.findtext("NextMarker") or None)

    async def list_blob_names(self, container_name: str, prefix: str | None = None) -> AsyncGenerator[str, None]:
        """Yield blob names in a container, following continuation markers."""
        canon = f'/{self.account}/{container_name}?comp=list'
        base_uri = f'{self.endpoint}/{container_name}?restype=container&comp=list'
        if prefix:
            base_uri += f'&prefix={quote(prefix)}'
        marker = None
        while True:
            uri = base_uri if not marker else f"{base_uri}&marker={quote(marker)}"
            async with self.session.get(uri, headers=self._sign("GET", canon)) as res:
                text = await res.text()
                if not res.ok:
                    logger.error(f"Blob listing failed for {container_name}: HTTP {res.status} {text[:200]}")
                    return
            names, marker = self._parse_blob_list_xml(text)
            for name in names:
                yield name
            if not marker:
                return
