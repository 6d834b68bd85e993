"""Remote document store contract and implementations.

The remote store is the long-lived owner of canonical drafts. It must
support a per-document conditional write: ``write`` with an
``expected_version`` succeeds only while the stored version is not newer
than expected, and every successful write stores ``base + 1`` where base is
the expected version (or the current one for unconditional writes).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .exceptions import (
    NotFoundError,
    PermissionError,
    TransientError,
    ValidationError,
    VersionMismatchError,
)
from .models import Draft

logger = logging.getLogger(__name__)


class RemoteDocumentStore(ABC):
    """Abstract interface to the remote document store."""

    @abstractmethod
    async def read(self, collection: str, document_id: str) -> Draft:
        """Read the current version of a document.

        Raises:
            NotFoundError: If the document does not exist
            TransientError: For network-class failures
            PermissionError: If the caller may not read it
        """

    @abstractmethod
    async def write(
        self,
        collection: str,
        document_id: str,
        draft: Draft,
        expected_version: Optional[int] = None,
    ) -> Draft:
        """Write a full document, optionally conditional on its version.

        Args:
            collection: Collection name
            document_id: Document identifier
            draft: Document to store
            expected_version: Version the caller based its edit on, or None
                for an unconditional write

        Returns:
            The stored document with its new version

        Raises:
            VersionMismatchError: If the stored version is newer than expected
        """

    @abstractmethod
    async def update(
        self, collection: str, document_id: str, fields: Dict[str, Any]
    ) -> Draft:
        """Merge ``fields`` onto the stored document.

        ``fields["content"]`` is merged key by key onto the stored content;
        other top-level fields replace their stored values.
        """

    @abstractmethod
    async def delete(self, collection: str, document_id: str) -> None:
        """Delete a document. Deleting an absent document succeeds."""

    async def close(self) -> None:
        """Release any resources held by the store."""


def apply_update(current: Optional[Draft], document_id: str, fields: Dict[str, Any]) -> Draft:
    """Merge partial ``fields`` onto ``current`` without bumping the version."""
    if current is None:
        record = dict(fields)
        record["document_id"] = document_id
        record.pop("version", None)
        try:
            return Draft.model_validate(record)
        except ValueError as e:
            raise NotFoundError(
                f"Cannot update missing document {document_id}: {e}"
            ) from e

    record = current.model_dump()
    for key, value in fields.items():
        if key in ("document_id", "version"):
            continue
        if key == "content" and isinstance(value, dict):
            record["content"] = {**record["content"], **value}
        else:
            record[key] = value
    return Draft.model_validate(record)


class InMemoryDocumentStore(RemoteDocumentStore):
    """Reference store kept in a dictionary.

    Used for local development and tests. ``fail_next`` queues exceptions
    that the following calls raise instead of touching the data, which is
    how tests simulate outages and permission failures.
    """

    def __init__(self):
        self._documents: Dict[Tuple[str, str], Draft] = {}
        self._failures: List[BaseException] = []
        self.calls: List[Tuple[str, str, str]] = []
        self.available = True

    def fail_next(
        self,
        count: int = 1,
        error_factory: Callable[[], BaseException] = lambda: TransientError(
            "Remote store unavailable"
        ),
    ) -> None:
        """Make the next ``count`` calls raise errors built by ``error_factory``."""
        for _ in range(count):
            self._failures.append(error_factory())

    def _record(self, method: str, collection: str, document_id: str) -> None:
        self.calls.append((method, collection, document_id))
        if not self.available:
            raise TransientError("Remote store unreachable")
        if self._failures:
            raise self._failures.pop(0)

    def get(self, collection: str, document_id: str) -> Draft | None:
        """Inspect a stored document without recording a call."""
        return self._documents.get((collection, document_id))

    async def read(self, collection: str, document_id: str) -> Draft:
        self._record("read", collection, document_id)
        draft = self._documents.get((collection, document_id))
        if draft is None:
            raise NotFoundError(f"Document not found: {collection}/{document_id}")
        return draft.model_copy(deep=True)

    async def write(
        self,
        collection: str,
        document_id: str,
        draft: Draft,
        expected_version: Optional[int] = None,
    ) -> Draft:
        self._record("write", collection, document_id)
        current = self._documents.get((collection, document_id))
        current_version = current.version if current else 0

        if expected_version is not None and current_version > expected_version:
            raise VersionMismatchError(
                f"Version conflict on {collection}/{document_id}: "
                f"stored v{current_version}, expected v{expected_version}",
                current_version=current_version,
                expected_version=expected_version,
            )

        base = current_version if expected_version is None else expected_version
        stored = draft.model_copy(
            update={"document_id": document_id, "version": base + 1}, deep=True
        )
        self._documents[(collection, document_id)] = stored
        logger.debug(f"Stored {collection}/{document_id} v{stored.version}")
        return stored.model_copy(deep=True)

    async def update(
        self, collection: str, document_id: str, fields: Dict[str, Any]
    ) -> Draft:
        self._record("update", collection, document_id)
        current = self._documents.get((collection, document_id))
        merged = apply_update(current, document_id, fields)
        stored = merged.model_copy(
            update={"version": (current.version if current else 0) + 1}
        )
        self._documents[(collection, document_id)] = stored
        return stored.model_copy(deep=True)

    async def delete(self, collection: str, document_id: str) -> None:
        self._record("delete", collection, document_id)
        self._documents.pop((collection, document_id), None)


class HttpDocumentStore(RemoteDocumentStore):
    """Remote store reached over HTTP.

    Documents live at ``{base_url}/documents/{collection}/{document_id}``.
    Conditional writes send the expected version in ``If-Match``; the
    server answers 409 or 412 with the stored version in ``X-Version``.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        verify_ssl: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the store.

        Args:
            base_url: Document service URL
            token: Bearer token, if the service requires one
            timeout: Request timeout in seconds
            verify_ssl: Whether to verify SSL certificates
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify_ssl,
            headers=headers,
            transport=transport,
        )

    def _url(self, collection: str, document_id: str) -> str:
        return f"/documents/{collection}/{document_id}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"Request to {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Request to {url} failed: {e}") from e

        self._raise_for_status(response, url)
        return response

    def _raise_for_status(self, response: httpx.Response, url: str) -> None:
        code = response.status_code
        if code < 400:
            return

        detail = response.text[:200]
        if code == 404:
            raise NotFoundError(f"Document not found: {url}")
        if code in (401, 403):
            raise PermissionError(f"Access denied to {url}: {detail}")
        if code in (409, 412):
            current = int(response.headers.get("X-Version", "0") or 0)
            expected = int(response.request.headers.get("If-Match", "0") or 0)
            raise VersionMismatchError(
                f"Version conflict on {url}: stored v{current}",
                current_version=current,
                expected_version=expected,
            )
        if code in (400, 422):
            raise ValidationError(f"Rejected by remote store: {detail}")
        if code == 429 or code >= 500:
            raise TransientError(f"Remote store error {code}: {detail}")
        raise PermissionError(f"Unexpected response {code} from {url}: {detail}")

    def _parse_draft(self, response: httpx.Response, url: str) -> Draft:
        """Decode a document body. Garbled bodies count as a transient fault."""
        try:
            return Draft.from_record(response.json())
        except ValueError as e:
            raise TransientError(f"Unreadable response from {url}: {e}") from e

    async def read(self, collection: str, document_id: str) -> Draft:
        url = self._url(collection, document_id)
        response = await self._request("GET", url)
        return self._parse_draft(response, url)

    async def write(
        self,
        collection: str,
        document_id: str,
        draft: Draft,
        expected_version: Optional[int] = None,
    ) -> Draft:
        headers = {}
        if expected_version is not None:
            headers["If-Match"] = str(expected_version)
        url = self._url(collection, document_id)
        response = await self._request(
            "PUT", url, json=draft.to_record(), headers=headers
        )
        return self._parse_draft(response, url)

    async def update(
        self, collection: str, document_id: str, fields: Dict[str, Any]
    ) -> Draft:
        url = self._url(collection, document_id)
        response = await self._request("PATCH", url, json=fields)
        return self._parse_draft(response, url)

    async def delete(self, collection: str, document_id: str) -> None:
        try:
            await self._request("DELETE", self._url(collection, document_id))
        except NotFoundError:
            logger.debug(f"Delete of absent document {collection}/{document_id}")

    async def close(self) -> None:
        await self.client.aclose()
