"""
Remote manifest fetch.

Pulls versioned multi-document YAML (CRD bundles, operator deployments).
Fails closed: a transport error, non-2xx status, YAML error, empty bundle
or document without apiVersion/kind raises ManifestFetchError and nothing
from the bundle is applied.
"""

from __future__ import annotations

from typing import Any

import structlog
import yaml
from circuitbreaker import CircuitBreakerError

from stagecraft.core.errors import ManifestFetchError
from stagecraft.providers.http import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError

logger = structlog.get_logger()


def parse_manifest(url: str, text: str) -> list[dict[str, Any]]:
    """Parse and validate a multi-document manifest; all or nothing."""
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestFetchError(url, f"unparsable YAML: {e}") from e

    if not documents:
        raise ManifestFetchError(url, "manifest contains no documents")

    for position, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise ManifestFetchError(url, f"document {position} is not a mapping")
        missing = [key for key in ("apiVersion", "kind") if not doc.get(key)]
        if missing:
            raise ManifestFetchError(
                url, f"document {position} is missing {', '.join(missing)}"
            )
    return documents


class HttpManifestFetcher(BaseHTTPClient):
    """Fetches manifests over HTTP(S)."""

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/yaml, text/yaml, text/plain"}

    async def fetch_manifest(self, url: str) -> list[dict[str, Any]]:
        try:
            response = await self._request("GET", url)
        except (RetryableHTTPError, PermanentHTTPError, CircuitBreakerError) as e:
            raise ManifestFetchError(url, str(e)) from e

        documents = parse_manifest(url, response.text)
        logger.info("manifest_fetched", url=url, documents=len(documents))
        return documents
