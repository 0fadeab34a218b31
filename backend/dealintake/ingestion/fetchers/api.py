"""Generic JSON partner API fetcher (CJ, Impact and similar affiliate APIs)."""

from typing import Any, Dict, List, Mapping, Optional

import httpx

from dealintake.core.exceptions import FetchError
from dealintake.ingestion.base import BaseHTTPFetcher, RawCandidate, SourceType


def _dig(document: Any, path: Optional[str]) -> Any:
    """Follow a dotted path (``data.items``) into nested dicts."""
    if not path:
        return document
    for part in path.split("."):
        if not isinstance(document, Mapping):
            return None
        document = document.get(part)
    return document


class APIFetcher(BaseHTTPFetcher):
    """Calls a paginated JSON API and maps each record onto candidate fields.

    Config keys:
        endpoint: Request URL (required)
        auth: {"scheme": "bearer", "token": ...},
              {"scheme": "header", "header": ..., "token": ...} or
              {"scheme": "basic", "username": ..., "password": ...}
        params: Static query parameters
        items_path: Dotted path to the record list in the response body
        field_map: Candidate field -> record key (title, url, price,
            merchant, image_url)
        page_param / page_size_param / page_size: Page-number pagination
        max_pages: Upper bound on pages per cycle (default 1)

    The first page is covered by the scheduler's rate-limit permit. Each
    further page needs its own permit; paging stops when one is denied.
    """

    source_type = SourceType.API

    def _auth(self, auth: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Request kwargs for the configured credentials, None if missing."""
        scheme = auth.get("scheme", "bearer")
        if scheme == "basic":
            if not auth.get("username") or not auth.get("password"):
                return None
            return {"auth": httpx.BasicAuth(auth["username"], auth["password"])}

        token = auth.get("token")
        if not token:
            return None
        if scheme == "header":
            return {"headers": {auth.get("header", "X-API-Key"): token}}
        return {"headers": {"Authorization": f"Bearer {token}"}}

    async def fetch(self, config: Mapping[str, Any]) -> List[RawCandidate]:
        endpoint = config.get("endpoint")
        if not endpoint:
            raise FetchError(self.source_key, "endpoint is not configured")

        auth_kwargs = self._auth(config.get("auth") or {})
        if auth_kwargs is None:
            self.logger.warning("api_credentials_missing")
            return []

        headers = {"Accept": "application/json"}
        headers.update(auth_kwargs.pop("headers", {}))
        field_map = dict(config.get("field_map") or {})
        max_pages = max(1, int(config.get("max_pages", 1)))
        page_param = config.get("page_param")

        candidates: List[RawCandidate] = []
        for page in range(1, max_pages + 1):
            if page > 1:
                if not page_param:
                    break
                if self.rate_limiter is not None and not self.rate_limiter.try_acquire():
                    self.logger.info("api_paging_throttled", page=page)
                    break

            params = dict(config.get("params") or {})
            if page_param:
                params[page_param] = page
                if config.get("page_size_param"):
                    params[config["page_size_param"]] = config.get("page_size", 100)

            response = await self._request(
                "GET", endpoint, headers=headers, params=params, **auth_kwargs
            )
            try:
                body = response.json()
            except ValueError as e:
                raise FetchError(self.source_key, f"invalid JSON from {endpoint}") from e

            records = _dig(body, config.get("items_path"))
            if not isinstance(records, list):
                raise FetchError(
                    self.source_key,
                    f"no record list at '{config.get('items_path')}'",
                )

            for record in records:
                if isinstance(record, Mapping):
                    candidates.append(
                        RawCandidate(
                            kind=SourceType.API,
                            source_key=self.source_key,
                            payload=self._map_record(record, field_map),
                        )
                    )

            self.logger.debug("api_page_fetched", page=page, records=len(records))
            if not records or len(records) < int(config.get("page_size", 100)):
                break

        self.logger.info("api_fetched", candidates=len(candidates))
        return candidates

    @staticmethod
    def _map_record(record: Mapping[str, Any], field_map: Mapping[str, str]) -> Dict[str, Any]:
        payload = {
            name: _dig(record, field_map.get(name, name))
            for name in ("title", "url", "price", "merchant", "image_url")
        }
        payload["raw"] = dict(record)
        return payload
