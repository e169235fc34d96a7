"""
Minimal Supabase REST (PostgREST) client.

Blocking; CloudSync runs these calls on its network executor.
Filters use PostgREST syntax, e.g. {"id": "eq.5", "metadata->secured": "is.null"}.
"""

import logging

import requests

from . import config

log = logging.getLogger("yamen_bridge.store")


class StoreError(Exception):
    """A single REST call failed (network error or non-2xx response)."""


class RestStore:
    def __init__(self, url: str, key: str, timeout: float = config.HTTP_TIMEOUT, session=None):
        self.base_url = url.rstrip("/") + "/rest/v1"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        })

    def _request(self, method, table, params=None, json=None, prefer=None):
        headers = {"Prefer": prefer} if prefer else {}
        try:
            response = self.session.request(
                method,
                f"{self.base_url}/{table}",
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()
        except (requests.RequestException, ValueError) as e:
            # ValueError: 2xx with a body that is not JSON
            raise StoreError(f"{method} {table}: {e}") from e

    def select(self, table, filters=None, columns="*", limit=None) -> list:
        params = {"select": columns}
        params.update(filters or {})
        if limit is not None:
            params["limit"] = limit
        return self._request("GET", table, params=params) or []

    def insert(self, table, row) -> dict:
        rows = self._request("POST", table, json=[row], prefer="return=representation")
        if not rows:
            raise StoreError(f"POST {table}: empty response")
        return rows[0]

    def update(self, table, values, filters) -> list:
        if not filters:
            raise ValueError("refusing to update without a filter")
        return self._request(
            "PATCH", table, params=filters, json=values, prefer="return=representation"
        ) or []
