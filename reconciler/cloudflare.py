"""Minimal Cloudflare v4 API client for CNAME reconciliation."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests

from reconciler.constants import CF_API_BASE, HTTP_TIMEOUT
from reconciler.exceptions import ManagerError, TransientExternal
from reconciler.models import DNSRecord
from reconciler.utils import log, retry


class CloudflareClient:
    """Bearer-authenticated access to zones and DNS records.

    Network failures and 5xx/429 responses raise TransientExternal and are
    retried; any other non-success response raises ManagerError.
    """

    def __init__(
        self,
        token: str,
        session: Optional[requests.Session] = None,
        base_url: str = CF_API_BASE,
    ) -> None:
        self._token = token
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self._zone_cache: Dict[str, str] = {}

    def __repr__(self) -> str:
        return f"CloudflareClient(base_url={self.base_url!r})"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}

    @retry(attempts=3, delay=2.0)
    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        log("DEBUG", f"Cloudflare API {method} {path}")
        try:
            r = self.session.request(method, url, headers=self._headers(), timeout=HTTP_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise TransientExternal(f"Cloudflare API {method} {path} failed: {exc}") from exc
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientExternal(f"Cloudflare API {method} {path}: HTTP {r.status_code}")
        try:
            payload = r.json()
        except ValueError:
            payload = {}
        if r.status_code >= 400 or not payload.get("success", False):
            errors = "; ".join(e.get("message", "") for e in payload.get("errors", [])) or r.text
            raise ManagerError(f"Cloudflare API {method} {path}: HTTP {r.status_code} {errors}")
        return payload.get("result")

    def list_zones(self) -> List[Dict[str, str]]:
        result = self._request("GET", "/zones", params={"per_page": 50, "status": "active"})
        return [{"id": z["id"], "name": z["name"]} for z in result or []]

    def zone_id(self, domain: str) -> Optional[str]:
        """Resolve the zone that owns ``domain`` (a hostname or the apex)."""
        if domain in self._zone_cache:
            return self._zone_cache[domain]
        labels = domain.rstrip(".").split(".")
        for i in range(len(labels) - 1):
            candidate = ".".join(labels[i:])
            result = self._request("GET", "/zones", params={"name": candidate, "status": "active"})
            if result:
                self._zone_cache[domain] = result[0]["id"]
                return result[0]["id"]
        return None

    def find_record(self, zone_id: str, hostname: str) -> Optional[DNSRecord]:
        result = self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            params={"name": hostname, "type": "CNAME"},
        )
        if not result:
            return None
        record = result[0]
        return DNSRecord(id=record["id"], hostname=record["name"], target=record["content"], type=record["type"])

    def _record_payload(self, hostname: str, target: str) -> Dict[str, Any]:
        return {"type": "CNAME", "name": hostname, "content": target, "proxied": True}

    def create_record(self, zone_id: str, hostname: str, target: str) -> DNSRecord:
        record = self._request("POST", f"/zones/{zone_id}/dns_records", json=self._record_payload(hostname, target))
        return DNSRecord(id=record["id"], hostname=hostname, target=target)

    def update_record(self, zone_id: str, record_id: str, hostname: str, target: str) -> DNSRecord:
        self._request(
            "PUT",
            f"/zones/{zone_id}/dns_records/{record_id}",
            json=self._record_payload(hostname, target),
        )
        return DNSRecord(id=record_id, hostname=hostname, target=target)
