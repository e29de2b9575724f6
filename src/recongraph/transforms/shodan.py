"""Shodan host search transforms.

Both transforms page through the Shodan host search API for a query
built from the input node's label and turn every match into:

    input --> ipv4 --> port ("<port>/TCP")
                  \\-> domain (one per hostname)

The SSL variant additionally drops matches whose certificate does not
belong to the searched domain or one of its subdomains, since Shodan's
ssl: filter also matches on unrelated certificate text.
"""

from __future__ import annotations

import re
from typing import Any, Optional

import httpx

from recongraph.config import settings
from recongraph.models.elements import NodeType
from recongraph.transforms.base import (
    ResultSpec,
    Transform,
    TransformDescriptor,
    TransformOption,
)
from recongraph.transforms.http import HttpClientFactory, request_with_retry

SHODAN_SEARCH_URL = "https://api.shodan.io/shodan/host/search"

SHODAN_OPTIONS = {
    "shodanKey": TransformOption(type="string", description="Shodan API key."),
    "extraQuery": TransformOption(type="string", description="Extra query."),
}


class ShodanTransform(Transform):
    """Shared paging and result shaping for Shodan searches."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def get_query(self, label: str, options: dict[str, Any]) -> str:
        raise NotImplementedError

    def filter_match(self, label: str, match: dict[str, Any]) -> bool:
        return True

    async def run(self, nodes, options):
        async with HttpClientFactory.client(transport=self._transport) as client:
            self._client = client
            try:
                return await super().run(nodes, options)
            finally:
                self._client = None

    async def handle(
        self, node: dict[str, Any], options: dict[str, Any]
    ) -> list[ResultSpec]:
        source = node.get("id") or ""
        label = node.get("label") or ""
        shodan_key = options.pop("shodanKey", None) or settings.shodan_key
        if not shodan_key:
            raise ValueError("No shodan key supplied.")

        results: list[ResultSpec] = []
        page = 1
        count = 0

        while True:
            self.info(f"Retrieving shodan page {page}")

            response = await request_with_retry(
                self._client,
                "GET",
                SHODAN_SEARCH_URL,
                params={
                    "key": shodan_key,
                    "query": self.get_query(label, options),
                    "page": page,
                },
            )
            payload = response.json()
            matches = payload.get("matches") or []
            total = payload.get("total") or 0

            if not matches:
                break

            for match in matches:
                if self.filter_match(label, match):
                    results.extend(self._match_results(source, match))

            count += len(matches)
            if count >= total:
                break

            page += 1

        return results

    def _match_results(self, source: str, match: dict[str, Any]) -> list[ResultSpec]:
        ipv4 = match.get("ip_str") or ""
        if not ipv4:
            return []

        ipv4_id = self.make_id(NodeType.IPV4.value, ipv4)
        results: list[ResultSpec] = [{
            "id": ipv4_id,
            "type": NodeType.IPV4.value,
            "label": ipv4,
            "props": {"ipv4": ipv4},
            "edges": [source],
        }]

        port = match.get("port")
        if port is not None:
            port_label = f"{port}/TCP"
            results.append({
                "id": self.make_id(NodeType.PORT.value, port_label),
                "type": NodeType.PORT.value,
                "label": port_label,
                "props": {"port": port, "ssl": bool(match.get("ssl"))},
                "edges": [ipv4_id],
            })

        for domain in match.get("hostnames") or []:
            results.append({
                "type": NodeType.DOMAIN.value,
                "label": domain,
                "props": {"domain": domain},
                "edges": [ipv4_id],
            })

        return results


class ShodanOrgSearch(ShodanTransform):
    def get_query(self, label: str, options: dict[str, Any]) -> str:
        return f'org:"{label}" {options.get("extraQuery", "")}'.strip()


class ShodanSslSearch(ShodanTransform):
    def get_query(self, label: str, options: dict[str, Any]) -> str:
        return f'ssl:"{label}" {options.get("extraQuery", "")}'.strip()

    def filter_match(self, label: str, match: dict[str, Any]) -> bool:
        """Keep matches whose certificate names the domain or a subdomain."""
        cert = (match.get("ssl") or {}).get("cert") or {}
        extensions = cert.get("extensions") or []
        subject = cert.get("subject") or {}

        regex = re.compile(rf"(^{re.escape(label)}$|\.{re.escape(label)}$)")

        matches_extensions = any(
            regex.search(ext.get("data") or "") for ext in extensions
        )
        matches_subject = bool(regex.search(subject.get("CN") or ""))
        return matches_extensions or matches_subject


shodan_org_search = TransformDescriptor(
    name="shodanOrgSearch",
    title="Shodan ORG Search",
    description="Performs search using ORG filter.",
    alias=["shodan_org_search", "sos"],
    tags=["ce"],
    types=[NodeType.BRAND.value, NodeType.ORG.value],
    options=SHODAN_OPTIONS,
    priority=1,
    noise=50,
    factory=ShodanOrgSearch,
)

shodan_ssl_search = TransformDescriptor(
    name="shodanSslSearch",
    title="Shodan SSL Search",
    description="Performs search using SSL filter.",
    alias=["shodan_ssl_search", "sss"],
    tags=["ce"],
    types=[NodeType.DOMAIN.value],
    options=SHODAN_OPTIONS,
    priority=1,
    noise=9,
    factory=ShodanSslSearch,
)

SHODAN_TRANSFORMS = [shodan_org_search, shodan_ssl_search]
