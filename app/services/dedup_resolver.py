"""Content-hash deduplication against the upstream asset catalog.

The upstream service has no native hash field, so hashes are stored as asset tags.
Its search index is not reliable for tags (punctuation may be dropped by the query
parser, new tags may not be indexed yet), so lookups try several tag spellings through
the filtered listing first and then fall back to scanning the unfiltered catalog.
Only exact, case-insensitive tag equality counts as a match.
"""

import logging
from typing import Any
from urllib.parse import quote

from app.services.log_service import get_log_service
from app.services.upstream_client import UpstreamClient, is_failure

logger = logging.getLogger(__name__)

SEARCH_MAX_PAGES = 10
SCAN_MAX_PAGES = 20
SHORT_HASH_LENGTH = 16


def safe_tag(content_hash: str) -> str:
    """Tag spelling without punctuation that breaks the upstream query parser."""
    return f"sha256-{content_hash}"


def legacy_tag(content_hash: str) -> str:
    """Colon-delimited tag spelling written by older clients."""
    return f"hash:{content_hash}"


def tag_variants(content_hash: str) -> list[str]:
    """All tag spellings a previous upload may have been tagged with, in search order."""
    return [
        safe_tag(content_hash),
        legacy_tag(content_hash),
        content_hash,
        f"content-hash-{content_hash[:SHORT_HASH_LENGTH]}",
        f"filename:{content_hash}",
    ]


def partial_variants(content_hash: str) -> list[str]:
    """Shortened spellings tried only as a last resort."""
    short = content_hash[:SHORT_HASH_LENGTH]
    return [safe_tag(short), legacy_tag(short), short]


def asset_tag_names(asset: dict[str, Any]) -> list[str]:
    """Lower-cased tag names of an asset; tags may be plain strings or {name: ...}."""
    tags = asset.get("tags")
    if not isinstance(tags, list):
        return []
    names: list[str] = []
    for tag in tags:
        name = tag.get("name") if isinstance(tag, dict) else tag
        if isinstance(name, str) and name:
            names.append(name.lower())
    return names


def _find_tagged(items: list[Any], tag_lower: str) -> dict[str, Any] | None:
    for item in items:
        if isinstance(item, dict) and tag_lower in asset_tag_names(item):
            return item
    return None


def _scan_pages(
    client: UpstreamClient, first_endpoint: str, tag: str, max_pages: int
) -> dict[str, Any] | None:
    """Follow ``links.next`` from first_endpoint looking for an asset tagged ``tag``.

    Any upstream failure ends the scan as "not found".
    """
    tag_lower = tag.lower()
    endpoint: str | None = first_endpoint
    pages = 0

    while endpoint and pages < max_pages:
        data = client.safe_call(endpoint, "GET")
        if is_failure(data):
            logger.warning("Catalog page %d failed for tag %r", pages + 1, tag)
            return None
        if not isinstance(data, dict):
            return None

        items = data.get("data") if isinstance(data.get("data"), list) else []
        hit = _find_tagged(items, tag_lower)
        if hit:
            return hit

        links = data.get("links") if isinstance(data.get("links"), dict) else {}
        endpoint = client.relative(links.get("next"))
        pages += 1

    logger.debug("No asset tagged %r after %d pages", tag, pages)
    return None


def search_by_query(
    client: UpstreamClient, query: str, max_pages: int = SEARCH_MAX_PAGES
) -> dict[str, Any] | None:
    """Search the filtered listing for an asset whose tag equals the query."""
    return _scan_pages(client, f"/rawmodel?q={quote(query, safe='')}", query, max_pages)


def scan_all_pages_for_tag(
    client: UpstreamClient, tag: str, max_pages: int = SCAN_MAX_PAGES
) -> dict[str, Any] | None:
    """Scan the unfiltered catalog and check every asset's tags locally."""
    return _scan_pages(client, "/rawmodel", tag, max_pages)


def find_asset_by_hash(
    client: UpstreamClient,
    content_hash: str,
    search_max_pages: int = SEARCH_MAX_PAGES,
    scan_max_pages: int = SCAN_MAX_PAGES,
) -> dict[str, Any] | None:
    """Find a previously uploaded asset by its content hash.

    Strategies, short-circuiting on the first hit:
        1. Targeted query search per tag variant
        2. Full catalog scan per tag variant
        3. Full catalog scan per shortened variant

    Returns:
        The matching asset record, or None. Upstream failures count as "not found".
    """
    content_hash = (content_hash or "").strip()
    if not content_hash:
        logger.warning("find_asset_by_hash called without a hash")
        return None

    log = get_log_service()
    strategies = [
        ("search", tag_variants(content_hash), search_by_query, search_max_pages),
        ("scan", tag_variants(content_hash), scan_all_pages_for_tag, scan_max_pages),
        ("partial", partial_variants(content_hash), scan_all_pages_for_tag, scan_max_pages),
    ]

    for strategy, variants, lookup, max_pages in strategies:
        for variant in variants:
            hit = lookup(client, variant, max_pages)
            if hit:
                log.info(
                    "dedup",
                    "dedup_hit",
                    f"Found asset {hit.get('id')} for hash via {strategy}",
                    {"hash": content_hash, "asset_id": hit.get("id"), "strategy": strategy,
                     "variant": variant},
                )
                return hit

    log.info("dedup", "dedup_miss", "No existing asset for hash", {"hash": content_hash})
    return None
