"""HTTP cache headers and moderation cache helpers.

Responses are cached at the CDN with `s-maxage`, optionally served stale while
revalidating. Moderation views are cached in the key-value store under
`moderation:<kind>:<id>[:<action>]` and dropped when a moderation action lands.
"""

import logging
import os
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from starlette.responses import Response

from analytics_server.lib.cache import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_DURATIONS = {
    'short': 10,
    'medium': 300,
    'long': 3600,
}

REVALIDATION_PERIODS = {
    'short': 60,
    'medium': 1800,
    'long': 86400,
}

ANALYTICS_SUMMARY_KEY = 'moderation:analytics:summary'


def headers_for(
    duration: Optional[str] = None,
    stale_while_revalidate: bool = False,
    s_maxage: Optional[int] = None,
    cdn_cache_control: Optional[str] = None,
    edge_cdn_cache_control: Optional[str] = None,
    allow_purge: bool = False,
    environment: Optional[str] = None,
    durations: Optional[Dict[str, int]] = None
) -> Dict[str, str]:
    """Build cache headers for a response.

    Args:
        duration: Cache tier ('short', 'medium' or 'long'); medium when omitted
        stale_while_revalidate: Append the tier's revalidation window
        s_maxage: Explicit s-maxage overriding the tier
        cdn_cache_control: Value for CDN-Cache-Control
        edge_cdn_cache_control: Value for Edge-CDN-Cache-Control
        allow_purge: Allow the CDN to purge this response on demand
        environment: Deployment environment; defaults to $ENVIRONMENT
        durations: Tier overrides, e.g. Settings.cache_tier_seconds

    Returns:
        Header name -> value

    Raises:
        ValueError: If duration is not a known tier
    """
    tier = duration or 'medium'
    tiers = {**CACHE_DURATIONS, **(durations or {})}
    if tier not in tiers:
        raise ValueError(f'Unknown cache duration: {duration}')

    cache_control = f's-maxage={s_maxage or tiers[tier]}'
    if stale_while_revalidate:
        cache_control += f', stale-while-revalidate={REVALIDATION_PERIODS[tier]}'

    headers = {'Cache-Control': cache_control}
    if cdn_cache_control:
        headers['CDN-Cache-Control'] = cdn_cache_control
    if edge_cdn_cache_control:
        headers['Edge-CDN-Cache-Control'] = edge_cdn_cache_control
    if allow_purge:
        headers['x-cache-control-allow-purge'] = 'true'

    environment = environment if environment is not None else os.getenv('ENVIRONMENT', 'development')
    if environment.lower() == 'production':
        headers['x-edge-cache'] = 'EDGE'

    return headers


def apply_cache_control(response: Response, **options: Any) -> Response:
    """Set cache headers on an existing response. Options as for headers_for()."""
    for name, value in headers_for(**options).items():
        response.headers[name] = value
    return response


def cached_json_response(body: Any, status_code: int = 200, **options: Any) -> JSONResponse:
    """Build a JSONResponse carrying cache headers. Options as for headers_for()."""
    return JSONResponse(content=body, status_code=status_code, headers=headers_for(**options))


def moderation_cache_key(kind: str, entity_id: str, action: Optional[str] = None) -> str:
    if action:
        return f'moderation:{kind}:{entity_id}:{action}'
    return f'moderation:{kind}:{entity_id}'


class ModerationCache:
    """Key-value cache for moderation items and analytics summaries.

    Every operation is best effort: store failures are logged and the caller
    carries on as if the cache were empty.
    """

    def __init__(self, store: Optional[KeyValueStore]):
        self.store = store

    async def invalidate(self, kind: str, entity_id: str) -> None:
        """Drop the item, its list and the analytics summary."""
        if self.store is None:
            logger.warning('Key-value store not configured, skipping cache invalidation')
            return

        try:
            await self.store.delete(moderation_cache_key(kind, entity_id))
            await self.store.delete(f'moderation:{kind}:list')
            await self.store.delete(ANALYTICS_SUMMARY_KEY)
            logger.info(f'Invalidated cache for {kind} with ID {entity_id}')
        except Exception as e:
            logger.error(f'Error invalidating moderation cache: {e}')

    async def cache_analytics(self, key: str, data: Any, expiration_seconds: int = 300) -> None:
        if self.store is None:
            logger.warning('Key-value store not configured, skipping analytics caching')
            return

        try:
            await self.store.set(f'moderation:analytics:{key}', data, ttl_seconds=expiration_seconds)
            logger.debug(f'Cached moderation analytics data for key: {key}', extra={'cache_key': key})
        except Exception as e:
            logger.error(f'Error caching moderation analytics: {e}')

    async def get_cached_analytics(self, key: str) -> Any:
        if self.store is None:
            return None

        try:
            return await self.store.get(f'moderation:analytics:{key}')
        except Exception as e:
            logger.error(f'Error fetching cached moderation analytics: {e}')
            return None
