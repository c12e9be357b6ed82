"""
Media variant deduplication.

The provider returns several resized variants of every listing photo. Only
two are stored per photo: one thumbnail and one large image.
"""

import logging
from itertools import count
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .listing_models import MediaAsset

logger = logging.getLogger(__name__)

VARIANT_THUMBNAIL = 'thumbnail'
VARIANT_LARGE = 'large'

THUMBNAIL_MARKER = 'rs:fit:240:240'
LARGE_MARKER = 'rs:fit:1920:1920'

_anonymous_ids = count()


def _parse_order(item: Dict[str, Any]) -> Optional[int]:
    try:
        return int(item.get('Order'))
    except (TypeError, ValueError):
        return None


def _sort_order(item: Dict[str, Any]) -> Tuple[bool, int]:
    """Missing or unparsable Order sorts after every real position"""
    order = _parse_order(item)
    return order is None, order or 0


def photo_identity(item: Dict[str, Any]) -> str:
    """
    Logical photo an item belongs to: the URL path stem, else the MediaKey.

    Items with neither get a unique identity so each forms its own group.
    """
    url = item.get('MediaURL') or ''
    if url:
        segment = urlparse(url).path.rstrip('/').rsplit('/', 1)[-1]
        stem = segment.split('.', 1)[0]
        if stem:
            return stem
    if item.get('MediaKey'):
        return str(item['MediaKey'])
    return f"__media_{next(_anonymous_ids)}"


def is_thumbnail(item: Dict[str, Any]) -> bool:
    return THUMBNAIL_MARKER in (item.get('MediaURL') or '') or item.get('ImageSizeDescription') == 'Thumbnail'


def is_large(item: Dict[str, Any]) -> bool:
    return LARGE_MARKER in (item.get('MediaURL') or '') or item.get('ImageSizeDescription') == 'Large'


def _to_asset(item: Dict[str, Any], variant_type: str) -> MediaAsset:
    return MediaAsset(
        media_key=item.get('MediaKey'),
        media_url=item.get('MediaURL'),
        order=_parse_order(item),
        variant_type=variant_type,
        media_type=item.get('MediaType'),
        size_description=item.get('ImageSizeDescription'),
        preferred=bool(item.get('PreferredPhotoYN')),
    )


def dedupe_media(raw: Optional[List[Dict[str, Any]]]) -> List[MediaAsset]:
    """
    Reduce raw provider media to at most one thumbnail and one large per photo.

    Items are stable-sorted by Order (missing or unparsable last) and grouped
    by photo identity. Within a group the first thumbnail and the first large
    item win. Output keeps group order with the thumbnail before the large;
    groups with neither variant produce nothing.
    """
    if not raw:
        return []

    items = [item for item in raw if isinstance(item, dict)]
    if len(items) != len(raw):
        logger.warning(f"Skipped {len(raw) - len(items)} malformed media entries")

    groups: Dict[str, List[Dict[str, Any]]] = {}
    for item in sorted(items, key=_sort_order):
        groups.setdefault(photo_identity(item), []).append(item)

    assets = []
    for group in groups.values():
        thumbnail = next((item for item in group if is_thumbnail(item)), None)
        large = next((item for item in group if is_large(item)), None)

        if thumbnail is not None:
            assets.append(_to_asset(thumbnail, VARIANT_THUMBNAIL))
        if large is not None:
            assets.append(_to_asset(large, VARIANT_LARGE))

    return assets
