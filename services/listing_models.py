"""
Validated record types for provider resources.

Each provider resource (Property, PropertyRooms, Media, OpenHouse) gets its
own dataclass with a from_provider constructor that validates the payload and
a to_row method producing the column dict persisted by the ListingStore.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import DataShapeError

logger = logging.getLogger(__name__)

FEED_STATUS_ACTIVE = 'active'
FEED_STATUS_REMOVED = 'removed_from_feed'

# Provider field -> persisted column for descriptive listing fields
LISTING_FIELD_MAP = {
    'ListingId': 'listing_id',
    'StandardStatus': 'standard_status',
    'MlsStatus': 'mls_status',
    'TransactionType': 'transaction_type',
    'PropertyType': 'property_type',
    'PropertySubType': 'property_sub_type',
    'UnitNumber': 'unit_number',
    'ListPrice': 'list_price',
    'OriginalListPrice': 'original_list_price',
    'ClosePrice': 'close_price',
    'ListingContractDate': 'list_date',
    'CloseDate': 'close_date',
    'BedroomsTotal': 'bedrooms_total',
    'BathroomsTotalInteger': 'bathrooms_total',
    'LivingAreaRange': 'living_area_range',
    'ParkingTotal': 'parking_total',
    'AssociationFee': 'association_fee',
    'UnparsedAddress': 'unparsed_address',
    'StreetNumber': 'street_number',
    'StreetName': 'street_name',
    'StreetSuffix': 'street_suffix',
    'StreetDirSuffix': 'street_dir_suffix',
    'City': 'city',
    'CityRegion': 'city_region',
    'CountyOrParish': 'county_or_parish',
    'PostalCode': 'postal_code',
    'PublicRemarks': 'public_remarks',
}

INTEGER_COLUMNS = {'list_price', 'original_list_price', 'close_price', 'bedrooms_total', 'parking_total'}
DECIMAL_COLUMNS = {'bathrooms_total', 'association_fee'}
DATE_COLUMNS = {'list_date', 'close_date'}

# Columns compared when deciding whether a persisted listing changed
COMPARED_COLUMNS = tuple(LISTING_FIELD_MAP.values()) + ('modification_timestamp', 'feed_status')

# Hierarchy columns are filled only when the persisted row has none
HIERARCHY_COLUMNS = ('building_id', 'community_id', 'municipality_id', 'area_id')


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp into an aware UTC datetime"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        text = str(value).strip().replace('Z', '+00:00')
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparsable timestamp: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime the way the provider filter syntax expects"""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_date(value: Any) -> Optional[str]:
    if not value:
        return None
    return str(value)[:10]


def _clean(column: str, value: Any) -> Any:
    if column in INTEGER_COLUMNS:
        return _to_int(value)
    if column in DECIMAL_COLUMNS:
        return _to_float(value)
    if column in DATE_COLUMNS:
        return _to_date(value)
    if value == '':
        return None
    return value


@dataclass
class RoomRecord:
    """A room owned by a listing (PropertyRooms resource)"""
    room_key: Optional[str]
    room_type: Optional[str]
    room_level: Optional[str] = None
    room_dimensions: Optional[str] = None
    room_area: Optional[float] = None

    @classmethod
    def from_provider(cls, payload: Dict[str, Any]) -> 'RoomRecord':
        if not isinstance(payload, dict):
            raise DataShapeError(f"Room payload is not an object: {payload!r}")
        return cls(
            room_key=payload.get('RoomKey'),
            room_type=payload.get('RoomType') or None,
            room_level=payload.get('RoomLevel') or None,
            room_dimensions=payload.get('RoomDimensions') or None,
            room_area=_to_float(payload.get('RoomArea')),
        )

    def to_row(self, listing_id: str) -> Dict[str, Any]:
        return {
            'listing_id': listing_id,
            'room_key': self.room_key,
            'room_type': self.room_type,
            'room_level': self.room_level,
            'room_dimensions': self.room_dimensions,
            'room_area': self.room_area,
        }


@dataclass
class OpenHouseRecord:
    """A scheduled open house owned by a listing (OpenHouse resource)"""
    open_house_key: Optional[str]
    open_house_date: Optional[str]
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    open_house_type: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_provider(cls, payload: Dict[str, Any]) -> 'OpenHouseRecord':
        if not isinstance(payload, dict):
            raise DataShapeError(f"Open house payload is not an object: {payload!r}")
        return cls(
            open_house_key=payload.get('OpenHouseKey'),
            open_house_date=_to_date(payload.get('OpenHouseDate')),
            start_time=payload.get('OpenHouseStartTime'),
            end_time=payload.get('OpenHouseEndTime'),
            open_house_type=payload.get('OpenHouseType'),
            status=payload.get('OpenHouseStatus'),
        )

    def to_row(self, listing_id: str) -> Dict[str, Any]:
        return {
            'listing_id': listing_id,
            'open_house_key': self.open_house_key,
            'open_house_date': self.open_house_date,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'open_house_type': self.open_house_type,
            'status': self.status,
        }


@dataclass
class MediaAsset:
    """A single stored media variant (thumbnail or large) of a listing photo"""
    media_key: Optional[str]
    media_url: Optional[str]
    order: Optional[int]
    variant_type: str
    media_type: Optional[str] = None
    size_description: Optional[str] = None
    preferred: bool = False

    def to_row(self, listing_id: str) -> Dict[str, Any]:
        return {
            'listing_id': listing_id,
            'media_key': self.media_key,
            'media_url': self.media_url,
            'media_type': self.media_type,
            'order_number': self.order,
            'variant_type': self.variant_type,
            'preferred_photo_yn': self.preferred,
        }


@dataclass
class ListingRecord:
    """A property listing as returned by the provider, plus pipeline attachments"""
    listing_key: str
    modification_timestamp: Optional[str]
    fields: Dict[str, Any] = field(default_factory=dict)
    raw_data: Dict[str, Any] = field(default_factory=dict)

    # Attached by the building resolver
    building_id: Optional[str] = None
    community_id: Optional[str] = None
    municipality_id: Optional[str] = None
    area_id: Optional[str] = None

    # Attached by the enrichment batcher
    rooms: List[RoomRecord] = field(default_factory=list)
    media: List[MediaAsset] = field(default_factory=list)
    open_houses: List[OpenHouseRecord] = field(default_factory=list)

    @classmethod
    def from_provider(cls, payload: Dict[str, Any]) -> 'ListingRecord':
        """
        Validate a Property payload.

        Raises:
            DataShapeError: if the payload has no ListingKey or no parsable
                ModificationTimestamp
        """
        if not isinstance(payload, dict):
            raise DataShapeError(f"Listing payload is not an object: {payload!r}")

        listing_key = payload.get('ListingKey')
        if not listing_key:
            raise DataShapeError("Listing payload has no ListingKey")

        fields = {
            column: _clean(column, payload.get(source))
            for source, column in LISTING_FIELD_MAP.items()
        }

        # Last-write-wins needs a timestamp on every write
        modified = parse_timestamp(payload.get('ModificationTimestamp'))
        if modified is None:
            raise DataShapeError(f"Listing {listing_key} has no valid ModificationTimestamp: "
                                 f"{payload.get('ModificationTimestamp')!r}")

        return cls(
            listing_key=str(listing_key),
            modification_timestamp=modified.isoformat(),
            fields=fields,
            raw_data=payload,
        )

    @property
    def modified_at(self) -> Optional[datetime]:
        return parse_timestamp(self.modification_timestamp)

    @property
    def property_type(self) -> Optional[str]:
        return self.fields.get('property_type')

    @property
    def list_price(self) -> Optional[int]:
        return self.fields.get('list_price')

    @property
    def address(self) -> Optional[str]:
        """Free-text address, composed from street parts when the feed has none"""
        unparsed = self.fields.get('unparsed_address')
        if unparsed:
            return unparsed

        parts = [
            self.fields.get('street_number'),
            self.fields.get('street_name'),
            self.fields.get('street_suffix'),
            self.fields.get('street_dir_suffix'),
        ]
        street = ' '.join(str(p) for p in parts if p)
        if not street:
            return None
        city = self.fields.get('city')
        return f"{street}, {city}" if city else street

    def to_row(self) -> Dict[str, Any]:
        """Column dict for the mls_listings table (ids only when resolved)"""
        row = {
            'listing_key': self.listing_key,
            'modification_timestamp': self.modification_timestamp,
            'feed_status': FEED_STATUS_ACTIVE,
            'removed_from_feed_at': None,
            'raw_data': self.raw_data,
        }
        row.update(self.fields)
        for column in HIERARCHY_COLUMNS:
            value = getattr(self, column)
            if value is not None:
                row[column] = value
        return row
