"""
Address normalization for building identity.

Pure string functions that turn free-text listing addresses into a canonical
building-identity string, generate alternate spellings for lookups and
extract a display name from marketing-style addresses. No I/O.
"""

import re
from typing import List, Optional

# Canonical abbreviation -> spellings seen in the feed
STREET_TYPES = {
    'ST': ['STREET', 'STR', 'STRT', 'ST'],
    'AVE': ['AVENUE', 'AVEN', 'AV', 'AVE'],
    'RD': ['ROAD', 'RD'],
    'DR': ['DRIVE', 'DRV', 'DR'],
    'BLVD': ['BOULEVARD', 'BOUL', 'BLVD'],
    'CRT': ['COURT', 'CT', 'CRT'],
    'PL': ['PLACE', 'PLC', 'PL'],
    'LN': ['LANE', 'LN'],
    'CRES': ['CRESCENT', 'CRES', 'CR'],
    'SQ': ['SQUARE', 'SQ'],
    'PKWY': ['PARKWAY', 'PKY', 'PKWY'],
    'TERR': ['TERRACE', 'TER', 'TERR'],
    'TRL': ['TRAIL', 'TR', 'TRL'],
    'WAY': ['WAY', 'WY'],
    'CIR': ['CIRCLE', 'CIR'],
    'GATE': ['GATE', 'GT'],
    'HWY': ['HIGHWAY', 'HWY'],
}

# Long form used when generating the "full street type" variation
STREET_TYPE_LONG = {
    'ST': 'STREET', 'AVE': 'AVENUE', 'RD': 'ROAD', 'DR': 'DRIVE',
    'BLVD': 'BOULEVARD', 'CRT': 'COURT', 'PL': 'PLACE', 'LN': 'LANE',
    'CRES': 'CRESCENT', 'SQ': 'SQUARE', 'PKWY': 'PARKWAY', 'TERR': 'TERRACE',
    'TRL': 'TRAIL', 'WAY': 'WAY', 'CIR': 'CIRCLE', 'GATE': 'GATE', 'HWY': 'HIGHWAY',
}

DIRECTIONS = {
    'NORTHEAST': 'NE', 'NORTHWEST': 'NW', 'SOUTHEAST': 'SE', 'SOUTHWEST': 'SW',
    'NORTH': 'N', 'SOUTH': 'S', 'EAST': 'E', 'WEST': 'W',
}

_STREET_TYPE_LOOKUP = {
    spelling: abbreviation
    for abbreviation, spellings in STREET_TYPES.items()
    for spelling in spellings
}

_UNIT_WORDS = r'(?:UNIT|APT|APARTMENT|SUITE|STE|PH|TH|#)'

# "Unit 5 - 100 King St", "#1205-100 King St", "Suite 200, 100 King St"
_LEADING_UNIT = re.compile(rf'^{_UNIT_WORDS}\s*[A-Z]?\d+[A-Z]?\s*[-,]?\s*', re.IGNORECASE)
# "1205 - 100 King St"
_LEADING_UNIT_NUMBER = re.compile(r'^[A-Z]?\d+[A-Z]?\s*-\s*(?=\d)', re.IGNORECASE)
# "100 King St Unit 1205", "100 King St #1205", "100 King St E 1205"
_TRAILING_UNIT = re.compile(rf'\s+{_UNIT_WORDS}\s*[A-Z]?\d+[A-Z]?$', re.IGNORECASE)
_TRAILING_UNIT_NUMBER = re.compile(r'(?<=[A-Z])\s+\d{3,4}[A-Z]?$', re.IGNORECASE)
# "Unit 5" on its own
_UNIT_LABEL = re.compile(rf'^{_UNIT_WORDS}\s*[A-Z]?\d+[A-Z]?$', re.IGNORECASE)

_NAME_PATTERNS = [
    re.compile(r'^(.+?)\s*-\s*\d+\s+'),
    re.compile(r'^((?:THE\s+)?[A-Z\s]+?)\s+(?:CONDOS?|TOWERS?|RESIDENCES?|TOWNHOMES?)\b', re.IGNORECASE),
    re.compile(r'^((?:ONE|TWO|THREE)\s+[A-Z\s]+?)(?:\s+\d|\s+-)'),
    re.compile(r'^([A-Z\s]+(?:TOWNHOMES?|CONDOS?|TOWERS?|RESIDENCES?|VILLAGE|PLACE|COURT))'),
]


def _street_part(raw: str) -> str:
    """Portion of the address before the city/province/postal tail"""
    return raw.split(',', 1)[0]


def _building_street(raw: str) -> str:
    """Street portion of an address with unit tokens removed"""
    text = _LEADING_UNIT.sub('', raw.strip())
    text = _LEADING_UNIT_NUMBER.sub('', text)
    street = _TRAILING_UNIT.sub('', _street_part(text).strip())
    street = _TRAILING_UNIT_NUMBER.sub('', street)
    return street.strip()


def _tokens(text: str) -> List[str]:
    return re.sub(r'[^A-Z0-9\s]', ' ', text.upper()).split()


def _normalize_tokens(tokens: List[str]) -> List[str]:
    normalized = []
    for index, token in enumerate(tokens):
        # Street numbers and the first name word are never abbreviated ("1 Court St")
        if index <= 1 or token.isdigit():
            normalized.append(token)
        elif token in DIRECTIONS:
            normalized.append(DIRECTIONS[token])
        elif token in _STREET_TYPE_LOOKUP:
            normalized.append(_STREET_TYPE_LOOKUP[token])
        else:
            normalized.append(token)
    return normalized


def canonicalize(raw: Optional[str]) -> Optional[str]:
    """
    Canonical building-identity string for a free-text address.

    "Unit 1205 - 100 Queen Street West, Toronto, ON" -> "100 QUEEN ST W"

    Returns the (stripped) input unchanged when there is nothing to parse.
    """
    if raw is None:
        return None
    text = raw.strip()
    if not re.search(r'[A-Za-z0-9]', text):
        return text

    street = _building_street(text)
    tokens = _normalize_tokens(_tokens(street))
    if not tokens:
        return text
    return ' '.join(tokens)


def _without_unit_prefix(raw: str) -> str:
    return _LEADING_UNIT.sub('', raw.strip())


def search_variations(raw: Optional[str]) -> List[str]:
    """
    Ordered, de-duplicated alternate spellings of an address for lookups.

    Order: canonical form, canonical form with the full street-type word,
    form without a leading unit token, street number plus street name only.
    """
    if not raw or not raw.strip():
        return []

    variations = []

    def add(value: Optional[str]):
        if value and value not in variations:
            variations.append(value)

    canonical = canonicalize(raw)
    add(canonical)

    tokens = canonical.split() if canonical else []
    long_form = [
        STREET_TYPE_LONG.get(token, token) if index > 1 else token
        for index, token in enumerate(tokens)
    ]
    add(' '.join(long_form))

    add(' '.join(_tokens(_street_part(_without_unit_prefix(raw)))))

    if len(tokens) >= 2 and tokens[0][0].isdigit():
        name_words = [
            token for token in tokens[1:]
            if token not in STREET_TYPES and token not in DIRECTIONS.values()
        ]
        if name_words:
            add(' '.join([tokens[0]] + name_words))

    return variations


def is_same_building(address_a: Optional[str], address_b: Optional[str]) -> bool:
    """True when two addresses refer to the same building"""
    if not address_a or not address_b:
        return False

    canonical_a = canonicalize(address_a)
    canonical_b = canonicalize(address_b)
    if canonical_a == canonical_b:
        return True

    bare_a = ' '.join(_tokens(_street_part(_without_unit_prefix(address_a))))
    bare_b = ' '.join(_tokens(_street_part(_without_unit_prefix(address_b))))
    if not bare_a or not bare_b:
        return False
    # Whole-token containment so "100 KING ST" does not match "1100 KING ST"
    padded_a, padded_b = f" {bare_a} ", f" {bare_b} "
    return padded_a in padded_b or padded_b in padded_a


def extract_building_name(raw: Optional[str]) -> Optional[str]:
    """Marketing name embedded in an address ("Aura - 388 Yonge St"), if any"""
    if not raw:
        return None
    text = raw.strip()
    for pattern in _NAME_PATTERNS:
        match = pattern.match(text)
        if match:
            name = match.group(1).strip()
            if _UNIT_LABEL.match(name):
                continue
            if len(name) > 3 and not name[0].isdigit():
                return name
    return None


def slugify(*parts: Optional[str]) -> str:
    """URL slug built from the given parts"""
    text = ' '.join(p for p in parts if p)
    slug = re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')
    return re.sub(r'-{2,}', '-', slug)
