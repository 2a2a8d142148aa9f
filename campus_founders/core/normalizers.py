"""
Normalization helpers for backend payloads.

The backend returns related entities either as raw ids or as populated
objects (``{"_id": ...}``), and may return null or empty objects for
entities that were deleted. Everything here compares ids as strings and
drops entities that cannot be identified.
"""


def normalize_id(value):
    """
    Return the string form of an identifier.

    Accepts raw ids (str, int, ObjectId-like objects), populated objects
    carrying ``_id`` or ``id``, and extended JSON ``{"$oid": ...}``.
    Returns None when no id can be found.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        if '$oid' in value:
            return normalize_id(value['$oid'])
        inner = value.get('_id', value.get('id'))
        return normalize_id(inner)
    text = str(value).strip()
    return text or None


def same_id(first, second):
    """True when both values resolve to the same non-empty id"""
    first_id = normalize_id(first)
    return first_id is not None and first_id == normalize_id(second)


def contains_id(items, target):
    """Membership check tolerant of raw ids and populated objects"""
    target_id = normalize_id(target)
    if target_id is None:
        return False
    return any(normalize_id(item) == target_id for item in items or [])


def remove_id(items, target):
    """Copy of ``items`` without any entry resolving to ``target``"""
    target_id = normalize_id(target)
    return [item for item in items or [] if normalize_id(item) != target_id]


def is_present(entity):
    """A related entity that still exists: a non-empty mapping with an id"""
    return isinstance(entity, dict) and normalize_id(entity) is not None


def drop_missing(items, *relations):
    """
    Filter a list of entities down to well-formed ones.

    Entries that are null or carry no id are dropped. When ``relations`` are
    given, entries whose related entity under any of those fields is missing
    (for example a friend request whose sender was deleted) are dropped too.
    """
    if not isinstance(items, list):
        return items
    kept = []
    for item in items:
        if not is_present(item):
            continue
        if any(not is_present(item.get(relation)) for relation in relations):
            continue
        kept.append(item)
    return kept


def clamp_decrement(count):
    """Counters never go negative"""
    return max(0, (count or 0) - 1)
