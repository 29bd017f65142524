"""
Ledger Document Decoder

Turns the loosely shaped documents the ledger returns into typed records.

Two document shapes reach us:

    contents shape   {"claims": {"fields": {"contents": [
                         {"fields": {"key": "0xabc", "value": {"fields": {...}}}},
                         ...]}}}
    direct sequence  {"claims": [{...}, {...}]}

Object-query responses wrap the field-bag in {"data": {"content": {"fields": ...}}};
event payloads do not. Both are normalized before the shape is classified,
and decoding dispatches on the classified shape.

Decoding is total. It never raises: a bad entry is skipped with a
diagnostic, a bad document yields no records and a diagnostic.
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError

from ..observability import get_logger
from ..schemas import ClaimRecord, ClaimStatus, OrganizationRecord

logger = get_logger(__name__)

T = TypeVar("T")

CLAIM_CONTAINERS = ("claims",)
ORGANIZATION_CONTAINERS = ("organisations", "organizations")


class DecodeError(Exception):
    """
    A single entry or document could not be decoded.

    Raised inside the decoder only; callers see it as a diagnostic string.
    """
    pass


# ============================================================
# DOCUMENT SHAPES
# ============================================================

@dataclass(frozen=True)
class ContentsShape:
    """Container holds an ordered sequence of {key, value} entries."""
    entries: tuple[Any, ...]


@dataclass(frozen=True)
class DirectSequenceShape:
    """Container is already a flat sequence of record field-bags."""
    items: tuple[Any, ...]


@dataclass(frozen=True)
class AbsentShape:
    """No container or no contents: well-formed and legitimately empty."""
    pass


@dataclass(frozen=True)
class MalformedShape:
    reason: str


DocumentShape = Union[ContentsShape, DirectSequenceShape, AbsentShape, MalformedShape]


@dataclass(frozen=True)
class DecodeResult(Generic[T]):
    """Records decoded from one document, plus what was skipped and why."""
    records: tuple[T, ...] = ()
    diagnostics: tuple[str, ...] = ()
    shape: str = "absent"

    @property
    def malformed(self) -> bool:
        """True when the document as a whole could not be read."""
        return self.shape == "malformed"

    @property
    def well_formed_empty(self) -> bool:
        return not self.malformed and not self.records


# ============================================================
# NORMALIZATION
# ============================================================

def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _fields_of(value: Any) -> Any:
    """Unwrap a {"fields": {...}} wrapper if present."""
    if isinstance(value, Mapping) and isinstance(value.get("fields"), Mapping):
        return value["fields"]
    return value


def unwrap_document(document: Any) -> Optional[Mapping]:
    """
    Reduce an object-query response to the object's field-bag.

    Documents that are already a field-bag pass through unchanged.
    Returns None if the document is not a mapping at all.
    """
    if not isinstance(document, Mapping):
        return None
    current: Mapping = document
    for wrapper in ("data", "content"):
        inner = current.get(wrapper)
        if isinstance(inner, Mapping):
            current = inner
    return _fields_of(current)


def classify(container: Any) -> DocumentShape:
    """Decide which shape a record container has."""
    if container is None:
        return AbsentShape()
    if isinstance(container, Mapping):
        inner = _fields_of(container)
        if "contents" not in inner:
            return AbsentShape()
        contents = inner["contents"]
        if contents is None:
            return AbsentShape()
        if not _is_sequence(contents):
            return MalformedShape(
                f"contents is {type(contents).__name__}, expected a sequence"
            )
        return ContentsShape(entries=tuple(contents))
    if _is_sequence(container):
        return DirectSequenceShape(items=tuple(container))
    return MalformedShape(
        f"record container is {type(container).__name__}, expected a mapping or sequence"
    )


def classify_document(document: Any, containers: tuple[str, ...]) -> DocumentShape:
    bag = unwrap_document(document)
    if bag is None:
        return MalformedShape(
            f"document is {type(document).__name__}, expected a mapping"
        )
    for name in containers:
        if name in bag:
            return classify(bag[name])
    return AbsentShape()


# ============================================================
# FIELD COERCION
# ============================================================

def _first(bag: Mapping, *names: str) -> Any:
    for name in names:
        if name in bag and bag[name] is not None:
            return bag[name]
    return None


def _to_int(value: Any, field_name: str, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise DecodeError(f"{field_name}: boolean is not a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise DecodeError(f"{field_name}: {value} is not finite")
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            raise DecodeError(f"{field_name}: {value!r} is not numeric")
        if not math.isfinite(parsed):
            raise DecodeError(f"{field_name}: {value!r} is not finite")
        return int(parsed)
    raise DecodeError(f"{field_name}: {type(value).__name__} is not numeric")


def _to_float(value: Any, field_name: str, default: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise DecodeError(f"{field_name}: boolean is not a number")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            try:
                return float(value.strip())
            except ValueError:
                raise DecodeError(f"{field_name}: {value!r} is not numeric")
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            raise DecodeError(f"{field_name}: {value} is out of range")
    raise DecodeError(f"{field_name}: {type(value).__name__} is not numeric")


def _to_raw_number(value: Any, field_name: str) -> Union[int, float]:
    """
    Numeric parse that keeps the magnitude untouched.

    Used for issue times and voting periods, whose unit is inferred later.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise DecodeError(f"{field_name}: boolean is not a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            raise DecodeError(f"{field_name}: {value!r} is not numeric")
    raise DecodeError(f"{field_name}: {type(value).__name__} is not numeric")


def _to_text(value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _to_id(value: Any) -> Optional[str]:
    """Object ids arrive as "0x..." or as {"id": "0x..."}."""
    if isinstance(value, Mapping):
        value = value.get("id")
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


def _to_status(value: Any) -> ClaimStatus:
    if isinstance(value, ClaimStatus):
        return value
    if isinstance(value, str) and value.strip().lower() in {s.value for s in ClaimStatus}:
        return ClaimStatus(value.strip().lower())
    return ClaimStatus.from_code(_to_int(value, "status"))


# ============================================================
# RECORD DECODERS
# ============================================================

CLAIM_FIELD_NAMES = frozenset({
    "claim_id", "organisation_wallet_address", "owner_address", "longitude",
    "latitude", "requested_carbon_credits", "requested_credits", "status",
    "ipfs_hash", "evidence_ref", "description", "time_of_issue", "issued_at",
    "voting_period", "yes_votes", "no_votes", "total_votes",
})

ORGANIZATION_FIELD_NAMES = frozenset({
    "id", "name", "description", "owner", "wallet_address", "carbon_credits",
    "reputation_score", "times_lent", "total_lent", "times_borrowed",
    "total_borrowed", "total_returned", "times_returned", "emissions",
})


def decode_claim_bag(bag: Mapping, key: Any = None) -> ClaimRecord:
    """
    Decode one claim field-bag.

    Raises:
        DecodeError: If the bag has no usable id or a field is not parseable
    """
    claim_id = _to_id(key) or _to_id(_first(bag, "claim_id", "id"))
    if claim_id is None:
        raise DecodeError("claim has no id")

    yes_votes = _to_int(bag.get("yes_votes"), "yes_votes")
    no_votes = _to_int(bag.get("no_votes"), "no_votes")
    total_raw = bag.get("total_votes")
    total_votes = yes_votes + no_votes if total_raw is None else _to_int(total_raw, "total_votes")

    try:
        return ClaimRecord(
            claim_id=claim_id,
            owner_address=_to_text(
                _first(bag, "organisation_wallet_address", "owner_address", "owner"), "Unknown"
            ),
            longitude=_to_float(bag.get("longitude"), "longitude"),
            latitude=_to_float(bag.get("latitude"), "latitude"),
            requested_credits=_to_int(
                _first(bag, "requested_carbon_credits", "requested_credits"), "requested_credits"
            ),
            status=_to_status(bag.get("status", 0)),
            evidence_ref=_to_text(_first(bag, "ipfs_hash", "evidence_ref"), ""),
            description=_to_text(bag.get("description"), ""),
            issued_at=_to_raw_number(_first(bag, "time_of_issue", "issued_at"), "issued_at"),
            voting_period=_to_raw_number(bag.get("voting_period"), "voting_period"),
            yes_votes=yes_votes,
            no_votes=no_votes,
            total_votes=total_votes,
        )
    except PydanticValidationError as e:
        raise DecodeError(f"claim {claim_id}: {_summarize(e)}")


def decode_organization_bag(bag: Mapping, key: Any = None) -> OrganizationRecord:
    """
    Decode one organization field-bag.

    The bag's own id wins over the entry key.

    Raises:
        DecodeError: If the bag has no usable id or a field is not parseable
    """
    org_id = _to_id(_first(bag, "id", "organisation_id", "org_id")) or _to_id(key)
    if org_id is None:
        raise DecodeError("organisation has no id")

    owner = _to_text(bag.get("owner"), "Unknown")
    try:
        return OrganizationRecord(
            org_id=org_id,
            owner_address=owner,
            name=_to_text(bag.get("name"), "Unknown") or "Unknown",
            description=_to_text(bag.get("description"), "No description") or "No description",
            wallet_address=_to_text(_first(bag, "wallet_address", "owner"), "Unknown"),
            carbon_credits=_to_int(bag.get("carbon_credits"), "carbon_credits"),
            reputation_score=_to_int(bag.get("reputation_score"), "reputation_score"),
            times_lent=_to_int(bag.get("times_lent"), "times_lent"),
            total_lent=_to_int(bag.get("total_lent"), "total_lent"),
            times_borrowed=_to_int(bag.get("times_borrowed"), "times_borrowed"),
            total_borrowed=_to_int(bag.get("total_borrowed"), "total_borrowed"),
            total_returned=_to_int(bag.get("total_returned"), "total_returned"),
            times_returned=_to_int(bag.get("times_returned"), "times_returned"),
            emissions=_to_int(bag.get("emissions"), "emissions"),
        )
    except PydanticValidationError as e:
        raise DecodeError(f"organisation {org_id}: {_summarize(e)}")


def _summarize(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
        for err in error.errors()
    )


def _entry_bag(entry: Any, known_fields: frozenset) -> tuple[Any, Mapping]:
    """
    Pull (key, field-bag) out of a contents entry.

    Raises:
        DecodeError: If the entry has no nested field-bag
    """
    entry = _fields_of(entry)
    if not isinstance(entry, Mapping):
        raise DecodeError(f"entry is {type(entry).__name__}, expected a mapping")
    key = entry.get("key")
    value = entry.get("value")
    if not isinstance(value, Mapping):
        raise DecodeError(f"entry {key!r} has no value field-bag")
    if isinstance(value.get("fields"), Mapping):
        return key, value["fields"]
    if known_fields.intersection(value.keys()):
        return key, value
    raise DecodeError(f"entry {key!r} has no value field-bag")


def _item_bag(item: Any) -> Mapping:
    bag = _fields_of(item)
    if not isinstance(bag, Mapping):
        raise DecodeError(f"item is {type(item).__name__}, expected a mapping")
    return bag


def _decode(
    document: Any,
    containers: tuple[str, ...],
    known_fields: frozenset,
    decode_bag: Callable[[Mapping, Any], T],
    id_of: Callable[[T], str],
) -> DecodeResult[T]:
    shape = classify_document(document, containers)

    if isinstance(shape, MalformedShape):
        logger.warning("Ledger document is malformed", reason=shape.reason)
        return DecodeResult(records=(), diagnostics=(shape.reason,), shape="malformed")

    if isinstance(shape, AbsentShape):
        return DecodeResult(records=(), diagnostics=(), shape="absent")

    if isinstance(shape, ContentsShape):
        raw_items = shape.entries
        shape_name = "contents"
    else:
        raw_items = shape.items
        shape_name = "direct"

    records: list[T] = []
    seen: set[str] = set()
    diagnostics: list[str] = []

    for index, raw in enumerate(raw_items):
        try:
            if shape_name == "contents":
                key, bag = _entry_bag(raw, known_fields)
            else:
                key, bag = None, _item_bag(raw)
            record = decode_bag(bag, key)
        except DecodeError as e:
            diagnostics.append(f"entry {index} skipped: {e}")
            continue

        record_id = id_of(record)
        if record_id in seen:
            diagnostics.append(f"entry {index} skipped: duplicate id {record_id}")
            continue
        seen.add(record_id)
        records.append(record)

    if diagnostics:
        logger.warning(
            "Skipped malformed ledger entries",
            skipped=len(diagnostics),
            decoded=len(records),
        )

    return DecodeResult(
        records=tuple(records),
        diagnostics=tuple(diagnostics),
        shape=shape_name,
    )


def decode_claims(document: Any) -> DecodeResult[ClaimRecord]:
    """Decode every claim in a claim-handler document or claims event payload."""
    return _decode(
        document,
        CLAIM_CONTAINERS,
        CLAIM_FIELD_NAMES,
        decode_claim_bag,
        lambda record: record.claim_id,
    )


def decode_organizations(document: Any) -> DecodeResult[OrganizationRecord]:
    """Decode every organisation in an organisation-handler document."""
    return _decode(
        document,
        ORGANIZATION_CONTAINERS,
        ORGANIZATION_FIELD_NAMES,
        decode_organization_bag,
        lambda record: record.org_id,
    )


def decode_organization(payload: Any) -> Optional[OrganizationRecord]:
    """
    Decode a single organisation, e.g. an OrganisationDetailsEvent payload.

    Returns None instead of raising.
    """
    bag = _fields_of(payload)
    if not isinstance(bag, Mapping):
        return None
    try:
        return decode_organization_bag(bag)
    except DecodeError as e:
        logger.warning("Could not decode organisation details", reason=str(e))
        return None
