"""Pure merge of on-chain state and an off-chain record into one asset view.

Every merged field declares an ordered list of sources in
``FIELD_PRECEDENCE``. The first source holding a non-empty value wins,
so off-chain values take priority wherever they are present and the
ledger (the metadata account, then the metadata document it points at)
only fills gaps.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from content import to_gateway_url
from credits import OffChainRecord, Location
from ledger import ListingAccount, RetirementRecord, MetadataAccount
from transactions import lamports_to_sol

OFF_CHAIN = "off_chain"
METADATA = "metadata"
DOCUMENT = "document"
LISTING = "listing"

FIELD_PRECEDENCE = {
    'name': (OFF_CHAIN, METADATA, DOCUMENT),
    'symbol': (OFF_CHAIN, METADATA, DOCUMENT),
    'project_name': (OFF_CHAIN, DOCUMENT),
    'project_type': (OFF_CHAIN, DOCUMENT),
    'description': (OFF_CHAIN, DOCUMENT),
    'image': (OFF_CHAIN, DOCUMENT),
    'metadata_uri': (OFF_CHAIN, METADATA),
    'country': (OFF_CHAIN, DOCUMENT),
    'region': (OFF_CHAIN,),
    'vintage_year': (OFF_CHAIN, DOCUMENT),
    'quantity_tonnes': (OFF_CHAIN, DOCUMENT),
    'verification_standard': (OFF_CHAIN, DOCUMENT),
    'certification_body': (OFF_CHAIN, DOCUMENT),
    'owner': (OFF_CHAIN, LISTING),
}

# Metadata document attribute names mapped onto merged fields
DOCUMENT_ATTRIBUTES = {
    'Project Name': 'project_name',
    'Project Type': 'project_type',
    'Location': 'country',
    'Credits': 'quantity_tonnes',
    'Standard': 'verification_standard',
    'Certification Body': 'certification_body',
    'Vintage Year': 'vintage_year',
}

# Fields whose values are content locators rewritten for clients
LOCATOR_FIELDS = {'image', 'metadata_uri'}


class Action:
    BUY = "buy"
    CANCEL = "cancel"
    LIST = "list"
    RETIRE = "retire"


@dataclass(frozen=True)
class OnChainSnapshot:
    """Ledger state observed for one token.

    ``error`` is set when the fetch failed, in which case listing and
    retirement state are unknown rather than absent.
    """
    token_id: str
    listing: Optional[ListingAccount] = None
    retirement: Optional[RetirementRecord] = None
    metadata: Optional[MetadataAccount] = None
    document: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ListingView(BaseModel):
    seller: str
    price: int
    price_sol: Decimal


class RetirementView(BaseModel):
    retired_by: str
    beneficiary: str
    retired_at: datetime


class EnrichedAssetView(BaseModel):
    """Request-time view of one token. Never persisted.

    ``is_listed`` and ``is_retired`` are None when the ledger could not
    be read for this token.
    """
    token_id: str
    name: Optional[str] = None
    symbol: Optional[str] = None
    project_name: Optional[str] = None
    project_type: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    metadata_uri: Optional[str] = None
    location: Location = Location()
    vintage_year: Optional[int] = None
    quantity_tonnes: Optional[Decimal] = None
    verification_standard: Optional[str] = None
    certification_body: Optional[str] = None
    owner: Optional[str] = None
    is_listed: Optional[bool] = None
    is_retired: Optional[bool] = None
    listing: Optional[ListingView] = None
    retirement: Optional[RetirementView] = None
    available_actions: List[str] = []
    on_chain_error: Optional[str] = None
    off_chain_record: OffChainRecord


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return not value
    return False


def available_actions(is_listed: Optional[bool], is_retired: Optional[bool]) -> List[str]:
    """Actions a client may offer. A retired token never offers any."""
    if is_listed is None or is_retired is None or is_retired:
        return []
    if is_listed:
        return [Action.BUY, Action.CANCEL]
    return [Action.LIST, Action.RETIRE]


def _off_chain_values(record: OffChainRecord) -> Dict[str, Any]:
    return {
        'name': record.name,
        'symbol': record.symbol,
        'project_name': record.project_name,
        'project_type': record.project_type,
        'description': record.description,
        'image': record.image_uri,
        'metadata_uri': record.metadata_uri,
        'country': record.location.country,
        'region': record.location.region,
        'vintage_year': record.vintage_year,
        'quantity_tonnes': record.quantity_tonnes,
        'verification_standard': record.verification_standard,
        'certification_body': record.certification_body,
        'owner': record.owner,
    }


def _metadata_values(metadata: Optional[MetadataAccount]) -> Dict[str, Any]:
    if metadata is None:
        return {}
    return {'name': metadata.name, 'symbol': metadata.symbol, 'metadata_uri': metadata.uri}


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _document_values(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(document, dict):
        return {}
    values = {
        'name': document.get('name'),
        'symbol': document.get('symbol'),
        'description': document.get('description'),
        'image': document.get('image'),
    }
    for attribute in document.get('attributes') or []:
        if not isinstance(attribute, dict):
            continue
        field = DOCUMENT_ATTRIBUTES.get(attribute.get('trait_type'))
        if field:
            values[field] = attribute.get('value')
    if 'vintage_year' in values:
        values['vintage_year'] = _as_int(values['vintage_year'])
    if 'quantity_tonnes' in values:
        values['quantity_tonnes'] = _as_decimal(values['quantity_tonnes'])
    return values


def resolve(field: str, sources: Dict[str, Dict[str, Any]]) -> Any:
    """First non-empty value for a field in its declared source order."""
    for source in FIELD_PRECEDENCE[field]:
        value = sources.get(source, {}).get(field)
        if not is_empty(value):
            return value
    return None


def merge(
    snapshot: OnChainSnapshot,
    record: OffChainRecord,
    gateway_url: str
) -> EnrichedAssetView:
    """Build the enriched view for one token.

    Listing and retirement are reported exactly as observed, including
    the transient case of a token that is both retired and listed.
    """
    sources = {
        OFF_CHAIN: _off_chain_values(record),
        METADATA: _metadata_values(snapshot.metadata),
        DOCUMENT: _document_values(snapshot.document),
        LISTING: {'owner': str(snapshot.listing.seller)} if snapshot.listing else {},
    }
    values = {field: resolve(field, sources) for field in FIELD_PRECEDENCE}
    for field in LOCATOR_FIELDS:
        if values[field]:
            values[field] = to_gateway_url(values[field], gateway_url)

    if snapshot.error is not None:
        is_listed = is_retired = None
    else:
        is_listed = snapshot.listing is not None
        is_retired = snapshot.retirement is not None

    listing = None
    if snapshot.listing is not None:
        listing = ListingView(
            seller=str(snapshot.listing.seller),
            price=snapshot.listing.price,
            price_sol=lamports_to_sol(snapshot.listing.price),
        )

    retirement = None
    if snapshot.retirement is not None:
        retirement = RetirementView(
            retired_by=str(snapshot.retirement.retired_by),
            beneficiary=str(snapshot.retirement.beneficiary),
            retired_at=datetime.fromtimestamp(snapshot.retirement.retired_at, tz=timezone.utc),
        )

    return EnrichedAssetView(
        token_id=snapshot.token_id,
        name=values['name'],
        symbol=values['symbol'],
        project_name=values['project_name'],
        project_type=values['project_type'],
        description=values['description'],
        image=values['image'],
        metadata_uri=values['metadata_uri'],
        location=Location(country=values['country'], region=values['region']),
        vintage_year=values['vintage_year'],
        quantity_tonnes=values['quantity_tonnes'],
        verification_standard=values['verification_standard'],
        certification_body=values['certification_body'],
        owner=values['owner'],
        is_listed=is_listed,
        is_retired=is_retired,
        listing=listing,
        retirement=retirement,
        available_actions=available_actions(is_listed, is_retired),
        on_chain_error=snapshot.error,
        off_chain_record=record,
    )
