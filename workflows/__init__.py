"""Orchestration of multi-system exchange workflows.

Minting touches three systems that share no transaction: the content
store, the ledger and the off-chain record store. ``MintWorkflow`` runs
them as an explicit list of steps, each with a declared compensation.
Nothing is rolled back; a failure is reported with the step it hit so
the caller (or an operator) knows what was left behind.
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel
from solders.keypair import Keypair

from content import ContentStore
from credits import CarbonCreditStore, OffChainRecord, Location, RecordStatus
from ledger import ConfirmationStatus
from transactions import (
    TransactionBuilder, TransactionResult, PreconditionError, check_metadata_lengths,
)

logger = logging.getLogger(__name__)

DEFAULT_SYMBOL = "CO2C"


@dataclass(frozen=True)
class Step:
    name: str
    compensation: str


UPLOAD_IMAGE = Step("upload_image", "none, an unreferenced upload is left orphaned")
UPLOAD_METADATA = Step("upload_metadata", "none, an unreferenced upload is left orphaned")
MINT = Step("mint", "none, the mint transaction is atomic")
WRITE_RECORD = Step("write_record", "backfill monitor writes a placeholder record")
UPDATE_SHADOW = Step("update_shadow_flags", "backfill monitor corrects shadow flags")

MINT_STEPS = (UPLOAD_IMAGE, UPLOAD_METADATA, MINT, WRITE_RECORD)


class PartialOrchestrationFailure(Exception):
    """Raised when a ledger change landed but its off-chain bookkeeping did not.

    Attributes:
        step: The step that failed
        result: The ledger transaction that did land (or may have landed)
    """
    def __init__(self, message: str, step: Step, result: TransactionResult):
        self.step = step
        self.result = result
        super().__init__(
            f"{message} (token {result.token_id}, signature {result.signature}, "
            f"step {step.name}, compensation: {step.compensation})"
        )

    @property
    def token_id(self):
        return self.result.token_id

    @property
    def signature(self):
        return self.result.signature


class MintRequest(BaseModel):
    """Project attributes and artwork for a new carbon credit token."""
    project_name: str
    image: bytes
    image_name: str = "image.png"
    image_content_type: str = "image/png"
    name: Optional[str] = None
    symbol: str = DEFAULT_SYMBOL
    description: Optional[str] = None
    project_type: Optional[str] = None
    location: Location = Location()
    vintage_year: Optional[int] = None
    quantity_tonnes: Optional[Decimal] = None
    verification_standard: Optional[str] = None
    certification_body: Optional[str] = None
    verification_date: Optional[date] = None
    recipient: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.project_name


@dataclass(frozen=True)
class MintOutcome:
    result: TransactionResult
    record: OffChainRecord
    image_uri: str
    metadata_uri: str


def build_metadata_document(request: MintRequest, image_uri: str) -> Dict[str, Any]:
    """Metadata JSON document referenced by the on-chain metadata account."""
    location = ", ".join(p for p in (request.location.country, request.location.region) if p)
    attributes = [
        ("Project Name", request.project_name),
        ("Location", location),
        ("Project Type", request.project_type),
        ("Credits", str(request.quantity_tonnes) if request.quantity_tonnes is not None else None),
        ("Standard", request.verification_standard),
        ("Certification Body", request.certification_body),
        ("Vintage Year", request.vintage_year),
        ("Verification Date", request.verification_date.isoformat() if request.verification_date else None),
    ]
    return {
        'name': request.display_name,
        'symbol': request.symbol,
        'description': request.description or "",
        'image': image_uri,
        'attributes': [
            {'trait_type': trait, 'value': value}
            for trait, value in attributes if value not in (None, "")
        ],
        'properties': {
            'files': [{'uri': image_uri, 'type': request.image_content_type}],
            'category': 'image',
        },
    }


class MintWorkflow:
    """Upload artwork and metadata, mint the token, then write its record."""

    def __init__(
        self,
        builder: TransactionBuilder,
        content_store: ContentStore,
        credit_store: CarbonCreditStore
    ):
        self.builder = builder
        self.content_store = content_store
        self.credit_store = credit_store

    async def run(self, request: MintRequest, payer: Optional[Keypair] = None) -> MintOutcome:
        """Mint a carbon credit token end to end.

        Args:
            request: Project attributes and artwork
            payer: Signing identity, the ledger context payer when omitted

        Raises:
            PreconditionError: If there is no payer or the name or symbol is too long
            ContentStoreError: If an upload failed, nothing was minted
            SubmissionError: If the mint was rejected, no record was written
            PartialOrchestrationFailure: If the token was minted (or may have
                been) but no record was written
        """
        payer = payer or self.builder.client.context.payer
        if payer is None:
            raise PreconditionError("No signing identity configured", expected="a payer keypair")
        # URI length is only known after upload and is checked again by the builder
        check_metadata_lengths(request.display_name, request.symbol, "")

        step = UPLOAD_IMAGE
        try:
            image_uri = await self.content_store.upload(
                request.image, request.image_name, request.image_content_type
            )
            step = UPLOAD_METADATA
            document = build_metadata_document(request, image_uri)
            metadata_uri = await self.content_store.upload_json(
                document, f"{request.display_name} metadata"
            )
            step = MINT
            result = await self.builder.mint(
                payer,
                Keypair(),
                request.display_name,
                request.symbol,
                metadata_uri,
                recipient=request.recipient,
            )
        except Exception as e:
            logger.error(f"Mint of {request.project_name!r} failed at {step.name}: {e}")
            if step is not UPLOAD_IMAGE:
                logger.info(f"Compensation for earlier uploads: {UPLOAD_IMAGE.compensation}")
            raise

        if result.status is ConfirmationStatus.UNKNOWN:
            raise PartialOrchestrationFailure(
                "Mint submitted but not confirmed, record not written", MINT, result
            )

        step = WRITE_RECORD
        record = OffChainRecord(
            token_id=str(result.token_id),
            owner=result.details.get('owner', str(payer.pubkey())),
            name=request.display_name,
            symbol=request.symbol,
            project_name=request.project_name,
            location=request.location,
            vintage_year=request.vintage_year,
            quantity_tonnes=request.quantity_tonnes,
            verification_standard=request.verification_standard,
            certification_body=request.certification_body,
            verification_date=request.verification_date,
            project_type=request.project_type,
            description=request.description,
            image_uri=image_uri,
            metadata_uri=metadata_uri,
            status=RecordStatus.ACTIVE,
            mint_signature=str(result.signature),
        )
        try:
            record = await self.credit_store.put(record)
        except Exception as e:
            logger.error(f"Token {result.token_id} minted but record write failed: {e}")
            raise PartialOrchestrationFailure(
                f"Record write failed: {e}", step, result
            ) from e

        logger.info(f"Minted {result.token_id} ({request.project_name}) in {result.signature}")
        return MintOutcome(result, record, image_uri, metadata_uri)


class MarketplaceWorkflow:
    """Exchange operations followed by off-chain shadow-flag updates.

    Shadow flags are skipped when a transaction's status is unknown; the
    backfill monitor brings them in line once the outcome is visible.
    """

    def __init__(self, builder: TransactionBuilder, credit_store: CarbonCreditStore):
        self.builder = builder
        self.credit_store = credit_store

    async def _update_shadow(self, result: TransactionResult, update) -> TransactionResult:
        if result.status is ConfirmationStatus.UNKNOWN:
            logger.warning(
                f"Status of {result.signature} unknown, leaving shadow flags for {result.token_id}"
            )
            return result
        try:
            await update()
        except Exception as e:
            logger.error(f"Shadow flag update for {result.token_id} failed: {e}")
            raise PartialOrchestrationFailure(
                f"Shadow flag update failed: {e}", UPDATE_SHADOW, result
            ) from e
        return result

    async def list(self, owner: Keypair, token_id, price: int) -> TransactionResult:
        result = await self.builder.list(owner, token_id, price)
        return await self._update_shadow(
            result, lambda: self.credit_store.mark_listed(str(result.token_id), price)
        )

    async def buy(self, buyer: Keypair, token_id) -> TransactionResult:
        result = await self.builder.buy(buyer, token_id)
        return await self._update_shadow(
            result, lambda: self.credit_store.mark_sold(str(result.token_id), str(buyer.pubkey()))
        )

    async def retire(self, owner: Keypair, token_id, beneficiary=None) -> TransactionResult:
        result = await self.builder.retire(owner, token_id, beneficiary)
        return await self._update_shadow(
            result,
            lambda: self.credit_store.mark_retired(
                str(result.token_id), str(owner.pubkey()), result.details.get('beneficiary')
            )
        )

    async def cancel(self, owner: Keypair, token_id) -> TransactionResult:
        result = await self.builder.cancel(owner, token_id)
        return await self._update_shadow(
            result, lambda: self.credit_store.mark_unlisted(str(result.token_id))
        )


__all__ = [
    'MintWorkflow',
    'MarketplaceWorkflow',
    'MintRequest',
    'MintOutcome',
    'PartialOrchestrationFailure',
    'Step',
    'MINT_STEPS',
    'UPLOAD_IMAGE',
    'UPLOAD_METADATA',
    'MINT',
    'WRITE_RECORD',
    'UPDATE_SHADOW',
    'build_metadata_document',
]
