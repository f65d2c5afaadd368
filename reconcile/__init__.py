"""Reconciliation of ledger state with off-chain carbon credit records.

The off-chain record is the canonical description of a token: when it is
missing the token is reported as not found, whatever the ledger holds.
Listing and retirement accounts are optional and their absence is a
normal outcome. A failed ledger read is something else entirely and is
never reported as "not listed".
"""
import asyncio
import logging
from decimal import Decimal
from typing import Iterable, List, Optional

from pydantic import BaseModel
from solders.pubkey import Pubkey

from addresses import (
    to_pubkey, exchange_address, listing_address, retirement_address, metadata_address,
)
from content import ContentStore, ContentStoreError, DEFAULT_GATEWAY_URL
from credits import CarbonCreditStore
from ledger import (
    LedgerClient, RPCError, LayoutError,
    ListingAccount, RetirementRecord,
    decode_exchange, decode_listing, decode_retirement, decode_metadata,
)
from transactions import lamports_to_sol
from .merge import (
    OnChainSnapshot, EnrichedAssetView, ListingView, RetirementView,
    FIELD_PRECEDENCE, merge, available_actions, Action,
)

logger = logging.getLogger(__name__)


class ReconciliationMiss(Exception):
    """Raised when a token has no off-chain record."""
    def __init__(self, token_id: str):
        self.token_id = token_id
        super().__init__(f"No record for token {token_id}")


class ExchangeStats(BaseModel):
    total_minted: Optional[int] = None
    active_listings: int = 0
    retired: int = 0
    unique_sellers: int = 0
    floor_price: Optional[int] = None
    ceiling_price: Optional[int] = None
    average_price: Optional[Decimal] = None
    floor_price_sol: Optional[Decimal] = None


class ReconciliationEngine:
    """Merges ledger reads with off-chain records into asset views."""

    def __init__(
        self,
        client: LedgerClient,
        credit_store: CarbonCreditStore,
        content_store: Optional[ContentStore] = None,
        gateway_url: str = DEFAULT_GATEWAY_URL,
        fetch_documents: bool = False
    ):
        """Initialize the engine.

        Args:
            client: Ledger client
            credit_store: Off-chain record store
            content_store: Used to fetch metadata documents when ``fetch_documents`` is set
            gateway_url: Gateway that content locators are rewritten onto
            fetch_documents: Also read the on-chain metadata document for fallbacks
        """
        self.client = client
        self.credit_store = credit_store
        self.content_store = content_store
        self.gateway_url = gateway_url
        self.fetch_documents = fetch_documents and content_store is not None
        self.program_id: Pubkey = client.context.program_id

    async def snapshot(self, token_id: str) -> OnChainSnapshot:
        """Read listing, retirement and metadata accounts for one token.

        Raises:
            RPCError: If the ledger could not be read
            LayoutError: If an account holds unexpected data
        """
        token = to_pubkey(token_id, "token id")
        listing_addr, _ = listing_address(self.program_id, token)
        retired_addr, _ = retirement_address(self.program_id, token)
        metadata_addr, _ = metadata_address(self.program_id, token)

        listing, retirement, metadata = await self.client.fetch_accounts(
            [listing_addr, retired_addr, metadata_addr]
        )
        metadata_account = decode_metadata(metadata.data) if metadata else None

        document = None
        if self.fetch_documents and metadata_account and metadata_account.uri:
            try:
                document = await self.content_store.fetch_json(metadata_account.uri)
            except ContentStoreError as e:
                logger.info(f"Metadata document for {token_id} unavailable: {e}")

        return OnChainSnapshot(
            token_id=str(token),
            listing=decode_listing(listing.data) if listing else None,
            retirement=decode_retirement(retirement.data) if retirement else None,
            metadata=metadata_account,
            document=document,
        )

    async def _snapshot_or_unknown(self, token_id: str) -> OnChainSnapshot:
        try:
            return await self.snapshot(token_id)
        except (RPCError, LayoutError) as e:
            logger.warning(f"Ledger read for {token_id} failed, state unknown: {e}")
            return OnChainSnapshot(token_id=str(token_id), error=str(e))

    async def enrich(self, token_id: str) -> EnrichedAssetView:
        """Enriched view of one token.

        Raises:
            ReconciliationMiss: If there is no off-chain record
            RPCError: If the ledger could not be read
        """
        record = await self.credit_store.get(str(token_id))
        if record is None:
            raise ReconciliationMiss(str(token_id))
        snapshot = await self.snapshot(token_id)
        return merge(snapshot, record, self.gateway_url)

    async def enrich_all(self, token_ids: Iterable[str]) -> List[EnrichedAssetView]:
        """Enriched views for several tokens, in input order.

        Tokens without a record are left out. A failed ledger read only
        affects its own token, whose listing and retirement state is
        reported as unknown.
        """
        ids = list(dict.fromkeys(str(t) for t in token_ids))
        if not ids:
            return []

        records = await self.credit_store.get_many(ids)
        misses = [t for t in ids if t not in records]
        if misses:
            logger.warning(f"No record for {len(misses)} token(s): {', '.join(misses)}")

        present = [t for t in ids if t in records]
        snapshots = await asyncio.gather(*[self._snapshot_or_unknown(t) for t in present])
        return [
            merge(snapshot, records[token_id], self.gateway_url)
            for token_id, snapshot in zip(present, snapshots)
        ]

    async def listings(self) -> List[ListingAccount]:
        """Every active listing on the exchange."""
        accounts = await self.client.program_accounts(self.program_id, ListingAccount.DISCRIMINATOR)
        return [decode_listing(account.data) for account in accounts]

    async def retirements(self) -> List[RetirementRecord]:
        accounts = await self.client.program_accounts(self.program_id, RetirementRecord.DISCRIMINATOR)
        return [decode_retirement(account.data) for account in accounts]

    async def marketplace(self) -> List[EnrichedAssetView]:
        """Enriched views of every listed token."""
        listings = await self.listings()
        return await self.enrich_all(str(listing.token_id) for listing in listings)

    async def wallet_assets(self, owner: str, limit: int = 100) -> List[EnrichedAssetView]:
        """Tokens a wallet holds on-chain or owns according to the record store."""
        owner_key = to_pubkey(owner, "owner")
        held = await self.client.token_accounts_by_owner(owner_key)
        token_ids = [str(account.mint) for _, account in held if account.amount >= 1]

        records = await self.credit_store.query(owner=str(owner_key), limit=limit)
        token_ids.extend(record.token_id for record in records)
        return await self.enrich_all(token_ids)

    async def exchange_stats(self) -> ExchangeStats:
        """Exchange-wide counters and listing price summary."""
        address, _ = exchange_address(self.program_id)
        exchange_account, listings, retirements = await asyncio.gather(
            self.client.fetch_account(address),
            self.listings(),
            self.retirements(),
        )
        stats = ExchangeStats(
            total_minted=decode_exchange(exchange_account.data).total_credits if exchange_account else None,
            active_listings=len(listings),
            retired=len(retirements),
            unique_sellers=len({listing.seller for listing in listings}),
        )
        if listings:
            prices = [listing.price for listing in listings]
            stats.floor_price = min(prices)
            stats.ceiling_price = max(prices)
            stats.average_price = Decimal(sum(prices)) / len(prices)
            stats.floor_price_sol = lamports_to_sol(stats.floor_price)
        return stats


__all__ = [
    'ReconciliationEngine',
    'ReconciliationMiss',
    'ExchangeStats',
    'OnChainSnapshot',
    'EnrichedAssetView',
    'ListingView',
    'RetirementView',
    'FIELD_PRECEDENCE',
    'Action',
    'merge',
    'available_actions',
]
