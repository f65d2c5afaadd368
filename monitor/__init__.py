"""Backfill monitor keeping off-chain records in line with the ledger.

The monitor periodically scans the exchange program's listing and
retirement accounts, plus the metadata of every token whose first
creator is the monitor's creator wallet, and:
- Writes a placeholder record for any token that has none (a mint whose
  record write failed or whose confirmation timed out, or a token minted
  outside this service and listed here)
- Corrects listing, retirement and ownership shadow flags, which also
  recovers "sold" bookkeeping that failed after a confirmed purchase
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from solders.pubkey import Pubkey

from addresses import KeyLike, metadata_address, to_pubkey
from credits import CarbonCreditStore, OffChainRecord, RecordStatus
from ledger import (
    LedgerClient, RPCError, LayoutError,
    ListingAccount, RetirementRecord,
    decode_listing, decode_retirement, decode_metadata,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    scanned: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0


def desired_shadow_flags(
    record: OffChainRecord,
    listing: Optional[ListingAccount],
    retirement: Optional[RetirementRecord],
    holder: Optional[Pubkey] = None
) -> Dict[str, Any]:
    """Shadow-flag changes that make a record match observed ledger state.

    Returns an empty dict when the record already matches.
    """
    target: Dict[str, Any] = {
        'is_listed': listing is not None,
        'listing_price': listing.price if listing else None,
        'is_retired': retirement is not None,
    }
    if retirement is not None:
        target['owner'] = str(retirement.retired_by)
        target['retired_by'] = str(retirement.retired_by)
        target['beneficiary'] = str(retirement.beneficiary)
        target['retired_at'] = datetime.fromtimestamp(retirement.retired_at, tz=timezone.utc)
    elif listing is not None:
        target['owner'] = str(listing.seller)
    elif holder is not None:
        target['owner'] = str(holder)

    if record.status is not RecordStatus.ARCHIVED:
        if retirement is not None:
            target['status'] = RecordStatus.RETIRED
        elif listing is not None:
            target['status'] = RecordStatus.LISTED
        else:
            target['status'] = RecordStatus.ACTIVE

    return {
        field: value for field, value in target.items()
        if getattr(record, field) != value
    }


def _observed_state(observed: Dict[str, Dict[str, Any]], token_id: Pubkey) -> Dict[str, Any]:
    return observed.setdefault(
        str(token_id), {'listing': None, 'retirement': None, 'metadata': None}
    )


class BackfillMonitor:
    """Periodic ledger scan correcting the off-chain record store."""

    def __init__(
        self,
        client: LedgerClient,
        credit_store: CarbonCreditStore,
        batch_size: int = 50,
        creator: Optional[KeyLike] = None
    ):
        """Initialize the monitor.

        Args:
            client: Ledger client; its context supplies the program id
            credit_store: Record store to correct
            batch_size: Tokens handled per ledger or database round trip
            creator: Wallet named first creator on minted tokens. Defaults
                to the context payer; with neither, only listed and
                retired tokens are discovered.
        """
        self.client = client
        self.credit_store = credit_store
        self.batch_size = batch_size
        self.program_id: Pubkey = client.context.program_id

        if creator is not None:
            self.creator: Optional[Pubkey] = to_pubkey(creator, "creator")
        elif client.context.payer is not None:
            self.creator = client.context.payer.pubkey()
        else:
            self.creator = None
            logger.info("No creator wallet configured, unlisted minted tokens will not be discovered")

    async def scan(self) -> Dict[str, Dict[str, Any]]:
        """Observed listing, retirement and minted metadata state keyed by token id."""
        listings = await self.client.program_accounts(self.program_id, ListingAccount.DISCRIMINATOR)
        retirements = await self.client.program_accounts(self.program_id, RetirementRecord.DISCRIMINATOR)

        observed: Dict[str, Dict[str, Any]] = {}
        for account in listings:
            try:
                listing = decode_listing(account.data)
            except LayoutError as e:
                logger.warning(f"Skipping undecodable listing {account.address}: {e}")
                continue
            _observed_state(observed, listing.token_id)['listing'] = listing
        for account in retirements:
            try:
                record = decode_retirement(account.data)
            except LayoutError as e:
                logger.warning(f"Skipping undecodable retirement record {account.address}: {e}")
                continue
            _observed_state(observed, record.token_id)['retirement'] = record

        if self.creator is not None:
            for account in await self.client.metadata_by_creator(self.creator):
                try:
                    metadata = decode_metadata(account.data)
                except LayoutError as e:
                    logger.warning(f"Skipping undecodable metadata {account.address}: {e}")
                    continue
                _observed_state(observed, metadata.token_id)['metadata'] = metadata
        return observed

    async def _holder(self, token_id: str) -> Optional[Pubkey]:
        try:
            return await self.client.token_holder(Pubkey.from_string(token_id))
        except RPCError as e:
            logger.warning(f"Holder lookup for {token_id} failed: {e}")
            raise

    async def _placeholders(self, token_ids: List[str], observed, report: SyncReport) -> None:
        for start in range(0, len(token_ids), self.batch_size):
            batch = token_ids[start:start + self.batch_size]
            unread = [t for t in batch if observed[t]['metadata'] is None]
            addresses = [metadata_address(self.program_id, t)[0] for t in unread]
            try:
                accounts = await self.client.fetch_accounts(addresses)
            except RPCError as e:
                logger.warning(f"Metadata read failed for placeholder batch: {e}")
                accounts = [None] * len(unread)
            for token_id, account in zip(unread, accounts):
                try:
                    observed[token_id]['metadata'] = decode_metadata(account.data) if account else None
                except LayoutError as e:
                    logger.warning(f"Metadata for {token_id} undecodable: {e}")

            for token_id in batch:
                state = observed[token_id]
                listing, retirement, metadata = state['listing'], state['retirement'], state['metadata']

                if retirement is not None:
                    owner = retirement.retired_by
                elif listing is not None:
                    owner = listing.seller
                else:
                    try:
                        owner = await self._holder(token_id)
                    except RPCError:
                        report.failed += 1
                        continue
                    if owner is None:
                        owner = metadata.update_authority

                record = OffChainRecord(
                    token_id=token_id,
                    owner=str(owner),
                    name=metadata.name if metadata else "",
                    symbol=metadata.symbol if metadata else "",
                    metadata_uri=metadata.uri if metadata else None,
                    is_placeholder=True,
                )
                record = record.model_copy(update=desired_shadow_flags(record, listing, retirement))
                try:
                    await self.credit_store.put(record)
                    report.created += 1
                    logger.info(f"Wrote placeholder record for {token_id}")
                except Exception as e:
                    report.failed += 1
                    logger.error(f"Placeholder write for {token_id} failed: {e}")

    async def _correct(self, token_id: str, record: OffChainRecord, listing, retirement,
                       report: SyncReport, holder: Optional[Pubkey] = None) -> None:
        changes = desired_shadow_flags(record, listing, retirement, holder)
        if not changes:
            return
        try:
            await self.credit_store.set_shadow_flags(token_id, changes)
            report.updated += 1
            logger.info(f"Corrected {', '.join(sorted(changes))} for {token_id}")
        except Exception as e:
            report.failed += 1
            logger.error(f"Shadow flag correction for {token_id} failed: {e}")

    async def _stale_listed(self, observed) -> List[OffChainRecord]:
        """Records flagged as listed that no scanned account accounts for."""
        stale = []
        offset = 0
        while True:
            page = await self.credit_store.query(
                is_listed=True, include_archived=True, limit=self.batch_size, offset=offset
            )
            stale.extend(r for r in page if r.token_id not in observed)
            if len(page) < self.batch_size:
                return stale
            offset += self.batch_size

    async def run_once(self) -> SyncReport:
        """One full backfill pass."""
        report = SyncReport()
        observed = await self.scan()
        report.scanned = len(observed)

        token_ids = list(observed)
        missing = await self.credit_store.missing(token_ids)
        await self._placeholders(sorted(missing), observed, report)

        existing = [t for t in token_ids if t not in missing]
        for start in range(0, len(existing), self.batch_size):
            batch = existing[start:start + self.batch_size]
            records = await self.credit_store.get_many(batch)
            for token_id, record in records.items():
                state = observed[token_id]
                listing, retirement = state['listing'], state['retirement']
                holder = None
                if listing is None and retirement is None:
                    # Minted token with no listing: only a stale listed flag needs the holder
                    if not record.is_listed:
                        continue
                    try:
                        holder = await self._holder(token_id)
                    except RPCError:
                        report.failed += 1
                        continue
                await self._correct(token_id, record, listing, retirement, report, holder)

        for record in await self._stale_listed(observed):
            try:
                holder = await self._holder(record.token_id)
            except RPCError:
                report.failed += 1
                continue
            await self._correct(record.token_id, record, None, None, report, holder)

        await self.credit_store.mark_synced(existing)
        logger.info(
            f"Backfill pass: scanned={report.scanned} created={report.created} "
            f"updated={report.updated} failed={report.failed}"
        )
        return report

    async def run(self, interval: float, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run backfill passes every ``interval`` seconds until stopped."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Backfill monitor starting, interval {interval}s")
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Backfill pass failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Backfill monitor stopped")


__all__ = ['BackfillMonitor', 'SyncReport', 'desired_shadow_flags']
