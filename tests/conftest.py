"""Shared fixtures and in-memory fakes for the ledger, record store and content store."""

import hashlib
import struct
import time
from typing import Callable, Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from addresses import (
    SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_METADATA_PROGRAM_ID, associated_token_address,
)
from credits import (
    OffChainRecord, RecordStatus, CreditError, CreditNotFoundError,
    MUTABLE_FIELDS, SHADOW_FIELDS,
)
from content import ContentStoreError
from ledger import AccountInfo, ConfirmationStatus, SubmissionError, NodeConnectionError
from ledger.layouts import (
    ExchangeAccount, ListingAccount, RetirementRecord, MetadataAccount, TokenAccount, Creator,
    encode_exchange, encode_listing, encode_retirement, encode_metadata,
    encode_token_account, decode_token_account, FIRST_CREATOR_OFFSET,
)
from transactions.instructions import instruction_discriminator


class FakeContext:
    def __init__(self, program_id: Pubkey, payer: Optional[Keypair] = None):
        self.program_id = program_id
        self.payer = payer
        self.commitment = "confirmed"
        self.confirm_timeout = 1.0
        self.poll_interval = 0.01


def _read_borsh_string(data: bytes, offset: int):
    (length,) = struct.unpack_from("<I", data, offset)
    offset += 4
    return data[offset:offset + length].decode(), offset + length


class FakeLedgerClient:
    """In-memory ledger applying the exchange program's effects to submitted transactions.

    Attributes:
        sent: Every transaction passed to ``send_transaction``
        before_send: Optional hook run before a transaction is applied
        unreachable: Addresses whose reads raise ``NodeConnectionError``
        confirm_status: Status returned by ``confirm_transaction``
    """

    def __init__(self, program_id: Pubkey, payer: Optional[Keypair] = None):
        self.context = FakeContext(program_id, payer)
        self.accounts: Dict[Pubkey, AccountInfo] = {}
        self.sent = []
        self.before_send: Optional[Callable] = None
        self.unreachable = set()
        self.confirm_status = ConfirmationStatus.CONFIRMED
        self.fail_submit: Optional[SubmissionError] = None
        self.balances: Dict[Pubkey, int] = {}

    @property
    def program_id(self) -> Pubkey:
        return self.context.program_id

    # State helpers

    def put(self, address: Pubkey, data: bytes, owner: Optional[Pubkey] = None) -> None:
        self.accounts[address] = AccountInfo(
            address=address, data=data, owner=owner or self.program_id, lamports=1_000_000
        )

    def delete(self, address: Pubkey) -> None:
        self.accounts.pop(address, None)

    def give_token(self, owner: Pubkey, mint: Pubkey, amount: int = 1) -> Pubkey:
        ata = associated_token_address(owner, mint)
        self.put(ata, encode_token_account(TokenAccount(mint, owner, amount)), TOKEN_PROGRAM_ID)
        return ata

    # LedgerClient surface

    async def fetch_account(self, address: Pubkey) -> Optional[AccountInfo]:
        if address in self.unreachable:
            raise NodeConnectionError(f"Failed to fetch {address}")
        return self.accounts.get(address)

    async def fetch_accounts(self, addresses) -> List[Optional[AccountInfo]]:
        return [await self.fetch_account(a) for a in addresses]

    async def token_balance(self, token_account: Pubkey) -> Optional[int]:
        account = await self.fetch_account(token_account)
        return decode_token_account(account.data).amount if account else None

    async def balance(self, address: Pubkey) -> int:
        if address in self.unreachable:
            raise NodeConnectionError(f"Failed to fetch balance of {address}")
        return self.balances.get(address, 10 * 10**9)

    async def latest_blockhash(self) -> Hash:
        return Hash.default()

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        return 1_461_600

    async def program_accounts(self, program_id: Pubkey, discriminator: bytes) -> List[AccountInfo]:
        return [
            a for a in self.accounts.values()
            if a.owner == program_id and a.data.startswith(discriminator)
        ]

    async def metadata_by_creator(self, creator: Pubkey) -> List[AccountInfo]:
        end = FIRST_CREATOR_OFFSET + 32
        return [
            a for a in self.accounts.values()
            if a.owner == TOKEN_METADATA_PROGRAM_ID and a.data[FIRST_CREATOR_OFFSET:end] == bytes(creator)
        ]

    async def token_accounts_by_owner(self, owner: Pubkey):
        held = []
        for address, account in self.accounts.items():
            if account.owner == TOKEN_PROGRAM_ID:
                token = decode_token_account(account.data)
                if token.owner == owner:
                    held.append((address, token))
        return held

    async def token_holder(self, mint: Pubkey) -> Optional[Pubkey]:
        for account in self.accounts.values():
            if account.owner == TOKEN_PROGRAM_ID:
                token = decode_token_account(account.data)
                if token.mint == mint and token.amount >= 1:
                    return token.owner
        return None

    async def send_transaction(self, transaction):
        self.sent.append(transaction)
        if self.before_send is not None:
            self.before_send(transaction)
        if self.fail_submit is not None:
            raise self.fail_submit
        self._apply(transaction)
        return transaction.signatures[0]

    async def confirm_transaction(self, signature, timeout=None) -> ConfirmationStatus:
        return self.confirm_status

    # Program simulation

    def _fail(self, message: str):
        raise SubmissionError(
            "Transaction simulation failed",
            logs=[f"Program {self.program_id} invoke [1]", f"Program log: {message}"]
        )

    def _apply(self, transaction) -> None:
        message = transaction.message
        keys = list(message.account_keys)
        for ix in message.instructions:
            program = keys[ix.program_id_index]
            accounts = [keys[i] for i in bytes(ix.accounts)]
            data = bytes(ix.data)
            if program == self.program_id:
                self._apply_exchange(accounts, data)
            elif program == TOKEN_PROGRAM_ID and data[0] == 7:
                (amount,) = struct.unpack_from("<Q", data, 1)
                token = decode_token_account(self.accounts[accounts[1]].data)
                self.put(accounts[1], encode_token_account(
                    TokenAccount(token.mint, token.owner, token.amount + amount)
                ), TOKEN_PROGRAM_ID)
            elif program == ASSOCIATED_TOKEN_PROGRAM_ID:
                ata, owner, mint = accounts[1], accounts[2], accounts[3]
                self.put(ata, encode_token_account(TokenAccount(mint, owner, 0)), TOKEN_PROGRAM_ID)
            elif program == TOKEN_METADATA_PROGRAM_ID and data[0] == 33:
                name, offset = _read_borsh_string(data, 1)
                symbol, offset = _read_borsh_string(data, offset)
                uri, offset = _read_borsh_string(data, offset)
                self.put(accounts[0], encode_metadata(MetadataAccount(
                    accounts[4], accounts[1], name, symbol, uri, 0, [Creator(accounts[3], True, 100)]
                )), TOKEN_METADATA_PROGRAM_ID)
            elif program == SYSTEM_PROGRAM_ID:
                self.put(accounts[1], b"\x00" * 82, TOKEN_PROGRAM_ID)

    def _apply_exchange(self, accounts: List[Pubkey], data: bytes) -> None:
        tag = data[:8]
        if tag == instruction_discriminator("list_for_sale"):
            listing = accounts[4]
            if listing in self.accounts:
                self._fail("Allocate: account already in use")
            (price,) = struct.unpack_from("<Q", data, 8)
            self.put(listing, encode_listing(ListingAccount(accounts[1], accounts[2], price, 255)))
        elif tag == instruction_discriminator("buy_carbon_credit"):
            listing = accounts[6]
            if listing not in self.accounts:
                self._fail("AnchorError caused by account: listing. Error Code: AccountNotInitialized.")
            buyer, seller, mint = accounts[1], accounts[2], accounts[3]
            self.give_token(seller, mint, 0)
            self.give_token(buyer, mint, 1)
            self.delete(listing)
        elif tag == instruction_discriminator("retire_carbon_credit"):
            record = accounts[4]
            if record in self.accounts:
                self._fail("Allocate: account already in use")
            beneficiary = Pubkey.from_bytes(data[8:40])
            self.put(record, encode_retirement(
                RetirementRecord(accounts[1], accounts[2], int(time.time()), beneficiary)
            ))
            self.give_token(accounts[1], accounts[2], 0)
        elif tag == instruction_discriminator("cancel_listing"):
            self.delete(accounts[3])
        elif tag == instruction_discriminator("initialize"):
            self.put(accounts[0], encode_exchange(ExchangeAccount(accounts[1], 0, 255)))


class FakeCreditStore:
    """In-memory stand-in for CarbonCreditStore."""

    def __init__(self):
        self.records: Dict[str, OffChainRecord] = {}
        self.calls: List[str] = []
        self.fail_on = set()

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise CreditError(f"{name} failed")

    def _require(self, token_id: str) -> OffChainRecord:
        record = self.records.get(str(token_id))
        if record is None:
            raise CreditNotFoundError(f"No record for token {token_id}")
        return record

    def _set(self, token_id: str, **changes) -> OffChainRecord:
        record = self._require(token_id).model_copy(update=changes)
        self.records[record.token_id] = record
        return record

    async def get(self, token_id):
        self._call('get')
        return self.records.get(str(token_id))

    async def get_many(self, token_ids):
        self._call('get_many')
        return {str(t): self.records[str(t)] for t in token_ids if str(t) in self.records}

    async def put(self, record):
        self._call('put')
        self.records[record.token_id] = record
        return record

    async def query(self, owner=None, project_type=None, is_listed=None, is_retired=None,
                    include_archived=False, limit=50, offset=0):
        self._call('query')
        matches = [
            r for r in self.records.values()
            if (owner is None or r.owner == str(owner))
            and (project_type is None or r.project_type == project_type)
            and (is_listed is None or r.is_listed == is_listed)
            and (is_retired is None or r.is_retired == is_retired)
            and (include_archived or r.status is not RecordStatus.ARCHIVED)
        ]
        return matches[offset:offset + limit]

    async def missing(self, token_ids):
        self._call('missing')
        return {str(t) for t in token_ids} - set(self.records)

    async def update(self, token_id, updates):
        self._call('update')
        invalid = set(updates) - MUTABLE_FIELDS
        if invalid:
            raise CreditError(f"Fields not editable: {', '.join(sorted(invalid))}")
        return self._set(token_id, **updates)

    async def set_shadow_flags(self, token_id, updates):
        self._call('set_shadow_flags')
        invalid = set(updates) - SHADOW_FIELDS
        if invalid:
            raise CreditError(f"Not shadow fields: {', '.join(sorted(invalid))}")
        return self._set(token_id, **updates)

    async def mark_listed(self, token_id, price):
        self._call('mark_listed')
        return self._set(token_id, is_listed=True, listing_price=price, status=RecordStatus.LISTED)

    async def mark_unlisted(self, token_id):
        self._call('mark_unlisted')
        return self._set(token_id, is_listed=False, listing_price=None, status=RecordStatus.ACTIVE)

    async def mark_sold(self, token_id, new_owner):
        self._call('mark_sold')
        return self._set(token_id, owner=str(new_owner), is_listed=False,
                         listing_price=None, status=RecordStatus.ACTIVE)

    async def mark_retired(self, token_id, retired_by, beneficiary=None, retired_at=None):
        self._call('mark_retired')
        return self._set(token_id, is_retired=True, is_listed=False, listing_price=None,
                         retired_by=str(retired_by), beneficiary=str(beneficiary or retired_by),
                         status=RecordStatus.RETIRED)

    async def mark_synced(self, token_ids):
        self._call('mark_synced')


class FakeContentStore:
    """Content store that hashes uploads into fake CIDv0 locators."""

    def __init__(self, gateway_url: str = "https://gateway.example/ipfs/"):
        self.gateway_url = gateway_url
        self.uploads: List[str] = []
        self.documents: Dict[str, dict] = {}
        self.fail = False

    def _locator(self, payload: bytes) -> str:
        digest = hashlib.sha256(payload).hexdigest()
        return "ipfs://Qm" + digest[:44]

    async def upload(self, data, name, content_type="application/octet-stream"):
        if self.fail:
            raise ContentStoreError(f"Failed to upload {name}")
        locator = self._locator(data)
        self.uploads.append(locator)
        return locator

    async def upload_json(self, document, name=None):
        if self.fail:
            raise ContentStoreError(f"Failed to upload {name}")
        locator = self._locator(repr(sorted(document.items())).encode())
        self.uploads.append(locator)
        self.documents[locator] = document
        return locator

    async def fetch_json(self, locator):
        if locator not in self.documents:
            raise ContentStoreError(f"Failed to fetch {locator}")
        return self.documents[locator]


@pytest.fixture
def program_id() -> Pubkey:
    return Keypair().pubkey()


@pytest.fixture
def payer() -> Keypair:
    return Keypair()


@pytest.fixture
def ledger(program_id, payer) -> FakeLedgerClient:
    return FakeLedgerClient(program_id, payer)


@pytest.fixture
def credit_store() -> FakeCreditStore:
    return FakeCreditStore()


@pytest.fixture
def content_store() -> FakeContentStore:
    return FakeContentStore()


def make_record(token_id, owner, **fields) -> OffChainRecord:
    return OffChainRecord(token_id=str(token_id), owner=str(owner), **fields)
