"""Transaction builder for the carbon credit exchange.

This module assembles the ordered instruction list and signer set for
each exchange workflow (mint, list, buy, retire, cancel), checks the
preconditions that can be verified before spending a transaction, and
hands the signed transaction to the ledger client.

Nothing here retries. A failed or unconfirmed submission is reported to
the caller, who must re-check on-chain state before deciding to resend.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional, Sequence, Tuple

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from addresses import (
    to_pubkey, exchange_address, listing_address, retirement_address,
    metadata_address, master_edition_address, associated_token_address,
)
from ledger import (
    LedgerClient, ConfirmationStatus, SubmissionError, RPCError,
    ListingAccount, decode_listing,
    MAX_NAME_LENGTH, MAX_SYMBOL_LENGTH, MAX_URI_LENGTH,
)
from ledger.layouts import MINT_ACCOUNT_SIZE
from . import instructions

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class TransactionError(Exception):
    """Base class for transaction builder errors."""
    pass


class PreconditionError(TransactionError):
    """Raised when on-chain state rules out a workflow before submission.

    Attributes:
        account: Address of the account whose state failed the check
        expected: What the check required of that account
    """
    def __init__(self, message: str, account: Optional[Pubkey] = None, expected: Optional[str] = None):
        self.account = account
        self.expected = expected
        details = []
        if account is not None:
            details.append(f"account {account}")
        if expected:
            details.append(f"expected {expected}")
        super().__init__(f"{message} ({', '.join(details)})" if details else message)


class ListingUnavailableError(PreconditionError):
    """Raised when a listing is gone, before submission or after losing a purchase race."""
    def __init__(
        self,
        message: str,
        account: Optional[Pubkey] = None,
        logs: Optional[Sequence[str]] = None,
        signature: Optional[Signature] = None
    ):
        self.logs = list(logs or [])
        self.signature = signature
        super().__init__(message, account=account, expected="an active listing")


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of a submitted workflow.

    ``status`` is ``ConfirmationStatus.UNKNOWN`` when the transaction was
    submitted but not observed before the confirmation timeout.
    """
    token_id: Pubkey
    signature: Signature
    status: ConfirmationStatus
    details: dict = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.status is not ConfirmationStatus.UNKNOWN


def sol_to_lamports(amount) -> int:
    """Convert a display price to lamports.

    Raises:
        ValueError: If the amount is negative or has fractional lamports
    """
    value = Decimal(str(amount))
    lamports = value * LAMPORTS_PER_SOL
    if value < 0 or lamports != lamports.to_integral_value(rounding=ROUND_DOWN):
        raise ValueError(f"Invalid price {amount}: must be non-negative with at most 9 decimals")
    return int(lamports)


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)


def check_metadata_lengths(name: str, symbol: str, uri: str) -> None:
    """Reject metadata the token metadata program would refuse."""
    for label, value, cap in (
        ("name", name, MAX_NAME_LENGTH),
        ("symbol", symbol, MAX_SYMBOL_LENGTH),
        ("uri", uri, MAX_URI_LENGTH),
    ):
        size = len(value.encode("utf-8"))
        if size > cap:
            raise PreconditionError(
                f"Metadata {label} is {size} bytes", expected=f"at most {cap} bytes"
            )


class TransactionBuilder:
    """Builds, signs and submits exchange transactions."""

    def __init__(self, client: LedgerClient):
        """Initialize the builder.

        Args:
            client: Ledger client whose context supplies the program id
        """
        self.client = client
        self.program_id: Pubkey = client.context.program_id

    # Shared steps

    async def _submit(
        self,
        ixs: List[Instruction],
        signers: Sequence[Keypair],
        fee_payer: Pubkey
    ) -> Tuple[Signature, ConfirmationStatus]:
        """Sign with a fresh blockhash, submit once and wait for confirmation."""
        blockhash = await self.client.latest_blockhash()
        message = Message.new_with_blockhash(ixs, fee_payer, blockhash)
        transaction = Transaction.new_unsigned(message)
        transaction.partial_sign(list(signers), blockhash)

        signature = await self.client.send_transaction(transaction)
        status = await self.client.confirm_transaction(signature)
        if status is ConfirmationStatus.UNKNOWN:
            logger.warning(f"Transaction {signature} submitted, status unknown")
        return signature, status

    async def _fetch_listing(self, token_id: Pubkey) -> Tuple[Pubkey, Optional[ListingAccount]]:
        address, _ = listing_address(self.program_id, token_id)
        account = await self.client.fetch_account(address)
        return address, decode_listing(account.data) if account else None

    async def _check_not_retired(self, token_id: Pubkey) -> Pubkey:
        address, _ = retirement_address(self.program_id, token_id)
        if await self.client.fetch_account(address) is not None:
            raise PreconditionError(
                f"Token {token_id} is already retired (retirement record {address})",
                account=address,
                expected="no retirement record"
            )
        return address

    async def _check_owns_token(self, owner: Pubkey, token_id: Pubkey) -> Pubkey:
        token_account = associated_token_address(owner, token_id)
        balance = await self.client.token_balance(token_account)
        if balance is None or balance < 1:
            raise PreconditionError(
                "You do not own this asset",
                account=token_account,
                expected=f"token balance >= 1 held by {owner}"
            )
        return token_account

    # Workflows

    def build_mint_instructions(
        self,
        payer: Pubkey,
        token_id: Pubkey,
        recipient: Pubkey,
        name: str,
        symbol: str,
        uri: str,
        rent_lamports: int
    ) -> List[Instruction]:
        """Ordered instruction list minting one non-fungible token."""
        token_account = associated_token_address(recipient, token_id)
        metadata, _ = metadata_address(self.program_id, token_id)
        edition, _ = master_edition_address(self.program_id, token_id)
        return [
            instructions.create_mint_account(payer, token_id, rent_lamports),
            instructions.initialize_mint(token_id, payer, payer, decimals=0),
            instructions.create_associated_token_account(payer, recipient, token_id, token_account),
            instructions.mint_to(token_id, token_account, payer, amount=1),
            instructions.create_metadata_account_v3(
                metadata, token_id, payer, payer, payer,
                name, symbol, uri, creators=[payer]
            ),
            instructions.create_master_edition_v3(
                edition, token_id, payer, payer, payer, metadata, max_supply=0
            ),
        ]

    async def mint(
        self,
        payer: Keypair,
        token_keypair: Keypair,
        name: str,
        symbol: str,
        uri: str,
        recipient: Optional[Pubkey] = None
    ) -> TransactionResult:
        """Mint a single-supply token with metadata in one atomic transaction.

        Args:
            payer: Signing identity paying fees and rent, and mint authority
            token_keypair: Freshly generated keypair whose public key is the token id
            name: Display name, at most 32 bytes
            symbol: Symbol, at most 10 bytes
            uri: Metadata document locator, at most 200 bytes
            recipient: Wallet receiving the token, the payer when omitted

        Raises:
            PreconditionError: If name, symbol or uri exceed their caps
            SubmissionError: If the ledger rejected the transaction
        """
        check_metadata_lengths(name, symbol, uri)
        token_id = token_keypair.pubkey()
        payer_key = payer.pubkey()
        recipient = to_pubkey(recipient, "recipient") if recipient else payer_key

        rent = await self.client.minimum_balance_for_rent_exemption(MINT_ACCOUNT_SIZE)
        ixs = self.build_mint_instructions(
            payer_key, token_id, recipient, name, symbol, uri, rent
        )
        logger.info(f"Minting token {token_id} to {recipient}")
        signature, status = await self._submit(ixs, [token_keypair, payer], payer_key)
        return TransactionResult(token_id, signature, status, {'owner': str(recipient)})

    async def list(self, owner: Keypair, token_id, price: int) -> TransactionResult:
        """List a token for sale at a price in lamports.

        Raises:
            PreconditionError: If the price is not positive, the token is
                retired or already listed, or the caller does not hold it
        """
        token_id = to_pubkey(token_id, "token id")
        owner_key = owner.pubkey()
        if price <= 0:
            raise PreconditionError(f"Invalid price {price}", expected="price > 0")

        await self._check_not_retired(token_id)
        listing, existing = await self._fetch_listing(token_id)
        if existing is not None:
            raise PreconditionError(
                f"Token {token_id} is already listed by {existing.seller}",
                account=listing,
                expected="no active listing"
            )
        token_account = await self._check_owns_token(owner_key, token_id)

        exchange, _ = exchange_address(self.program_id)
        ix = instructions.list_for_sale(
            self.program_id, exchange, owner_key, token_id, token_account, listing, price
        )
        logger.info(f"Listing token {token_id} at {price} lamports")
        signature, status = await self._submit([ix], [owner], owner_key)
        return TransactionResult(token_id, signature, status, {'price': price, 'seller': str(owner_key)})

    async def buy(self, buyer: Keypair, token_id) -> TransactionResult:
        """Buy a listed token at its listed price.

        Raises:
            ListingUnavailableError: If there is no listing, or it was
                closed by another purchase or a cancellation before ours landed
            PreconditionError: If the buyer is the seller or cannot cover the price
            SubmissionError: If the ledger rejected the transaction for
                another reason
        """
        token_id = to_pubkey(token_id, "token id")
        buyer_key = buyer.pubkey()

        listing, current = await self._fetch_listing(token_id)
        if current is None:
            raise ListingUnavailableError(f"Token {token_id} is not listed", account=listing)
        if current.seller == buyer_key:
            raise PreconditionError(
                "Cannot buy your own listing", account=listing, expected="a different seller"
            )
        balance = await self.client.balance(buyer_key)
        if balance < current.price:
            raise PreconditionError(
                f"Insufficient balance: {balance} lamports for a {current.price} lamport listing",
                account=buyer_key,
                expected=f"at least {current.price} lamports"
            )

        exchange, _ = exchange_address(self.program_id)
        ix = instructions.buy_carbon_credit(
            self.program_id,
            exchange,
            buyer_key,
            current.seller,
            token_id,
            associated_token_address(current.seller, token_id),
            associated_token_address(buyer_key, token_id),
            listing,
        )
        logger.info(f"Buying token {token_id} from {current.seller} for {current.price} lamports")
        try:
            signature, status = await self._submit([ix], [buyer], buyer_key)
        except SubmissionError as e:
            try:
                _, after = await self._fetch_listing(token_id)
            except RPCError as read_error:
                logger.warning(f"Listing re-read for {token_id} failed: {read_error}")
                raise e
            if after is None or after.seller != current.seller or after.price != current.price:
                raise ListingUnavailableError(
                    f"Listing for {token_id} is no longer available",
                    account=listing,
                    logs=e.logs,
                    signature=e.signature
                ) from e
            raise

        return TransactionResult(token_id, signature, status, {
            'price': current.price,
            'seller': str(current.seller),
            'buyer': str(buyer_key),
        })

    async def retire(self, owner: Keypair, token_id, beneficiary=None) -> TransactionResult:
        """Permanently retire a token on behalf of a beneficiary.

        Raises:
            PreconditionError: If a retirement record already exists or the
                caller does not hold the token
        """
        token_id = to_pubkey(token_id, "token id")
        owner_key = owner.pubkey()
        beneficiary = to_pubkey(beneficiary, "beneficiary") if beneficiary else owner_key

        record = await self._check_not_retired(token_id)
        token_account = await self._check_owns_token(owner_key, token_id)

        exchange, _ = exchange_address(self.program_id)
        ix = instructions.retire_carbon_credit(
            self.program_id, exchange, owner_key, token_id, token_account, record, beneficiary
        )
        logger.info(f"Retiring token {token_id} for {beneficiary}")
        signature, status = await self._submit([ix], [owner], owner_key)
        return TransactionResult(token_id, signature, status, {'beneficiary': str(beneficiary)})

    async def cancel(self, owner: Keypair, token_id) -> TransactionResult:
        """Close the caller's active listing.

        Raises:
            ListingUnavailableError: If the token is not listed
            PreconditionError: If the listing belongs to someone else
        """
        token_id = to_pubkey(token_id, "token id")
        owner_key = owner.pubkey()

        listing, current = await self._fetch_listing(token_id)
        if current is None:
            raise ListingUnavailableError(f"Token {token_id} is not listed", account=listing)
        if current.seller != owner_key:
            raise PreconditionError(
                "Only the seller can cancel a listing",
                account=listing,
                expected=f"seller {owner_key}"
            )

        ix = instructions.cancel_listing(
            self.program_id, owner_key, token_id,
            associated_token_address(owner_key, token_id), listing
        )
        logger.info(f"Cancelling listing for {token_id}")
        signature, status = await self._submit([ix], [owner], owner_key)
        return TransactionResult(token_id, signature, status)

    async def initialize_exchange(self, authority: Keypair) -> TransactionResult:
        """Create the exchange account. Only done once per deployed program.

        Raises:
            PreconditionError: If the exchange account already exists
        """
        exchange, _ = exchange_address(self.program_id)
        if await self.client.fetch_account(exchange) is not None:
            raise PreconditionError(
                "Exchange is already initialized", account=exchange, expected="no exchange account"
            )
        authority_key = authority.pubkey()
        ix = instructions.initialize_exchange(self.program_id, exchange, authority_key)
        signature, status = await self._submit([ix], [authority], authority_key)
        return TransactionResult(exchange, signature, status)


__all__ = [
    'TransactionBuilder',
    'TransactionResult',
    'TransactionError',
    'PreconditionError',
    'ListingUnavailableError',
    'SubmissionError',
    'sol_to_lamports',
    'lamports_to_sol',
    'check_metadata_lengths',
    'LAMPORTS_PER_SOL',
]
