"""Ledger client: read and submit primitives bound to one LedgerContext.

Reads return ``None`` for accounts that do not exist. Absence is a
normal outcome, only transport and node failures raise. Submissions are
never retried here: a caller that cannot tell "never landed" from
"landed but confirmation was slow" must re-check state before resending.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import backoff
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from addresses import TOKEN_PROGRAM_ID, TOKEN_METADATA_PROGRAM_ID
from .layouts import TokenAccount, decode_token_account, LayoutError, FIRST_CREATOR_OFFSET
from .rpc import RPCError, NodeConnectionError, SolanaRPCError

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    """Raised when the ledger rejected or failed to process a transaction.

    Attributes:
        logs: Raw program log lines for debugging
        signature: Transaction signature if the transaction was broadcast
        code: Node error code when the node returned one
    """
    def __init__(
        self,
        message: str,
        logs: Optional[Sequence[str]] = None,
        signature: Optional[Signature] = None,
        code: Optional[int] = None
    ):
        self.logs = list(logs or [])
        self.signature = signature
        self.code = code
        super().__init__(message)


class ConfirmationStatus(str, Enum):
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    UNKNOWN = "unknown"  # submitted, outcome not observed before the timeout


_COMMITMENT_RANK = {
    ConfirmationStatus.PROCESSED: 0,
    ConfirmationStatus.CONFIRMED: 1,
    ConfirmationStatus.FINALIZED: 2,
}


@dataclass(frozen=True)
class AccountInfo:
    address: Pubkey
    data: bytes
    owner: Pubkey
    lamports: int
    executable: bool = False


def _decode_account(address: Pubkey, value: Optional[Dict[str, Any]]) -> Optional[AccountInfo]:
    if value is None:
        return None
    encoded, encoding = value['data']
    if encoding != 'base64':
        raise NodeConnectionError(f"Unexpected account encoding {encoding}")
    return AccountInfo(
        address=address,
        data=base64.b64decode(encoded),
        owner=Pubkey.from_string(value['owner']),
        lamports=value['lamports'],
        executable=value.get('executable', False),
    )


class LedgerClient:
    """Read and submit primitives over a LedgerContext."""

    def __init__(self, context):
        """Initialize the ledger client.

        Args:
            context: An open LedgerContext supplying the RPC session,
                commitment level and confirmation timing
        """
        self.context = context

    @property
    def rpc(self):
        return self.context.rpc

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def fetch_account(self, address: Pubkey) -> Optional[AccountInfo]:
        """Fetch raw account data, or None when the account does not exist."""
        result = await self.rpc.getAccountInfo(
            str(address),
            {"encoding": "base64", "commitment": self.context.commitment}
        )
        return _decode_account(address, result['value'])

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def fetch_accounts(self, addresses: Sequence[Pubkey]) -> List[Optional[AccountInfo]]:
        """Fetch several accounts in one round trip, preserving order."""
        if not addresses:
            return []
        result = await self.rpc.getMultipleAccounts(
            [str(a) for a in addresses],
            {"encoding": "base64", "commitment": self.context.commitment}
        )
        return [_decode_account(a, v) for a, v in zip(addresses, result['value'])]

    async def token_balance(self, token_account: Pubkey) -> Optional[int]:
        """Raw amount held by a token account, or None when it does not exist."""
        account = await self.fetch_account(token_account)
        if account is None:
            return None
        try:
            return decode_token_account(account.data).amount
        except LayoutError:
            logger.warning(f"Account {token_account} is not a token account")
            return None

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def balance(self, address: Pubkey) -> int:
        """Lamports held by an account, zero when it does not exist."""
        result = await self.rpc.getBalance(str(address), {"commitment": self.context.commitment})
        return result['value']

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def latest_blockhash(self) -> Hash:
        result = await self.rpc.getLatestBlockhash({"commitment": self.context.commitment})
        return Hash.from_string(result['value']['blockhash'])

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        return await self.rpc.getMinimumBalanceForRentExemption(size)

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def _matching_accounts(
        self,
        program_id: Pubkey,
        offset: int,
        match: bytes
    ) -> List[AccountInfo]:
        result = await self.rpc.getProgramAccounts(
            str(program_id),
            {
                "encoding": "base64",
                "commitment": self.context.commitment,
                "filters": [{
                    "memcmp": {
                        "offset": offset,
                        "bytes": base64.b64encode(match).decode(),
                        "encoding": "base64"
                    }
                }]
            }
        )
        accounts = []
        for item in result:
            address = Pubkey.from_string(item['pubkey'])
            accounts.append(_decode_account(address, item['account']))
        return accounts

    async def program_accounts(
        self,
        program_id: Pubkey,
        discriminator: bytes
    ) -> List[AccountInfo]:
        """All accounts owned by a program whose data starts with a discriminator."""
        return await self._matching_accounts(program_id, 0, discriminator)

    async def metadata_by_creator(self, creator: Pubkey) -> List[AccountInfo]:
        """Metadata accounts listing ``creator`` as their first creator.

        This finds every token minted with a given payer, listed or not.
        """
        return await self._matching_accounts(
            TOKEN_METADATA_PROGRAM_ID, FIRST_CREATOR_OFFSET, bytes(creator)
        )

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def token_accounts_by_owner(self, owner: Pubkey) -> List[Tuple[Pubkey, TokenAccount]]:
        """Token accounts held by a wallet, decoded."""
        result = await self.rpc.getTokenAccountsByOwner(
            str(owner),
            {"programId": str(TOKEN_PROGRAM_ID)},
            {"encoding": "base64", "commitment": self.context.commitment}
        )
        accounts = []
        for item in result['value']:
            address = Pubkey.from_string(item['pubkey'])
            info = _decode_account(address, item['account'])
            accounts.append((address, decode_token_account(info.data)))
        return accounts

    async def send_transaction(self, transaction: Transaction) -> Signature:
        """Broadcast a signed transaction.

        Raises:
            SubmissionError: On any failure, with simulation logs when available
        """
        signature = transaction.signatures[0]
        encoded = base64.b64encode(bytes(transaction)).decode()
        try:
            result = await self.rpc.sendTransaction(
                encoded,
                {"encoding": "base64", "preflightCommitment": self.context.commitment}
            )
        except SolanaRPCError as e:
            logger.error(f"Transaction {signature} rejected: {e}")
            raise SubmissionError(str(e), logs=e.logs, signature=signature, code=e.code) from e
        except RPCError as e:
            # The node may or may not have received it
            logger.error(f"Transaction {signature} submission failed: {e}")
            raise SubmissionError(str(e), signature=signature, code=e.code) from e

        logger.info(f"Submitted transaction {result}")
        return Signature.from_string(result)

    async def transaction_logs(self, signature: Signature) -> List[str]:
        """Log messages of a landed transaction, empty when unavailable."""
        try:
            result = await self.rpc.getTransaction(
                str(signature),
                {
                    "encoding": "json",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0
                }
            )
        except RPCError as e:
            logger.warning(f"Could not fetch logs for {signature}: {e}")
            return []
        if not result:
            return []
        return list((result.get('meta') or {}).get('logMessages') or [])

    async def confirm_transaction(
        self,
        signature: Signature,
        timeout: Optional[float] = None
    ) -> ConfirmationStatus:
        """Wait until a signature reaches the context commitment level.

        Returns:
            The observed status, or UNKNOWN when the timeout elapsed first.
            UNKNOWN means the transaction may still land.

        Raises:
            SubmissionError: If the transaction landed with an error
        """
        timeout = timeout if timeout is not None else self.context.confirm_timeout
        target = _COMMITMENT_RANK[ConfirmationStatus(self.context.commitment)]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                result = await self.rpc.getSignatureStatuses([str(signature)])
                status = result['value'][0]
            except RPCError as e:
                logger.warning(f"Status poll for {signature} failed: {e}")
                status = None

            if status is not None:
                if status.get('err') is not None:
                    logs = await self.transaction_logs(signature)
                    raise SubmissionError(
                        f"Transaction {signature} failed: {status['err']}",
                        logs=logs,
                        signature=signature
                    )
                reached = status.get('confirmationStatus')
                if reached and _COMMITMENT_RANK[ConfirmationStatus(reached)] >= target:
                    return ConfirmationStatus(reached)

            if loop.time() >= deadline:
                logger.warning(
                    f"Transaction {signature} not confirmed after {timeout}s, status unknown"
                )
                return ConfirmationStatus.UNKNOWN
            await asyncio.sleep(self.context.poll_interval)

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=3)
    async def token_holder(self, mint: Pubkey) -> Optional[Pubkey]:
        """Wallet currently holding a single-supply token, or None if nobody does."""
        result = await self.rpc.getTokenLargestAccounts(
            str(mint), {"commitment": self.context.commitment}
        )
        for item in result['value']:
            if int(item['amount']) < 1:
                continue
            account = await self.fetch_account(Pubkey.from_string(item['address']))
            if account is not None:
                return decode_token_account(account.data).owner
        return None
