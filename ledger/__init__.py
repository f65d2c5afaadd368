"""Ledger session, JSON-RPC transport and account layouts"""
from .rpc import RPCError, NodeConnectionError, SolanaRPCError, SolanaRPC
from .context import LedgerContext, KeypairError, load_keypair
from .client import (
    LedgerClient, AccountInfo, ConfirmationStatus, SubmissionError
)
from .layouts import (
    LayoutError,
    ExchangeAccount, ListingAccount, RetirementRecord,
    MetadataAccount, Creator, TokenAccount,
    decode_exchange, decode_listing, decode_retirement,
    decode_metadata, decode_token_account,
    MAX_NAME_LENGTH, MAX_SYMBOL_LENGTH, MAX_URI_LENGTH, FIRST_CREATOR_OFFSET,
)

__all__ = [
    'RPCError',
    'NodeConnectionError',
    'SolanaRPCError',
    'SolanaRPC',
    'LedgerContext',
    'KeypairError',
    'load_keypair',
    'LedgerClient',
    'AccountInfo',
    'ConfirmationStatus',
    'SubmissionError',
    'LayoutError',
    'ExchangeAccount',
    'ListingAccount',
    'RetirementRecord',
    'MetadataAccount',
    'Creator',
    'TokenAccount',
    'decode_exchange',
    'decode_listing',
    'decode_retirement',
    'decode_metadata',
    'decode_token_account',
    'MAX_NAME_LENGTH',
    'MAX_SYMBOL_LENGTH',
    'MAX_URI_LENGTH',
    'FIRST_CREATOR_OFFSET',
]
