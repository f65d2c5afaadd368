"""Instruction encoders for the exchange program and the token programs it relies on.

Exchange instructions follow the Anchor convention: an 8-byte
``sha256("global:<name>")[:8]`` discriminator followed by Borsh-encoded
arguments. Account order mirrors the program's account structs and must
not be changed.
"""

import hashlib
import struct
from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, create_account

from addresses import (
    SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_METADATA_PROGRAM_ID, RENT_SYSVAR_ID,
)
from ledger.layouts import MINT_ACCOUNT_SIZE

# SPL token instruction tags
INITIALIZE_MINT_TAG = 0
MINT_TO_TAG = 7

# Token metadata program instruction tags
CREATE_METADATA_ACCOUNT_V3_TAG = 33
CREATE_MASTER_EDITION_V3_TAG = 17


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def _meta(pubkey: Pubkey, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=writable)


def _borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


# Token program

def create_mint_account(payer: Pubkey, mint: Pubkey, lamports: int) -> Instruction:
    """System account creation for a mint, owned by the token program."""
    return create_account(CreateAccountParams(
        from_pubkey=payer,
        to_pubkey=mint,
        lamports=lamports,
        space=MINT_ACCOUNT_SIZE,
        owner=TOKEN_PROGRAM_ID,
    ))


def initialize_mint(
    mint: Pubkey,
    mint_authority: Pubkey,
    freeze_authority: Optional[Pubkey] = None,
    decimals: int = 0
) -> Instruction:
    data = struct.pack("<BB", INITIALIZE_MINT_TAG, decimals) + bytes(mint_authority)
    if freeze_authority is None:
        data += b"\x00" + bytes(32)
    else:
        data += b"\x01" + bytes(freeze_authority)
    return Instruction(
        TOKEN_PROGRAM_ID,
        data,
        [_meta(mint, writable=True), _meta(RENT_SYSVAR_ID)],
    )


def create_associated_token_account(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    associated_account: Pubkey
) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        b"",
        [
            _meta(payer, signer=True, writable=True),
            _meta(associated_account, writable=True),
            _meta(owner),
            _meta(mint),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(TOKEN_PROGRAM_ID),
        ],
    )


def mint_to(mint: Pubkey, destination: Pubkey, authority: Pubkey, amount: int = 1) -> Instruction:
    return Instruction(
        TOKEN_PROGRAM_ID,
        struct.pack("<BQ", MINT_TO_TAG, amount),
        [
            _meta(mint, writable=True),
            _meta(destination, writable=True),
            _meta(authority, signer=True),
        ],
    )


# Token metadata program

def create_metadata_account_v3(
    metadata: Pubkey,
    mint: Pubkey,
    mint_authority: Pubkey,
    payer: Pubkey,
    update_authority: Pubkey,
    name: str,
    symbol: str,
    uri: str,
    creators: Optional[List[Pubkey]] = None,
    seller_fee_basis_points: int = 0,
    is_mutable: bool = True
) -> Instruction:
    """Metadata account creation with every creator verified and shares split evenly.

    A single creator gets the full 100% share.
    """
    data = bytes([CREATE_METADATA_ACCOUNT_V3_TAG])
    data += _borsh_string(name) + _borsh_string(symbol) + _borsh_string(uri)
    data += struct.pack("<H", seller_fee_basis_points)
    if creators:
        share, remainder = divmod(100, len(creators))
        data += b"\x01" + struct.pack("<I", len(creators))
        for index, creator in enumerate(creators):
            data += bytes(creator) + struct.pack(
                "<?B", True, share + (remainder if index == 0 else 0)
            )
    else:
        data += b"\x00"
    data += b"\x00"  # collection
    data += b"\x00"  # uses
    data += struct.pack("<?", is_mutable)
    data += b"\x00"  # collection details
    return Instruction(
        TOKEN_METADATA_PROGRAM_ID,
        data,
        [
            _meta(metadata, writable=True),
            _meta(mint),
            _meta(mint_authority, signer=True),
            _meta(payer, signer=True, writable=True),
            _meta(update_authority, signer=True),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(RENT_SYSVAR_ID),
        ],
    )


def create_master_edition_v3(
    edition: Pubkey,
    mint: Pubkey,
    update_authority: Pubkey,
    mint_authority: Pubkey,
    payer: Pubkey,
    metadata: Pubkey,
    max_supply: Optional[int] = 0
) -> Instruction:
    data = bytes([CREATE_MASTER_EDITION_V3_TAG])
    if max_supply is None:
        data += b"\x00"
    else:
        data += b"\x01" + struct.pack("<Q", max_supply)
    return Instruction(
        TOKEN_METADATA_PROGRAM_ID,
        data,
        [
            _meta(edition, writable=True),
            _meta(mint, writable=True),
            _meta(update_authority, signer=True),
            _meta(mint_authority, signer=True),
            _meta(payer, signer=True, writable=True),
            _meta(metadata, writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(RENT_SYSVAR_ID),
        ],
    )


# Exchange program

def initialize_exchange(program_id: Pubkey, exchange: Pubkey, authority: Pubkey) -> Instruction:
    return Instruction(
        program_id,
        instruction_discriminator("initialize"),
        [
            _meta(exchange, writable=True),
            _meta(authority, signer=True, writable=True),
            _meta(SYSTEM_PROGRAM_ID),
        ],
    )


def list_for_sale(
    program_id: Pubkey,
    exchange: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_account: Pubkey,
    listing: Pubkey,
    price: int
) -> Instruction:
    return Instruction(
        program_id,
        instruction_discriminator("list_for_sale") + struct.pack("<Q", price),
        [
            _meta(exchange, writable=True),
            _meta(owner, signer=True, writable=True),
            _meta(mint),
            _meta(token_account, writable=True),
            _meta(listing, writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
        ],
    )


def buy_carbon_credit(
    program_id: Pubkey,
    exchange: Pubkey,
    buyer: Pubkey,
    seller: Pubkey,
    mint: Pubkey,
    seller_token_account: Pubkey,
    buyer_token_account: Pubkey,
    listing: Pubkey
) -> Instruction:
    return Instruction(
        program_id,
        instruction_discriminator("buy_carbon_credit"),
        [
            _meta(exchange, writable=True),
            _meta(buyer, signer=True, writable=True),
            _meta(seller, writable=True),
            _meta(mint),
            _meta(seller_token_account, writable=True),
            _meta(buyer_token_account, writable=True),
            _meta(listing, writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(ASSOCIATED_TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(RENT_SYSVAR_ID),
        ],
    )


def retire_carbon_credit(
    program_id: Pubkey,
    exchange: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_account: Pubkey,
    retirement_record: Pubkey,
    beneficiary: Pubkey
) -> Instruction:
    return Instruction(
        program_id,
        instruction_discriminator("retire_carbon_credit") + bytes(beneficiary),
        [
            _meta(exchange, writable=True),
            _meta(owner, signer=True, writable=True),
            _meta(mint, writable=True),
            _meta(token_account, writable=True),
            _meta(retirement_record, writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(ASSOCIATED_TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
            _meta(RENT_SYSVAR_ID),
        ],
    )


def cancel_listing(
    program_id: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_account: Pubkey,
    listing: Pubkey
) -> Instruction:
    return Instruction(
        program_id,
        instruction_discriminator("cancel_listing"),
        [
            _meta(owner, signer=True, writable=True),
            _meta(mint),
            _meta(token_account, writable=True),
            _meta(listing, writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
        ],
    )
