"""Binary account layouts read from the ledger.

Exchange program accounts are Anchor accounts: an 8-byte discriminator
(``sha256("account:<Name>")[:8]``) followed by fixed-width fields.
Integers are little-endian. Metadata accounts belong to the external
token metadata program and use length-prefixed strings padded with NUL
bytes up to a declared cap.
"""

import hashlib
import struct
from dataclasses import dataclass, field
from typing import List, Tuple

from solders.pubkey import Pubkey

MAX_NAME_LENGTH = 32
MAX_SYMBOL_LENGTH = 10
MAX_URI_LENGTH = 200

MINT_ACCOUNT_SIZE = 82
TOKEN_ACCOUNT_SIZE = 165

# Token metadata program account key for MetadataV1
METADATA_V1_KEY = 4

# First creator address in a metadata account whose strings are padded to their caps
FIRST_CREATOR_OFFSET = (
    1 + 32 + 32
    + 4 + MAX_NAME_LENGTH + 4 + MAX_SYMBOL_LENGTH + 4 + MAX_URI_LENGTH
    + 2 + 1 + 4
)


class LayoutError(Exception):
    """Raised when account data does not match the expected layout."""
    pass


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


@dataclass(frozen=True)
class ExchangeAccount:
    authority: Pubkey
    total_credits: int
    bump: int

    DISCRIMINATOR = account_discriminator("CarbonExchange")
    _FORMAT = "<32sQB"


@dataclass(frozen=True)
class ListingAccount:
    seller: Pubkey
    token_id: Pubkey
    price: int
    bump: int

    DISCRIMINATOR = account_discriminator("Listing")
    _FORMAT = "<32s32sQB"


@dataclass(frozen=True)
class RetirementRecord:
    retired_by: Pubkey
    token_id: Pubkey
    retired_at: int
    beneficiary: Pubkey

    DISCRIMINATOR = account_discriminator("RetirementRecord")
    _FORMAT = "<32s32sq32s"


@dataclass(frozen=True)
class Creator:
    address: Pubkey
    verified: bool
    share: int


@dataclass(frozen=True)
class MetadataAccount:
    update_authority: Pubkey
    token_id: Pubkey
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int
    creators: List[Creator] = field(default_factory=list)


@dataclass(frozen=True)
class TokenAccount:
    mint: Pubkey
    owner: Pubkey
    amount: int


def _unpack_anchor(cls, data: bytes) -> tuple:
    if len(data) < 8 or data[:8] != cls.DISCRIMINATOR:
        raise LayoutError(f"Account data is not a {cls.__name__}")
    size = struct.calcsize(cls._FORMAT)
    if len(data) < 8 + size:
        raise LayoutError(
            f"{cls.__name__} needs {8 + size} bytes, got {len(data)}"
        )
    return struct.unpack_from(cls._FORMAT, data, 8)


def decode_exchange(data: bytes) -> ExchangeAccount:
    authority, total, bump = _unpack_anchor(ExchangeAccount, data)
    return ExchangeAccount(Pubkey.from_bytes(authority), total, bump)


def decode_listing(data: bytes) -> ListingAccount:
    seller, token_id, price, bump = _unpack_anchor(ListingAccount, data)
    return ListingAccount(Pubkey.from_bytes(seller), Pubkey.from_bytes(token_id), price, bump)


def decode_retirement(data: bytes) -> RetirementRecord:
    retired_by, token_id, retired_at, beneficiary = _unpack_anchor(RetirementRecord, data)
    return RetirementRecord(
        Pubkey.from_bytes(retired_by),
        Pubkey.from_bytes(token_id),
        retired_at,
        Pubkey.from_bytes(beneficiary),
    )


def encode_exchange(account: ExchangeAccount) -> bytes:
    return ExchangeAccount.DISCRIMINATOR + struct.pack(
        ExchangeAccount._FORMAT, bytes(account.authority), account.total_credits, account.bump
    )


def encode_listing(account: ListingAccount) -> bytes:
    return ListingAccount.DISCRIMINATOR + struct.pack(
        ListingAccount._FORMAT,
        bytes(account.seller), bytes(account.token_id), account.price, account.bump
    )


def encode_retirement(record: RetirementRecord) -> bytes:
    return RetirementRecord.DISCRIMINATOR + struct.pack(
        RetirementRecord._FORMAT,
        bytes(record.retired_by), bytes(record.token_id),
        record.retired_at, bytes(record.beneficiary)
    )


def _read_string(data: bytes, offset: int) -> Tuple[str, int]:
    if offset + 4 > len(data):
        raise LayoutError("Truncated string length")
    (length,) = struct.unpack_from("<I", data, offset)
    offset += 4
    if offset + length > len(data):
        raise LayoutError("Truncated string body")
    raw = data[offset:offset + length]
    return raw.decode("utf-8", errors="replace").replace("\x00", ""), offset + length


def _write_string(value: str, cap: int) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > cap:
        raise LayoutError(f"String of {len(raw)} bytes exceeds cap of {cap}")
    raw = raw.ljust(cap, b"\x00")
    return struct.pack("<I", len(raw)) + raw


def decode_metadata(data: bytes) -> MetadataAccount:
    """Decode a token metadata account.

    Only the leading fields are read; trailing collection and edition
    data is ignored.
    """
    if len(data) < 1 + 32 + 32 or data[0] != METADATA_V1_KEY:
        raise LayoutError("Account data is not a metadata account")
    offset = 1
    update_authority = Pubkey.from_bytes(data[offset:offset + 32])
    offset += 32
    token_id = Pubkey.from_bytes(data[offset:offset + 32])
    offset += 32
    name, offset = _read_string(data, offset)
    symbol, offset = _read_string(data, offset)
    uri, offset = _read_string(data, offset)

    if offset + 2 > len(data):
        raise LayoutError("Truncated seller fee")
    (seller_fee,) = struct.unpack_from("<H", data, offset)
    offset += 2

    creators = []
    if offset < len(data) and data[offset] == 1:
        offset += 1
        if offset + 4 > len(data):
            raise LayoutError("Truncated creator count")
        (count,) = struct.unpack_from("<I", data, offset)
        offset += 4
        for _ in range(count):
            if offset + 34 > len(data):
                raise LayoutError("Truncated creator entry")
            address = Pubkey.from_bytes(data[offset:offset + 32])
            verified, share = struct.unpack_from("<?B", data, offset + 32)
            creators.append(Creator(address, verified, share))
            offset += 34

    return MetadataAccount(update_authority, token_id, name, symbol, uri, seller_fee, creators)


def encode_metadata(account: MetadataAccount) -> bytes:
    data = bytes([METADATA_V1_KEY]) + bytes(account.update_authority) + bytes(account.token_id)
    data += _write_string(account.name, MAX_NAME_LENGTH)
    data += _write_string(account.symbol, MAX_SYMBOL_LENGTH)
    data += _write_string(account.uri, MAX_URI_LENGTH)
    data += struct.pack("<H", account.seller_fee_basis_points)
    if account.creators:
        data += b"\x01" + struct.pack("<I", len(account.creators))
        for creator in account.creators:
            data += bytes(creator.address) + struct.pack("<?B", creator.verified, creator.share)
    else:
        data += b"\x00"
    return data


def decode_token_account(data: bytes) -> TokenAccount:
    if len(data) < 72:
        raise LayoutError(f"Token account needs at least 72 bytes, got {len(data)}")
    mint, owner, amount = struct.unpack_from("<32s32sQ", data, 0)
    return TokenAccount(Pubkey.from_bytes(mint), Pubkey.from_bytes(owner), amount)


def encode_token_account(account: TokenAccount) -> bytes:
    data = struct.pack("<32s32sQ", bytes(account.mint), bytes(account.owner), account.amount)
    # delegate, state (initialized), is_native, delegated_amount, close_authority
    return data.ljust(108, b"\x00") + b"\x01" + b"\x00" * (TOKEN_ACCOUNT_SIZE - 109)
