"""Deterministic derivation of program-owned account addresses.

Every account the exchange touches besides wallets and the token itself
lives at an address computed from a program id and an ordered seed list.
Addresses are always recomputed, never stored, so the derivation here is
the single source of truth for which account a workflow targets.

Seed layouts:
    EXCHANGE        b"carbon_exchange"
    LISTING         b"listing", token id
    RETIREMENT      b"retired", token id
    METADATA        b"metadata", metadata program id, token id
    MASTER_EDITION  b"metadata", metadata program id, token id, b"edition"
"""

from enum import Enum
from typing import Optional, Sequence, Tuple, Union

from solders.pubkey import Pubkey

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
TOKEN_METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")
RENT_SYSVAR_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

EXCHANGE_SEED = b"carbon_exchange"
LISTING_SEED = b"listing"
RETIREMENT_SEED = b"retired"
METADATA_SEED = b"metadata"
EDITION_SEED = b"edition"

KeyLike = Union[Pubkey, bytes, str]


class DerivationError(Exception):
    """Raised when a derivation input is malformed.

    This is a programmer error. A wrong derivation silently targets the
    wrong account, so it is never tolerated or retried.
    """
    pass


class DerivationKind(str, Enum):
    EXCHANGE = "exchange"
    LISTING = "listing"
    RETIREMENT = "retirement"
    METADATA = "metadata"
    MASTER_EDITION = "master_edition"


# Number of token ids each kind expects after its constant tag
_COMPONENT_COUNT = {
    DerivationKind.EXCHANGE: 0,
    DerivationKind.LISTING: 1,
    DerivationKind.RETIREMENT: 1,
    DerivationKind.METADATA: 1,
    DerivationKind.MASTER_EDITION: 1,
}


def to_pubkey(value: KeyLike, label: str = "key") -> Pubkey:
    """Coerce a Pubkey, 32 raw bytes or a base58 string into a Pubkey.

    Raises:
        DerivationError: If the value is empty or not a valid 32-byte key
    """
    if isinstance(value, Pubkey):
        return value
    if not value:
        raise DerivationError(f"{label} is empty")
    try:
        if isinstance(value, (bytes, bytearray)):
            if len(value) != 32:
                raise ValueError(f"expected 32 bytes, got {len(value)}")
            return Pubkey.from_bytes(bytes(value))
        if isinstance(value, str):
            return Pubkey.from_string(value)
    except ValueError as e:
        raise DerivationError(f"Malformed {label} {value!r}: {e}") from e
    raise DerivationError(f"Unsupported {label} type: {type(value).__name__}")


def seeds_for(
    kind: DerivationKind,
    components: Sequence[KeyLike] = ()
) -> Tuple[Sequence[bytes], Optional[Pubkey]]:
    """Build the ordered seed list for a derivation kind.

    Returns:
        Tuple of (seeds, program override). The override is only set for
        kinds owned by the external metadata program, otherwise None.
    """
    try:
        kind = DerivationKind(kind)
    except ValueError as e:
        raise DerivationError(f"Unknown derivation kind {kind!r}") from e
    expected = _COMPONENT_COUNT[kind]
    if len(components) != expected:
        raise DerivationError(
            f"{kind.value} derivation takes {expected} component(s), got {len(components)}"
        )
    keys = [bytes(to_pubkey(c, "token id")) for c in components]

    if kind is DerivationKind.EXCHANGE:
        return [EXCHANGE_SEED], None
    if kind is DerivationKind.LISTING:
        return [LISTING_SEED, keys[0]], None
    if kind is DerivationKind.RETIREMENT:
        return [RETIREMENT_SEED, keys[0]], None

    metadata_program = bytes(TOKEN_METADATA_PROGRAM_ID)
    if kind is DerivationKind.METADATA:
        return [METADATA_SEED, metadata_program, keys[0]], TOKEN_METADATA_PROGRAM_ID
    return [METADATA_SEED, metadata_program, keys[0], EDITION_SEED], TOKEN_METADATA_PROGRAM_ID


def derive(
    kind: DerivationKind,
    program_id: KeyLike,
    components: Sequence[KeyLike] = ()
) -> Tuple[Pubkey, int]:
    """Derive the (address, bump) pair for an account kind.

    Args:
        kind: Which account to derive
        program_id: Exchange program id. Metadata kinds are always derived
            under the token metadata program, but the exchange program id
            is still validated so callers cannot pass garbage through.
        components: Token ids following the constant tag

    Returns:
        Tuple of (address, bump)

    Raises:
        DerivationError: If the program id or any component is malformed
    """
    program = to_pubkey(program_id, "program id")
    seeds, owner = seeds_for(kind, components)
    return Pubkey.find_program_address(seeds, owner or program)


def exchange_address(program_id: KeyLike) -> Tuple[Pubkey, int]:
    return derive(DerivationKind.EXCHANGE, program_id)


def listing_address(program_id: KeyLike, token_id: KeyLike) -> Tuple[Pubkey, int]:
    return derive(DerivationKind.LISTING, program_id, [token_id])


def retirement_address(program_id: KeyLike, token_id: KeyLike) -> Tuple[Pubkey, int]:
    return derive(DerivationKind.RETIREMENT, program_id, [token_id])


def metadata_address(program_id: KeyLike, token_id: KeyLike) -> Tuple[Pubkey, int]:
    return derive(DerivationKind.METADATA, program_id, [token_id])


def master_edition_address(program_id: KeyLike, token_id: KeyLike) -> Tuple[Pubkey, int]:
    return derive(DerivationKind.MASTER_EDITION, program_id, [token_id])


def associated_token_address(owner: KeyLike, token_id: KeyLike) -> Pubkey:
    """Address of the wallet's associated token account for a token."""
    seeds = [
        bytes(to_pubkey(owner, "owner")),
        bytes(TOKEN_PROGRAM_ID),
        bytes(to_pubkey(token_id, "token id")),
    ]
    address, _ = Pubkey.find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
    return address


__all__ = [
    'DerivationError',
    'DerivationKind',
    'derive',
    'seeds_for',
    'to_pubkey',
    'exchange_address',
    'listing_address',
    'retirement_address',
    'metadata_address',
    'master_edition_address',
    'associated_token_address',
    'SYSTEM_PROGRAM_ID',
    'TOKEN_PROGRAM_ID',
    'ASSOCIATED_TOKEN_PROGRAM_ID',
    'TOKEN_METADATA_PROGRAM_ID',
    'RENT_SYSVAR_ID',
]
