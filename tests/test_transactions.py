"""Tests for the transaction builder against the in-memory ledger."""

from decimal import Decimal

import pytest
from solders.keypair import Keypair

from addresses import (
    SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_METADATA_PROGRAM_ID,
    listing_address, retirement_address, associated_token_address,
)
from ledger import ConfirmationStatus, SubmissionError
from ledger.layouts import ListingAccount, RetirementRecord, encode_listing, encode_retirement
from transactions import (
    TransactionBuilder, PreconditionError, ListingUnavailableError,
    sol_to_lamports, lamports_to_sol,
)
from transactions.instructions import instruction_discriminator


@pytest.fixture
def builder(ledger):
    return TransactionBuilder(ledger)


@pytest.fixture
def owner():
    return Keypair()


@pytest.fixture
def token_id():
    return Keypair().pubkey()


def signers_of(transaction):
    header = transaction.message.header
    return set(transaction.message.account_keys[:header.num_required_signatures])


def programs_of(transaction):
    keys = transaction.message.account_keys
    return [keys[ix.program_id_index] for ix in transaction.message.instructions]


@pytest.mark.asyncio
async def test_mint_builds_six_instructions_in_order(builder, ledger, payer):
    """Create account, init mint, create ATA, mint one, metadata, master edition."""
    token = Keypair()
    result = await builder.mint(payer, token, "Mangrove Restoration", "CO2C", "ipfs://QmMeta")

    assert len(ledger.sent) == 1
    tx = ledger.sent[0]
    assert programs_of(tx) == [
        SYSTEM_PROGRAM_ID,
        TOKEN_PROGRAM_ID,
        ASSOCIATED_TOKEN_PROGRAM_ID,
        TOKEN_PROGRAM_ID,
        TOKEN_METADATA_PROGRAM_ID,
        TOKEN_METADATA_PROGRAM_ID,
    ]
    data = [bytes(ix.data) for ix in tx.message.instructions]
    assert data[1][0] == 0 and data[1][1] == 0  # InitializeMint, zero decimals
    assert data[3] == bytes([7]) + (1).to_bytes(8, "little")  # MintTo exactly one
    assert data[4][0] == 33
    assert data[5] == bytes([17, 1]) + bytes(8)  # max supply Some(0)

    assert signers_of(tx) == {payer.pubkey(), token.pubkey()}
    assert tx.message.account_keys[0] == payer.pubkey()
    assert result.token_id == token.pubkey()
    assert result.status is ConfirmationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_mint_gives_token_to_recipient(builder, ledger, payer):
    recipient = Keypair().pubkey()
    token = Keypair()
    await builder.mint(payer, token, "Name", "CO2C", "ipfs://QmMeta", recipient=recipient)

    ata = associated_token_address(recipient, token.pubkey())
    assert await ledger.token_balance(ata) == 1


@pytest.mark.asyncio
async def test_mint_creator_verified_with_full_share(builder, ledger, payer):
    await builder.mint(payer, Keypair(), "Name", "CO2C", "ipfs://QmMeta")
    data = bytes(ledger.sent[0].message.instructions[4].data)
    creators = data.index(bytes(payer.pubkey()))
    assert data[creators + 32:creators + 34] == bytes([1, 100])


@pytest.mark.parametrize("name,symbol,uri", [
    ("n" * 33, "CO2C", "ipfs://QmMeta"),
    ("Name", "S" * 11, "ipfs://QmMeta"),
    ("Name", "CO2C", "ipfs://" + "x" * 200),
])
@pytest.mark.asyncio
async def test_mint_rejects_oversized_metadata(builder, ledger, payer, name, symbol, uri):
    with pytest.raises(PreconditionError):
        await builder.mint(payer, Keypair(), name, symbol, uri)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_list_writes_listing(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    result = await builder.list(owner, token_id, 2_500_000_000)

    tx = ledger.sent[0]
    assert len(tx.message.instructions) == 1
    assert bytes(tx.message.instructions[0].data)[:8] == instruction_discriminator("list_for_sale")
    assert result.details["price"] == 2_500_000_000
    address, _ = listing_address(ledger.program_id, token_id)
    assert address in ledger.accounts


@pytest.mark.asyncio
async def test_list_already_listed_never_submits(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    address, _ = listing_address(ledger.program_id, token_id)
    ledger.put(address, encode_listing(ListingAccount(owner.pubkey(), token_id, 10, 255)))

    with pytest.raises(PreconditionError) as exc:
        await builder.list(owner, token_id, 20)
    assert exc.value.account == address
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_list_without_holding_token(builder, ledger, owner, token_id):
    with pytest.raises(PreconditionError, match="You do not own this asset"):
        await builder.list(owner, token_id, 20)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_list_retired_token_references_record(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    record, _ = retirement_address(ledger.program_id, token_id)
    ledger.put(record, encode_retirement(
        RetirementRecord(owner.pubkey(), token_id, 1_700_000_000, owner.pubkey())
    ))

    with pytest.raises(PreconditionError) as exc:
        await builder.list(owner, token_id, 20)
    assert exc.value.account == record
    assert str(record) in str(exc.value)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_list_rejects_non_positive_price(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    with pytest.raises(PreconditionError):
        await builder.list(owner, token_id, 0)


@pytest.mark.asyncio
async def test_retire_already_retired_never_submits(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    record, _ = retirement_address(ledger.program_id, token_id)
    ledger.put(record, encode_retirement(
        RetirementRecord(owner.pubkey(), token_id, 1_700_000_000, owner.pubkey())
    ))

    with pytest.raises(PreconditionError):
        await builder.retire(owner, token_id)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_retire_records_beneficiary(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    beneficiary = Keypair().pubkey()
    await builder.retire(owner, token_id, beneficiary)

    data = bytes(ledger.sent[0].message.instructions[0].data)
    assert data[8:] == bytes(beneficiary)


@pytest.mark.asyncio
async def test_buy_without_listing(builder, ledger, token_id):
    with pytest.raises(ListingUnavailableError):
        await builder.buy(Keypair(), token_id)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_buy_own_listing_rejected(builder, ledger, owner, token_id):
    address, _ = listing_address(ledger.program_id, token_id)
    ledger.put(address, encode_listing(ListingAccount(owner.pubkey(), token_id, 10, 255)))
    with pytest.raises(PreconditionError):
        await builder.buy(owner, token_id)


@pytest.mark.asyncio
async def test_buy_race_lost_is_listing_unavailable(builder, ledger, owner, token_id):
    """Another buyer closes the listing between our read and our submission."""
    ledger.give_token(owner.pubkey(), token_id)
    await builder.list(owner, token_id, 10)
    address, _ = listing_address(ledger.program_id, token_id)
    ledger.before_send = lambda tx: ledger.delete(address)

    with pytest.raises(ListingUnavailableError) as exc:
        await builder.buy(Keypair(), token_id)
    assert any("AccountNotInitialized" in line for line in exc.value.logs)


@pytest.mark.asyncio
async def test_buy_other_failure_is_submission_error(builder, ledger, owner, token_id):
    address, _ = listing_address(ledger.program_id, token_id)
    ledger.put(address, encode_listing(ListingAccount(owner.pubkey(), token_id, 10, 255)))
    ledger.fail_submit = SubmissionError("Blockhash not found", logs=["expired"])

    with pytest.raises(SubmissionError) as exc:
        await builder.buy(Keypair(), token_id)
    assert not isinstance(exc.value, ListingUnavailableError)
    assert len(ledger.sent) == 1


@pytest.mark.asyncio
async def test_buy_needs_balance_for_price(builder, ledger, owner, token_id):
    address, _ = listing_address(ledger.program_id, token_id)
    ledger.put(address, encode_listing(ListingAccount(owner.pubkey(), token_id, 5_000, 255)))
    buyer = Keypair()
    ledger.balances[buyer.pubkey()] = 4_999

    with pytest.raises(PreconditionError) as exc:
        await builder.buy(buyer, token_id)
    assert exc.value.account == buyer.pubkey()
    assert "at least 5000 lamports" in str(exc.value)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_failed_reread_keeps_submission_error(builder, ledger, owner, token_id):
    address, _ = listing_address(ledger.program_id, token_id)
    ledger.put(address, encode_listing(ListingAccount(owner.pubkey(), token_id, 10, 255)))
    ledger.fail_submit = SubmissionError("Transaction simulation failed", logs=["Program log: boom"])
    ledger.before_send = lambda tx: ledger.unreachable.add(address)

    with pytest.raises(SubmissionError) as exc:
        await builder.buy(Keypair(), token_id)
    assert exc.value.logs == ["Program log: boom"]


@pytest.mark.asyncio
async def test_buy_moves_token_and_closes_listing(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    await builder.list(owner, token_id, 10)
    buyer = Keypair()

    result = await builder.buy(buyer, token_id)

    assert result.details["seller"] == str(owner.pubkey())
    assert await ledger.token_balance(associated_token_address(buyer.pubkey(), token_id)) == 1
    assert listing_address(ledger.program_id, token_id)[0] not in ledger.accounts


@pytest.mark.asyncio
async def test_cancel_requires_seller(builder, ledger, owner, token_id):
    address, _ = listing_address(ledger.program_id, token_id)
    ledger.put(address, encode_listing(ListingAccount(owner.pubkey(), token_id, 10, 255)))
    with pytest.raises(PreconditionError):
        await builder.cancel(Keypair(), token_id)

    await builder.cancel(owner, token_id)
    assert address not in ledger.accounts


@pytest.mark.asyncio
async def test_unknown_confirmation_is_reported(builder, ledger, owner, token_id):
    ledger.give_token(owner.pubkey(), token_id)
    ledger.confirm_status = ConfirmationStatus.UNKNOWN
    result = await builder.list(owner, token_id, 10)
    assert result.status is ConfirmationStatus.UNKNOWN
    assert not result.confirmed


@pytest.mark.asyncio
async def test_initialize_exchange_once(builder, ledger, payer):
    await builder.initialize_exchange(payer)
    with pytest.raises(PreconditionError):
        await builder.initialize_exchange(payer)
    assert len(ledger.sent) == 1


def test_price_conversion():
    assert sol_to_lamports(Decimal("2.5")) == 2_500_000_000
    assert sol_to_lamports("0.000000001") == 1
    assert lamports_to_sol(2_500_000_000) == Decimal("2.5")
    with pytest.raises(ValueError):
        sol_to_lamports(Decimal("0.0000000001"))
    with pytest.raises(ValueError):
        sol_to_lamports(-1)
