"""Tests for the ledger client against a mocked node."""

import base64
import json

import httpx
import pytest
import pytest_asyncio
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from ledger import LedgerContext, LedgerClient, ConfirmationStatus, SubmissionError
from addresses import TOKEN_METADATA_PROGRAM_ID
from ledger.layouts import (
    ListingAccount, MetadataAccount, Creator, encode_listing, encode_metadata, decode_metadata,
    FIRST_CREATOR_OFFSET,
)


class FakeNode:
    """Answers JSON-RPC calls from a per-method table of results or callables."""

    def __init__(self):
        self.results = {}
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method = payload["method"]
        self.calls.append(method)
        answer = self.results[method]
        if callable(answer):
            answer = answer(payload["params"])
        if isinstance(answer, dict) and "error" in answer:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **answer})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": answer})


@pytest.fixture
def node():
    return FakeNode()


@pytest_asyncio.fixture
async def client(node):
    context = LedgerContext(
        "http://ledger.test",
        Keypair().pubkey(),
        confirm_timeout=0.05,
        poll_interval=0.01,
        transport=httpx.MockTransport(node),
    )
    async with context:
        yield LedgerClient(context)


def signed_transfer() -> Transaction:
    payer = Keypair()
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1))
    tx = Transaction.new_unsigned(Message.new_with_blockhash([ix], payer.pubkey(), Hash.default()))
    tx.partial_sign([payer], Hash.default())
    return tx


@pytest.mark.asyncio
async def test_missing_account_is_none(client, node):
    node.results["getAccountInfo"] = {"context": {"slot": 1}, "value": None}
    assert await client.fetch_account(Keypair().pubkey()) is None


@pytest.mark.asyncio
async def test_account_data_decoded(client, node):
    owner = Keypair().pubkey()
    data = encode_listing(ListingAccount(Keypair().pubkey(), Keypair().pubkey(), 5, 255))
    node.results["getAccountInfo"] = {"context": {"slot": 1}, "value": {
        "data": [base64.b64encode(data).decode(), "base64"],
        "owner": str(owner),
        "lamports": 1_000,
        "executable": False,
    }}

    account = await client.fetch_account(Keypair().pubkey())
    assert account.data == data
    assert account.owner == owner


@pytest.mark.asyncio
async def test_rejected_submission_carries_logs(client, node):
    node.results["sendTransaction"] = {"error": {
        "code": -32002,
        "message": "Transaction simulation failed",
        "data": {"logs": ["Program log: AnchorError occurred"]},
    }}
    tx = signed_transfer()

    with pytest.raises(SubmissionError) as exc:
        await client.send_transaction(tx)

    assert exc.value.logs == ["Program log: AnchorError occurred"]
    assert exc.value.signature == tx.signatures[0]
    assert node.calls.count("sendTransaction") == 1


@pytest.mark.asyncio
async def test_submission_returns_signature(client, node):
    tx = signed_transfer()
    node.results["sendTransaction"] = str(tx.signatures[0])
    assert await client.send_transaction(tx) == tx.signatures[0]


@pytest.mark.asyncio
async def test_confirmation_reaches_commitment(client, node):
    statuses = iter([
        {"context": {"slot": 1}, "value": [None]},
        {"context": {"slot": 2}, "value": [{"err": None, "confirmationStatus": "processed"}]},
        {"context": {"slot": 3}, "value": [{"err": None, "confirmationStatus": "confirmed"}]},
    ])
    node.results["getSignatureStatuses"] = lambda params: next(statuses)

    status = await client.confirm_transaction(Signature.default())
    assert status is ConfirmationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_confirmation_timeout_reports_unknown(client, node):
    node.results["getSignatureStatuses"] = {"context": {"slot": 1}, "value": [None]}
    status = await client.confirm_transaction(Signature.default())
    assert status is ConfirmationStatus.UNKNOWN


@pytest.mark.asyncio
async def test_node_error_while_polling_reports_unknown(client, node):
    node.results["getSignatureStatuses"] = {"error": {"code": -32005, "message": "Node is behind"}}
    status = await client.confirm_transaction(Signature.default())
    assert status is ConfirmationStatus.UNKNOWN
    assert node.calls.count("getSignatureStatuses") >= 1


@pytest.mark.asyncio
async def test_balance(client, node):
    node.results["getBalance"] = {"context": {"slot": 1}, "value": 2_500_000_000}
    assert await client.balance(Keypair().pubkey()) == 2_500_000_000


@pytest.mark.asyncio
async def test_failed_transaction_raises_with_logs(client, node):
    node.results["getSignatureStatuses"] = {"context": {"slot": 1}, "value": [
        {"err": {"InstructionError": [0, {"Custom": 6000}]}, "confirmationStatus": "confirmed"}
    ]}
    node.results["getTransaction"] = {"meta": {"logMessages": ["Program log: listing closed"]}}

    with pytest.raises(SubmissionError) as exc:
        await client.confirm_transaction(Signature.default())
    assert exc.value.logs == ["Program log: listing closed"]


@pytest.mark.asyncio
async def test_program_accounts_filter(client, node):
    captured = {}

    def answer(params):
        captured["params"] = params
        return []

    node.results["getProgramAccounts"] = answer
    await client.program_accounts(client.context.program_id, ListingAccount.DISCRIMINATOR)

    memcmp = captured["params"][1]["filters"][0]["memcmp"]
    assert memcmp["offset"] == 0
    assert base64.b64decode(memcmp["bytes"]) == ListingAccount.DISCRIMINATOR


@pytest.mark.asyncio
async def test_metadata_by_creator_filters_first_creator(client, node):
    creator = Keypair().pubkey()
    token_id = Keypair().pubkey()
    data = encode_metadata(MetadataAccount(
        creator, token_id, "Rimba Raya", "CO2C", "ipfs://QmRimba", 0, [Creator(creator, True, 100)]
    ))
    captured = {}

    def answer(params):
        captured["params"] = params
        return [{
            "pubkey": str(Keypair().pubkey()),
            "account": {
                "data": [base64.b64encode(data).decode(), "base64"],
                "owner": str(TOKEN_METADATA_PROGRAM_ID),
                "lamports": 5_616_720,
            },
        }]

    node.results["getProgramAccounts"] = answer
    accounts = await client.metadata_by_creator(creator)

    assert captured["params"][0] == str(TOKEN_METADATA_PROGRAM_ID)
    memcmp = captured["params"][1]["filters"][0]["memcmp"]
    assert memcmp["offset"] == FIRST_CREATOR_OFFSET == 326
    assert base64.b64decode(memcmp["bytes"]) == bytes(creator)
    assert data[326:358] == bytes(creator)
    assert decode_metadata(accounts[0].data).token_id == token_id
