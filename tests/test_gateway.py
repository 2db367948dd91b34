from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from holder_drop.errors import (
    ConfigurationError,
    InsufficientFundsError,
    InvalidAddressError,
    NetworkError,
    NotFoundError,
)
from holder_drop.gateway import (
    METHOD_NOT_FOUND,
    TOKEN_PROGRAM_ID,
    ConfirmationState,
    RpcError,
    SolanaGateway,
)
from holder_drop.retry import RetryPolicy
from holder_drop.signer import SignedTransfer, TransferSigner

from .conftest import ADDRESSES, MINT, SOURCE

RPC_URL = "http://localhost:8899"


def response(result=None, error=None, status_code=200):
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    return SimpleNamespace(status_code=status_code, text="", json=lambda: body)


def routed(routes):
    """session.post side effect answering by JSON-RPC method"""
    calls = []

    def post(url, json=None, timeout=None):
        calls.append(json["method"])
        handler = routes[json["method"]]
        return handler(json["params"]) if callable(handler) else handler

    post.calls = calls
    return post


def make_gateway(routes, signer=None, attempts=2):
    session = MagicMock(spec=requests.Session)
    post = routed(routes)
    session.post.side_effect = post
    gateway = SolanaGateway(RPC_URL, signer=signer, timeout=5,
                            retry_policy=RetryPolicy(max_attempts=attempts, base_delay=0.0),
                            session=session)
    return gateway, post


MINT_INFO = response({"value": {"owner": TOKEN_PROGRAM_ID, "data": ["", "base64"]}})


def test_das_pages_follow_cursor():
    pages = {
        None: {"token_accounts": [{"owner": ADDRESSES[0], "amount": 10}], "cursor": "c1"},
        "c1": {"token_accounts": [{"owner": ADDRESSES[1], "amount": "20"},
                                  {"owner": ADDRESSES[2], "amount": 0}], "cursor": None},
    }
    gateway, post = make_gateway({
        "getAccountInfo": MINT_INFO,
        "getTokenAccounts": lambda params: response(pages[params.get("cursor")]),
    })

    first = gateway.fetch_token_accounts(MINT)
    assert [h.address for h in first.accounts] == [ADDRESSES[0]]
    assert first.next_cursor == "c1"

    second = gateway.fetch_token_accounts(MINT, first.next_cursor)
    assert [(h.address, h.balance) for h in second.accounts] == [(ADDRESSES[1], 20)]
    assert second.done


def test_falls_back_to_program_accounts():
    parsed = {
        "pubkey": "acct",
        "account": {"data": {"parsed": {"info": {"owner": ADDRESSES[3], "tokenAmount": {"amount": "42"}}}}},
    }
    gateway, post = make_gateway({
        "getAccountInfo": MINT_INFO,
        "getTokenAccounts": response(error={"code": METHOD_NOT_FOUND, "message": "Method not found"}),
        "getProgramAccounts": response([parsed, {"pubkey": "broken", "account": {}}]),
    })

    page = gateway.fetch_token_accounts(MINT)
    assert [(h.address, h.balance) for h in page.accounts] == [(ADDRESSES[3], 42)]
    assert page.done

    gateway.fetch_token_accounts(MINT)
    assert post.calls.count("getTokenAccounts") == 1


def test_unknown_mint():
    gateway, _ = make_gateway({"getAccountInfo": response({"value": None})})
    with pytest.raises(NotFoundError):
        gateway.fetch_token_accounts(MINT)


def test_server_errors_are_retried_then_raised():
    gateway, post = make_gateway({"getAccountInfo": response(status_code=503)}, attempts=3)
    with pytest.raises(NetworkError):
        gateway.fetch_token_accounts(MINT)
    assert post.calls == ["getAccountInfo"] * 3


def test_timeout_becomes_network_error():
    def timeout(params):
        raise requests.exceptions.Timeout("read timed out")

    gateway, post = make_gateway({"getTokenSupply": timeout})
    with pytest.raises(NetworkError):
        gateway.get_token_decimals(MINT)
    assert len(post.calls) == 2


def test_rpc_errors_are_not_retried():
    gateway, post = make_gateway({"getLatestBlockhash": response(error={"code": -32600, "message": "bad"})})
    with pytest.raises(RpcError):
        gateway.get_latest_blockhash()
    assert len(post.calls) == 1


def test_decimals_cached_and_missing_mint():
    gateway, post = make_gateway({"getTokenSupply": response({"value": {"amount": "1", "decimals": 6}})})
    assert gateway.get_token_decimals(MINT) == 6
    assert gateway.get_token_decimals(MINT) == 6
    assert len(post.calls) == 1

    gateway, _ = make_gateway({"getTokenSupply": response(error={"code": -32602, "message": "not a mint"})})
    with pytest.raises(NotFoundError):
        gateway.get_token_decimals(MINT)


def test_token_balance_sums_accounts():
    def account(amount):
        return {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": str(amount)}}}}}}

    gateway, _ = make_gateway({"getTokenAccountsByOwner": response({"value": [account(5), account(7)]})})
    assert gateway.get_token_balance(SOURCE, MINT) == 12


@pytest.mark.parametrize("status, expected, retryable", [
    (None, ConfirmationState.PENDING, False),
    ({"err": None, "confirmationStatus": "processed"}, ConfirmationState.PENDING, False),
    ({"err": None, "confirmationStatus": "confirmed"}, ConfirmationState.CONFIRMED, False),
    ({"err": {"InstructionError": [1, "Custom"]}, "confirmationStatus": "confirmed"},
     ConfirmationState.FAILED, False),
    ({"err": "BlockhashNotFound", "confirmationStatus": None}, ConfirmationState.FAILED, True),
])
def test_confirmation_states(status, expected, retryable):
    gateway, _ = make_gateway({"getSignatureStatuses": response({"value": [status]})})
    confirmation = gateway.confirm_transaction("sig")
    assert confirmation.state == expected
    assert confirmation.retryable == retryable


class StubSigner(TransferSigner):
    public_key = SOURCE

    def sign_transfer(self, destination, mint, amount, decimals, recent_blockhash, token_program):
        return SignedTransfer(payload="c2lnbmVk", signature="LocalSig")


def transfer_routes(send):
    return {
        "getTokenSupply": response({"value": {"decimals": 0}}),
        "getAccountInfo": MINT_INFO,
        "getLatestBlockhash": response({"value": {"blockhash": "11111111111111111111111111111111"}}),
        "sendTransaction": send,
    }


def test_submit_transfer_returns_signature():
    gateway, post = make_gateway(transfer_routes(response("5igSig")), signer=StubSigner())
    assert gateway.submit_transfer(SOURCE, ADDRESSES[0], MINT, 10) == "5igSig"
    assert "sendTransaction" in post.calls


def test_submit_transfer_insufficient_funds():
    error = {"code": -32002, "message": "Transaction simulation failed",
             "data": {"logs": ["Program log: Error: insufficient funds"]}}
    gateway, _ = make_gateway(transfer_routes(response(error=error)), signer=StubSigner())
    with pytest.raises(InsufficientFundsError):
        gateway.submit_transfer(SOURCE, ADDRESSES[0], MINT, 10)


def test_submit_transfer_needs_matching_signer():
    gateway, _ = make_gateway({})
    with pytest.raises(ConfigurationError):
        gateway.submit_transfer(SOURCE, ADDRESSES[0], MINT, 10)

    gateway, _ = make_gateway({}, signer=StubSigner())
    with pytest.raises(InvalidAddressError):
        gateway.submit_transfer(ADDRESSES[5], ADDRESSES[0], MINT, 10)


def sequence(*steps):
    """Route handler answering successive calls with `steps`; exceptions are raised"""
    remaining = list(steps)

    def handler(params):
        step = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(step, Exception):
            raise step
        return step

    return handler


ALREADY_PROCESSED = {"code": -32002,
                     "message": "Transaction simulation failed: This transaction has already been processed",
                     "data": {"err": "AlreadyProcessed", "logs": []}}


def test_timeout_then_already_processed_returns_original_signature():
    send = sequence(requests.exceptions.Timeout("read timed out"), response(error=ALREADY_PROCESSED))
    gateway, post = make_gateway(transfer_routes(send), signer=StubSigner(), attempts=3)

    assert gateway.submit_transfer(SOURCE, ADDRESSES[0], MINT, 10) == "LocalSig"
    assert post.calls.count("sendTransaction") == 2


def test_send_timeout_returns_signature_for_confirmation():
    send = sequence(requests.exceptions.Timeout("read timed out"))
    gateway, post = make_gateway(transfer_routes(send), signer=StubSigner(), attempts=2)

    assert gateway.submit_transfer(SOURCE, ADDRESSES[0], MINT, 10) == "LocalSig"
    assert post.calls.count("sendTransaction") == 2


def test_send_connection_failure_is_network_error():
    send = sequence(requests.exceptions.ConnectionError("refused"))
    gateway, _ = make_gateway(transfer_routes(send), signer=StubSigner(), attempts=2)

    with pytest.raises(NetworkError):
        gateway.submit_transfer(SOURCE, ADDRESSES[0], MINT, 10)


def test_expired_blockhash_is_network_error():
    error = {"code": -32002, "message": "Transaction simulation failed: Blockhash not found",
             "data": {"err": "BlockhashNotFound"}}
    gateway, _ = make_gateway(transfer_routes(response(error=error)), signer=StubSigner())

    with pytest.raises(NetworkError):
        gateway.submit_transfer(SOURCE, ADDRESSES[0], MINT, 10)
