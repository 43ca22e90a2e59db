import httpx
import pytest

from exporter import RpcError, SolanaRpcClient, ValidatorVoteState


VOTE_ACCOUNTS = {
    "jsonrpc": "2.0",
    "id": 1,
    "result": {
        "current": [
            {
                "votePubkey": "3N7s9zXMZ4QqvHQR15t5GNHyqc89KduzMP7423eWiD5g",
                "nodePubkey": "7Np41oeYqPefeNQEHSv1UDhYrehxin3NStELsSKCT4K2",
                "activatedStake": 42,
                "commission": 0,
                "rootSlot": 290000100,
                "lastVote": 290000131,
                "epochCredits": [[660, 1000, 0], [661, 2500, 1000]],
            },
            {
                "votePubkey": "Fresh111",
                "rootSlot": 0,
                "lastVote": 0,
                "epochCredits": [],
            },
        ],
        "delinquent": [
            {"votePubkey": "Delinquent111", "rootSlot": 1, "lastVote": 1, "epochCredits": [[661, 5, 0]]},
        ],
    },
}


def make_client(handler) -> SolanaRpcClient:
    return SolanaRpcClient("http://rpc.test", timeout=1.0, transport=httpx.MockTransport(handler))


def test_get_vote_accounts_parses_current_set():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=VOTE_ACCOUNTS)

    client = make_client(handler)
    accounts = client.get_vote_accounts()
    client.close()

    assert accounts == [
        ValidatorVoteState(
            vote_pubkey="3N7s9zXMZ4QqvHQR15t5GNHyqc89KduzMP7423eWiD5g",
            root_slot=290000100,
            last_vote=290000131,
            epoch_credits=((660, 1000, 0), (661, 2500, 1000)),
        ),
        ValidatorVoteState(vote_pubkey="Fresh111", root_slot=0, last_vote=0, epoch_credits=()),
    ]
    assert len(requests) == 1
    assert b'"method":"getVoteAccounts"' in requests[0].content.replace(b" ", b"")


def test_http_error_status_raises():
    client = make_client(lambda request: httpx.Response(503, text="busy"))
    with pytest.raises(RpcError):
        client.get_vote_accounts()


def test_jsonrpc_error_raises():
    body = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"}}
    client = make_client(lambda request: httpx.Response(200, json=body))
    with pytest.raises(RpcError, match="Node is behind"):
        client.get_vote_accounts()


def test_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(RpcError):
        client.get_vote_accounts()


def test_invalid_json_raises():
    client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    with pytest.raises(RpcError):
        client.get_vote_accounts()


def test_malformed_result_raises():
    body = {"jsonrpc": "2.0", "id": 1, "result": {"current": [{"rootSlot": 1}]}}
    client = make_client(lambda request: httpx.Response(200, json=body))
    with pytest.raises(RpcError, match="Malformed"):
        client.get_vote_accounts()
