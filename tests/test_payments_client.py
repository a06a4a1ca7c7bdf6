import json

import httpx
import pytest

from payout_bot.services.payments_client import PaymentsAPIError, PaymentsClient, get_network_name

BASE_URL = "https://payments.test"


def make_client(handler):
    return PaymentsClient(BASE_URL, transport=httpx.MockTransport(handler))


class Recorder:
    """MockTransport handler that answers by path and keeps the requests."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


class TestNetworkNames:
    def test_known_ids(self):
        assert get_network_name("137") == "Polygon"
        assert get_network_name(8453) == "Base"

    def test_unknown_passthrough(self):
        assert get_network_name("999") == "999"
        assert get_network_name(None) == "Unknown Network"


class TestAuthentication:
    def test_request_otp(self):
        recorder = Recorder({("POST", "/api/auth/email-otp/request"): (200, {"sid": "sid-1"})})
        assert make_client(recorder).request_email_otp("me@example.com") == "sid-1"
        assert recorder.body() == {"email": "me@example.com"}
        assert "authorization" not in recorder.requests[0].headers

    def test_authenticate(self):
        recorder = Recorder(
            {
                ("POST", "/api/auth/email-otp/authenticate"): (
                    200,
                    {"accessToken": "tok", "user": {"organizationId": "org-1"}},
                )
            }
        )
        token, organization_id = make_client(recorder).authenticate_with_otp("me@example.com", "123456", "sid-1")
        assert (token, organization_id) == ("tok", "org-1")
        assert recorder.body() == {"email": "me@example.com", "otp": "123456", "sid": "sid-1"}

    def test_authenticate_without_token_fails(self):
        recorder = Recorder({("POST", "/api/auth/email-otp/authenticate"): (200, {"user": {}})})
        with pytest.raises(PaymentsAPIError):
            make_client(recorder).authenticate_with_otp("me@example.com", "123456", "sid-1")

    def test_kyc_status(self):
        recorder = Recorder({("GET", "/api/kycs"): (200, {"data": [{"status": "approved"}]})})
        assert make_client(recorder).get_kyc_status("tok") == "approved"
        assert recorder.requests[0].headers["authorization"] == "Bearer tok"


class TestErrors:
    @pytest.mark.parametrize(
        "status,flag",
        [(401, "is_unauthorized"), (422, "is_unprocessable"), (429, "is_rate_limited")],
    )
    def test_status_flags(self, status, flag):
        recorder = Recorder({("GET", "/api/auth/me"): (status, {"message": "nope"})})
        with pytest.raises(PaymentsAPIError) as exc:
            make_client(recorder).get_user_profile("tok")
        assert exc.value.status_code == status
        assert getattr(exc.value, flag) is True
        assert exc.value.message == "nope"

    def test_server_error_without_message(self):
        recorder = Recorder({("GET", "/api/auth/me"): (500, {})})
        with pytest.raises(PaymentsAPIError) as exc:
            make_client(recorder).get_user_profile("tok")
        assert str(exc.value) == "HTTP 500"
        assert not exc.value.is_unauthorized

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PaymentsAPIError) as exc:
            make_client(handler).get_user_profile("tok")
        assert exc.value.status_code is None


class TestWallets:
    def test_wallets_merge_usdc_balance(self):
        recorder = Recorder(
            {
                ("GET", "/api/wallets"): (
                    200,
                    [
                        {"id": "w1", "isDefault": True, "network": "137", "walletAddress": "0xabc"},
                        {"id": "w2", "isDefault": False, "network": "8453"},
                    ],
                ),
                ("GET", "/api/wallets/balances"): (
                    200,
                    [
                        {
                            "walletId": "w1",
                            "isDefault": True,
                            "network": "137",
                            "balances": [{"symbol": "USDC", "balance": "250.5"}],
                        }
                    ],
                ),
            }
        )
        wallets = make_client(recorder).get_wallets("tok")
        assert wallets[0]["network"] == "Polygon"
        assert wallets[0]["balance"] == "250.5"
        assert wallets[1]["network"] == "Base"
        assert wallets[1]["balance"] == "0"


class TestTransfers:
    def test_send_to_email(self):
        recorder = Recorder({("POST", "/api/transfers/send"): (200, {"id": "t1"})})
        make_client(recorder).send_to_email("tok", "friend@example.com", "10000000000")
        assert recorder.body() == {
            "email": "friend@example.com",
            "amount": "10000000000",
            "purposeCode": "self",
            "currency": "USDC",
        }

    def test_withdraw_to_wallet_carries_network(self):
        recorder = Recorder({("POST", "/api/transfers/wallet-withdraw"): (200, {"id": "t2"})})
        make_client(recorder).withdraw_to_wallet("tok", "0xabc", "10000000000", "polygon")
        assert recorder.body()["network"] == "polygon"

    def test_withdraw_to_bank_parses_quote_payload(self):
        recorder = Recorder({("POST", "/api/transfers/offramp"): (200, {"id": "t3"})})
        make_client(recorder).withdraw_to_bank(
            "tok", {"amount": "10000000000", "quotePayload": '{"rate": "1.0"}', "quoteSignature": "sig"}
        )
        assert recorder.body()["quotePayload"] == {"rate": "1.0"}
        assert recorder.body()["quoteSignature"] == "sig"

    def test_batch_assigns_request_ids(self):
        recorder = Recorder({("POST", "/api/transfers/send-batch"): (200, {"responses": []})})
        make_client(recorder).send_batch_transfers(
            "tok", [{"email": "a@b.co", "amount": "1"}, {"requestId": "r2", "walletAddress": "0x1", "amount": "2"}]
        )
        requests = recorder.body()["requests"]
        assert requests[0]["requestId"]
        assert requests[1]["requestId"] == "r2"
        assert requests[1]["request"]["walletAddress"] == "0x1"


class TestDeposit:
    def test_returns_deposit_url(self):
        recorder = Recorder(
            {("POST", "/api/transfers/deposit"): (200, {"transactions": [{"depositUrl": "https://pay/abc"}]})}
        )
        url = make_client(recorder).deposit("tok", "5000000000", "salary", 1399811149)
        assert url == "https://pay/abc"
        assert recorder.body() == {"amount": "5000000000", "sourceOfFunds": "salary", "depositChainId": 1399811149}

    def test_no_transactions_is_error(self):
        recorder = Recorder({("POST", "/api/transfers/deposit"): (200, {"transactions": []})})
        with pytest.raises(PaymentsAPIError):
            make_client(recorder).deposit("tok", "5000000000", "salary", 1399811149)


class TestHistoryAndRealtime:
    def test_history_paging(self):
        recorder = Recorder({("GET", "/api/transfers"): (200, {"data": [{"id": "t1"}]})})
        assert make_client(recorder).get_transaction_history("tok") == [{"id": "t1"}]
        assert recorder.requests[0].url.params["limit"] == "10"

    def test_realtime_auth(self):
        recorder = Recorder({("POST", "/api/notifications/auth"): (200, {"auth": "key:sig"})})
        assert make_client(recorder).authenticate_realtime("tok", "1.2", "private-org-1") == {"auth": "key:sig"}
        assert recorder.body() == {"socket_id": "1.2", "channel_name": "private-org-1"}
