import json
import uuid
from typing import Any, Optional

import httpx

from payout_bot.logging_config import get_logger

logger = get_logger("payments_client")

NETWORK_NAMES = {
    "137": "Polygon",
    "42161": "Arbitrum",
    "8453": "Base",
    "1": "Ethereum",
    "56": "BSC",
    "solana": "Solana",
}


def get_network_name(network_id: Optional[str]) -> str:
    if network_id is None:
        return "Unknown Network"
    return NETWORK_NAMES.get(str(network_id), str(network_id))


class PaymentsAPIError(Exception):
    """Non-2xx response or transport failure from the payments API."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        self.message = message
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401

    @property
    def is_unprocessable(self) -> bool:
        return self.status_code == 422

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class PaymentsClient:
    """Stateless wrapper over the payments REST API. The bearer token is passed per call."""

    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _make_request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.request(method, url, headers=headers, json=json_body, params=params)
        except httpx.HTTPError as e:
            logger.error(f"Payments API transport error on {method} {path}: {e}")
            raise PaymentsAPIError(str(e)) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            message = payload.get("message") if isinstance(payload, dict) else None
            logger.warning(
                "Payments API error",
                extra={
                    "context": {
                        "method": method,
                        "path": path,
                        "status": response.status_code,
                        "details": message,
                    }
                },
            )
            raise PaymentsAPIError(
                str(message or f"HTTP {response.status_code}"),
                status_code=response.status_code,
                payload=payload,
            )

        if not response.content:
            return None
        return response.json()

    # Authentication

    def request_email_otp(self, email: str) -> str:
        """Ask for a one-time code; returns the session id to verify it with."""
        data = self._make_request("POST", "/api/auth/email-otp/request", json_body={"email": email})
        return data["sid"]

    def authenticate_with_otp(self, email: str, otp: str, sid: str) -> tuple[str, Optional[str]]:
        """Exchange a one-time code for (access token, organization id)."""
        data = self._make_request(
            "POST",
            "/api/auth/email-otp/authenticate",
            json_body={"email": email, "otp": otp, "sid": sid},
        )
        token = data.get("accessToken")
        organization_id = (data.get("user") or {}).get("organizationId")
        if not token:
            raise PaymentsAPIError("Authentication response has no access token", payload=data)
        return token, organization_id

    def get_user_profile(self, token: str) -> dict:
        return self._make_request("GET", "/api/auth/me", token=token)

    def get_kyc_status(self, token: str) -> str:
        data = self._make_request("GET", "/api/kycs", token=token)
        records = (data or {}).get("data") or []
        if not records:
            return "none"
        return records[0].get("status", "unknown")

    # Wallets

    def get_wallet_balances(self, token: str) -> list[dict]:
        data = self._make_request("GET", "/api/wallets/balances", token=token) or []
        return [
            {
                "walletId": item.get("walletId"),
                "isDefault": item.get("isDefault"),
                "network": get_network_name(item.get("network")),
                "balances": item.get("balances") or [],
            }
            for item in data
        ]

    def get_wallets(self, token: str) -> list[dict]:
        """Wallets with their USDC balance merged in from the balances endpoint."""
        data = self._make_request("GET", "/api/wallets", token=token)
        wallets = data if isinstance(data, list) else (data or {}).get("data", [])
        balances = self.get_wallet_balances(token)

        result = []
        for wallet in wallets:
            wallet_balance = next((b for b in balances if b["walletId"] == wallet.get("id")), None)
            usdc = "0"
            if wallet_balance:
                usdc = next(
                    (t.get("balance", "0") for t in wallet_balance["balances"] if t.get("symbol") == "USDC"),
                    "0",
                )
            result.append(
                {
                    "id": wallet.get("id"),
                    "organizationId": wallet.get("organizationId"),
                    "walletType": wallet.get("walletType"),
                    "isDefault": wallet.get("isDefault"),
                    "network": get_network_name(wallet.get("network")),
                    "walletAddress": wallet.get("walletAddress"),
                    "balance": usdc,
                }
            )
        return result

    def get_default_wallet(self, token: str) -> dict:
        data = self._make_request("GET", "/api/wallets/default", token=token)
        return {
            "walletId": data.get("walletId"),
            "isDefault": True,
            "network": get_network_name(data.get("network")),
            "balances": data.get("balances") or [],
        }

    def set_default_wallet(self, token: str, wallet_id: str) -> None:
        self._make_request("POST", "/api/wallets/default", token=token, json_body={"walletId": wallet_id})

    # Transfers

    def send_to_email(self, token: str, email: str, amount: str) -> dict:
        return self._make_request(
            "POST",
            "/api/transfers/send",
            token=token,
            json_body={"email": email, "amount": amount, "purposeCode": "self", "currency": "USDC"},
        )

    def send_to_wallet(self, token: str, address: str, amount: str) -> dict:
        return self._make_request(
            "POST",
            "/api/transfers/wallet-withdraw",
            token=token,
            json_body={"walletAddress": address, "amount": amount, "purposeCode": "self", "currency": "USDC"},
        )

    def withdraw_to_wallet(self, token: str, address: str, amount: str, network: str = "Polygon") -> dict:
        return self._make_request(
            "POST",
            "/api/transfers/wallet-withdraw",
            token=token,
            json_body={
                "walletAddress": address,
                "amount": amount,
                "purposeCode": "self",
                "currency": "USDC",
                "network": network,
            },
        )

    def withdraw_to_bank(self, token: str, request: dict) -> dict:
        """Off-ramp to a bank account.

        ``request`` carries amount, invoice data, source of funds and customer
        data; ``quotePayload`` may be a JSON string from a previous quote.
        """
        body = dict(request)
        quote_payload = body.get("quotePayload")
        if isinstance(quote_payload, str):
            body["quotePayload"] = json.loads(quote_payload)
        return self._make_request("POST", "/api/transfers/offramp", token=token, json_body=body)

    def get_offramp_quote(
        self,
        token: str,
        amount: str,
        destination_country: str,
        preferred_bank_account_id: Optional[str] = None,
    ) -> dict:
        body = {
            "amount": amount,
            "currency": "USDC",
            "sourceCountry": "none",
            "destinationCountry": destination_country,
            "onlyRemittance": True,
        }
        if preferred_bank_account_id:
            body["preferredBankAccountId"] = preferred_bank_account_id
        return self._make_request("POST", "/api/quotes/offramp", token=token, json_body=body)

    def send_batch_transfers(self, token: str, transfers: list[dict]) -> dict:
        requests = [
            {
                "requestId": transfer.get("requestId") or str(uuid.uuid4()),
                "request": {
                    "walletAddress": transfer.get("walletAddress"),
                    "email": transfer.get("email"),
                    "amount": transfer["amount"],
                    "purposeCode": "self",
                    "currency": "USDC",
                },
            }
            for transfer in transfers
        ]
        return self._make_request("POST", "/api/transfers/send-batch", token=token, json_body={"requests": requests})

    # Deposits

    def deposit(self, token: str, amount: str, source_of_funds: str, deposit_chain_id: int) -> str:
        """Start a deposit; returns the URL where the user completes it."""
        data = self._make_request(
            "POST",
            "/api/transfers/deposit",
            token=token,
            json_body={"amount": amount, "sourceOfFunds": source_of_funds, "depositChainId": deposit_chain_id},
        )
        transactions = (data or {}).get("transactions") or []
        if not transactions:
            raise PaymentsAPIError("Deposit response has no transactions", payload=data)
        return transactions[0].get("depositUrl")

    # History

    def get_transaction_history(self, token: str, page: int = 1, limit: int = 10) -> list[dict]:
        data = self._make_request("GET", "/api/transfers", token=token, params={"page": page, "limit": limit})
        if isinstance(data, list):
            return data
        return (data or {}).get("data", [])

    def get_accounts(self, token: str) -> Any:
        return self._make_request("GET", "/api/accounts", token=token)

    # Notifications

    def authenticate_realtime(self, token: str, socket_id: str, channel_name: str) -> dict:
        return self._make_request(
            "POST",
            "/api/notifications/auth",
            token=token,
            json_body={"socket_id": socket_id, "channel_name": channel_name},
        )
