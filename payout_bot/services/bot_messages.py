"""Reply texts and inline keyboards. All texts are Telegram HTML."""

from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Optional

from payout_bot.schemas.notification import DepositNotification
from payout_bot.services.validation import format_amount, from_smallest_unit

COMMUNITY_LINK = '<a href="https://t.me/copperxcommunity/2183">Copperx Community</a>'

SOURCES_OF_FUNDS = [
    ("Salary", "salary"),
    ("Savings", "savings"),
    ("Lottery", "lottery"),
    ("Investment", "investment"),
    ("Loan", "loan"),
    ("Business Income", "business_income"),
    ("Others", "others"),
]

SEND_NETWORKS = ["polygon", "arbitrum", "base"]
WITHDRAW_NETWORKS = ["polygon"]

WELCOME = f"""<b>👋 Welcome to Copperx Payout Bot!</b>

<i>Your all-in-one solution for managing digital assets</i>

🚀 <b>What you can do:</b>
• Manage your Copperx wallet
• Send and receive funds
• Track transactions
• Monitor balances

📱 <b>Getting Started:</b>
1️⃣ Use /login to access your account
2️⃣ Check /help for all available commands

💬 <b>Need Support?</b>
Join our community: {COMMUNITY_LINK}"""

HELP_MAIN = f"""<b>🤖 Copperx Payout Bot Help</b>

<i>Select a category below to learn more:</i>

🔐 <b>Authentication</b>
• /login - Login to your account
• /logout - Logout from your account
• /status - Check your KYC/KYB status

💰 <b>Wallet</b>
• /balance - View your wallet balances
• /deposit - Get deposit instructions

💸 <b>Transfer</b>
• /send - Send funds to email or wallet
• /withdraw - Withdraw funds to bank account

📊 <b>History</b>
• /history - View transaction history

❓ <b>Support</b>
Need help? Visit our community: {COMMUNITY_LINK}

<i>For security, never share your password or sensitive information.</i>"""

HELP_TOPICS = {
    "auth": """<b>🔐 Authentication Commands</b>

• <b>/login</b> - Login with your email and a verification code
• <b>/logout</b> - End your session and clear temporary data
• <b>/status</b> - Check your KYC/KYB status and account details""",
    "wallet": """<b>💰 Wallet Commands</b>

• <b>/balance</b> - View USDC balances across your wallets
• <b>/deposit</b> - Start a deposit and get a payment link""",
    "transfer": """<b>💸 Transfer Commands</b>

• <b>/send</b> - Send funds to an email or a wallet address
• <b>/withdraw</b> - Withdraw to a bank account or an external wallet""",
    "history": """<b>📊 Transaction History</b>

• <b>/history</b> - See your most recent transfers, deposits and withdrawals""",
    "support": f"""<b>❓ Support & Help</b>

• <b>Community Support</b>
  Join our Telegram community: {COMMUNITY_LINK}

• <b>Security Tips</b>
  - Never share your password
  - Keep your email secure""",
}

LOGIN_PROMPT = (
    "🔐 <b>Login to Your Account</b>\n\n"
    "Please enter your email address to continue.\n"
    "We'll send you a verification code."
)
ALREADY_LOGGED_IN = (
    "✅ <b>Already Logged In</b>\n\n"
    "To login with a different account, you can:\n"
    "1️⃣ Use /logout first, or\n"
    "2️⃣ Click the button below to switch accounts"
)
OTP_PROMPT = "Please enter the OTP sent to your email. The OTP is valid for 5 minutes."
LOGIN_SUCCESS = "Successfully logged in! 🎉\nUse /help to see available commands."
LOGIN_CANCELLED = "Login cancelled."
LOGGED_OUT = "✅ Successfully logged out."
NOT_LOGGED_IN = "⚠️ You are not logged in."
SESSION_EXPIRED = "⚠️ Your session has expired. Please /login again."
RATE_LIMITED = "Too many attempts. Please wait a few minutes before trying again."
UNEXPECTED_ERROR = "An unexpected error occurred. Please try again later."

LOGIN_REQUIRED = {
    "status": "⚠️ Please /login first to check your status.",
    "balance": "⚠️ Please /login first to check your balance.",
    "deposit": "Please /login first to make a deposit.",
    "history": "Please /login first to view your transaction history.",
    "send": "Please /login first to send funds.",
    "withdraw": "Please /login first to withdraw funds.",
}

ENTER_AMOUNT = "Please enter the amount to send (in USDC):"
SELECT_SOURCE = "Please select your source of funds:"
ENTER_FULL_NAME = "Please enter your full name:"
ENTER_CUSTOMER_EMAIL = "Please enter your email address:"
ENTER_COUNTRY = "Please enter your country of residence:"

BANK_WITHDRAWAL_INSTRUCTIONS = """<b>Bank Withdrawal Instructions</b> 🏦

Please enter the amount you want to withdraw (in USDC).
Minimum withdrawal amount: 100 USDC
Processing time: 1-2 business days

<i>Note: You will need to provide additional details in the next steps.</i>"""

DEPOSIT_INSTRUCTIONS = """<b>Deposit Instructions</b> 💳

Please enter the amount you want to deposit (in USDC).
Minimum deposit: 1 USDC"""


def _button(text: str, callback_data: str) -> dict:
    return {"text": text, "callback_data": callback_data}


def _rows(buttons: list[dict], per_row: int = 2) -> list[list[dict]]:
    return [buttons[i : i + per_row] for i in range(0, len(buttons), per_row)]


def build_help_keyboard() -> dict:
    return {
        "inline_keyboard": [
            [_button("🔐 Authentication", "help_auth"), _button("💰 Wallet", "help_wallet")],
            [_button("💸 Transfer", "help_transfer"), _button("📊 History", "help_history")],
            [_button("❓ Support", "help_support")],
        ]
    }


def build_back_to_help_keyboard() -> dict:
    return {"inline_keyboard": [[_button("⬅️ Back to Main Menu", "help_main")]]}


def build_cancel_login_keyboard() -> dict:
    return {"inline_keyboard": [[_button("❌ Cancel Login", "cancel_login")]]}


def build_switch_account_keyboard() -> dict:
    return {"inline_keyboard": [[_button("🔄 Switch Account", "switch_account")]]}


def build_send_keyboard() -> dict:
    return {
        "inline_keyboard": [
            [_button("Send to Email", "send_email")],
            [_button("Send to Wallet", "send_wallet")],
        ]
    }


def build_withdraw_keyboard() -> dict:
    return {
        "inline_keyboard": [
            [_button("Withdraw to Bank", "withdraw_bank")],
            [_button("Withdraw to External Wallet", "withdraw_wallet")],
        ]
    }


def build_network_keyboard(networks: list[str], prefix: str) -> dict:
    buttons = [_button(name.capitalize(), f"{prefix}{name}") for name in networks]
    return {"inline_keyboard": [[buttons[0]]] + _rows(buttons[1:])}


def build_source_keyboard(prefix: str) -> dict:
    """Source-of-funds buttons; prefix is "deposit_source_" or "source_"."""
    buttons = [_button(label, f"{prefix}{value}") for label, value in SOURCES_OF_FUNDS]
    return {"inline_keyboard": _rows(buttons)}


def login_required(command: str) -> str:
    return LOGIN_REQUIRED.get(command, "Please /login first.")


def transaction_emoji(tx_type: Optional[str]) -> str:
    return {
        "deposit": "⬇️",
        "withdrawal": "⬆️",
        "withdraw": "⬆️",
        "transfer": "↔️",
        "send": "↔️",
    }.get((tx_type or "").lower(), "💱")


def _format_time(value: Optional[str]) -> str:
    if not value:
        return "unknown"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return escape(value)
    return parsed.strftime("%Y-%m-%d %H:%M UTC") if parsed.tzinfo else parsed.strftime("%Y-%m-%d %H:%M")


def format_status(profile: dict, kyc_status: str) -> str:
    name = f"{profile.get('firstName') or ''} {profile.get('lastName') or ''}".strip() or "Not set"
    lines = [
        "👤 <b>Account Details</b>",
        "",
        f"Name: {escape(name)}",
        f"Email: {escape(str(profile.get('email') or 'Not set'))}",
        f"Account Type: {escape(str(profile.get('type') or 'Not set'))}",
        f"Role: {escape(str(profile.get('role') or 'Not set'))}",
        f"KYC Status: {escape(kyc_status)}",
        "",
        "🏦 <b>Wallet Information</b>",
        f"Wallet Address: {escape(str(profile.get('walletAddress') or 'Not set'))}",
        f"Account Type: {escape(str(profile.get('walletAccountType') or 'Not set'))}",
    ]
    if profile.get("relayerAddress"):
        lines.append(f"Relayer Address: {escape(profile['relayerAddress'])}")
    lines.append("")
    if kyc_status != "approved":
        lines.append("⚠️ Please complete KYC on the Copperx platform to enable all features.")
    else:
        lines.append("✅ Account fully verified")
    return "\n".join(lines)


def format_balances(wallets: list[dict]) -> str:
    blocks = []
    for wallet in wallets:
        balance = format_amount(Decimal(str(wallet.get("balance") or "0")))
        network = escape(wallet.get("network") or "Unknown Network")
        icon = "✅" if wallet.get("isDefault") else "💰"
        block = f"{icon} <b>{network}</b>\nBalance: <b>{balance} USDC</b>"
        if wallet.get("isDefault"):
            block += "\n<i>Default wallet</i>"
        blocks.append(block)

    body = "\n\n".join(blocks)
    return f"<b>Your Wallet Balances</b> 🏦\n{body}\n\nUse /deposit to get deposit instructions."


def format_history(transactions: list[dict]) -> str:
    entries = []
    for tx in transactions:
        tx_type = tx.get("type") or "unknown"
        amount = format_amount(from_smallest_unit(tx.get("amount") or "0"))
        lines = [
            f"{transaction_emoji(tx_type)} <b>{escape(tx_type.upper())}</b>",
            f"Amount: {amount} USDC",
            f"Status: {escape(str(tx.get('status') or 'unknown'))}",
        ]
        destination = tx.get("destinationAccount") or {}
        if destination.get("walletAddress"):
            lines.append(f"Recipient: <code>{escape(destination['walletAddress'])}</code>")
        lines.append(f"Date: {_format_time(tx.get('createdAt'))}")
        entries.append("\n".join(lines))

    return "<b>Recent Transactions</b> 📊\n\n" + "\n\n".join(entries)


def format_deposit_notification(notification: DepositNotification) -> str:
    amount = format_amount(from_smallest_unit(notification.amount))
    timestamp = notification.timestamp.strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    return (
        "💰 <b>New Deposit Received</b>\n\n"
        f"Amount: <b>{amount} USDC</b>\n"
        f"Network: <b>{escape(notification.network)}</b>\n"
        f"Status: <b>{escape(notification.status)}</b>\n"
        f"Time: {timestamp}\n"
        f"Transaction ID: <code>{escape(notification.transaction_id)}</code>"
    )
