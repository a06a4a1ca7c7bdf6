import asyncio
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import TYPE_CHECKING, Optional

from payout_bot.logging_config import get_logger
from payout_bot.schemas.session import (
    AwaitingEmail,
    AwaitingOtp,
    CommandType,
    Depositing,
    SessionData,
    TransferStep,
    Transferring,
    TransferType,
)
from payout_bot.services import bot_messages as msg
from payout_bot.services.payments_client import PaymentsAPIError, PaymentsClient
from payout_bot.services.state_machine import transition
from payout_bot.services.telegram_service import TelegramService
from payout_bot.services.validation import (
    MIN_DEPOSIT_AMOUNT,
    MIN_TRANSFER_AMOUNT,
    format_amount,
    from_smallest_unit,
    parse_amount,
    to_smallest_unit,
    validate_email,
    validate_evm_address,
    validate_otp,
)

if TYPE_CHECKING:
    from payout_bot.services.notification_service import SubscriptionRegistry

logger = get_logger("conversation_service")


@dataclass
class ChatContext:
    user_id: int
    chat_id: int
    session: SessionData
    message_id: Optional[int] = None  # message carrying the pressed button
    callback_query_id: Optional[str] = None


def build_bank_withdrawal_request(flow: Transferring) -> dict:
    """Assemble the off-ramp request from the collected bank-flow fields."""
    invoice_number = f"INV-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    return {
        "amount": flow.amount,
        "invoiceNumber": invoice_number,
        "invoiceUrl": f"https://copperx.io/invoice/{invoice_number}",
        "sourceOfFunds": flow.source_of_funds,
        "recipientRelationship": "self",
        "purposeCode": "self",
        "customerData": {
            "name": flow.customer_name,
            "email": flow.customer_email,
            "country": flow.customer_country,
        },
    }


class ConversationRouter:
    """Turns commands, free text and button presses into session changes and replies."""

    def __init__(
        self,
        payments: PaymentsClient,
        telegram: TelegramService,
        relay: Optional["SubscriptionRegistry"] = None,
        deposit_chain_id: int = 1399811149,
    ):
        self.payments = payments
        self.telegram = telegram
        self.relay = relay
        self.deposit_chain_id = deposit_chain_id
        self._commands = {
            "start": self.cmd_start,
            "login": self.cmd_login,
            "help": self.cmd_help,
            "status": self.cmd_status,
            "logout": self.cmd_logout,
            "balance": self.cmd_balance,
            "deposit": self.cmd_deposit,
            "history": self.cmd_history,
            "send": self.cmd_send,
            "withdraw": self.cmd_withdraw,
        }

    async def _call(self, func, *args, **kwargs):
        # Sync httpx clients; keep them off the event loop shared with the relay
        return await asyncio.to_thread(func, *args, **kwargs)

    # Replies

    async def reply(self, ctx: ChatContext, text: str, keyboard: Optional[dict] = None) -> None:
        await self._call(self.telegram.send_message, ctx.chat_id, text, reply_markup=keyboard)

    async def edit_or_reply(self, ctx: ChatContext, text: str, keyboard: Optional[dict] = None) -> None:
        if ctx.message_id:
            result = await self._call(
                self.telegram.edit_message, ctx.chat_id, ctx.message_id, text, reply_markup=keyboard
            )
            if result.get("ok"):
                return
        await self.reply(ctx, text, keyboard)

    # Subscriptions

    async def ensure_subscription(self, ctx: ChatContext) -> None:
        """Open the notification channel for an authenticated session that has none."""
        session = ctx.session
        if not self.relay or not session.can_subscribe:
            return
        if self.relay.is_subscribed(session.organization_id):
            return
        await self._subscribe(ctx)

    async def _subscribe(self, ctx: ChatContext) -> None:
        session = ctx.session
        try:
            await self.relay.subscribe(session.organization_id, ctx.chat_id, session.auth_token)
        except Exception as e:
            logger.error(
                "Failed to subscribe to notifications",
                extra={"context": {"organization_id": session.organization_id, "error": str(e)}},
            )

    async def _unsubscribe(self, ctx: ChatContext) -> None:
        organization_id = ctx.session.organization_id
        if self.relay and organization_id:
            await self.relay.unsubscribe(organization_id)

    # Errors

    async def _handle_api_error(
        self,
        ctx: ChatContext,
        error: Exception,
        failed_message: str,
        invalid_message: Optional[str] = None,
        reset_flow: bool = True,
    ) -> None:
        if isinstance(error, PaymentsAPIError):
            if error.is_unauthorized:
                await self._unsubscribe(ctx)
                ctx.session.clear()
                await self.reply(ctx, msg.SESSION_EXPIRED)
                return
            if error.is_unprocessable and invalid_message:
                await self.reply(ctx, invalid_message)
            elif error.is_rate_limited:
                await self.reply(ctx, msg.RATE_LIMITED)
            else:
                await self.reply(ctx, failed_message)
        else:
            logger.error(f"Unexpected error for user {ctx.user_id}: {error}", exc_info=error)
            await self.reply(ctx, msg.UNEXPECTED_ERROR)

        if reset_flow:
            ctx.session.reset_flow()

    async def _require_auth(self, ctx: ChatContext, command: str) -> bool:
        if ctx.session.is_authenticated:
            return True
        await self.reply(ctx, msg.login_required(command))
        return False

    # Commands

    async def handle_command(self, ctx: ChatContext, command: str) -> bool:
        handler = self._commands.get(command)
        if not handler:
            logger.info(f"Ignoring unknown command /{command}")
            return False
        await handler(ctx)
        return True

    async def cmd_start(self, ctx: ChatContext) -> None:
        await self.reply(ctx, msg.WELCOME)

    async def cmd_help(self, ctx: ChatContext) -> None:
        await self.reply(ctx, msg.HELP_MAIN, msg.build_help_keyboard())

    async def cmd_login(self, ctx: ChatContext) -> None:
        if ctx.session.is_authenticated:
            await self.reply(ctx, msg.ALREADY_LOGGED_IN, msg.build_switch_account_keyboard())
            return
        # A fresh login replaces whatever flow was active
        ctx.session.flow = AwaitingEmail()
        await self.reply(ctx, msg.LOGIN_PROMPT, msg.build_cancel_login_keyboard())

    async def cmd_logout(self, ctx: ChatContext) -> None:
        if not ctx.session.is_authenticated:
            ctx.session.clear()
            await self.reply(ctx, msg.NOT_LOGGED_IN)
            return
        await self._unsubscribe(ctx)
        ctx.session.clear()
        await self.reply(ctx, msg.LOGGED_OUT)

    async def cmd_status(self, ctx: ChatContext) -> None:
        if not await self._require_auth(ctx, "status"):
            return
        try:
            profile = await self._call(self.payments.get_user_profile, ctx.session.auth_token)
            kyc_status = await self._call(self.payments.get_kyc_status, ctx.session.auth_token)
        except Exception as e:
            await self._handle_api_error(
                ctx, e, "❌ Failed to fetch status. Please try again later.", reset_flow=False
            )
            return
        await self.reply(ctx, msg.format_status(profile, kyc_status))

    async def cmd_balance(self, ctx: ChatContext) -> None:
        if not await self._require_auth(ctx, "balance"):
            return
        try:
            wallets = await self._call(self.payments.get_wallets, ctx.session.auth_token)
        except Exception as e:
            await self._handle_api_error(
                ctx, e, "❌ Failed to fetch balances. Please try again later.", reset_flow=False
            )
            return

        if not wallets:
            await self.reply(
                ctx,
                "⚠️ No wallets found in your account. "
                "Please contact support if you believe this is an error.",
            )
            return
        await self.reply(ctx, msg.format_balances(wallets))

    async def cmd_deposit(self, ctx: ChatContext) -> None:
        if not await self._require_auth(ctx, "deposit"):
            return
        await self.reply(ctx, msg.SELECT_SOURCE, msg.build_source_keyboard("deposit_source_"))

    async def cmd_history(self, ctx: ChatContext) -> None:
        if not await self._require_auth(ctx, "history"):
            return
        try:
            transactions = await self._call(self.payments.get_transaction_history, ctx.session.auth_token)
        except Exception as e:
            await self._handle_api_error(
                ctx, e, "Failed to fetch transaction history. Please try again later.", reset_flow=False
            )
            return

        if not transactions:
            await self.reply(ctx, "No recent transactions found.")
            return
        await self.reply(ctx, msg.format_history(transactions))

    async def cmd_send(self, ctx: ChatContext) -> None:
        if not await self._require_auth(ctx, "send"):
            return
        await self.reply(ctx, "How would you like to send funds?", msg.build_send_keyboard())

    async def cmd_withdraw(self, ctx: ChatContext) -> None:
        if not await self._require_auth(ctx, "withdraw"):
            return
        await self.reply(ctx, "How would you like to withdraw your funds?", msg.build_withdraw_keyboard())

    # Buttons

    async def handle_callback(self, ctx: ChatContext, data: str) -> None:
        if ctx.callback_query_id:
            await self._call(self.telegram.answer_callback_query, ctx.callback_query_id)

        if data.startswith("help_"):
            await self._show_help(ctx, data[len("help_") :])
        elif data == "cancel_login":
            if isinstance(ctx.session.flow, (AwaitingEmail, AwaitingOtp)):
                ctx.session.reset_flow()
            await self.edit_or_reply(ctx, msg.LOGIN_CANCELLED)
        elif data == "switch_account":
            await self._unsubscribe(ctx)
            ctx.session.clear()
            ctx.session.flow = AwaitingEmail()
            await self.edit_or_reply(ctx, msg.LOGIN_PROMPT, msg.build_cancel_login_keyboard())
        elif data.startswith("deposit_source_"):
            await self._select_deposit_source(ctx, data[len("deposit_source_") :])
        elif data.startswith("source_"):
            await self._select_bank_source(ctx, data[len("source_") :])
        elif data.startswith("withdraw_network_"):
            await self._select_network(ctx, data[len("withdraw_network_") :], CommandType.WITHDRAW)
        elif data.startswith("network_"):
            await self._select_network(ctx, data[len("network_") :], CommandType.SEND)
        elif data == "send_email":
            if not await self._require_auth(ctx, "send"):
                return
            ctx.session.flow = Transferring(
                transfer_type=TransferType.EMAIL,
                command_type=CommandType.SEND,
                step=TransferStep.RECIPIENT,
            )
            await self.edit_or_reply(ctx, "📧 Please enter the recipient's email address:")
        elif data == "send_wallet":
            if not await self._require_auth(ctx, "send"):
                return
            ctx.session.flow = Transferring(command_type=CommandType.SEND)
            await self.edit_or_reply(
                ctx,
                "🌐 Please select the destination network:",
                msg.build_network_keyboard(msg.SEND_NETWORKS, "network_"),
            )
        elif data == "withdraw_bank":
            if not await self._require_auth(ctx, "withdraw"):
                return
            ctx.session.flow = Transferring(
                transfer_type=TransferType.BANK,
                command_type=CommandType.WITHDRAW,
                step=TransferStep.AMOUNT,
            )
            await self.edit_or_reply(ctx, msg.BANK_WITHDRAWAL_INSTRUCTIONS)
        elif data == "withdraw_wallet":
            if not await self._require_auth(ctx, "withdraw"):
                return
            ctx.session.flow = Transferring(command_type=CommandType.WITHDRAW)
            await self.edit_or_reply(
                ctx,
                "🌐 Please select the destination network:",
                msg.build_network_keyboard(msg.WITHDRAW_NETWORKS, "withdraw_network_"),
            )
        else:
            logger.warning(f"Unknown callback data: {data}")

    async def _show_help(self, ctx: ChatContext, topic: str) -> None:
        if topic in msg.HELP_TOPICS:
            await self.edit_or_reply(ctx, msg.HELP_TOPICS[topic], msg.build_back_to_help_keyboard())
        else:
            await self.edit_or_reply(ctx, msg.HELP_MAIN, msg.build_help_keyboard())

    async def _select_network(self, ctx: ChatContext, network: str, command_type: CommandType) -> None:
        command = command_type.value
        if not await self._require_auth(ctx, command):
            return
        allowed = msg.SEND_NETWORKS if command_type == CommandType.SEND else msg.WITHDRAW_NETWORKS
        if network not in allowed:
            await self.reply(ctx, "Unsupported network. Please start again.")
            ctx.session.reset_flow()
            return

        ctx.session.flow = Transferring(
            transfer_type=TransferType.WALLET,
            command_type=command_type,
            step=TransferStep.ADDRESS,
            network=network,
        )
        if command_type == CommandType.SEND:
            prompt = f"📝 Please enter the recipient's <b>{network}</b> wallet address:"
        else:
            prompt = f"📝 Please enter your external <b>{network}</b> wallet address:"
        await self.edit_or_reply(ctx, prompt)

    async def _select_deposit_source(self, ctx: ChatContext, source: str) -> None:
        if not await self._require_auth(ctx, "deposit"):
            return
        if source not in {value for _, value in msg.SOURCES_OF_FUNDS}:
            await self.reply(ctx, "Unknown source of funds. Please use /deposit again.")
            return
        ctx.session.flow = Depositing(step="amount", source_of_funds=source)
        await self.edit_or_reply(ctx, msg.DEPOSIT_INSTRUCTIONS)

    async def _select_bank_source(self, ctx: ChatContext, source: str) -> None:
        flow = ctx.session.flow
        if (
            not isinstance(flow, Transferring)
            or flow.step != TransferStep.BANK_DETAILS
            or not flow.amount
        ):
            await self.reply(ctx, "Amount not found. Please start the withdrawal process again.")
            return
        if source not in {value for _, value in msg.SOURCES_OF_FUNDS}:
            await self.reply(ctx, "Unknown source of funds. Please select one of the options.")
            return

        flow.source_of_funds = source
        flow.step = transition(flow.step, TransferStep.CUSTOMER_DETAILS)
        await self.edit_or_reply(ctx, msg.ENTER_FULL_NAME)

    # Free text

    async def handle_text(self, ctx: ChatContext, text: str) -> None:
        flow = ctx.session.flow

        if isinstance(flow, AwaitingEmail):
            await self._login_email(ctx, text)
        elif isinstance(flow, AwaitingOtp):
            await self._login_otp(ctx, flow, text)
        elif isinstance(flow, Depositing) and flow.step == "amount" and flow.source_of_funds:
            await self._deposit_amount(ctx, flow, text)
        elif isinstance(flow, Transferring) and flow.step:
            await self._transfer_step(ctx, flow, text)
        elif isinstance(flow, Transferring):
            await self.reply(ctx, "Please select an option using the buttons above.")
        else:
            await self.reply(ctx, "Use /help to see available commands.")

    async def _login_email(self, ctx: ChatContext, text: str) -> None:
        result = validate_email(text)
        if not result.ok:
            await self.reply(ctx, result.error)
            return

        try:
            sid = await self._call(self.payments.request_email_otp, result.value)
        except Exception as e:
            await self._handle_api_error(
                ctx,
                e,
                "Failed to send OTP. Please try again later.",
                invalid_message="Invalid email address. Please check and try again.",
            )
            return

        ctx.session.flow = AwaitingOtp(email=result.value, sid=sid)
        await self.reply(ctx, msg.OTP_PROMPT)

    async def _login_otp(self, ctx: ChatContext, flow: AwaitingOtp, text: str) -> None:
        result = validate_otp(text)
        if not result.ok:
            await self.reply(ctx, result.error)
            return

        try:
            token, organization_id = await self._call(
                self.payments.authenticate_with_otp, flow.email, result.value, flow.sid
            )
        except Exception as e:
            if isinstance(e, PaymentsAPIError) and e.is_unprocessable:
                await self.reply(ctx, "Invalid or expired OTP. Please use /login to request a new one.")
            elif isinstance(e, PaymentsAPIError) and e.is_rate_limited:
                await self.reply(ctx, msg.RATE_LIMITED)
            elif isinstance(e, PaymentsAPIError):
                await self.reply(ctx, "Authentication failed. Please try again later.")
            else:
                logger.error(f"OTP verification failed for user {ctx.user_id}: {e}")
                await self.reply(ctx, msg.UNEXPECTED_ERROR)
            # Forces a fresh /login
            ctx.session.clear()
            return

        ctx.session.auth_token = token
        ctx.session.organization_id = organization_id
        ctx.session.email = flow.email
        ctx.session.reset_flow()
        logger.info(
            "User logged in",
            extra={"context": {"user_id": ctx.user_id, "organization_id": organization_id}},
        )
        await self.reply(ctx, msg.LOGIN_SUCCESS)

        if ctx.session.can_subscribe and self.relay:
            await self._subscribe(ctx)

    async def _deposit_amount(self, ctx: ChatContext, flow: Depositing, text: str) -> None:
        if not await self._require_auth(ctx, "deposit"):
            ctx.session.reset_flow()
            return

        result = parse_amount(text, MIN_DEPOSIT_AMOUNT, "deposit")
        if not result.ok:
            await self.reply(ctx, result.error)
            return

        amount = result.value
        try:
            deposit_url = await self._call(
                self.payments.deposit,
                ctx.session.auth_token,
                to_smallest_unit(amount),
                flow.source_of_funds,
                self.deposit_chain_id,
            )
            await self.reply(
                ctx,
                f"✅ Successfully initiated deposit of {format_amount(amount)} USDC\n\n"
                f"Please complete your deposit at:\n{escape(str(deposit_url))}\n\n"
                "You will receive a notification once the deposit is confirmed.",
            )
        except Exception as e:
            await self._handle_api_error(
                ctx,
                e,
                "Failed to process the deposit. Please try again later.",
                invalid_message="Invalid deposit details. Please check the amount and try again.",
            )
        finally:
            ctx.session.reset_flow()

    async def _transfer_step(self, ctx: ChatContext, flow: Transferring, text: str) -> None:
        if not await self._require_auth(ctx, flow.command_type.value if flow.command_type else "send"):
            ctx.session.reset_flow()
            return

        if flow.step == TransferStep.RECIPIENT:
            result = validate_email(text)
            if not result.ok:
                await self.reply(ctx, result.error)
                return
            flow.recipient = result.value
            flow.step = transition(flow.step, TransferStep.AMOUNT)
            await self.reply(ctx, msg.ENTER_AMOUNT)

        elif flow.step == TransferStep.ADDRESS:
            result = validate_evm_address(text, flow.network or "wallet")
            if not result.ok:
                await self.reply(ctx, result.error)
                return
            flow.address = result.value
            flow.step = transition(flow.step, TransferStep.AMOUNT)
            await self.reply(ctx, msg.ENTER_AMOUNT)

        elif flow.step == TransferStep.AMOUNT:
            await self._transfer_amount(ctx, flow, text)

        elif flow.step == TransferStep.BANK_DETAILS:
            await self.reply(ctx, "Please select your source of funds using the buttons above.")

        elif flow.step == TransferStep.CUSTOMER_DETAILS:
            name = text.strip()
            if not name:
                await self.reply(ctx, msg.ENTER_FULL_NAME)
                return
            flow.customer_name = name
            flow.step = transition(flow.step, TransferStep.CUSTOMER_EMAIL)
            await self.reply(ctx, msg.ENTER_CUSTOMER_EMAIL)

        elif flow.step == TransferStep.CUSTOMER_EMAIL:
            result = validate_email(text)
            if not result.ok:
                await self.reply(ctx, result.error)
                return
            flow.customer_email = result.value
            flow.step = transition(flow.step, TransferStep.CUSTOMER_COUNTRY)
            await self.reply(ctx, msg.ENTER_COUNTRY)

        elif flow.step == TransferStep.CUSTOMER_COUNTRY:
            await self._bank_withdrawal(ctx, flow, text)

    async def _transfer_amount(self, ctx: ChatContext, flow: Transferring, text: str) -> None:
        result = parse_amount(text, MIN_TRANSFER_AMOUNT, "withdrawal")
        if not result.ok:
            await self.reply(ctx, result.error)
            return
        amount = result.value
        token = ctx.session.auth_token

        try:
            wallets = await self._call(self.payments.get_wallets, token)
            default_wallet = next((w for w in wallets if w.get("isDefault")), wallets[0] if wallets else None)
            if not default_wallet or not default_wallet.get("balance"):
                await self.reply(ctx, "Could not fetch your USDC balance. Please try again later.")
                return

            current_balance = Decimal(str(default_wallet["balance"]))
            if amount > current_balance:
                await self.reply(
                    ctx,
                    f"Insufficient balance. Your current USDC balance is {format_amount(current_balance)}",
                )
                return

            smallest = to_smallest_unit(amount)

            if flow.transfer_type == TransferType.BANK:
                flow.amount = smallest
                flow.step = transition(flow.step, TransferStep.BANK_DETAILS)
                await self.reply(ctx, msg.SELECT_SOURCE, msg.build_source_keyboard("source_"))
                return

            if flow.transfer_type == TransferType.EMAIL and flow.recipient:
                await self._call(self.payments.send_to_email, token, flow.recipient, smallest)
                await self.reply(ctx, f"✅ Successfully sent {format_amount(amount)} USDC to {escape(flow.recipient)}")
            elif flow.transfer_type == TransferType.WALLET and flow.address:
                if not flow.network:
                    await self.reply(ctx, "Network not selected. Please try the transfer again.")
                elif flow.command_type == CommandType.WITHDRAW:
                    await self._call(self.payments.withdraw_to_wallet, token, flow.address, smallest, flow.network)
                    await self.reply(
                        ctx,
                        f"✅ Successfully withdrew {format_amount(amount)} USDC to {escape(flow.network)} wallet address: "
                        f"<code>{escape(flow.address)}</code>",
                    )
                else:
                    await self._call(self.payments.send_to_wallet, token, flow.address, smallest)
                    await self.reply(
                        ctx,
                        f"✅ Successfully sent {format_amount(amount)} USDC to {escape(flow.network)} wallet address: "
                        f"<code>{escape(flow.address)}</code>",
                    )
            else:
                await self.reply(ctx, "Transfer details are incomplete. Please start again.")

            ctx.session.reset_flow()
        except Exception as e:
            await self._handle_api_error(
                ctx,
                e,
                "Failed to process the transfer. Please try again later.",
                invalid_message="Invalid transfer details. Please check the amount and recipient details.",
            )

    async def _bank_withdrawal(self, ctx: ChatContext, flow: Transferring, text: str) -> None:
        country = text.strip()
        if not country:
            await self.reply(ctx, msg.ENTER_COUNTRY)
            return
        flow.customer_country = country

        try:
            request = build_bank_withdrawal_request(flow)
            await self._call(self.payments.withdraw_to_bank, ctx.session.auth_token, request)
            amount = format_amount(from_smallest_unit(flow.amount))
            await self.reply(
                ctx,
                f"✅ Successfully initiated bank withdrawal for {amount} USDC\n\n"
                "Processing time: 1-2 business days\n\n"
                "You will receive a notification once the withdrawal is processed.",
            )
        except Exception as e:
            await self._handle_api_error(
                ctx,
                e,
                "Failed to process bank withdrawal. Please try again later.",
                invalid_message="Invalid bank withdrawal details. Please start the withdrawal again.",
            )
        finally:
            ctx.session.reset_flow()
