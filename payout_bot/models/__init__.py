from payout_bot.models.bot_session import BotSession

__all__ = ["BotSession"]
