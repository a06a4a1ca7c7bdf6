from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str  # private, group, supergroup, channel
    title: Optional[str] = None
    username: Optional[str] = None


class TelegramMessage(BaseModel):
    message_id: int
    date: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = None  # "from" is reserved in Python
    text: Optional[str] = None
    reply_to_message: Optional[Any] = None

    model_config = ConfigDict(populate_by_name=True)

    def __init__(self, **data):
        # Handle "from" -> "from_user" mapping
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)

    @property
    def command(self) -> Optional[str]:
        """Bot command without slash or @botname suffix, e.g. "login"."""
        if not self.text or not self.text.startswith("/"):
            return None
        head = self.text.split()[0][1:]
        return head.split("@", 1)[0].lower() or None


class TelegramCallbackQuery(BaseModel):
    id: str
    from_user: TelegramUser
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None  # callback_data from button

    def __init__(self, **data):
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None

    @property
    def sender_id(self) -> Optional[int]:
        if self.callback_query:
            return self.callback_query.from_user.id
        if self.message and self.message.from_user:
            return self.message.from_user.id
        return None

    @property
    def chat_id(self) -> Optional[int]:
        if self.callback_query and self.callback_query.message:
            return self.callback_query.message.chat.id
        if self.message:
            return self.message.chat.id
        return self.sender_id


class TelegramWebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
