"""Telegram transport built on python-telegram-bot."""

from __future__ import annotations

import logging

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from sweteam.config.schema import TelegramConfig
from sweteam.errors import ConfigurationError
from sweteam.interfaces.base import CommandCallback, InterfaceAdapter, MessageCallback
from sweteam.interfaces.messaging import parse_task_command

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "SWE Team Bot\n"
    "Usage: /task <owner/repo> <description>\n"
    "Commands: /list, /status, /stop <id>"
)

# Telegram rejects messages longer than this.
MAX_MESSAGE_LENGTH = 4096


class TelegramInterface(InterfaceAdapter):
    name = "telegram"

    def __init__(
        self,
        on_task: MessageCallback,
        on_command: CommandCallback | None = None,
        *,
        config: TelegramConfig,
    ) -> None:
        super().__init__(on_task, on_command)
        self.bot_token = config.bot_token
        self.allowed_users = set(config.allowed_users)
        self.app: Application | None = None  # type: ignore[type-arg]

    async def start(self) -> None:
        if not self.bot_token:
            raise ConfigurationError("telegram.bot_token is required for the telegram interface")
        builder = Application.builder()
        builder.token(self.bot_token)
        builder.concurrent_updates(True)
        self.app = builder.build()
        assert self.app.updater is not None

        self.app.add_handler(CommandHandler(["start", "help"], self._handle_help))
        self.app.add_handler(CommandHandler("task", self._handle_task))
        for command in ("list", "status", "stop"):
            self.app.add_handler(CommandHandler(command, self._handle_command))
        self.app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_text_message))

        await self.app.initialize()
        await self.app.start()
        await self.app.updater.start_polling()
        logger.info("Telegram bot polling")

    async def stop(self) -> None:
        if self.app and self.app.updater:
            await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()

    async def _deliver(self, conversation_id: str, text: str) -> None:
        if self.app is None:
            raise RuntimeError("Telegram interface not started")
        for start in range(0, len(text) or 1, MAX_MESSAGE_LENGTH):
            await self.app.bot.send_message(chat_id=int(conversation_id), text=text[start:start + MAX_MESSAGE_LENGTH])

    def is_allowed(self, update: Update) -> bool:
        if not self.allowed_users:
            return True
        user = update.effective_user
        return user is not None and user.id in self.allowed_users

    async def _reply(self, update: Update, text: str) -> None:
        if update.effective_chat is not None:
            await self.send_message(str(update.effective_chat.id), text)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_help(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if self.is_allowed(update):
            await self._reply(update, HELP_TEXT)

    async def _handle_task(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self.is_allowed(update) or update.effective_chat is None:
            return
        parsed = parse_task_command(" ".join(context.args or []))
        if parsed is None:
            await self._reply(update, "Usage: /task <owner/repo> <task description>")
            return
        repo, task = parsed
        await self.on_task(repo, task, str(update.effective_chat.id))

    async def _handle_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not self.is_allowed(update) or message is None or not message.text or update.effective_chat is None:
            return
        command = message.text.lstrip("/").split()[0].split("@")[0].lower()
        reply = await self.run_command(command, list(context.args or []), str(update.effective_chat.id))
        await self._reply(update, reply)

    async def _handle_text_message(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not self.is_allowed(update) or message is None or not message.text or update.effective_chat is None:
            return
        conversation_id = str(update.effective_chat.id)
        # Free text only answers an outstanding question; tasks go through /task.
        if not self.deliver_response(conversation_id, message.text.strip()):
            await self._reply(update, HELP_TEXT)
