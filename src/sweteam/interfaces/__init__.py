"""User-facing transports. Telegram and API transports are imported on demand."""
