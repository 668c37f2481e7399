"""
Exception hierarchy for the paper trading bot
"""


class PaperBotError(Exception):
    """Base error for the paper trading bot"""


class MarketDataError(PaperBotError):
    """Market data provider unreachable or returned an unusable payload.

    Raised before a tick mutates anything, so the caller can simply retry.
    """


class AccountNotFoundError(PaperBotError):
    """No bot config stored for the requested account"""

    def __init__(self, account_id: str):
        super().__init__(f"No bot config found for account '{account_id}'")
        self.account_id = account_id


class PositionConflictError(PaperBotError):
    """A tick tried to open a position while one is already open, or to
    mutate a position that is no longer open."""


class StoreError(PaperBotError):
    """Persistence layer failed to apply a change"""
