"""Exception types raised inside FastAPI Bot Trap.

Callers of the admission pipeline never see these: every stateful check
converts them to its most permissive result at its own boundary.
"""


class BotTrapError(Exception):
    """Base class for all bot trap errors."""


class StoreError(BotTrapError):
    """The key-value store could not complete a read or write."""


class ConfigError(BotTrapError):
    """A configuration file or record could not be parsed."""
