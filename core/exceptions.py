"""Error taxonomy shared by the wallet toolkit and the claim session.

Every failure surfaced by this package derives from :class:`SentryError` so
callers (the CLI, a dashboard subscriber) can catch one type and report it.
"""


class SentryError(Exception):
    """Base class for all Nano Sentry failures."""


class InvalidInput(SentryError):
    """Bad address, amount, seed or wallet name."""


class AccountUnopened(SentryError):
    """The account has never received funds, so it has no frontier."""


class InsufficientFunds(SentryError):
    """The requested amount exceeds the account balance."""


class RpcError(SentryError):
    """A remote node or work server answered with an error or garbage."""


class Timeout(SentryError):
    """Work generation, a pending wait or a browser step ran out of time."""


class Cancelled(SentryError):
    """The owning session was stopped or paused."""


class RateLimited(SentryError):
    """The faucet told us to come back later."""


class ResourceMissing(SentryError):
    """A wallet, account or page element could not be found."""


class CorruptStore(SentryError):
    """The encrypted wallet file does not decrypt to a valid document."""
