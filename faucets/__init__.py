"""
Faucets module for Nano Sentry.

Submodules:
    claim_session: ``ClaimSession`` state machine that funds a temporary
        account, pays the faucet donation, waits for the reward and sweeps
        the result back to the bank wallet.
"""

from .claim_session import ClaimSession, SessionStats, SessionStatus

__all__ = ["ClaimSession", "SessionStats", "SessionStatus"]
