"""
Browser module for Nano Sentry.

Thin Playwright Chromium wrapper used by the claim session to visit the
faucet page, type the claim address and capture screenshots.

Submodules:
    instance: ``BrowserManager`` class.
"""

from .instance import BrowserManager

__all__ = ["BrowserManager"]
