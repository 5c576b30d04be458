"""
Core module for Nano Sentry.

Configuration, logging, the event bus, the shared error taxonomy and the
encrypted wallet store used by the CLI and the claim session.

Submodules:
    config: Process settings (``SentrySettings``) and persisted ``SentryConfig``.
    events: ``EventBus`` publish/subscribe hub for log, status and screenshot events.
    exceptions: ``SentryError`` hierarchy shared by every module.
    logging_setup: Compressed rotating file + safe console logging.
    wallet_store: AES-GCM encrypted seed storage (``WalletStore``).
"""
