"""Claim session: one faucet claim driven end to end.

The workflow creates a throwaway claim account, enters its address on the
faucet page, funds it from the bank wallet with the donation the page asks
for, pays the donation, waits for the faucet's reward and sweeps everything
back to the bank.  Each step is a :class:`SessionStatus` checkpoint that is
logged and published on the event bus.

Sessions never restart themselves.  A rate-limit page ends the session and
sets the next allowed claim time; the operator starts the next run.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from browser.instance import ADDRESS_INPUT_SELECTOR, BrowserManager
from core.config import SentryConfig, SentrySettings
from core.events import SCREENSHOT, STATUS, Event, EventBus
from core.exceptions import (
    Cancelled,
    InsufficientFunds,
    InvalidInput,
    RateLimited,
    ResourceMissing,
    SentryError,
    Timeout,
)
from core.wallet_store import WalletStore
from nano import keys
from nano.accounts import AccountEngine
from nano.rpc import PendingBlock
from nano.units import from_raw, to_raw

logger = logging.getLogger(__name__)

RATE_LIMIT_PHRASES = (
    "come back tomorrow",
    "already claimed",
    "try again later",
    "wait 24 hours",
    "exceeded limit",
    "too many requests",
    "rate limit",
    "quota exceeded",
    "daily limit",
)

DONATION_PATTERNS = (
    re.compile(r"Send\s*(\d+(?:\.\d+)?)\s*XNO", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)\s*XNO\s*to\s*donation", re.IGNORECASE),
    re.compile(r"send\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
)

CLAIM_BUTTON_LABELS = ("get free", "claim")


class SessionStatus(str, Enum):
    """Checkpoints of the claim workflow, in happy-path order."""

    IDLE = "idle"
    STARTING = "starting"
    CREATING_TEMP_WALLET = "creating_temp_wallet"
    LAUNCHING_BROWSER = "launching_browser"
    NAVIGATING = "navigating"
    ENTERING_ADDRESS = "entering_address"
    CLICKING_CLAIM = "clicking_claim"
    EXTRACTING_DONATION = "extracting_donation"
    FUNDING_CLAIM_WALLET = "funding_claim_wallet"
    RECEIVING_TO_CLAIM = "receiving_to_claim"
    SENDING_DONATION = "sending_donation"
    WAITING_REWARD = "waiting_reward"
    RECEIVING_REWARD = "receiving_reward"
    SENDING_TO_BANK = "sending_to_bank"
    RECEIVING_TO_BANK = "receiving_to_bank"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    PAUSED = "paused"


@dataclass
class PageCheck:
    rate_limited: bool = False
    donation: Optional[str] = None


def classify_page(text: str, html: str = "") -> PageCheck:
    """Inspect rendered faucet page text.

    Rate-limit phrases win over a donation amount found elsewhere on the
    same page.
    """
    lowered = (text or "").lower()
    if any(phrase in lowered for phrase in RATE_LIMIT_PHRASES):
        return PageCheck(rate_limited=True)
    for source in (html, text):
        for pattern in DONATION_PATTERNS:
            match = pattern.search(source or "")
            if match:
                return PageCheck(donation=match.group(1))
    return PageCheck()


def compute_net_reward(donation_raw: int, rewards: Sequence[PendingBlock]) -> int:
    """Sum every reward block (faucets may pay in several) minus the donation."""
    return sum(block.amount for block in rewards) - donation_raw


@dataclass
class SessionStats:
    status: SessionStatus = SessionStatus.IDLE
    temp_claim_address: Optional[str] = None
    last_donation_sent: Optional[datetime] = None
    last_reward_received: Optional[datetime] = None
    next_claim_available: Optional[datetime] = None
    total_claims: int = 0
    total_rewards_raw: int = 0
    consecutive_sessions: int = 0

    def record_claim(self, net_raw: int) -> bool:
        """Count a finished claim; only a positive net adds to rewards.

        Returns:
            True when the claim was profitable.
        """
        self.total_claims += 1
        if net_raw > 0:
            self.total_rewards_raw += net_raw
            return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "status": self.status.value,
            "temp_claim_address": self.temp_claim_address,
            "last_donation_sent": iso(self.last_donation_sent),
            "last_reward_received": iso(self.last_reward_received),
            "next_claim_available": iso(self.next_claim_available),
            "total_claims": self.total_claims,
            "total_rewards": from_raw(self.total_rewards_raw),
            "consecutive_sessions": self.consecutive_sessions,
        }


@dataclass
class ClaimTimings:
    """Fixed waits and bounds of the workflow, in seconds."""

    page_settle: float = 3.0
    after_type: float = 1.0
    after_click: float = 2.0
    donation_wait: float = 60.0
    donation_poll: float = 2.0
    funding_delay: float = 5.0
    funding_attempts: int = 30
    funding_poll: float = 2.0
    bank_receive_delay: float = 3.0


class ClaimSession:
    """Runs the claim workflow for the operator's bank wallet.

    Args:
        settings: Process settings (endpoints, faucet URL, wait bounds).
        config: Operator config (bank wallet, connection, interval).
        store: Wallet store holding the bank wallet.
        engine: Account engine shared with anything else touching the bank.
        events: Bus that receives every log line and status change.
        browser_factory: Builds an unlaunched browser; defaults to
            :class:`BrowserManager` from settings and config.
        timings: Override of the workflow waits.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        settings: SentrySettings,
        config: SentryConfig,
        store: WalletStore,
        engine: AccountEngine,
        events: EventBus,
        browser_factory: Optional[Callable[[], Any]] = None,
        timings: Optional[ClaimTimings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.config = config
        self.store = store
        self.engine = engine
        self.events = events
        self.browser_factory = browser_factory or self._default_browser
        self.timings = timings or ClaimTimings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.stats = SessionStats(next_claim_available=config.next_claim_available)
        self.browser: Optional[Any] = None
        self.claim_account: Optional[keys.Account] = None
        self.is_running = False
        self.is_paused = False
        self._stop_requested = False
        self._status_before_pause: Optional[SessionStatus] = None
        self._task: Optional[asyncio.Task] = None

    def _default_browser(self) -> BrowserManager:
        proxy_url = self.config.proxy_url if self.config.connection_type == "proxy" else None
        return BrowserManager(
            headless=self.settings.headless,
            timeout=self.settings.timeout,
            proxy_url=proxy_url,
            user_agent=self.settings.user_agent,
        )

    # ------------------------------------------------------------------
    # Status & logging
    # ------------------------------------------------------------------
    def log(self, level: str, message: str) -> None:
        self.events.log("faucet", level, message, logger)

    def get_status(self) -> Dict[str, Any]:
        status = self.stats.to_dict()
        status.update({
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "bank_wallet": self.config.bank_wallet_name,
            "connection_type": self.config.connection_type,
        })
        return status

    def _emit_status(self) -> None:
        self.events.publish(Event(kind=STATUS, source="faucet", payload=self.get_status()))

    def _set_status(self, status: SessionStatus) -> None:
        self.stats.status = status
        self._emit_status()

    def _enter(self, status: SessionStatus) -> None:
        """Advance to *status*; the stop flag is honoured at every checkpoint."""
        if self._stop_requested:
            raise Cancelled("Session stopped")
        if self.is_paused:
            self._status_before_pause = status
            return
        self._set_status(status)

    async def _screenshot(self, label: str) -> None:
        if self.browser is None:
            return
        try:
            image = await self.browser.screenshot()
        except Exception as e:
            self.log("warning", f"Failed to take screenshot: {e}")
            return
        self.events.publish(Event(kind=SCREENSHOT, source="faucet", message=label,
                                  payload={"image": image}))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _claim_slot(self) -> keys.Account:
        """Mark the session running before the first await, then run preflight.

        The flag is released again when preflight fails.
        """
        if self.is_running:
            raise InvalidInput("Session already running")
        self.is_running = True
        try:
            return await self._preflight()
        except BaseException:
            self.is_running = False
            raise

    async def _preflight(self) -> keys.Account:
        if not self.config.bank_wallet_name:
            raise ResourceMissing("No bank wallet configured")

        now = self.clock()
        if self.stats.next_claim_available and now < self.stats.next_claim_available:
            raise RateLimited(
                f"Next claim available at {self.stats.next_claim_available.isoformat()}"
            )

        bank = self.store.get_account(self.config.bank_wallet_name)
        state = await self.engine.get_account_state(bank.address)
        minimum = to_raw(self.settings.min_bank_balance)
        if state.balance < minimum:
            raise InsufficientFunds(f"Bank wallet needs at least {self.settings.min_bank_balance} NANO")
        return bank

    async def start(self) -> asyncio.Task:
        """Validate preconditions and run the workflow in the background.

        Failures of the background run end up in :attr:`stats` and the event
        log; use :meth:`run_once` to have them raised instead.
        """
        bank = await self._claim_slot()
        self._task = asyncio.create_task(self._run_background(bank))
        return self._task

    async def _run_background(self, bank: keys.Account) -> None:
        try:
            await self._run(bank)
        except Exception as e:
            logger.debug(f"Background claim run ended with {type(e).__name__}: {e}")

    async def run_once(self) -> int:
        """Run one claim inline and return its net reward in raw units."""
        bank = await self._claim_slot()
        return await self._run(bank)

    def pause(self) -> bool:
        """Toggle pause; a paused session aborts its reward wait."""
        if not self.is_running:
            raise InvalidInput("No session running")
        self.is_paused = not self.is_paused
        if self.is_paused:
            self._status_before_pause = self.stats.status
            self._set_status(SessionStatus.PAUSED)
            self.log("info", "Session paused")
        else:
            self._set_status(self._status_before_pause or SessionStatus.STARTING)
            self.log("info", "Session resumed")
        return self.is_paused

    async def stop(self) -> None:
        self.log("info", "Stopping claim session...")
        self._stop_requested = True
        self.is_paused = False
        self._discard_claim_account()
        await self._close_browser()
        self.is_running = False
        self._set_status(SessionStatus.STOPPED)

    def _should_abort_wait(self) -> bool:
        return self._stop_requested or self.is_paused

    def _discard_claim_account(self) -> None:
        if self.claim_account:
            self.log("info", f"Deleting temporary claim wallet: {self.claim_account.address[:20]}...")
        self.claim_account = None
        self.stats.temp_claim_address = None

    async def _close_browser(self) -> None:
        browser, self.browser = self.browser, None
        if browser is not None:
            await browser.close()

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------
    async def _run(self, bank: keys.Account) -> int:
        self.is_running = True
        self.is_paused = False
        self._stop_requested = False
        self._set_status(SessionStatus.STARTING)
        try:
            net = await self._claim(bank)
        except Cancelled as e:
            self.log("warning", f"Claim session cancelled: {e}")
            if not self._stop_requested:
                self._set_status(SessionStatus.PAUSED if self.is_paused else SessionStatus.FAILED)
            raise
        except RateLimited as e:
            self.stats.next_claim_available = self.clock() + timedelta(hours=self.config.claim_interval_hours)
            self.log("warning", f"{e}. Next claim at {self.stats.next_claim_available.isoformat()}")
            self._set_status(SessionStatus.FAILED)
            raise
        except Exception as e:
            self.log("error", f"Claim process error: {e}")
            if not self._stop_requested:
                self._set_status(SessionStatus.FAILED)
            raise
        finally:
            self._discard_claim_account()
            await self._close_browser()
            self.is_running = False
            self.is_paused = False
            self.config.next_claim_available = self.stats.next_claim_available

        self._set_status(SessionStatus.COMPLETED)
        self.log("info", "Session completed. Start a new session manually when the faucet allows it.")
        return net

    async def _claim(self, bank: keys.Account) -> int:
        t = self.timings

        self._enter(SessionStatus.CREATING_TEMP_WALLET)
        claim = keys.derive_account(keys.generate_seed(), 0)
        self.claim_account = claim
        self.stats.temp_claim_address = claim.address
        self.log("success", f"Created temporary claim wallet: {claim.address[:20]}...")

        self._enter(SessionStatus.LAUNCHING_BROWSER)
        self.browser = self.browser_factory()
        await self.browser.launch()

        self._enter(SessionStatus.NAVIGATING)
        self.log("action", "Navigating to faucet...")
        await self.browser.navigate(self.settings.faucet_url)
        await asyncio.sleep(t.page_settle)
        await self._screenshot("Faucet page loaded")

        self._enter(SessionStatus.ENTERING_ADDRESS)
        self.log("action", "Entering claim wallet address...")
        await self.browser.type_into(ADDRESS_INPUT_SELECTOR, claim.address)
        await asyncio.sleep(t.after_type)
        await self._screenshot("Address entered")

        self._enter(SessionStatus.CLICKING_CLAIM)
        self.log("action", "Clicking claim button...")
        await self.browser.click_button_with_text(CLAIM_BUTTON_LABELS)
        await self.browser.wait_for_settle()
        await asyncio.sleep(t.after_click)
        await self._screenshot("After clicking claim")

        self._enter(SessionStatus.EXTRACTING_DONATION)
        donation = await self._extract_donation()
        donation_raw = to_raw(donation)
        if donation_raw <= 0:
            raise InvalidInput(f"Faucet asked for a non-positive donation: {donation}")
        self.log("success", f"Donation amount required: {donation} NANO")

        self._enter(SessionStatus.FUNDING_CLAIM_WALLET)
        self.log("action", f"Sending {donation} NANO from Bank to Claim wallet...")
        await self.engine.send(bank, claim.address, donation_raw)
        self.stats.last_donation_sent = self.clock()

        self._enter(SessionStatus.RECEIVING_TO_CLAIM)
        await self._receive_funding(claim)

        self._enter(SessionStatus.SENDING_DONATION)
        donation_address = self.settings.faucet_donation_address
        self.log("action", f"Sending donation to faucet: {donation_address[:20]}...")
        await self.engine.send(claim, donation_address, donation_raw)
        await self._screenshot("Donation sent")

        self._enter(SessionStatus.WAITING_REWARD)
        self.log("action", "Waiting for faucet reward (this may take up to 30 minutes)...")
        rewards = await self.engine.wait_for_pending(
            claim.address,
            timeout=self.settings.reward_timeout_seconds,
            poll_interval=self.settings.reward_poll_interval_seconds,
            is_cancelled=self._should_abort_wait,
        )

        self._enter(SessionStatus.RECEIVING_REWARD)
        self.stats.last_reward_received = self.clock()
        reward_total = sum(block.amount for block in rewards)
        self.log("success", f"Reward received! {len(rewards)} block(s), {from_raw(reward_total)} NANO")
        await self.engine.receive_all(claim)

        self._enter(SessionStatus.SENDING_TO_BANK)
        state = await self.engine.get_account_state(claim.address)
        if state.balance > 0:
            self.log("action", f"Sending {from_raw(state.balance)} NANO to Bank wallet...")
            await self.engine.send(claim, bank.address, state.balance)
        else:
            self.log("warning", "Claim wallet is empty, nothing to sweep")

        self._enter(SessionStatus.RECEIVING_TO_BANK)
        await asyncio.sleep(t.bank_receive_delay)
        try:
            summary = await self.engine.receive_all(bank)
            if summary.count:
                self.log("success", f"Bank wallet received {summary.count} transaction(s)")
        except SentryError as e:
            # the sweep already left the claim account; the bank can pocket it later
            self.log("warning", f"Bank wallet receive failed: {e}")

        net = compute_net_reward(donation_raw, rewards)
        if self.stats.record_claim(net):
            self.log("success", f"Claim session completed! Net reward: {from_raw(net)} NANO")
        else:
            self.log("warning", f"Claim completed but net reward is -{from_raw(-net)} NANO (not profitable)")
        self.stats.next_claim_available = self.clock() + timedelta(hours=self.config.claim_interval_hours)
        self.stats.consecutive_sessions += 1
        return net

    async def _extract_donation(self) -> str:
        t = self.timings
        self.log("action", "Waiting for donation amount to load...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + t.donation_wait

        while True:
            try:
                text = await self.browser.page_text()
                html = await self.browser.page_content()
            except SentryError:
                raise
            except Exception as e:
                self.log("warning", f"Page check error: {str(e)[:50]}")
            else:
                check = classify_page(text, html)
                if check.rate_limited:
                    await self._screenshot("Rate limit detected")
                    raise RateLimited("Rate limit reached - the faucet asks to come back later")
                if check.donation:
                    return check.donation

            if loop.time() >= deadline:
                break
            await asyncio.sleep(t.donation_poll)

        await self._screenshot("Failed to find donation amount")
        raise ResourceMissing("Could not extract donation amount from page")

    async def _receive_funding(self, claim: keys.Account) -> None:
        t = self.timings
        self.log("action", "Waiting for claim wallet to receive NANO...")
        await asyncio.sleep(t.funding_delay)
        for _ in range(t.funding_attempts):
            if self._stop_requested:
                raise Cancelled("Session stopped")
            pending: List[PendingBlock] = await self.engine.get_pending_blocks(claim.address)
            if pending:
                summary = await self.engine.receive_all(claim)
                if summary.count:
                    return
            await asyncio.sleep(t.funding_poll)
        raise Timeout("Claim wallet did not receive NANO in time")
