from datetime import datetime, timedelta, timezone

import pytest

from core.config import SentryConfig, SentrySettings
from core.events import STATUS, EventBus
from core.exceptions import Cancelled, InsufficientFunds, InvalidInput, RateLimited, ResourceMissing
from core.wallet_store import WalletStore
from faucets.claim_session import (
    ClaimSession,
    ClaimTimings,
    SessionStats,
    SessionStatus,
    classify_page,
    compute_net_reward,
)
from nano import keys
from nano.accounts import AccountEngine
from nano.rpc import PendingBlock
from nano.units import to_raw

from fakes import FakeBrowser, FakeLedger, FakeWork

DONATION_ADDRESS = "nano_1ncto1yztp7xu98othx6t5qfifo4qag1o6ziuqkkydzu88gqz5wnb5yspke8"
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
DONATION_PAGE = "Welcome!\nSend 0.002 XNO to donation address to receive your reward."


class TestClassifyPage:
    def test_donation_amount(self):
        assert classify_page(DONATION_PAGE).donation == "0.002"

    def test_donation_in_html(self):
        check = classify_page("", "<p>Please <b>send 0.01</b></p>")
        assert check.donation == "0.01"

    def test_rate_limit_wins_over_donation(self):
        check = classify_page("Please come back tomorrow. " + DONATION_PAGE, DONATION_PAGE)
        assert check.rate_limited is True
        assert check.donation is None

    @pytest.mark.parametrize("phrase", ["Already claimed today", "TOO MANY REQUESTS", "Daily limit reached"])
    def test_other_rate_limit_phrases(self, phrase):
        assert classify_page(phrase).rate_limited is True

    def test_nothing_found(self):
        check = classify_page("Loading...")
        assert check.rate_limited is False
        assert check.donation is None


class TestNetReward:
    def _blocks(self, *amounts):
        return [PendingBlock(f"{i:064X}", "", to_raw(a)) for i, a in enumerate(amounts)]

    def test_profitable_multi_block(self):
        stats = SessionStats()
        net = compute_net_reward(to_raw("0.002"), self._blocks("0.0015", "0.0015"))
        assert net == to_raw("0.001")
        assert stats.record_claim(net) is True
        assert stats.total_claims == 1
        assert stats.total_rewards_raw == to_raw("0.001")

    def test_unprofitable_still_counted(self):
        stats = SessionStats(total_rewards_raw=5)
        net = compute_net_reward(to_raw("0.002"), self._blocks("0.0005"))
        assert net == -to_raw("0.0015")
        assert stats.record_claim(net) is False
        assert stats.total_claims == 1
        assert stats.total_rewards_raw == 5


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store(tmp_path):
    store = WalletStore(tmp_path / "wallets.enc", "test-key")
    store.create_wallet("bank")
    return store


@pytest.fixture
def bank(store, ledger):
    account = store.get_account("bank")
    ledger.open(account.address, to_raw("1"))
    return account


@pytest.fixture
def settings():
    return SentrySettings(
        nano_wallet_key="test-key",
        faucet_url="https://faucet.example/",
        faucet_donation_address=DONATION_ADDRESS,
        reward_timeout_seconds=2,
        reward_poll_interval_seconds=0,
    )


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def browser():
    return FakeBrowser(text=DONATION_PAGE)


def make_session(settings, store, ledger, events, browser, config=None):
    engine = AccountEngine(ledger, FakeWork(), events)
    timings = ClaimTimings(page_settle=0, after_type=0, after_click=0, donation_wait=0.05,
                           donation_poll=0.01, funding_delay=0, funding_attempts=3,
                           funding_poll=0, bank_receive_delay=0)
    return ClaimSession(
        settings,
        config or SentryConfig(bank_wallet_name="bank"),
        store,
        engine,
        events,
        browser_factory=lambda: browser,
        timings=timings,
        clock=lambda: NOW,
    )


def pay_reward_on_donation(ledger, *amounts):
    def hook(block):
        if block.subtype == "send" and keys.encode_address(bytes.fromhex(block.link)) == DONATION_ADDRESS:
            for amount in amounts:
                ledger.fund(block.account, to_raw(amount), DONATION_ADDRESS)
    ledger.on_broadcast = hook


class TestClaimWorkflow:
    @pytest.mark.asyncio
    async def test_happy_path(self, settings, store, ledger, events, browser, bank):
        pay_reward_on_donation(ledger, "0.0015", "0.0015")
        statuses = []
        events.subscribe(STATUS, lambda e: statuses.append(e.payload["status"]))
        session = make_session(settings, store, ledger, events, browser)

        net = await session.run_once()

        assert net == to_raw("0.001")
        assert ledger.balance(bank.address) == to_raw("1.001")
        assert session.stats.status == SessionStatus.COMPLETED
        assert session.stats.total_claims == 1
        assert session.stats.total_rewards_raw == to_raw("0.001")
        assert session.stats.consecutive_sessions == 1
        assert session.stats.next_claim_available == NOW + timedelta(hours=24)
        assert session.claim_account is None
        assert browser.closed is True
        assert browser.visited == ["https://faucet.example/"]
        assert statuses[:3] == ["starting", "creating_temp_wallet", "launching_browser"]
        assert statuses[-4:] == ["receiving_reward", "sending_to_bank", "receiving_to_bank", "completed"]

    @pytest.mark.asyncio
    async def test_rate_limit_is_terminal(self, settings, store, ledger, events, bank):
        browser = FakeBrowser(text="Please come back tomorrow. " + DONATION_PAGE)
        config = SentryConfig(bank_wallet_name="bank")
        session = make_session(settings, store, ledger, events, browser, config)

        with pytest.raises(RateLimited):
            await session.run_once()

        assert session.stats.status == SessionStatus.FAILED
        assert session.stats.next_claim_available == NOW + timedelta(hours=24)
        assert config.next_claim_available == NOW + timedelta(hours=24)
        assert ledger.balance(bank.address) == to_raw("1")
        assert ledger.broadcasts == []
        assert browser.closed is True
        assert session.is_running is False

        # the cooldown blocks the next attempt before anything is launched
        with pytest.raises(RateLimited):
            await session.run_once()

    @pytest.mark.asyncio
    async def test_missing_donation_amount(self, settings, store, ledger, events, bank):
        browser = FakeBrowser(text="Loading...")
        session = make_session(settings, store, ledger, events, browser)

        with pytest.raises(ResourceMissing):
            await session.run_once()

        assert session.stats.status == SessionStatus.FAILED
        assert session.stats.next_claim_available is None

    @pytest.mark.asyncio
    async def test_unprofitable_claim(self, settings, store, ledger, events, browser, bank):
        pay_reward_on_donation(ledger, "0.0005")
        session = make_session(settings, store, ledger, events, browser)

        net = await session.run_once()

        assert net == -to_raw("0.0015")
        assert session.stats.total_claims == 1
        assert session.stats.total_rewards_raw == 0
        assert ledger.balance(bank.address) == to_raw("0.9985")

    @pytest.mark.asyncio
    async def test_stop_tears_down(self, settings, store, ledger, events, browser, bank):
        session = make_session(settings, store, ledger, events, browser)
        browser.on_navigate = session.stop

        with pytest.raises(Cancelled):
            await session.run_once()

        assert session.stats.status == SessionStatus.STOPPED
        assert session.claim_account is None
        assert browser.closed is True
        assert browser.typed == []
        assert ledger.broadcasts == []


class TestPreflight:
    @pytest.mark.asyncio
    async def test_requires_bank_wallet(self, settings, store, ledger, events, browser):
        session = make_session(settings, store, ledger, events, browser, SentryConfig())
        with pytest.raises(ResourceMissing):
            await session.start()
        assert session.is_running is False

    @pytest.mark.asyncio
    async def test_requires_minimum_balance(self, settings, store, ledger, events, browser):
        ledger.open(store.get_account("bank").address, to_raw("0.0001"))
        session = make_session(settings, store, ledger, events, browser)
        with pytest.raises(InsufficientFunds):
            await session.start()

    @pytest.mark.asyncio
    async def test_cooldown_from_config(self, settings, store, ledger, events, browser, bank):
        config = SentryConfig(bank_wallet_name="bank", next_claim_available=NOW + timedelta(hours=1))
        session = make_session(settings, store, ledger, events, browser, config)
        with pytest.raises(RateLimited):
            await session.start()
        assert browser.launched is False

    @pytest.mark.asyncio
    async def test_background_start_completes(self, settings, store, ledger, events, browser, bank):
        pay_reward_on_donation(ledger, "0.003")
        session = make_session(settings, store, ledger, events, browser)

        task = await session.start()
        await task

        assert session.stats.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_second_start_is_refused_while_running(self, settings, store, ledger, events, browser, bank):
        pay_reward_on_donation(ledger, "0.003")
        session = make_session(settings, store, ledger, events, browser)

        task = await session.start()
        with pytest.raises(InvalidInput, match="already running"):
            await session.start()
        with pytest.raises(InvalidInput):
            await session.run_once()
        await task

        assert session.stats.status == SessionStatus.COMPLETED
        assert session.stats.total_claims == 1
        assert browser.visited == ["https://faucet.example/"]
        assert session.is_running is False


class TestPause:
    def test_pause_requires_running_session(self, settings, store, ledger, events, browser):
        session = make_session(settings, store, ledger, events, browser)
        with pytest.raises(InvalidInput):
            session.pause()

    def test_pause_toggles_status(self, settings, store, ledger, events, browser):
        session = make_session(settings, store, ledger, events, browser)
        session.is_running = True
        session.stats.status = SessionStatus.WAITING_REWARD

        assert session.pause() is True
        assert session.stats.status == SessionStatus.PAUSED
        assert session._should_abort_wait() is True

        assert session.pause() is False
        assert session.stats.status == SessionStatus.WAITING_REWARD

    @pytest.mark.asyncio
    async def test_pause_during_reward_wait(self, settings, store, ledger, events, browser, bank):
        session = make_session(settings, store, ledger, events, browser)

        def pause_after_donation(block):
            if block.subtype == "send" and keys.encode_address(bytes.fromhex(block.link)) == DONATION_ADDRESS:
                session.pause()

        ledger.on_broadcast = pause_after_donation

        with pytest.raises(Cancelled):
            await session.run_once()

        assert session.stats.status == SessionStatus.PAUSED
        assert session.is_running is False
        assert session.is_paused is False
        assert session.claim_account is None
        assert session.stats.temp_claim_address is None
        assert browser.closed is True
        assert session.stats.total_claims == 0
