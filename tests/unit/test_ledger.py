"""
Unit tests for the paper account ledger.

Tests:
1. Open: quantity formula, margin deducted, transaction prepended
2. Validation order (first failure wins) and no mutation on failure
3. Funds boundary (margin == balance ok, +0.01 rejected)
4. One position per symbol
5. Close: PnL sign, margin conservation, CLOSE transaction fields
6. Close with no position / bad price
7. update_risk replaces wholesale, no-op without a position
8. reset_account is idempotent
9. Concurrent closes never double-close
"""
import threading
from decimal import Decimal

import pytest

from paper_perps.domain.models import (
    AccountState,
    CloseReason,
    ErrorKind,
    Side,
    TransactionType,
)
from paper_perps.execution.ledger import Ledger


def _state_fingerprint(ledger: Ledger):
    snap = ledger.snapshot()
    return snap.balance, dict(snap.positions), list(snap.transactions)


# ---------------------------------------------------------------------------
# Open
# ---------------------------------------------------------------------------

def test_open_computes_quantity_and_deducts_margin(ledger):
    result = ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"))

    assert result.success
    assert result.error is None
    pos = ledger.get_position("BTCUSDT")
    assert pos.quantity == Decimal("0.2")
    assert pos.entry_price == Decimal("50000")
    assert pos.margin == Decimal("1000")
    assert pos.leverage == 10
    assert pos.side == Side.LONG
    assert pos.opened_at.tzinfo is not None
    assert ledger.balance == Decimal("49000")


def test_open_prepends_transaction(ledger):
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"))
    ledger.open_position("ETHUSDT", Side.SHORT, Decimal("500"), 5, Decimal("2500"))

    txns = ledger.transactions
    assert [t.type for t in txns] == [TransactionType.OPEN_SHORT, TransactionType.OPEN_LONG]
    newest = txns[0]
    assert newest.symbol == "ETHUSDT"
    assert newest.price == Decimal("2500")
    assert newest.quantity == Decimal("1")
    assert newest.leverage == 5
    assert newest.margin == Decimal("500")
    assert newest.pnl is None
    assert newest.reason is None
    assert txns[0].id != txns[1].id


def test_open_stores_risk_levels(ledger):
    ledger.open_position(
        "SOLUSDT", Side.LONG, Decimal("100"), 2, Decimal("150"),
        stop_loss=Decimal("140"), take_profit=Decimal("180"),
    )
    pos = ledger.get_position("SOLUSDT")
    assert pos.stop_loss == Decimal("140")
    assert pos.take_profit == Decimal("180")


def test_open_accepts_float_inputs(ledger):
    result = ledger.open_position("ADAUSDT", "SHORT", 100.0, 3.0, 0.5)
    assert result.success
    pos = ledger.get_position("ADAUSDT")
    assert pos.quantity == Decimal("600")
    assert pos.leverage == 3


@pytest.mark.parametrize(
    "margin, price, leverage, expected",
    [
        (Decimal("0"), Decimal("100"), 10, ErrorKind.INVALID_MARGIN),
        (Decimal("-5"), Decimal("100"), 10, ErrorKind.INVALID_MARGIN),
        (Decimal("NaN"), Decimal("100"), 10, ErrorKind.INVALID_MARGIN),
        (float("inf"), Decimal("100"), 10, ErrorKind.INVALID_MARGIN),
        (None, Decimal("100"), 10, ErrorKind.INVALID_MARGIN),
        (Decimal("100"), Decimal("0"), 10, ErrorKind.PRICE_UNAVAILABLE),
        (Decimal("100"), None, 10, ErrorKind.PRICE_UNAVAILABLE),
        (Decimal("100"), Decimal("Infinity"), 10, ErrorKind.PRICE_UNAVAILABLE),
        (Decimal("100"), Decimal("100"), 0, ErrorKind.INVALID_LEVERAGE),
        (Decimal("100"), Decimal("100"), 51, ErrorKind.INVALID_LEVERAGE),
        (Decimal("100"), Decimal("100"), 2.5, ErrorKind.INVALID_LEVERAGE),
        (Decimal("100"), Decimal("100"), float("nan"), ErrorKind.INVALID_LEVERAGE),
        # margin checked before price, price before leverage
        (Decimal("0"), Decimal("0"), 0, ErrorKind.INVALID_MARGIN),
        (Decimal("100"), Decimal("0"), 0, ErrorKind.PRICE_UNAVAILABLE),
    ],
)
def test_open_validation_first_failure_wins(ledger, margin, price, leverage, expected):
    before = _state_fingerprint(ledger)

    result = ledger.open_position("BTCUSDT", Side.LONG, margin, leverage, price)

    assert not result.success
    assert result.error == expected
    assert result.message
    assert _state_fingerprint(ledger) == before


def test_leverage_bounds_inclusive(ledger):
    assert ledger.open_position("BTCUSDT", Side.LONG, Decimal("100"), 1, Decimal("100")).success
    assert ledger.open_position("ETHUSDT", Side.LONG, Decimal("100"), 50, Decimal("100")).success


def test_leverage_message_reflects_configured_max():
    ledger = Ledger(max_leverage=20)
    result = ledger.open_position("BTCUSDT", Side.LONG, Decimal("100"), 25, Decimal("100"))
    assert result.error == ErrorKind.INVALID_LEVERAGE
    assert result.message == "Leverage must be between 1x and 20x."


def test_second_open_same_symbol_rejected_without_mutation(ledger):
    assert ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000")).success
    before = _state_fingerprint(ledger)

    result = ledger.open_position("BTCUSDT", Side.SHORT, Decimal("1000"), 10, Decimal("51000"))

    assert result.error == ErrorKind.POSITION_ALREADY_OPEN
    assert result.message == "Close the existing position first."
    assert _state_fingerprint(ledger) == before


def test_position_already_open_checked_before_funds(ledger):
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"))
    result = ledger.open_position("BTCUSDT", Side.LONG, Decimal("999999"), 10, Decimal("50000"))
    assert result.error == ErrorKind.POSITION_ALREADY_OPEN


def test_margin_equal_to_balance_succeeds(ledger):
    result = ledger.open_position("BTCUSDT", Side.LONG, Decimal("50000"), 1, Decimal("50000"))
    assert result.success
    assert ledger.balance == Decimal("0")


def test_margin_above_balance_rejected(ledger):
    before = _state_fingerprint(ledger)
    result = ledger.open_position("BTCUSDT", Side.LONG, Decimal("50000.01"), 1, Decimal("50000"))
    assert result.error == ErrorKind.INSUFFICIENT_FUNDS
    assert result.message == "Insufficient Funds"
    assert _state_fingerprint(ledger) == before


@pytest.mark.parametrize("side", ["SIDEWAYS", "", None, 1])
def test_invalid_side_rejected_without_mutation(ledger, side):
    before = _state_fingerprint(ledger)
    result = ledger.open_position("BTCUSDT", side, Decimal("100"), 10, Decimal("50000"))

    assert not result.success
    assert result.error == ErrorKind.INVALID_SIDE
    assert result.message == "Side must be LONG or SHORT."
    assert _state_fingerprint(ledger) == before


def test_side_string_is_case_insensitive(ledger):
    assert ledger.open_position("BTCUSDT", "short", Decimal("100"), 10, Decimal("50000")).success
    assert ledger.get_position("BTCUSDT").side is Side.SHORT


def test_unknown_symbol_rejected(ledger):
    result = ledger.open_position("XRPUSDT", Side.LONG, Decimal("100"), 10, Decimal("1"))
    assert result.error == ErrorKind.UNKNOWN_SYMBOL
    assert ledger.get_position("XRPUSDT") is None


def test_custom_symbol_set():
    ledger = Ledger(symbols=("XRPUSDT",), initial_balance=Decimal("1000"))
    assert ledger.open_position("XRPUSDT", Side.LONG, Decimal("100"), 10, Decimal("0.5")).success
    assert ledger.open_position("BTCUSDT", Side.LONG, Decimal("100"), 10, Decimal("100")).error == ErrorKind.UNKNOWN_SYMBOL
    assert ledger.balance == Decimal("900")


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------

def test_open_close_same_price_restores_balance(ledger):
    before = ledger.balance
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("1234.56"), 7, Decimal("43210.98"))
    result = ledger.close_position("BTCUSDT", Decimal("43210.98"))

    assert result.success
    assert ledger.balance == before
    assert ledger.transactions[0].pnl == 0


def test_long_close_profit_sign(ledger):
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("100"), 1, Decimal("100"))
    ledger.close_position("BTCUSDT", Decimal("110"))

    close_txn = ledger.transactions[0]
    assert close_txn.pnl == Decimal("10")
    assert ledger.balance == Decimal("50010")


def test_short_close_loss_sign(ledger):
    ledger.open_position("BTCUSDT", Side.SHORT, Decimal("100"), 1, Decimal("100"))
    ledger.close_position("BTCUSDT", Decimal("110"))

    assert ledger.transactions[0].pnl == Decimal("-10")
    assert ledger.balance == Decimal("49990")


def test_close_records_transaction_and_clears_slot(ledger, btc_long):
    result = ledger.close_position("BTCUSDT", Decimal("51000"), CloseReason.TAKE_PROFIT)

    assert result.success
    assert ledger.get_position("BTCUSDT") is None
    txn = ledger.transactions[0]
    assert txn.type == TransactionType.CLOSE
    assert txn.symbol == "BTCUSDT"
    assert txn.price == Decimal("51000")
    assert txn.quantity == btc_long.quantity
    assert txn.pnl == Decimal("200")
    assert txn.reason == CloseReason.TAKE_PROFIT
    assert txn.margin is None
    assert txn.leverage is None


def test_close_default_reason_is_manual(ledger, btc_long):
    ledger.close_position("BTCUSDT", Decimal("50000"))
    assert ledger.transactions[0].reason == CloseReason.MANUAL


def test_loss_beyond_margin_is_not_clamped(ledger):
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("100"))
    ledger.close_position("BTCUSDT", Decimal("80"))

    # pnl = -20 * 100 = -2000, released = -1000
    assert ledger.transactions[0].pnl == Decimal("-2000")
    assert ledger.balance == Decimal("48000")


def test_close_with_stale_expected_position(ledger, btc_long):
    ledger.close_position("BTCUSDT", Decimal("50000"))
    ledger.open_position("BTCUSDT", Side.SHORT, Decimal("500"), 5, Decimal("50000"))
    before = _state_fingerprint(ledger)

    result = ledger.close_position("BTCUSDT", Decimal("40000"), CloseReason.LIQUIDATION, expected=btc_long)

    assert result.error == ErrorKind.NO_OPEN_POSITION
    assert _state_fingerprint(ledger) == before


def test_close_with_current_expected_position(ledger, btc_long):
    result = ledger.close_position("BTCUSDT", Decimal("51000"), expected=ledger.get_position("BTCUSDT"))
    assert result.success
    assert ledger.transactions[0].pnl == Decimal("200")


def test_close_after_risk_update_rejects_old_snapshot(ledger, btc_long):
    ledger.update_risk("BTCUSDT", stop_loss=Decimal("49000"))
    result = ledger.close_position("BTCUSDT", Decimal("49000"), CloseReason.STOP_LOSS, expected=btc_long)
    assert result.error == ErrorKind.NO_OPEN_POSITION
    assert ledger.get_position("BTCUSDT") is not None


def test_close_without_position(ledger):
    result = ledger.close_position("ETHUSDT", Decimal("2000"))
    assert result.error == ErrorKind.NO_OPEN_POSITION
    assert result.message == "No open position."
    assert ledger.transactions == []


def test_close_bad_price_checked_first(ledger):
    result = ledger.close_position("ETHUSDT", Decimal("-1"))
    assert result.error == ErrorKind.PRICE_UNAVAILABLE


def test_close_bad_price_leaves_position(ledger, btc_long):
    before = _state_fingerprint(ledger)
    assert ledger.close_position("BTCUSDT", None).error == ErrorKind.PRICE_UNAVAILABLE
    assert _state_fingerprint(ledger) == before


# ---------------------------------------------------------------------------
# Risk levels
# ---------------------------------------------------------------------------

def test_update_risk_replaces_both_fields(ledger):
    ledger.open_position(
        "BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"),
        stop_loss=Decimal("48000"), take_profit=Decimal("55000"),
    )
    ledger.update_risk("BTCUSDT", stop_loss=Decimal("49000"))

    pos = ledger.get_position("BTCUSDT")
    assert pos.stop_loss == Decimal("49000")
    assert pos.take_profit is None
    assert pos.quantity == Decimal("0.2")
    assert pos.entry_price == Decimal("50000")


def test_update_risk_does_not_validate_ordering(ledger, btc_long):
    # Stop above entry on a LONG is accepted as given.
    ledger.update_risk("BTCUSDT", stop_loss=Decimal("60000"), take_profit=Decimal("40000"))
    pos = ledger.get_position("BTCUSDT")
    assert pos.stop_loss == Decimal("60000")
    assert pos.take_profit == Decimal("40000")


def test_update_risk_unparseable_keeps_current_level(ledger):
    ledger.open_position(
        "BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"),
        stop_loss=Decimal("48000"), take_profit=Decimal("55000"),
    )
    ledger.update_risk("BTCUSDT", stop_loss="95x", take_profit="56000")

    pos = ledger.get_position("BTCUSDT")
    assert pos.stop_loss == Decimal("48000")
    assert pos.take_profit == Decimal("56000")


@pytest.mark.parametrize("bad", [float("nan"), "NaN", 0, "-5", "inf"])
def test_update_risk_unusable_levels_keep_current(ledger, bad):
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"),
                         take_profit=Decimal("55000"))
    ledger.update_risk("BTCUSDT", stop_loss=bad, take_profit=bad)

    pos = ledger.get_position("BTCUSDT")
    assert pos.stop_loss is None
    assert pos.take_profit == Decimal("55000")


@pytest.mark.parametrize("bad", [float("nan"), 0, "abc"])
def test_open_drops_unusable_levels(ledger, bad):
    result = ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"),
                                  stop_loss=bad, take_profit=Decimal("55000"))
    assert result.success
    pos = ledger.get_position("BTCUSDT")
    assert pos.stop_loss is None
    assert pos.take_profit == Decimal("55000")


def test_update_risk_no_position_is_noop(ledger):
    before = _state_fingerprint(ledger)
    ledger.update_risk("ETHUSDT", stop_loss=Decimal("1"))
    assert _state_fingerprint(ledger) == before


def test_update_risk_does_not_log_transaction(ledger, btc_long):
    ledger.update_risk("BTCUSDT", stop_loss=Decimal("49000"))
    assert len(ledger.transactions) == 1


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------

def test_reset_account_restores_initial_state(ledger):
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("1000"), 10, Decimal("50000"))
    ledger.open_position("ETHUSDT", Side.SHORT, Decimal("2000"), 5, Decimal("3000"))
    ledger.close_position("ETHUSDT", Decimal("2900"))

    ledger.reset_account()

    assert ledger.balance == Decimal("50000")
    assert all(p is None for p in ledger.snapshot().positions.values())
    assert ledger.transactions == []

    ledger.reset_account()
    assert ledger.balance == Decimal("50000")
    assert ledger.transactions == []


def test_reset_uses_configured_seed():
    ledger = Ledger(initial_balance=Decimal("1000"))
    ledger.open_position("BTCUSDT", Side.LONG, Decimal("500"), 2, Decimal("100"))
    ledger.reset_account()
    assert ledger.balance == Decimal("1000")


# ---------------------------------------------------------------------------
# State ownership and concurrency
# ---------------------------------------------------------------------------

def test_restored_state_gains_missing_symbol_slots():
    state = AccountState.initial(("BTCUSDT",), Decimal("100"))
    ledger = Ledger(symbols=("BTCUSDT", "ETHUSDT"), state=state)
    assert set(ledger.snapshot().positions) == {"BTCUSDT", "ETHUSDT"}
    assert ledger.balance == Decimal("100")


def test_snapshot_is_detached(ledger, btc_long):
    snap = ledger.snapshot()
    ledger.close_position("BTCUSDT", Decimal("50000"))
    assert snap.positions["BTCUSDT"] is not None
    assert len(snap.transactions) == 1


def test_concurrent_closes_apply_once(ledger, btc_long):
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(ledger.close_position("BTCUSDT", Decimal("50500")))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.success) == 1
    assert all(r.error == ErrorKind.NO_OPEN_POSITION for r in results if not r.success)
    assert ledger.balance == Decimal("50000") + Decimal("100")
    assert [t.type for t in ledger.transactions].count(TransactionType.CLOSE) == 1
