from keeper.domain.models import CloseIfTriggered, Liquidate
from keeper.trader.actions import submit_action
from tests.conftest import FakeLedger, addr


def test_submit_dispatches_on_action_variant(ledger: FakeLedger):
    liq = submit_action(ledger, Liquidate(addr(1)))
    close = submit_action(ledger, CloseIfTriggered(addr(2)))
    assert ledger.liquidated == [addr(1)]
    assert ledger.closed == [addr(2)]
    assert liq.ok and close.ok
    assert liq.to_dict()["action"] == "liquidate"
    assert close.to_dict()["action"] == "closeIfTriggered"


def test_submit_failure_is_returned_not_raised(ledger: FakeLedger):
    ledger.failing_writes.add(addr(1))
    result = submit_action(ledger, Liquidate(addr(1)))
    assert not result.ok
    assert result.tx_hash is None
    assert result.to_dict()["status"] == "FAILED"
    assert "not liquidatable" in result.error


def test_reverted_receipt_marks_result_failed(ledger: FakeLedger, monkeypatch):
    monkeypatch.setattr(ledger, "wait_for_receipt", lambda tx_hash, timeout: {"status": 0})
    result = submit_action(ledger, CloseIfTriggered(addr(1)), wait_for_receipt=True)
    assert result.tx_hash is not None
    assert result.error == "transaction reverted"


def test_receipt_timeout_keeps_submission(ledger: FakeLedger, monkeypatch):
    def _timeout(tx_hash, timeout):
        raise TimeoutError("receipt not found")

    monkeypatch.setattr(ledger, "wait_for_receipt", _timeout)
    result = submit_action(ledger, Liquidate(addr(1)), wait_for_receipt=True, receipt_timeout=1)
    assert result.ok
    assert result.tx_hash is not None
