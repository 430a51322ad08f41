from types import SimpleNamespace

import pytest
from hexbytes import HexBytes
from web3 import Web3

from keeper.domain.models import EventKind
from keeper.ledger.connection import LedgerConnection
from keeper.ledger.perps import DEFAULT_EVENT_SIGNATURES, LedgerError, PerpsLedger, ReadOnlyLedgerError
from tests.conftest import addr

PERPS = "0x" + "12" * 20


class FakeEth:
    def __init__(self, logs=None, error=None):
        self.logs = logs or []
        self.error = error
        self.filters = []
        self.block_number = 123
        self.balance = 5 * 10**18

    def get_logs(self, params):
        self.filters.append(params)
        if self.error is not None:
            raise self.error
        return self.logs

    def get_balance(self, address):
        return self.balance


def _ledger(eth: FakeEth, private_key=None, signatures=None) -> PerpsLedger:
    conn = LedgerConnection("http://127.0.0.1:8545", private_key=private_key)
    ledger = PerpsLedger(conn, PERPS, signatures)
    ledger.w3 = SimpleNamespace(eth=eth)
    return ledger


def _topic(address: str) -> HexBytes:
    return HexBytes(b"\x00" * 12 + bytes.fromhex(address[2:]))


def test_event_topics_are_keccak_of_signatures():
    ledger = _ledger(FakeEth())
    expected = Web3.to_hex(Web3.keccak(text=DEFAULT_EVENT_SIGNATURES["opened"]))
    assert ledger.event_topics[EventKind.OPENED] == expected
    assert len(set(ledger.event_topics.values())) == len(EventKind)


def test_event_signatures_can_be_overridden():
    ledger = _ledger(FakeEth(), signatures={"closed": "Closed(address)"})
    assert ledger.event_topics[EventKind.CLOSED] == Web3.to_hex(Web3.keccak(text="Closed(address)"))


def test_query_events_filters_by_address_range_and_topic():
    trader = addr(0xBEEF)
    eth = FakeEth(
        logs=[
            {
                "topics": [HexBytes(b"\x01" * 32), _topic(trader)],
                "data": HexBytes(b""),
                "blockNumber": 50,
                "logIndex": 2,
                "transactionHash": HexBytes(b"\xaa" * 32),
            }
        ]
    )
    ledger = _ledger(eth)

    logs = ledger.query_events(EventKind.LIQUIDATED, 10, 60)

    params = eth.filters[0]
    assert params["address"] == Web3.to_checksum_address(PERPS)
    assert (params["fromBlock"], params["toBlock"]) == (10, 60)
    assert params["topics"] == [ledger.event_topics[EventKind.LIQUIDATED]]
    assert len(logs) == 1
    entry = logs[0]
    assert entry.kind is EventKind.LIQUIDATED
    assert entry.block_number == 50
    assert entry.tx_hash == "0x" + "aa" * 32


def test_trader_falls_back_to_first_data_word():
    from keeper.trader.projection import parse_trader

    trader = addr(7)
    eth = FakeEth(logs=[{"topics": [HexBytes(b"\x01" * 32)], "data": HexBytes(bytes(_topic(trader)) + b"\x00" * 32)}])
    entry = _ledger(eth).query_events(EventKind.OPENED, 1, 2)[0]
    assert parse_trader(entry.trader) == trader


def test_query_errors_are_wrapped_with_provider_message():
    eth = FakeEth(error=ValueError("429 Too Many Requests"))
    with pytest.raises(LedgerError, match="429"):
        _ledger(eth).query_events(EventKind.OPENED, 1, 2)


def test_block_number_and_treasury_balance():
    ledger = _ledger(FakeEth())
    assert ledger.block_number() == 123
    assert ledger.treasury_balance() == 5 * 10**18


def test_writes_without_signer_are_rejected():
    ledger = _ledger(FakeEth())
    with pytest.raises(ReadOnlyLedgerError):
        ledger.liquidate(addr(1))
    with pytest.raises(ReadOnlyLedgerError):
        ledger.close_if_triggered(addr(1))


def test_connection_reports_signer_address():
    key = "0x" + "11" * 32
    conn = LedgerConnection("http://127.0.0.1:8545", private_key=key)
    assert not conn.read_only
    assert conn.address.startswith("0x") and len(conn.address) == 42
    assert LedgerConnection("http://127.0.0.1:8545").read_only
