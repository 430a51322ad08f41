"""
web3 adapter for the BTCDPerps ledger contract.

Implements `LedgerPort`. The contract is the system of record; this module
only translates calls and keeps web3 types out of the rest of the keeper.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from web3 import Web3

from keeper.domain.models import EventKind, LogEntry, Position
from keeper.ledger.connection import LedgerConnection

T = TypeVar("T")

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """A ledger read or write failed."""


class ReadOnlyLedgerError(LedgerError):
    """A write was requested but no signer key is configured."""


DEFAULT_EVENT_SIGNATURES: dict[str, str] = {
    EventKind.OPENED.value: "PositionOpened(address,bool,uint256,uint256,uint256)",
    EventKind.CLOSED.value: "PositionClosed(address,uint256,int256,uint256)",
    EventKind.LIQUIDATED.value: "Liquidated(address,uint256,uint256)",
    EventKind.STOP_CLOSED.value: "StopClosed(address,uint256,int256,uint256)",
    EventKind.STOPS_UPDATED.value: "StopsUpdated(address,uint256,uint256)",
}


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[tuple[str, str]], mutability: str) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
        "stateMutability": mutability,
    }


PERPS_ABI: list[dict[str, Any]] = [
    _fn(
        "positions",
        [("", "address")],
        [
            ("isOpen", "bool"),
            ("isLong", "bool"),
            ("leverage", "uint256"),
            ("margin", "uint256"),
            ("entryPrice", "uint256"),
            ("lastUpdate", "uint256"),
        ],
        "view",
    ),
    _fn("canLiquidate", [("trader", "address")], [("", "bool")], "view"),
    _fn("shouldClose", [("trader", "address")], [("", "bool"), ("", "bool"), ("", "bool")], "view"),
    _fn("getStops", [("trader", "address")], [("", "uint256"), ("", "uint256")], "view"),
    _fn("takerFeeBps", [], [("", "uint256")], "view"),
    _fn("getPrice", [], [("", "int256")], "view"),
    _fn("liquidate", [("trader", "address")], [], "nonpayable"),
    _fn("closeIfTriggered", [("trader", "address")], [], "nonpayable"),
]


class PerpsLedger:
    def __init__(
        self,
        connection: LedgerConnection,
        perps_address: str,
        event_signatures: dict[str, str] | None = None,
    ):
        self.connection = connection
        self.w3 = connection.w3
        self.address = Web3.to_checksum_address(perps_address)
        self.contract = self.w3.eth.contract(address=self.address, abi=PERPS_ABI)
        signatures = dict(DEFAULT_EVENT_SIGNATURES)
        signatures.update(event_signatures or {})
        self.event_topics: dict[EventKind, str] = {
            kind: Web3.to_hex(Web3.keccak(text=signatures[kind.value])) for kind in EventKind
        }

    def _call(self, label: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"{label} failed: {type(e).__name__}: {e}") from e

    # ----- Reads -----

    def block_number(self) -> int:
        return int(self._call("eth_blockNumber", lambda: self.w3.eth.block_number))

    def query_events(self, kind: EventKind, from_block: int, to_block: int) -> list[LogEntry]:
        params = {
            "address": self.address,
            "fromBlock": int(from_block),
            "toBlock": int(to_block),
            "topics": [self.event_topics[kind]],
        }
        raw_logs = self._call(f"get_logs({kind.value})", lambda: self.w3.eth.get_logs(params))
        out: list[LogEntry] = []
        for log in raw_logs:
            topics = log.get("topics") or []
            data = log.get("data") or b""
            # Trader is the first indexed argument; fall back to the first data word.
            trader = topics[1] if len(topics) > 1 else bytes(data[:32]) or None
            tx_hash = log.get("transactionHash")
            out.append(
                LogEntry(
                    kind=kind,
                    trader=trader,
                    block_number=int(log.get("blockNumber") or 0),
                    log_index=int(log.get("logIndex") or 0),
                    tx_hash=Web3.to_hex(tx_hash) if tx_hash is not None else None,
                )
            )
        return out

    def positions(self, trader: str) -> Position:
        row = self._call(
            "positions",
            lambda: self.contract.functions.positions(Web3.to_checksum_address(trader)).call(),
        )
        return Position.from_tuple(row)

    def can_liquidate(self, trader: str) -> bool:
        return bool(
            self._call(
                "canLiquidate",
                lambda: self.contract.functions.canLiquidate(Web3.to_checksum_address(trader)).call(),
            )
        )

    def should_close(self, trader: str) -> tuple[bool, bool, bool]:
        trigger, hit_sl, hit_tp = self._call(
            "shouldClose",
            lambda: self.contract.functions.shouldClose(Web3.to_checksum_address(trader)).call(),
        )
        return bool(trigger), bool(hit_sl), bool(hit_tp)

    def get_stops(self, trader: str) -> tuple[int, int]:
        sl, tp = self._call(
            "getStops",
            lambda: self.contract.functions.getStops(Web3.to_checksum_address(trader)).call(),
        )
        return int(sl), int(tp)

    def taker_fee_bps(self) -> int:
        return int(self._call("takerFeeBps", lambda: self.contract.functions.takerFeeBps().call()))

    def get_price(self) -> int:
        return int(self._call("getPrice", lambda: self.contract.functions.getPrice().call()))

    def treasury_balance(self) -> int:
        return int(self._call("eth_getBalance", lambda: self.w3.eth.get_balance(self.address)))

    # ----- Writes -----

    def _send(self, label: str, contract_fn, gas_limit: int | None) -> str:
        account = self.connection.account
        if account is None:
            raise ReadOnlyLedgerError(f"{label} requires a signer key (KEEPER_PRIVATE_KEY)")

        def _build_and_send() -> str:
            tx_params: dict[str, Any] = {
                "from": account.address,
                "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
                "chainId": self.connection.chain_id,
            }
            if gas_limit:
                tx_params["gas"] = int(gas_limit)
            # build_transaction estimates gas when no limit is given, which simulates the call.
            tx = contract_fn.build_transaction(tx_params)
            signed = account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            return Web3.to_hex(tx_hash)

        return self._call(label, _build_and_send)

    def liquidate(self, trader: str, gas_limit: int | None = None) -> str:
        fn = self.contract.functions.liquidate(Web3.to_checksum_address(trader))
        return self._send("liquidate", fn, gas_limit)

    def close_if_triggered(self, trader: str, gas_limit: int | None = None) -> str:
        fn = self.contract.functions.closeIfTriggered(Web3.to_checksum_address(trader))
        return self._send("closeIfTriggered", fn, gas_limit)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> dict:
        receipt = self._call(
            "wait_for_transaction_receipt",
            lambda: self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout),
        )
        return dict(receipt)
