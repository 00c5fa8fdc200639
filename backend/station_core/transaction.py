"""Transactions (charging sessions) and the ledger that numbers them and tracks their meters."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

DEFAULT_FIRST_TRANSACTION_ID = 1000


@dataclass
class Transaction:
    """One charging session on a connector. current_meter never decreases."""

    transaction_id: int
    connector_id: int
    id_tag: str
    meter_start: int
    current_meter: int
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    remote_transaction_id: Optional[int] = None  # from StartTransaction.conf

    @property
    def energy_delivered_Wh(self) -> int:
        return self.current_meter - self.meter_start

    @property
    def ocpp_transaction_id(self) -> int:
        """Id to put on the wire: the central system's id once known, else the local one."""
        return self.remote_transaction_id if self.remote_transaction_id is not None else self.transaction_id


class TransactionLedger:
    """
    Allocates strictly increasing transaction ids for the lifetime of the process and
    applies meter progression to open transactions.
    """

    __slots__ = ("_next_id", "_last_issued", "_open")

    def __init__(self, first_id: int = DEFAULT_FIRST_TRANSACTION_ID) -> None:
        if first_id < 1:
            raise ValueError("transaction ids must be positive")
        self._next_id = first_id
        self._last_issued: Optional[int] = None
        self._open: dict[int, Transaction] = {}

    @property
    def last_issued_id(self) -> Optional[int]:
        return self._last_issued

    def open(self, connector_id: int, id_tag: str, meter_start: int) -> Transaction:
        """Allocate a new transaction for connector_id starting at meter_start (Wh)."""
        if connector_id in self._open:
            raise ValueError(f"connector {connector_id} already has an open transaction")
        if meter_start < 0:
            raise ValueError("meter_start must be non-negative")
        tx = Transaction(
            transaction_id=self._next_id,
            connector_id=connector_id,
            id_tag=id_tag,
            meter_start=meter_start,
            current_meter=meter_start,
        )
        self._last_issued = self._next_id
        self._next_id += 1
        self._open[connector_id] = tx
        return tx

    def get_open(self, connector_id: int) -> Optional[Transaction]:
        return self._open.get(connector_id)

    def accrue(self, tx: Transaction, energy_Wh: int) -> int:
        """Advance tx.current_meter by energy_Wh (>= 0). Returns the new reading."""
        if energy_Wh < 0:
            raise ValueError("meter increments must be non-negative")
        tx.current_meter += int(energy_Wh)
        return tx.current_meter

    def close(self, tx: Transaction) -> int:
        """Remove tx from the open set. Returns its final meter reading (meterStop)."""
        if self._open.get(tx.connector_id) is tx:
            del self._open[tx.connector_id]
        return tx.current_meter
