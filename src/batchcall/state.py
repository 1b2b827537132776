"""
Host state for batch execution.

Native balances, per-target storage slots and principal nonces live in one
SQLite database. Every mutation happens inside a unit of work: the outermost
one is a BEGIN IMMEDIATE transaction, nested ones are savepoints. A unit of
work either commits all of its effects or none of them.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .calls import UINT256_MAX, normalize_address
from .config import EngineConfig
from .errors import InsufficientBalanceError, StateError
from .storage import ensure_private_dir, exclusive_lock

logger = logging.getLogger(__name__)


class HostState:
    """SQLite-backed world state with nested all-or-nothing units of work."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or EngineConfig().state_path
        ensure_private_dir(self.db_path.parent)
        self._lock_path = self.db_path.parent / f".{self.db_path.name}.lock"
        self._mutex = threading.RLock()
        self._depth = 0
        self._exit_stack: Optional[ExitStack] = None
        # One list of post-commit callbacks per open unit of work.
        self._pending: list[list[Callable[[], None]]] = []
        self._conn = sqlite3.connect(
            self.db_path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def close(self) -> None:
        with self._mutex:
            if self._depth:
                raise StateError("Cannot close host state inside a unit of work")
            self._conn.close()

    def __enter__(self) -> HostState:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _init_db(self) -> None:
        with exclusive_lock(self._lock_path):
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    address TEXT PRIMARY KEY,
                    balance TEXT NOT NULL DEFAULT '0'
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS storage (
                    address TEXT NOT NULL,
                    slot TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (address, slot)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS code (
                    address TEXT PRIMARY KEY,
                    kind TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS nonces (
                    principal TEXT PRIMARY KEY,
                    nonce TEXT NOT NULL,
                    activated_at INTEGER NOT NULL
                )
                """
            )

    # ── Units of work ─────────────────────────────────────────────

    @property
    def in_unit_of_work(self) -> bool:
        return self._depth > 0

    @contextmanager
    def unit_of_work(self) -> Iterator[HostState]:
        """Run the block atomically; nested calls become savepoints."""
        with self._mutex:
            outer = self._depth == 0
            savepoint = f"uow_{self._depth}"
            if outer:
                stack = ExitStack()
                stack.enter_context(exclusive_lock(self._lock_path))
                try:
                    self._conn.execute("BEGIN IMMEDIATE")
                except BaseException:
                    stack.close()
                    raise
                self._exit_stack = stack
            else:
                self._conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            self._pending.append([])

            try:
                yield self
            except BaseException:
                self._depth -= 1
                self._pending.pop()
                if outer:
                    try:
                        self._conn.execute("ROLLBACK")
                    finally:
                        self._release_outer()
                else:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise

            self._depth -= 1
            callbacks = self._pending.pop()
            if not outer:
                self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                self._pending[-1].extend(callbacks)
                return
            try:
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            finally:
                self._release_outer()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Post-commit callback %r failed", callback)

    def _release_outer(self) -> None:
        stack, self._exit_stack = self._exit_stack, None
        if stack is not None:
            stack.close()

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run callback after the outermost unit of work commits.

        Callbacks registered inside a unit of work that rolls back are dropped.
        """
        if not self._pending:
            raise StateError("on_commit requires an open unit of work")
        self._pending[-1].append(callback)

    def _require_unit(self, action: str) -> None:
        if self._depth == 0:
            raise StateError(f"{action} requires an open unit of work")

    # ── Balances ──────────────────────────────────────────────────

    def balance_of(self, address: str) -> int:
        row = self._conn.execute(
            "SELECT balance FROM accounts WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def set_balance(self, address: str, amount: int) -> None:
        self._require_unit("set_balance")
        if amount < 0 or amount > UINT256_MAX:
            raise StateError(f"Balance out of range: {amount}")
        self._conn.execute(
            """
            INSERT INTO accounts (address, balance) VALUES (?, ?)
            ON CONFLICT(address) DO UPDATE SET balance = excluded.balance
            """,
            (normalize_address(address), str(amount)),
        )

    def credit(self, address: str, amount: int) -> int:
        balance = self.balance_of(address) + amount
        self.set_balance(address, balance)
        return balance

    def debit(self, address: str, amount: int) -> int:
        balance = self.balance_of(address)
        if amount > balance:
            raise InsufficientBalanceError(normalize_address(address), balance, amount)
        self.set_balance(address, balance - amount)
        return balance - amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise StateError("Transfer amount must be >= 0")
        if amount == 0:
            return
        self.debit(sender, amount)
        self.credit(recipient, amount)

    def fund(self, address: str, amount: int) -> int:
        """Credit native units outside of any batch (local development helper)."""
        with self.unit_of_work():
            balance = self.credit(address, amount)
        logger.info("Funded %s with %s (balance %s)", normalize_address(address), amount, balance)
        return balance

    # ── Target storage and code ───────────────────────────────────

    def get_slot(self, address: str, slot: str) -> int:
        row = self._conn.execute(
            "SELECT value FROM storage WHERE address = ? AND slot = ?",
            (normalize_address(address), slot),
        ).fetchone()
        return int(row["value"]) if row else 0

    def set_slot(self, address: str, slot: str, value: int) -> None:
        self._require_unit("set_slot")
        if value < 0 or value > UINT256_MAX:
            raise StateError(f"Slot value out of range: {value}")
        self._conn.execute(
            """
            INSERT INTO storage (address, slot, value) VALUES (?, ?, ?)
            ON CONFLICT(address, slot) DO UPDATE SET value = excluded.value
            """,
            (normalize_address(address), slot, str(value)),
        )

    def code_kind(self, address: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT kind FROM code WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return row["kind"] if row else None

    def set_code_kind(self, address: str, kind: str) -> None:
        self._require_unit("set_code_kind")
        self._conn.execute(
            """
            INSERT INTO code (address, kind) VALUES (?, ?)
            ON CONFLICT(address) DO UPDATE SET kind = excluded.kind
            """,
            (normalize_address(address), kind),
        )

    # ── Nonces ────────────────────────────────────────────────────

    def nonce_of(self, principal: str) -> int:
        row = self._conn.execute(
            "SELECT nonce FROM nonces WHERE principal = ?",
            (normalize_address(principal),),
        ).fetchone()
        return int(row["nonce"]) if row else 0

    def is_activated(self, principal: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM nonces WHERE principal = ?",
            (normalize_address(principal),),
        ).fetchone()
        return row is not None

    def activate_nonce(self, principal: str) -> bool:
        """Create the nonce row at 0. Returns False if it already existed."""
        self._require_unit("activate_nonce")
        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO nonces (principal, nonce, activated_at)
            VALUES (?, '0', ?)
            """,
            (normalize_address(principal), int(time.time())),
        )
        return cursor.rowcount == 1

    def set_nonce(self, principal: str, nonce: int) -> None:
        self._require_unit("set_nonce")
        current = self.nonce_of(principal)
        if nonce < current:
            raise StateError(f"Nonce cannot decrease ({current} -> {nonce})")
        if nonce > UINT256_MAX:
            raise StateError("Nonce overflow")
        self._conn.execute(
            """
            INSERT INTO nonces (principal, nonce, activated_at) VALUES (?, ?, ?)
            ON CONFLICT(principal) DO UPDATE SET nonce = excluded.nonce
            """,
            (normalize_address(principal), str(nonce), int(time.time())),
        )
