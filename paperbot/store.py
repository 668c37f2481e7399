"""
Persistence for bot configs, positions, trades and audit logs

Each store applies a whole TickResult atomically: either every change of the
tick lands or none does.
"""
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .errors import AccountNotFoundError, PositionConflictError, StoreError
from .models import BotConfig, Position, Trade, BotLog, TickResult, utcnow

logger = logging.getLogger(__name__)


class BotStore(ABC):
    """Storage interface the bot manager works against"""

    @abstractmethod
    def create_account(self, config: BotConfig) -> BotConfig: ...

    @abstractmethod
    def list_accounts(self) -> List[BotConfig]: ...

    @abstractmethod
    def get_config(self, account_id: str) -> BotConfig: ...

    @abstractmethod
    def save_config(self, config: BotConfig) -> BotConfig: ...

    @abstractmethod
    def get_open_positions(self, account_id: str) -> List[Position]: ...

    @abstractmethod
    def get_positions(self, account_id: str, limit: int = 20) -> List[Position]: ...

    @abstractmethod
    def get_trades(self, account_id: str, limit: int = 50) -> List[Trade]: ...

    @abstractmethod
    def get_logs(self, account_id: str, limit: int = 30) -> List[BotLog]: ...

    @abstractmethod
    def append_log(self, entry: BotLog) -> None: ...

    @abstractmethod
    def commit(self, result: TickResult) -> None:
        """Apply every change of a tick in one transaction"""

    @abstractmethod
    def clear_account(self, config: BotConfig) -> None:
        """Drop open positions, trades and logs and save the given config"""

    def close(self) -> None:
        """Release backend resources"""

    def _check_commit(self, result: TickResult, open_positions: List[Position]) -> None:
        """Reject a tick that would break the one-open-position rule or touch a
        position that is no longer open"""
        open_ids = {p.id for p in open_positions}
        for position in result.updated_positions:
            if position.id not in open_ids:
                raise PositionConflictError(f"Position {position.id} is not open")
        closing = {p.id for p in result.updated_positions if not p.is_open}
        remaining = len(open_ids - closing)
        if result.opened_positions and remaining + len(result.opened_positions) > 1:
            raise PositionConflictError(
                f"Account '{result.account_id}' already has an open position")


class InMemoryStore(BotStore):
    """Process-local store, used by default and in tests"""

    def __init__(self):
        self._lock = threading.Lock()
        self._configs: Dict[str, BotConfig] = {}
        self._positions: Dict[str, Dict[str, Position]] = {}
        self._trades: Dict[str, List[Trade]] = {}
        self._logs: Dict[str, List[BotLog]] = {}

    def create_account(self, config: BotConfig) -> BotConfig:
        with self._lock:
            self._configs[config.id] = config.model_copy()
            self._positions.setdefault(config.id, {})
            self._trades.setdefault(config.id, [])
            self._logs.setdefault(config.id, [])
        return config

    def list_accounts(self) -> List[BotConfig]:
        with self._lock:
            return [c.model_copy() for c in self._configs.values()]

    def get_config(self, account_id: str) -> BotConfig:
        with self._lock:
            config = self._configs.get(account_id)
            if config is None:
                raise AccountNotFoundError(account_id)
            return config.model_copy()

    def save_config(self, config: BotConfig) -> BotConfig:
        with self._lock:
            if config.id not in self._configs:
                raise AccountNotFoundError(config.id)
            config = config.model_copy(update={"updated_at": utcnow()})
            self._configs[config.id] = config
            return config.model_copy()

    def get_open_positions(self, account_id: str) -> List[Position]:
        with self._lock:
            return [p for p in self._positions.get(account_id, {}).values() if p.is_open]

    def get_positions(self, account_id: str, limit: int = 20) -> List[Position]:
        with self._lock:
            positions = sorted(self._positions.get(account_id, {}).values(),
                               key=lambda p: p.opened_at, reverse=True)
            return positions[:limit]

    def get_trades(self, account_id: str, limit: int = 50) -> List[Trade]:
        with self._lock:
            return list(reversed(self._trades.get(account_id, [])))[:limit]

    def get_logs(self, account_id: str, limit: int = 30) -> List[BotLog]:
        with self._lock:
            return list(reversed(self._logs.get(account_id, [])))[:limit]

    def append_log(self, entry: BotLog) -> None:
        with self._lock:
            self._logs.setdefault(entry.account_id, []).append(entry)

    def commit(self, result: TickResult) -> None:
        with self._lock:
            if result.account_id not in self._configs:
                raise AccountNotFoundError(result.account_id)
            positions = self._positions.setdefault(result.account_id, {})
            self._check_commit(result, [p for p in positions.values() if p.is_open])

            self._configs[result.account_id] = result.config.model_copy(update={"updated_at": utcnow()})
            for position in result.updated_positions + result.opened_positions:
                positions[position.id] = position
            self._trades.setdefault(result.account_id, []).extend(result.trades)
            self._logs.setdefault(result.account_id, []).extend(result.logs)

    def clear_account(self, config: BotConfig) -> None:
        with self._lock:
            if config.id not in self._configs:
                raise AccountNotFoundError(config.id)
            positions = self._positions.get(config.id, {})
            self._positions[config.id] = {k: p for k, p in positions.items() if not p.is_open}
            self._trades[config.id] = []
            self._logs[config.id] = []
            self._configs[config.id] = config.model_copy(update={"updated_at": utcnow()})


class SQLiteStore(BotStore):
    """SQLite backed store; rows keep their model as JSON next to the columns
    that are queried on"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_db()

    def _init_db(self):
        with self.conn:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS bot_config (
                    id          TEXT PRIMARY KEY,
                    data        TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS bot_positions (
                    id          TEXT PRIMARY KEY,
                    account_id  TEXT NOT NULL,
                    status      TEXT NOT NULL,
                    opened_at   TEXT NOT NULL,
                    data        TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS bot_trades (
                    id          TEXT PRIMARY KEY,
                    account_id  TEXT NOT NULL,
                    created_at  TEXT NOT NULL,
                    data        TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS bot_logs (
                    id          TEXT PRIMARY KEY,
                    account_id  TEXT NOT NULL,
                    created_at  TEXT NOT NULL,
                    data        TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_positions_account ON bot_positions (account_id, status);
                CREATE INDEX IF NOT EXISTS idx_trades_account ON bot_trades (account_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_logs_account ON bot_logs (account_id, created_at);
            """)

    def close(self):
        self.conn.close()

    def _load_config(self, account_id: str) -> BotConfig:
        row = self.conn.execute("SELECT data FROM bot_config WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return BotConfig.model_validate_json(row[0])

    def _write_config(self, config: BotConfig) -> BotConfig:
        config = config.model_copy(update={"updated_at": utcnow()})
        self.conn.execute("INSERT OR REPLACE INTO bot_config VALUES (?, ?)",
                          (config.id, config.model_dump_json()))
        return config

    def _write_position(self, position: Position):
        self.conn.execute(
            "INSERT OR REPLACE INTO bot_positions VALUES (?, ?, ?, ?, ?)",
            (position.id, position.account_id, position.status,
             position.opened_at.isoformat(), position.model_dump_json()),
        )

    def _open_positions(self, account_id: str) -> List[Position]:
        cur = self.conn.execute(
            "SELECT data FROM bot_positions WHERE account_id = ? AND status = 'open'", (account_id,))
        return [Position.model_validate_json(row[0]) for row in cur.fetchall()]

    def create_account(self, config: BotConfig) -> BotConfig:
        with self._lock, self.conn:
            self.conn.execute("INSERT OR REPLACE INTO bot_config VALUES (?, ?)",
                              (config.id, config.model_dump_json()))
        return config

    def list_accounts(self) -> List[BotConfig]:
        with self._lock:
            cur = self.conn.execute("SELECT data FROM bot_config ORDER BY id")
            return [BotConfig.model_validate_json(row[0]) for row in cur.fetchall()]

    def get_config(self, account_id: str) -> BotConfig:
        with self._lock:
            return self._load_config(account_id)

    def save_config(self, config: BotConfig) -> BotConfig:
        with self._lock, self.conn:
            self._load_config(config.id)
            return self._write_config(config)

    def get_open_positions(self, account_id: str) -> List[Position]:
        with self._lock:
            return self._open_positions(account_id)

    def get_positions(self, account_id: str, limit: int = 20) -> List[Position]:
        with self._lock:
            cur = self.conn.execute(
                "SELECT data FROM bot_positions WHERE account_id = ? ORDER BY opened_at DESC LIMIT ?",
                (account_id, limit))
            return [Position.model_validate_json(row[0]) for row in cur.fetchall()]

    def get_trades(self, account_id: str, limit: int = 50) -> List[Trade]:
        with self._lock:
            cur = self.conn.execute(
                "SELECT data FROM bot_trades WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (account_id, limit))
            return [Trade.model_validate_json(row[0]) for row in cur.fetchall()]

    def get_logs(self, account_id: str, limit: int = 30) -> List[BotLog]:
        with self._lock:
            cur = self.conn.execute(
                "SELECT data FROM bot_logs WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (account_id, limit))
            return [BotLog.model_validate_json(row[0]) for row in cur.fetchall()]

    def append_log(self, entry: BotLog) -> None:
        with self._lock, self.conn:
            self._insert_log(entry)

    def _insert_log(self, entry: BotLog):
        self.conn.execute("INSERT INTO bot_logs VALUES (?, ?, ?, ?)",
                          (entry.id, entry.account_id, entry.created_at.isoformat(), entry.model_dump_json()))

    def commit(self, result: TickResult) -> None:
        with self._lock:
            try:
                with self.conn:
                    self._load_config(result.account_id)
                    self._check_commit(result, self._open_positions(result.account_id))
                    self._write_config(result.config)
                    for position in result.updated_positions + result.opened_positions:
                        self._write_position(position)
                    for trade in result.trades:
                        self.conn.execute(
                            "INSERT INTO bot_trades VALUES (?, ?, ?, ?)",
                            (trade.id, trade.account_id, trade.created_at.isoformat(), trade.model_dump_json()))
                    for entry in result.logs:
                        self._insert_log(entry)
            except sqlite3.Error as e:
                logger.error(f"❌ Failed to commit tick for {result.account_id}: {e}")
                raise StoreError(str(e)) from e

    def clear_account(self, config: BotConfig) -> None:
        with self._lock:
            try:
                with self.conn:
                    self._load_config(config.id)
                    self.conn.execute("DELETE FROM bot_positions WHERE account_id = ? AND status = 'open'",
                                      (config.id,))
                    self.conn.execute("DELETE FROM bot_trades WHERE account_id = ?", (config.id,))
                    self.conn.execute("DELETE FROM bot_logs WHERE account_id = ?", (config.id,))
                    self._write_config(config)
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e


def create_store(db_path: Optional[str] = None) -> BotStore:
    if db_path:
        logger.info(f"💾 Using SQLite store at {db_path}")
        return SQLiteStore(db_path)
    logger.info("💾 Using in-memory store")
    return InMemoryStore()
