"""SQLite-backed persistence for blockchains, monitored contracts, alerts and polling sessions."""
from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from storage.models import (
    Alert,
    AlertChannels,
    AlertStatus,
    AlertType,
    Blockchain,
    ContractBid,
    ContractSelectionCriteria,
    MonitoredContract,
    PollingSession,
)

if TYPE_CHECKING:
    from polling.models import ChainEvent

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(ISO_FORMAT)


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


class SQLiteRepository:
    """
    Provides async-friendly helpers around one sqlite3 connection.

    Every statement runs under a threading.Lock in the default executor. Bid
    amounts are stored as decimal TEXT because they overflow SQLite INTEGER.
    """

    def __init__(self, db_path: Path | str = Path("data/cache_monitor.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS blockchain (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                rpc_url TEXT NOT NULL,
                chain_id INTEGER NOT NULL,
                cache_manager_address TEXT NOT NULL,
                arb_wasm_cache_address TEXT NOT NULL,
                cache_manager_automation_address TEXT,
                last_synced_block INTEGER NOT NULL DEFAULT 0,
                enabled INTEGER NOT NULL DEFAULT 1,
                settings TEXT
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS monitored_contract (
                blockchain_id TEXT NOT NULL,
                address TEXT NOT NULL,
                owner_user_id TEXT NOT NULL,
                name TEXT,
                PRIMARY KEY (blockchain_id, address),
                FOREIGN KEY (blockchain_id) REFERENCES blockchain(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS selection_criteria (
                contract_address TEXT PRIMARY KEY,
                min_bid TEXT NOT NULL,
                max_bid TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS contract_bid (
                blockchain_id TEXT NOT NULL,
                code_hash TEXT NOT NULL,
                bid TEXT NOT NULL,
                bid_block_timestamp INTEGER,
                block_number INTEGER NOT NULL,
                log_index INTEGER NOT NULL,
                PRIMARY KEY (blockchain_id, code_hash)
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS alert (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                value TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'active',
                triggered_count INTEGER NOT NULL DEFAULT 0,
                email_enabled INTEGER NOT NULL DEFAULT 0,
                slack_enabled INTEGER NOT NULL DEFAULT 0,
                telegram_enabled INTEGER NOT NULL DEFAULT 0,
                webhook_enabled INTEGER NOT NULL DEFAULT 0,
                last_triggered_at TEXT,
                destinations TEXT
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS polling_session (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                blockchain_id TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                duration REAL,
                success INTEGER NOT NULL,
                error TEXT,
                data_points INTEGER NOT NULL DEFAULT 0
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_alert_user
                ON alert(user_id);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_polling_session_chain_time
                ON polling_session(blockchain_id, start_time);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _execute(self, query: str, params: tuple = ()) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            self._connection.commit()
            rowcount = cursor.rowcount
            cursor.close()
        return rowcount

    def _fetch(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
            cursor.close()
        return rows

    # --- Blockchains ---

    async def upsert_blockchain(self, blockchain: Blockchain) -> None:
        """Inserts or updates a blockchain. An existing checkpoint is never moved backward."""
        await self._run(
            self._execute,
            """
            INSERT INTO blockchain (
                id, name, rpc_url, chain_id, cache_manager_address, arb_wasm_cache_address,
                cache_manager_automation_address, last_synced_block, enabled, settings
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                rpc_url = excluded.rpc_url,
                chain_id = excluded.chain_id,
                cache_manager_address = excluded.cache_manager_address,
                arb_wasm_cache_address = excluded.arb_wasm_cache_address,
                cache_manager_automation_address = excluded.cache_manager_automation_address,
                last_synced_block = MAX(blockchain.last_synced_block, excluded.last_synced_block),
                enabled = excluded.enabled,
                settings = excluded.settings
            """,
            (
                blockchain.id,
                blockchain.name,
                blockchain.rpc_url,
                blockchain.chain_id,
                blockchain.cache_manager_address,
                blockchain.arb_wasm_cache_address,
                blockchain.cache_manager_automation_address,
                blockchain.last_synced_block,
                1 if blockchain.enabled else 0,
                json.dumps(blockchain.settings) if blockchain.settings else None,
            ),
        )

    async def fetch_enabled_blockchains(self) -> list[Blockchain]:
        rows = await self._run(self._fetch, "SELECT * FROM blockchain WHERE enabled = 1 ORDER BY id")
        return [self._blockchain(row) for row in rows]

    async def fetch_blockchain(self, blockchain_id: str) -> Optional[Blockchain]:
        rows = await self._run(self._fetch, "SELECT * FROM blockchain WHERE id = ?", (blockchain_id,))
        return self._blockchain(rows[0]) if rows else None

    async def update_last_synced_block(self, blockchain_id: str, block_number: int) -> bool:
        """Advances the checkpoint in one conditional UPDATE. Returns False when it would not move forward."""
        updated = await self._run(
            self._execute,
            "UPDATE blockchain SET last_synced_block = ? WHERE id = ? AND last_synced_block < ?",
            (block_number, blockchain_id, block_number),
        )
        return updated > 0

    @staticmethod
    def _blockchain(row: sqlite3.Row) -> Blockchain:
        return Blockchain(
            id=row["id"],
            name=row["name"],
            rpc_url=row["rpc_url"],
            chain_id=row["chain_id"],
            cache_manager_address=row["cache_manager_address"],
            arb_wasm_cache_address=row["arb_wasm_cache_address"],
            cache_manager_automation_address=row["cache_manager_automation_address"],
            last_synced_block=row["last_synced_block"],
            enabled=bool(row["enabled"]),
            settings=json.loads(row["settings"]) if row["settings"] else {},
        )

    # --- Contracts and criteria ---

    async def upsert_contract(self, contract: MonitoredContract) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO monitored_contract (blockchain_id, address, owner_user_id, name)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(blockchain_id, address) DO UPDATE SET name = excluded.name
            """,
            (contract.blockchain_id, contract.address.lower(), contract.owner_user_id.lower(), contract.name),
        )

    async def fetch_contracts(
        self,
        blockchain_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[MonitoredContract]:
        query = "SELECT * FROM monitored_contract WHERE blockchain_id = ? ORDER BY address"
        params: tuple = (blockchain_id,)
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params = (blockchain_id, limit, offset)
        rows = await self._run(self._fetch, query, params)
        return [
            MonitoredContract(
                address=row["address"],
                blockchain_id=row["blockchain_id"],
                owner_user_id=row["owner_user_id"],
                name=row["name"],
            )
            for row in rows
        ]

    async def upsert_criteria(self, criteria: ContractSelectionCriteria) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO selection_criteria (contract_address, min_bid, max_bid, enabled)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(contract_address) DO UPDATE SET
                min_bid = excluded.min_bid,
                max_bid = excluded.max_bid,
                enabled = excluded.enabled
            """,
            (criteria.contract_address.lower(), str(criteria.min_bid), str(criteria.max_bid),
             1 if criteria.enabled else 0),
        )

    async def fetch_criteria(self, addresses: list[str]) -> dict[str, ContractSelectionCriteria]:
        if not addresses:
            return {}
        lowered = [address.lower() for address in addresses]
        placeholders = ", ".join("?" for _ in lowered)
        rows = await self._run(
            self._fetch,
            f"SELECT * FROM selection_criteria WHERE contract_address IN ({placeholders})",
            tuple(lowered),
        )
        return {
            row["contract_address"]: ContractSelectionCriteria(
                contract_address=row["contract_address"],
                min_bid=int(row["min_bid"]),
                max_bid=int(row["max_bid"]),
                enabled=bool(row["enabled"]),
            )
            for row in rows
        }

    # --- Bids ---

    async def apply_bid_events(self, blockchain_id: str, events: Iterable["ChainEvent"]) -> None:
        """
        Folds InsertBid/DeleteBid logs into the stored bid per code hash, in
        one transaction. A log older than the stored bid is ignored, so the
        same range can be applied again after a failed cycle.
        """
        ordered = sorted(
            (event for event in events if event.code_hash and (event.is_bid or event.is_eviction)),
            key=lambda event: event.sort_key,
        )
        if ordered:
            await self._run(self._apply_bid_events_sync, blockchain_id, ordered)

    def _apply_bid_events_sync(self, blockchain_id: str, events: list["ChainEvent"]) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                for event in events:
                    if event.is_bid:
                        cursor.execute(
                            """
                            INSERT INTO contract_bid (
                                blockchain_id, code_hash, bid, bid_block_timestamp, block_number, log_index
                            ) VALUES (?, ?, ?, ?, ?, ?)
                            ON CONFLICT(blockchain_id, code_hash) DO UPDATE SET
                                bid = excluded.bid,
                                bid_block_timestamp = excluded.bid_block_timestamp,
                                block_number = excluded.block_number,
                                log_index = excluded.log_index
                            WHERE excluded.block_number > contract_bid.block_number
                               OR (excluded.block_number = contract_bid.block_number
                                   AND excluded.log_index > contract_bid.log_index)
                            """,
                            (blockchain_id, event.code_hash.lower(), str(event.bid or 0), event.block_timestamp,
                             event.block_number, event.log_index),
                        )
                    else:
                        cursor.execute(
                            """
                            DELETE FROM contract_bid
                            WHERE blockchain_id = ? AND code_hash = ?
                              AND (block_number < ? OR (block_number = ? AND log_index < ?))
                            """,
                            (blockchain_id, event.code_hash.lower(), event.block_number, event.block_number,
                             event.log_index),
                        )
                self._connection.commit()
            except sqlite3.Error:
                self._connection.rollback()
                raise
            finally:
                cursor.close()

    async def fetch_bids(self, blockchain_id: str, code_hashes: Iterable[str]) -> dict[str, ContractBid]:
        hashes = sorted({code_hash.lower() for code_hash in code_hashes})
        if not hashes:
            return {}
        placeholders = ", ".join("?" for _ in hashes)
        rows = await self._run(
            self._fetch,
            f"SELECT * FROM contract_bid WHERE blockchain_id = ? AND code_hash IN ({placeholders})",
            (blockchain_id, *hashes),
        )
        return {
            row["code_hash"]: ContractBid(
                blockchain_id=row["blockchain_id"],
                code_hash=row["code_hash"],
                bid=int(row["bid"]),
                bid_block_timestamp=row["bid_block_timestamp"],
                block_number=row["block_number"],
                log_index=row["log_index"],
            )
            for row in rows
        }

    # --- Alerts ---

    async def save_alert(self, alert: Alert) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO alert (
                id, user_id, type, value, is_active, status, triggered_count,
                email_enabled, slack_enabled, telegram_enabled, webhook_enabled,
                last_triggered_at, destinations
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                value = excluded.value,
                is_active = excluded.is_active,
                status = excluded.status,
                email_enabled = excluded.email_enabled,
                slack_enabled = excluded.slack_enabled,
                telegram_enabled = excluded.telegram_enabled,
                webhook_enabled = excluded.webhook_enabled,
                destinations = excluded.destinations
            """,
            (
                alert.id,
                alert.user_id.lower(),
                alert.type.value,
                alert.value,
                1 if alert.is_active else 0,
                alert.status.value,
                alert.triggered_count,
                1 if alert.channels.email else 0,
                1 if alert.channels.slack else 0,
                1 if alert.channels.telegram else 0,
                1 if alert.channels.webhook else 0,
                _to_text(alert.last_triggered_at),
                json.dumps(alert.destinations) if alert.destinations else None,
            ),
        )

    async def fetch_alerts(self, user_id: str) -> list[Alert]:
        rows = await self._run(
            self._fetch, "SELECT * FROM alert WHERE user_id = ? ORDER BY id", (user_id.lower(),)
        )
        return [self._alert(row) for row in rows]

    async def fetch_alert(self, alert_id: str) -> Optional[Alert]:
        rows = await self._run(self._fetch, "SELECT * FROM alert WHERE id = ?", (alert_id,))
        return self._alert(rows[0]) if rows else None

    async def delete_alert(self, alert_id: str) -> bool:
        deleted = await self._run(self._execute, "DELETE FROM alert WHERE id = ?", (alert_id,))
        return deleted > 0

    async def mark_alert_triggered(self, alert_id: str, expected_count: int, triggered_at: datetime) -> bool:
        """
        Compare-and-set on triggered_count: increments it, stamps the time and
        sets status 'triggered' only if nobody else fired the alert first.
        """
        updated = await self._run(
            self._execute,
            """
            UPDATE alert
            SET triggered_count = triggered_count + 1,
                last_triggered_at = ?,
                status = 'triggered'
            WHERE id = ? AND triggered_count = ? AND status != 'paused'
            """,
            (_to_text(triggered_at), alert_id, expected_count),
        )
        return updated > 0

    async def rearm_alerts(self, triggered_before: datetime) -> int:
        return await self._run(
            self._execute,
            """
            UPDATE alert SET status = 'active'
            WHERE status = 'triggered' AND last_triggered_at IS NOT NULL AND last_triggered_at < ?
            """,
            (_to_text(triggered_before),),
        )

    @staticmethod
    def _alert(row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            user_id=row["user_id"],
            type=AlertType(row["type"]),
            value=row["value"],
            is_active=bool(row["is_active"]),
            status=AlertStatus(row["status"]),
            triggered_count=row["triggered_count"],
            channels=AlertChannels(
                email=bool(row["email_enabled"]),
                slack=bool(row["slack_enabled"]),
                telegram=bool(row["telegram_enabled"]),
                webhook=bool(row["webhook_enabled"]),
            ),
            last_triggered_at=_from_text(row["last_triggered_at"]),
            destinations=json.loads(row["destinations"]) if row["destinations"] else {},
        )

    # --- Polling sessions ---

    async def record_polling_session(self, session: PollingSession) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO polling_session (
                blockchain_id, start_time, end_time, duration, success, error, data_points
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.blockchain_id,
                _to_text(session.start_time),
                _to_text(session.end_time),
                session.duration,
                1 if session.success else 0,
                session.error,
                session.data_points,
            ),
        )

    async def fetch_polling_sessions(self, blockchain_id: str, limit: int = 50) -> list[PollingSession]:
        rows = await self._run(
            self._fetch,
            """
            SELECT * FROM polling_session
            WHERE blockchain_id = ?
            ORDER BY start_time DESC, id DESC
            LIMIT ?
            """,
            (blockchain_id, limit),
        )
        return [
            PollingSession(
                blockchain_id=row["blockchain_id"],
                start_time=_from_text(row["start_time"]),
                end_time=_from_text(row["end_time"]),
                duration=row["duration"],
                success=bool(row["success"]),
                error=row["error"],
                data_points=row["data_points"],
            )
            for row in rows
        ]

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()


__all__ = ["SQLiteRepository"]
