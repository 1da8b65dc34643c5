"""
SQLite storage schema and operations.

Tables:
- follower_wallets: Custody references per follower (never plaintext keys)
- mirror_configs: Active mirror subscriptions, restored on restart
- mirror_outcomes: Every mirrored trade attempt (confirmed, pending, failed)

Fail-loud: DB errors raise exceptions, never silent.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from mirrorbot.gateways.interfaces import ConfigStore, OutcomeStore
from mirrorbot.models import Chain, FollowerProfile, MirrorConfig

# Schema version for migration tracking
SCHEMA_VERSION = 1


class MirrorStore(OutcomeStore, ConfigStore):
    """SQLite database for mirror trading persistence."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        """Initialize database schema. Idempotent."""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

            cursor.execute("SELECT value FROM metadata WHERE key = 'schema_version'")
            row = cursor.fetchone()
            if row:
                existing_version = int(row[0])
                if existing_version != SCHEMA_VERSION:
                    raise RuntimeError(
                        f"Schema version mismatch: expected {SCHEMA_VERSION}, got {existing_version}"
                    )
            else:
                cursor.execute(
                    "INSERT INTO metadata (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS follower_wallets (
                    owner_identity TEXT PRIMARY KEY,
                    evm_address TEXT,
                    evm_key_ref TEXT,
                    solana_address TEXT,
                    solana_key_ref TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS mirror_configs (
                    follower_id TEXT PRIMARY KEY,
                    target_wallet TEXT NOT NULL,
                    chain TEXT NOT NULL,
                    copy_percentage TEXT NOT NULL,
                    max_amount_per_trade TEXT NOT NULL,
                    enabled_assets TEXT,
                    slippage_bps INTEGER NOT NULL,
                    active INTEGER NOT NULL,
                    started_at TEXT NOT NULL
                )
                """
            )

            # Amounts stored as TEXT to keep Decimal precision
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS mirror_outcomes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    follower_id TEXT NOT NULL,
                    origin_reference TEXT NOT NULL,
                    chain TEXT NOT NULL,
                    target_wallet TEXT NOT NULL,
                    asset_in TEXT,
                    asset_out TEXT,
                    copied_amount TEXT NOT NULL,
                    original_amount TEXT NOT NULL,
                    result_reference TEXT,
                    success INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    failure_reason TEXT,
                    fee_reference TEXT,
                    timestamp TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_outcomes_follower ON mirror_outcomes(follower_id)"
            )

            conn.commit()

    # ------------------------------------------------------------------
    # Follower wallets
    # ------------------------------------------------------------------

    def set_wallet(self, profile: FollowerProfile):
        """Insert or replace a follower's wallet references."""
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO follower_wallets (
                    owner_identity, evm_address, evm_key_ref,
                    solana_address, solana_key_ref, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    profile.owner_identity,
                    profile.evm_address,
                    profile.evm_key_ref,
                    profile.solana_address,
                    profile.solana_key_ref,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )

    def get_profile(self, owner_identity: str) -> Optional[FollowerProfile]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM follower_wallets WHERE owner_identity = ?",
                (owner_identity,),
            ).fetchone()
        if row is None:
            return None
        return FollowerProfile(
            owner_identity=row["owner_identity"],
            evm_address=row["evm_address"],
            evm_key_ref=row["evm_key_ref"],
            solana_address=row["solana_address"],
            solana_key_ref=row["solana_key_ref"],
        )

    # ------------------------------------------------------------------
    # Mirror configs
    # ------------------------------------------------------------------

    def save_mirror_config(self, config: MirrorConfig):
        assets = json.dumps(sorted(config.enabled_assets)) if config.enabled_assets else None
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO mirror_configs (
                    follower_id, target_wallet, chain, copy_percentage,
                    max_amount_per_trade, enabled_assets, slippage_bps,
                    active, started_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    config.follower_id,
                    config.target_wallet,
                    config.chain.value,
                    str(config.copy_percentage),
                    str(config.max_amount_per_trade),
                    assets,
                    config.slippage_bps,
                    int(config.active),
                    config.started_at.isoformat(),
                ),
            )

    def delete_mirror_config(self, follower_id: str):
        with self.get_connection() as conn:
            conn.execute("DELETE FROM mirror_configs WHERE follower_id = ?", (follower_id,))

    def load_mirror_configs(self) -> List[MirrorConfig]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT * FROM mirror_configs ORDER BY started_at").fetchall()
        return [
            MirrorConfig(
                follower_id=row["follower_id"],
                target_wallet=row["target_wallet"],
                chain=Chain(row["chain"]),
                copy_percentage=Decimal(row["copy_percentage"]),
                max_amount_per_trade=Decimal(row["max_amount_per_trade"]),
                enabled_assets=json.loads(row["enabled_assets"]) if row["enabled_assets"] else None,
                slippage_bps=row["slippage_bps"],
                active=bool(row["active"]),
                started_at=datetime.fromisoformat(row["started_at"]),
            )
            for row in rows
        ]

    def is_active(self, follower_id: str) -> bool:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT active FROM mirror_configs WHERE follower_id = ?", (follower_id,)
            ).fetchone()
        return bool(row and row["active"])

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(self, owner_identity: str, record: Dict[str, Any]) -> int:
        """
        Persist a mirror outcome record.

        Returns:
            Outcome row ID
        """
        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO mirror_outcomes (
                    follower_id, origin_reference, chain, target_wallet,
                    asset_in, asset_out, copied_amount, original_amount,
                    result_reference, success, status, failure_reason,
                    fee_reference, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    owner_identity,
                    record["origin_reference"],
                    record["chain"],
                    record["target_wallet"],
                    record.get("asset_in"),
                    record.get("asset_out"),
                    str(record["copied_amount"]),
                    str(record["original_amount"]),
                    record.get("result_reference"),
                    int(bool(record["success"])),
                    record["status"],
                    record.get("failure_reason"),
                    record.get("fee_reference"),
                    record.get("timestamp") or datetime.now(timezone.utc).isoformat(),
                ),
            )
            return cursor.lastrowid

    def list_outcomes(self, follower_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent outcomes first."""
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM mirror_outcomes
                WHERE follower_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (follower_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_mirror_stats(self, follower_id: str) -> Dict[str, Any]:
        """
        Aggregate mirror statistics for a follower.

        Returns:
            Dict with total, successful, failed, pending, total_volume,
            success_rate (percent) and is_active
        """
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT status, copied_amount FROM mirror_outcomes WHERE follower_id = ?",
                (follower_id,),
            ).fetchall()

        successful = [r for r in rows if r["status"] == "confirmed"]
        failed = sum(1 for r in rows if r["status"] == "failed")
        pending = sum(1 for r in rows if r["status"] == "pending")
        volume = sum((Decimal(r["copied_amount"]) for r in successful), Decimal("0"))
        total = len(rows)

        return {
            "total": total,
            "successful": len(successful),
            "failed": failed,
            "pending": pending,
            "total_volume": volume,
            "success_rate": (len(successful) / total * 100) if total else 0.0,
            "is_active": self.is_active(follower_id),
        }
