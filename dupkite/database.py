# dupkite/database.py
# PostgreSQL row store for reports and report photos (asyncpg)

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from .logging_config import get_db_logger

db_logger = get_db_logger()

REPORT_COLUMNS = (
    "id, city, lat, lng, severity, comment, first_name, last_name, created_at, "
    "municipality, settlement, category, status, updated_at, resolved_at, metadata"
)


class ReportStore:
    """Row store operations the services rely on"""

    async def insert_report(self, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def delete_report(self, report_id: str) -> None:
        raise NotImplementedError

    async def insert_photos(self, report_id: str, storage_paths: Sequence[str]) -> None:
        raise NotImplementedError

    async def fetch_visible_reports(
        self,
        category: Optional[str] = None,
        settlement: Optional[str] = None,
        municipality: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def fetch_photos(self, report_ids: Sequence[str]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def consume_verification_token(self, token_hash: str) -> Optional[str]:
        raise NotImplementedError

    async def fetch_stale_unverified(self, cutoff: datetime) -> List[str]:
        raise NotImplementedError

    async def delete_photos(self, report_ids: Sequence[str]) -> None:
        raise NotImplementedError

    async def delete_reports(self, report_ids: Sequence[str]) -> int:
        raise NotImplementedError

    async def update_status(self, report_id: str, status: str, now: datetime) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def ping(self) -> None:
        raise NotImplementedError


# --- PostgreSQL connection pool ---
# Serverless hosts may run each invocation on a fresh event loop, so the pool
# is tied to the loop that created it and rebuilt when the loop changes
_pool = None
_pool_loop = None
_db_initialized = False


async def _init_connection(conn):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def get_pool(postgres_url: str):
    """Get or create the PostgreSQL connection pool (event-loop aware)"""
    global _pool, _pool_loop, _db_initialized

    current_loop = asyncio.get_running_loop()

    if _pool is None or _pool_loop is not current_loop:
        if _pool is not None:
            try:
                db_logger.info("Closing old connection pool (event loop changed)")
                await _pool.close()
            except Exception as e:
                db_logger.warning(f"Error closing old pool: {e}")

        db_logger.info("Creating PostgreSQL connection pool", extra={"event_loop_id": id(current_loop)})
        try:
            _pool = await asyncpg.create_pool(
                postgres_url,
                min_size=1,
                max_size=10,
                command_timeout=60,
                init=_init_connection
            )
            _pool_loop = current_loop
            db_logger.info("PostgreSQL connection pool created", extra={"min_size": 1, "max_size": 10})

            # Startup hooks do not reliably fire on serverless, so schema is ensured here
            if not _db_initialized:
                await init_db(_pool)
                _db_initialized = True

        except Exception as e:
            db_logger.error(f"Failed to create connection pool: {e}", exc_info=True)
            raise

    return _pool


async def close_pool():
    global _pool, _pool_loop
    if _pool is not None:
        await _pool.close()
        _pool = None
        _pool_loop = None


async def init_db(pool):
    """Create tables and indexes if they don't exist"""
    db_logger.info("Initializing database tables")
    try:
        async with pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS reports (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    city TEXT,
                    lat DOUBLE PRECISION NOT NULL CHECK (lat BETWEEN -90 AND 90),
                    lng DOUBLE PRECISION NOT NULL CHECK (lng BETWEEN -180 AND 180),
                    severity SMALLINT NOT NULL CHECK (severity IN (1, 2, 3)),
                    comment VARCHAR(500),
                    first_name TEXT,
                    last_name TEXT,
                    email_hash VARCHAR(64),
                    verify_token_hash VARCHAR(64),
                    verified BOOLEAN NOT NULL DEFAULT false,
                    municipality TEXT NOT NULL DEFAULT 'Lovech',
                    settlement TEXT NOT NULL DEFAULT 'Lovech',
                    category TEXT NOT NULL DEFAULT 'pothole' CHECK (category IN (
                        'pothole', 'fallen_tree', 'road_marking',
                        'street_light', 'traffic_sign', 'hazard'
                    )),
                    status TEXT NOT NULL DEFAULT 'new' CHECK (status IN ('new', 'in_progress', 'resolved')),
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ,
                    resolved_at TIMESTAMPTZ
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS report_photos (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    report_id UUID NOT NULL,
                    storage_path TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)

            await conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_verified_created ON reports(verified, created_at DESC)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_token_hash ON reports(verify_token_hash)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_report_photos_report_id ON report_photos(report_id)")

            db_logger.info("Database tables and indexes initialized")

    except Exception as e:
        db_logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def _report_from_row(row) -> Dict[str, Any]:
    report = dict(row)
    report["id"] = str(report["id"])
    report["metadata"] = report.get("metadata") or {}
    return report


class PostgresReportStore(ReportStore):
    def __init__(self, postgres_url: str):
        self.postgres_url = postgres_url

    async def _pool(self):
        return await get_pool(self.postgres_url)

    async def insert_report(self, values: Dict[str, Any]) -> Dict[str, Any]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                INSERT INTO reports(
                    city, lat, lng, severity, comment, first_name, last_name,
                    email_hash, verify_token_hash, verified, municipality,
                    settlement, category, status, metadata
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                RETURNING {REPORT_COLUMNS}
            """, values["city"], values["lat"], values["lng"], values["severity"],
                values["comment"], values["first_name"], values["last_name"],
                values["email_hash"], values["verify_token_hash"], values["verified"],
                values["municipality"], values["settlement"], values["category"],
                values["status"], values["metadata"])

        report = _report_from_row(row)
        db_logger.info("Report row inserted", extra={"report_id": report["id"]})
        return report

    async def delete_report(self, report_id: str) -> None:
        pool = await self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM report_photos WHERE report_id = $1", report_id)
                await conn.execute("DELETE FROM reports WHERE id = $1", report_id)
        db_logger.info("Report row deleted", extra={"report_id": report_id})

    async def insert_photos(self, report_id: str, storage_paths: Sequence[str]) -> None:
        pool = await self._pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                "INSERT INTO report_photos(report_id, storage_path) VALUES ($1, $2)",
                [(report_id, path) for path in storage_paths]
            )
        db_logger.debug("Photo rows inserted", extra={"report_id": report_id, "photo_count": len(storage_paths)})

    async def fetch_visible_reports(self, category=None, settlement=None, municipality=None, limit=1000):
        conditions = ["verified = true"]
        params: List[Any] = []

        if category:
            params.append(category)
            conditions.append(f"category = ${len(params)}")
        if settlement:
            params.append(settlement)
            conditions.append(f"settlement = ${len(params)}")
        if municipality:
            params.append(municipality)
            conditions.append(f"municipality = ${len(params)}")

        params.append(limit)
        query = f"""
            SELECT {REPORT_COLUMNS} FROM reports
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${len(params)}
        """

        pool = await self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [_report_from_row(row) for row in rows]

    async def fetch_photos(self, report_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not report_ids:
            return []
        pool = await self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT report_id, storage_path FROM report_photos WHERE report_id = ANY($1::uuid[]) ORDER BY created_at, storage_path",
                list(report_ids)
            )
        return [{"report_id": str(row["report_id"]), "storage_path": row["storage_path"]} for row in rows]

    async def consume_verification_token(self, token_hash: str) -> Optional[str]:
        # Single statement: a token can flip at most one report, exactly once
        pool = await self._pool()
        async with pool.acquire() as conn:
            report_id = await conn.fetchval("""
                UPDATE reports SET verified = true, verify_token_hash = NULL
                WHERE id = (SELECT id FROM reports WHERE verify_token_hash = $1 LIMIT 1)
                RETURNING id
            """, token_hash)
        return str(report_id) if report_id else None

    async def fetch_stale_unverified(self, cutoff: datetime) -> List[str]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id FROM reports WHERE verified = false AND created_at < $1",
                cutoff
            )
        return [str(row["id"]) for row in rows]

    async def delete_photos(self, report_ids: Sequence[str]) -> None:
        pool = await self._pool()
        async with pool.acquire() as conn:
            await conn.execute("DELETE FROM report_photos WHERE report_id = ANY($1::uuid[])", list(report_ids))

    async def delete_reports(self, report_ids: Sequence[str]) -> int:
        pool = await self._pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM reports WHERE id = ANY($1::uuid[])", list(report_ids))
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])

    async def update_status(self, report_id: str, status: str, now: datetime) -> Optional[Dict[str, Any]]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                UPDATE reports SET
                    status = $2,
                    updated_at = $3,
                    resolved_at = CASE WHEN $2 = 'resolved' THEN $3 ELSE NULL END
                WHERE id = $1
                RETURNING {REPORT_COLUMNS}
            """, report_id, status, now)
        return _report_from_row(row) if row else None

    async def ping(self) -> None:
        pool = await self._pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
