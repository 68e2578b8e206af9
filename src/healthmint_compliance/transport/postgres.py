"""PostgreSQL transport backed by an asyncpg pool.

HIPAA Citation: 45 CFR 164.312(b) - Audit Controls

Audit and consent tables are append-only: triggers reject UPDATE and
DELETE so the durable trail cannot be rewritten.
"""

import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from ..errors import DeliveryError
from .base import Transport

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS compliance_audit_log (
    entry_id UUID PRIMARY KEY,
    action TEXT NOT NULL,
    event_time TIMESTAMPTZ NOT NULL,
    actor TEXT,
    client_ip TEXT,
    user_agent TEXT,
    severity TEXT NOT NULL DEFAULT 'info',
    details JSONB NOT NULL DEFAULT '{}'::jsonb,
    received_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_compliance_audit_action
    ON compliance_audit_log (action, event_time);

CREATE TABLE IF NOT EXISTS consent_records (
    record_id BIGSERIAL PRIMARY KEY,
    subject_id TEXT NOT NULL,
    consent_type TEXT NOT NULL,
    granted BOOLEAN NOT NULL,
    decided_at TIMESTAMPTZ NOT NULL,
    purpose TEXT,
    details JSONB NOT NULL DEFAULT '{}'::jsonb,
    received_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_consent_subject_type
    ON consent_records (subject_id, consent_type, decided_at);

CREATE OR REPLACE FUNCTION compliance_reject_modification() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS compliance_audit_log_immutable ON compliance_audit_log;
CREATE TRIGGER compliance_audit_log_immutable
    BEFORE UPDATE OR DELETE ON compliance_audit_log
    FOR EACH ROW EXECUTE FUNCTION compliance_reject_modification();

DROP TRIGGER IF EXISTS consent_records_immutable ON consent_records;
CREATE TRIGGER consent_records_immutable
    BEFORE UPDATE OR DELETE ON consent_records
    FOR EACH ROW EXECUTE FUNCTION compliance_reject_modification();
"""

INSERT_AUDIT_SQL = """
INSERT INTO compliance_audit_log (
    entry_id, action, event_time, actor, client_ip, user_agent, severity, details
) VALUES ($1::uuid, $2, $3::timestamptz, $4, $5, $6, $7, $8::jsonb)
ON CONFLICT (entry_id) DO NOTHING
"""

INSERT_CONSENT_SQL = """
INSERT INTO consent_records (
    subject_id, consent_type, granted, decided_at, purpose, details
) VALUES ($1, $2, $3, $4::timestamptz, $5, $6::jsonb)
RETURNING record_id
"""


def _audit_row(entry: dict[str, Any]) -> tuple:
    return (
        entry["id"],
        entry["action"],
        datetime.fromisoformat(entry["timestamp"]),
        entry.get("actor"),
        entry.get("ip"),
        entry.get("userAgent"),
        entry.get("severity", "info"),
        json.dumps(entry.get("details") or {}),
    )


class PostgresTransport(Transport):
    """Maps transport paths onto append-only tables.

    ``/audit/log`` and ``/audit/log/batch`` insert into
    ``compliance_audit_log`` (duplicate entry ids from retries are ignored);
    ``/user/consent`` inserts into ``consent_records``.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        audit_path: str = "/audit/log",
        batch_path: str = "/audit/log/batch",
        consent_path: str = "/user/consent",
    ):
        self._pool = pool
        self._audit_path = audit_path
        self._batch_path = batch_path
        self._consent_path = consent_path

    async def create_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Compliance schema ready")

    async def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            if path == self._audit_path:
                return await self._insert_audit([body])
            if path == self._batch_path:
                return await self._insert_audit(list(body.get("entries", [])))
            if path == self._consent_path:
                return await self._insert_consent(body)
        except (asyncpg.PostgresError, OSError, KeyError, ValueError) as e:
            raise DeliveryError(f"Database write for {path} failed: {type(e).__name__}") from e
        raise DeliveryError(f"No table mapped for path {path}")

    async def _insert_audit(self, entries: list[dict[str, Any]]) -> dict[str, Any]:
        if not entries:
            return {"inserted": 0}
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(INSERT_AUDIT_SQL, [_audit_row(e) for e in entries])
        return {"inserted": len(entries)}

    async def _insert_consent(self, body: dict[str, Any]) -> dict[str, Any]:
        async with self._pool.acquire() as conn:
            record_id = await conn.fetchval(
                INSERT_CONSENT_SQL,
                body["subjectId"],
                body["consentType"],
                body["granted"],
                datetime.fromisoformat(body["timestamp"]),
                body.get("purpose"),
                json.dumps(body.get("details") or {}),
            )
        return {"recordId": record_id}
