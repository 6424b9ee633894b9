import logging

from db import get_connection, release_connection

logger = logging.getLogger(__name__)


def ensure_schema():
    conn = get_connection()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS votes (
                id SERIAL PRIMARY KEY,
                tenant_id TEXT NOT NULL DEFAULT 'default',
                politician_id INTEGER NOT NULL,
                voter_id TEXT NOT NULL,
                vote_type TEXT NOT NULL CHECK (vote_type IN ('up', 'down')),
                ip_address TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
            CREATE TABLE IF NOT EXISTS vote_audit_trail (
                id SERIAL PRIMARY KEY,
                tenant_id TEXT NOT NULL DEFAULT 'default',
                politician_id INTEGER NOT NULL,
                previous_votes INTEGER NOT NULL,
                new_votes INTEGER NOT NULL,
                delta INTEGER NOT NULL CHECK (delta IN (0, 1)),
                created_at TIMESTAMPTZ DEFAULT NOW(),
                CHECK (new_votes = previous_votes + delta)
            );
            CREATE TABLE IF NOT EXISTS system_audit_snapshots (
                id SERIAL PRIMARY KEY,
                tenant_id TEXT NOT NULL DEFAULT 'default',
                hash TEXT NOT NULL,
                health_score INTEGER NOT NULL CHECK (health_score BETWEEN 0 AND 100),
                risk_level TEXT NOT NULL CHECK (risk_level IN ('low', 'medium', 'high')),
                report JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
            CREATE TABLE IF NOT EXISTS system_alerts (
                id SERIAL PRIMARY KEY,
                tenant_id TEXT NOT NULL DEFAULT 'default',
                code TEXT NOT NULL,
                severity TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """
        )
        cur.execute("ALTER TABLE IF EXISTS politicians ADD COLUMN IF NOT EXISTS votes_up INTEGER DEFAULT 0;")
        cur.execute("ALTER TABLE IF EXISTS politicians ADD COLUMN IF NOT EXISTS votes_down INTEGER DEFAULT 0;")
        cur.execute("ALTER TABLE IF EXISTS politicians ADD COLUMN IF NOT EXISTS approval_rating REAL DEFAULT 50;")
        cur.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS votes_tenant_subject_voter_unique "
            "ON votes(tenant_id, politician_id, voter_id);"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_vote_audit_trail_subject_created "
            "ON vote_audit_trail(politician_id, created_at);"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_system_audit_snapshots_tenant_created "
            "ON system_audit_snapshots(tenant_id, created_at DESC);"
        )
        cur.execute(
            """
            CREATE OR REPLACE FUNCTION prevent_append_only_mutation()
            RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION '% rows are append-only', TG_TABLE_NAME;
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        for table in ("system_audit_snapshots", "vote_audit_trail"):
            cur.execute(f"DROP TRIGGER IF EXISTS trg_{table}_append_only ON {table};")
            cur.execute(
                f"""
                CREATE TRIGGER trg_{table}_append_only
                BEFORE UPDATE OR DELETE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION prevent_append_only_mutation();
                """
            )
        conn.commit()
        logger.info("audit schema ready")
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()
        release_connection(conn)
