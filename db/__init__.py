# db/__init__.py
import logging
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///designauto.db"


def database_url() -> str:
    # Lido a cada conexão: testes e CLI trocam o banco via ambiente
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL).strip()


def is_postgres() -> bool:
    return database_url().startswith(("postgres://", "postgresql://"))


# ---------------------------
# Conexões (psycopg | sqlite)
# ---------------------------
_conn_args: dict[str, Any] = {}


def _ensure_sqlite_path(url: str) -> str:
    # Aceita: sqlite:///arquivo.db | sqlite:////abs/arquivo.db | designauto.db
    if url.startswith("sqlite:////"):
        return url.replace("sqlite:////", "/", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "", 1)
    return url


def get_connection():
    """
    Retorna uma conexão aberta (psycopg ou sqlite3).
    Para Postgres: autocommit desabilitado; commit/rollback feito em db_cursor().
    """
    url = database_url()
    if is_postgres():
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(url, row_factory=dict_row, **_conn_args)

    import sqlite3

    path = _ensure_sqlite_path(url)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def db_cursor():
    """
    Context manager que abre conexão + cursor e faz commit/rollback seguro.
    Tudo que roda dentro do bloco é uma transação só.
    """
    conn = get_connection()
    cur = None
    try:
        cur = conn.cursor()
        if not is_postgres():
            # sqlite: BEGIN IMMEDIATE pega o lock de escrita já no início
            conn.execute("BEGIN IMMEDIATE")
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if cur is not None:
            cur.close()
        conn.close()


def integrity_errors() -> Tuple[type, ...]:
    """Exceções de violação de UNIQUE do driver em uso."""
    import sqlite3

    errors: Tuple[type, ...] = (sqlite3.IntegrityError,)
    if is_postgres():
        import psycopg

        errors = errors + (psycopg.IntegrityError,)
    return errors


# ---------------------------
# Helpers SQL
# ---------------------------
def qp(sql: str) -> str:
    """
    Converte placeholders estilo SQLite ('?') para Postgres ('%s') quando necessário.
    """
    if is_postgres():
        return sql.replace("?", "%s")
    return sql


def inserted_id(cur) -> int:
    """Lê o id de um INSERT ... RETURNING id consumindo o cursor até o fim."""
    rows = cur.fetchall()
    return rows[0]["id"]


def row_to_dict(row) -> Optional[dict]:
    if row is None:
        return None
    return dict(row)


# ---------------------------
# DDL
# ---------------------------
DDL_STATEMENTS = [
    # users
    """
    CREATE TABLE IF NOT EXISTS users (
        id                      SERIAL PRIMARY KEY,
        username                TEXT UNIQUE NOT NULL,
        email                   TEXT UNIQUE NOT NULL,
        name                    TEXT,
        phone                   TEXT,
        password_hash           TEXT NOT NULL,
        access_level            TEXT NOT NULL DEFAULT 'free',
        plan_type               TEXT,
        subscription_origin     TEXT,
        subscription_started_at TIMESTAMP,
        subscription_expires_at TIMESTAMP,
        lifetime_access         BOOLEAN NOT NULL DEFAULT FALSE,
        subscriber_code         TEXT,
        is_active               BOOLEAN NOT NULL DEFAULT TRUE,
        email_confirmed         BOOLEAN NOT NULL DEFAULT FALSE,
        created_at              TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at              TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # subscriptions (uma linha por transação do provedor)
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id                SERIAL PRIMARY KEY,
        user_id           INTEGER NOT NULL REFERENCES users(id),
        plan_type         TEXT NOT NULL DEFAULT 'premium',
        status            TEXT NOT NULL DEFAULT 'active',
        origin            TEXT NOT NULL,
        transaction_id    TEXT UNIQUE NOT NULL,
        subscription_code TEXT,
        last_event        TEXT,
        payment_method    TEXT,
        price             NUMERIC DEFAULT 0,
        currency          TEXT DEFAULT 'BRL',
        start_date        TIMESTAMP,
        end_date          TIMESTAMP,
        webhook_data      TEXT,
        created_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # webhook_logs (tudo que chega dos provedores)
    """
    CREATE TABLE IF NOT EXISTS webhook_logs (
        id                SERIAL PRIMARY KEY,
        source            TEXT NOT NULL,
        event_type        TEXT NOT NULL,
        status            TEXT NOT NULL DEFAULT 'received',
        email             TEXT,
        transaction_id    TEXT,
        source_ip         TEXT,
        raw_payload       TEXT,
        error_message     TEXT,
        processing_result TEXT,
        retry_count       INTEGER NOT NULL DEFAULT 0,
        user_id           INTEGER,
        created_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_webhook_logs_status ON webhook_logs(status)",
    "CREATE INDEX IF NOT EXISTS idx_webhook_logs_transaction_id ON webhook_logs(transaction_id)",
    "CREATE INDEX IF NOT EXISTS idx_webhook_logs_email ON webhook_logs(email)",
    # failed_webhooks (fila de reprocessamento do admin)
    """
    CREATE TABLE IF NOT EXISTS failed_webhooks (
        id             SERIAL PRIMARY KEY,
        webhook_log_id INTEGER UNIQUE NOT NULL REFERENCES webhook_logs(id),
        source         TEXT NOT NULL,
        payload        TEXT,
        error_message  TEXT,
        status         TEXT NOT NULL DEFAULT 'pending',
        retry_count    INTEGER NOT NULL DEFAULT 0,
        last_retry_at  TIMESTAMP,
        created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # product_mappings (produto/oferta do provedor -> plano)
    """
    CREATE TABLE IF NOT EXISTS product_mappings (
        id            SERIAL PRIMARY KEY,
        source        TEXT NOT NULL,
        product_id    TEXT NOT NULL DEFAULT '',
        offer_id      TEXT NOT NULL DEFAULT '',
        product_name  TEXT NOT NULL,
        plan_type     TEXT NOT NULL,
        duration_days INTEGER,
        is_lifetime   BOOLEAN NOT NULL DEFAULT FALSE,
        is_active     BOOLEAN NOT NULL DEFAULT TRUE,
        created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (source, product_id, offer_id)
    )
    """,
    # integration_settings (credenciais editáveis pelo admin)
    """
    CREATE TABLE IF NOT EXISTS integration_settings (
        key        TEXT PRIMARY KEY,
        value      TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def _adapt_ddl_for_sqlite(sql: str) -> str:
    if is_postgres():
        return sql
    # Ajustes de compatibilidade mínimos para SQLite
    sql = re.sub(r"\bSERIAL PRIMARY KEY\b", "INTEGER PRIMARY KEY AUTOINCREMENT", sql, flags=re.I)
    sql = sql.replace("NUMERIC", "REAL")
    sql = re.sub(r"\bTIMESTAMP\b", "DATETIME", sql)
    return sql


def init_db():
    """
    Cria as tabelas se não existirem. Idempotente.
    """
    with db_cursor() as cur:
        for stmt in DDL_STATEMENTS:
            cur.execute(_adapt_ddl_for_sqlite(stmt))
    logger.info("[BOOT] Schema verificado (%s).", "postgres" if is_postgres() else "sqlite")
