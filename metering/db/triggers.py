"""Postgres triggers that publish row changes on per-user NOTIFY channels.

Channel name is ``<table>_<user_id>`` where ``<table>`` is the logical
name (``subscription`` or ``usage``). Payload is JSON:

    {"table", "operation", "user_id", "data": {row}, "timestamp"}
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

NOTIFY_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION notify_user_table_change()
RETURNS TRIGGER AS $$
DECLARE
    logical_table TEXT := TG_ARGV[0];
    payload TEXT;
BEGIN
    payload := json_build_object(
        'table', logical_table,
        'operation', lower(TG_OP),
        'user_id', NEW.user_id,
        'data', row_to_json(NEW),
        'timestamp', now()
    )::text;
    PERFORM pg_notify(logical_table || '_' || NEW.user_id, payload);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
"""

TRIGGERS: dict[str, tuple[str, str]] = {
    # physical table -> (trigger name, logical table)
    "subscriptions": ("subscription_change_trigger", "subscription"),
    "usage_counters": ("usage_change_trigger", "usage"),
}


def drop_trigger_sql(table: str) -> str:
    trigger_name, _ = TRIGGERS[table]
    return f"DROP TRIGGER IF EXISTS {trigger_name} ON {table}"


def create_trigger_sql(table: str) -> str:
    trigger_name, logical = TRIGGERS[table]
    return (
        f"CREATE TRIGGER {trigger_name} "
        f"AFTER INSERT OR UPDATE ON {table} "
        f"FOR EACH ROW EXECUTE FUNCTION notify_user_table_change('{logical}')"
    )


def install_statements() -> list[str]:
    statements = [NOTIFY_FUNCTION_SQL]
    for table in TRIGGERS:
        statements.append(drop_trigger_sql(table))
        statements.append(create_trigger_sql(table))
    return statements


async def install_change_triggers(conn: AsyncConnection) -> None:
    """Idempotently (re)create the notify function and both triggers."""
    if conn.dialect.name != "postgresql":
        return
    for statement in install_statements():
        await conn.execute(text(statement))
