"""Database query helpers for the config table."""

import json
from typing import Optional

from .connection import get_connection


async def get_config(key: str, default=None):
    """Get a config value by key."""
    async with get_connection() as conn:
        row = await conn.fetchrow("SELECT value FROM config WHERE key = $1", key)
        if row:
            return json.loads(row["value"])
        return default


async def set_config(key: str, value, description: Optional[str] = None):
    """Set a config value (upsert)."""
    json_value = json.dumps(value)
    async with get_connection() as conn:
        if description:
            await conn.execute("""
                INSERT INTO config (key, value, description) VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (key) DO UPDATE SET value = $2::jsonb, description = $3, updated_at = NOW()
            """, key, json_value, description)
        else:
            await conn.execute("""
                INSERT INTO config (key, value) VALUES ($1, $2::jsonb)
                ON CONFLICT (key) DO UPDATE SET value = $2::jsonb, updated_at = NOW()
            """, key, json_value)


async def delete_config(key: str) -> bool:
    """Delete a config value. Returns True if a row was removed."""
    async with get_connection() as conn:
        result = await conn.execute("DELETE FROM config WHERE key = $1", key)
        return "DELETE 1" in str(result)
