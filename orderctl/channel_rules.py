import sqlite3
from typing import List, Optional

from .models import ChannelRule
from .utils import now_iso

# Built-in rules used when a channel has no active row in channel_rules
CHANNEL_RULES = {
    "Admin Bulk Digitisation": ChannelRule(auto_invoice=True, auto_ship=True),
    "Order on Behalf": ChannelRule(auto_invoice=True, auto_ship=False),
}

DEFAULT_CHANNEL_RULE = ChannelRule(auto_invoice=True, auto_ship=False)


def resolve_channel_rule(conn, channel: Optional[str]) -> ChannelRule:
    """Active DB rule, then the built-in table, then the default."""
    key = channel or ""
    if key:
        row = conn.execute(
            "SELECT auto_invoice, auto_ship FROM channel_rules WHERE channel=? AND is_active=1",
            (key,),
        ).fetchone()
        if row:
            return ChannelRule(auto_invoice=bool(row["auto_invoice"]), auto_ship=bool(row["auto_ship"]))
        if key in CHANNEL_RULES:
            return CHANNEL_RULES[key]
    return DEFAULT_CHANNEL_RULE


def upsert_channel_rule(conn, channel: str, auto_invoice: bool, auto_ship: bool, is_active: bool = True):
    if not channel or not channel.strip():
        raise ValueError("Channel cannot be empty.")
    ts = now_iso()
    with conn:
        conn.execute(
            """INSERT INTO channel_rules (channel, auto_invoice, auto_ship, is_active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(channel) DO UPDATE SET
                   auto_invoice=excluded.auto_invoice,
                   auto_ship=excluded.auto_ship,
                   is_active=excluded.is_active,
                   updated_at=excluded.updated_at""",
            (channel.strip(), int(auto_invoice), int(auto_ship), int(is_active), ts, ts),
        )


def list_channel_rules(conn) -> List[sqlite3.Row]:
    return conn.execute("SELECT * FROM channel_rules ORDER BY channel ASC").fetchall()
