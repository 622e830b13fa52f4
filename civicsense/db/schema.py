from __future__ import annotations

import sqlite3

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pins (
    pin_id TEXT PRIMARY KEY,
    lat REAL NOT NULL,
    lng REAL NOT NULL,
    business_type TEXT NOT NULL,
    review TEXT NOT NULL,
    author TEXT NOT NULL DEFAULT 'Anonymous',
    agreement_count INTEGER NOT NULL DEFAULT 0 CHECK (agreement_count >= 0),
    score REAL NOT NULL DEFAULT 0,
    score_scale INTEGER NOT NULL DEFAULT 100,
    vision_image TEXT,
    parent_pin_id TEXT,
    flags_json TEXT NOT NULL DEFAULT '[]',
    owner_id TEXT,
    submission_key TEXT UNIQUE,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pins_lat_lng ON pins(lat, lng);
CREATE INDEX IF NOT EXISTS idx_pins_parent ON pins(parent_pin_id);
"""


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()
