import sqlite3
from typing import Dict, Iterable, List, Optional

from .models import ASSET_STATES, PROCESSING, Asset, Variant
from .utils import now_iso


# ---------- Assets ----------
def create_asset(conn, *, owner_id: str, original_url: str) -> int:
    if not original_url or not original_url.strip():
        raise ValueError("original_url cannot be empty.")
    ts = now_iso()
    try:
        with conn:
            cur = conn.execute(
                """INSERT INTO media_assets (owner_id, status, original_url, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (owner_id, PROCESSING, original_url, ts, ts),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting asset: {e}")
    return cur.lastrowid


def update_status(conn, media_id: int, status: str) -> bool:
    """
    Move an asset out of PROCESSING. Terminal states are never overwritten,
    so a late duplicate delivery cannot flip READY to FAILED or back.
    Returns True when the row changed.
    """
    if status not in ASSET_STATES:
        raise ValueError(f"Unknown status {status!r}; allowed: {', '.join(ASSET_STATES)}")
    try:
        with conn:
            res = conn.execute(
                "UPDATE media_assets SET status=?, updated_at=? WHERE id=? AND status=?",
                (status, now_iso(), media_id, PROCESSING),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while updating asset {media_id}: {e}")
    return res.rowcount == 1


def get_asset(conn, media_id: int) -> Optional[Asset]:
    row = conn.execute("SELECT * FROM media_assets WHERE id=?", (media_id,)).fetchone()
    if not row:
        return None
    asset = _row_to_asset(row)
    asset.variants = list_variants(conn, media_id)
    return asset


def list_assets(conn, status: Optional[str] = None) -> Iterable[sqlite3.Row]:
    if status:
        return conn.execute(
            "SELECT * FROM media_assets WHERE status=? ORDER BY id ASC",
            (status,),
        ).fetchall()
    return conn.execute("SELECT * FROM media_assets ORDER BY id ASC").fetchall()


def counts(conn) -> Dict[str, int]:
    out = {}
    for s in ASSET_STATES:
        out[s] = conn.execute(
            "SELECT COUNT(1) AS c FROM media_assets WHERE status=?",
            (s,),
        ).fetchone()["c"]
    return out


# ---------- Variants ----------
def save_variants(conn, media_id: int, variants: List[Variant]):
    """Replace the asset's variants; re-running a job leaves one set of rows."""
    ts = now_iso()
    try:
        with conn:
            conn.execute("DELETE FROM media_variants WHERE media_id=?", (media_id,))
            conn.executemany(
                """INSERT INTO media_variants (media_id, quality, format, cdn_url, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                [(media_id, v.quality, v.format, v.cdn_url, ts) for v in variants],
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while saving variants for asset {media_id}: {e}")


def list_variants(conn, media_id: int) -> List[Variant]:
    rows = conn.execute(
        "SELECT quality, format, cdn_url FROM media_variants WHERE media_id=? ORDER BY id ASC",
        (media_id,),
    ).fetchall()
    return [Variant(quality=r["quality"], format=r["format"], cdn_url=r["cdn_url"]) for r in rows]


def _row_to_asset(row: sqlite3.Row) -> Asset:
    return Asset(
        id=row["id"],
        owner_id=row["owner_id"],
        status=row["status"],
        original_url=row["original_url"],
        duration=row["duration"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
