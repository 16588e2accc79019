"""Utility helpers."""

from tickbot.utils.helpers import atomic_write_json, atomic_write_text, ensure_dir, from_iso, now_utc, to_iso

__all__ = ["atomic_write_json", "atomic_write_text", "ensure_dir", "from_iso", "now_utc", "to_iso"]
