"""Database clients."""

from cellsync.db.supabase import SupabaseClient

__all__ = ["SupabaseClient"]
