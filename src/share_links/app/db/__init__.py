"""DB helpers for the share stores (Supabase/PostgREST)."""

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
    SupabaseUnavailableError,
)
from .resource_directory import SupabaseResourceDirectory
from .share_store import SupabaseShareLinkStore
from .supabase_client import PostgrestFilter, SupabaseClient

__all__ = [
    "PostgrestFilter",
    "SupabaseAuthError",
    "SupabaseClient",
    "SupabaseConflictError",
    "SupabaseError",
    "SupabaseNotFoundError",
    "SupabaseResourceDirectory",
    "SupabaseShareLinkStore",
    "SupabaseUnavailableError",
]
