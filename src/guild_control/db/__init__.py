"""Supabase persistence for guild documents and account data."""

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)
from .repositories import (
    SupabaseDeploymentRepository,
    SupabaseFreeTierCapacityStore,
    SupabaseGuildRepository,
    SupabaseIdentityProvider,
    SupabaseSubscriptionRepository,
    SupabaseUserRepository,
)
from .supabase_client import PostgrestFilter, SupabaseClient

__all__ = [
    "PostgrestFilter",
    "SupabaseAuthError",
    "SupabaseClient",
    "SupabaseConflictError",
    "SupabaseDeploymentRepository",
    "SupabaseError",
    "SupabaseFreeTierCapacityStore",
    "SupabaseGuildRepository",
    "SupabaseIdentityProvider",
    "SupabaseNotFoundError",
    "SupabaseSubscriptionRepository",
    "SupabaseUserRepository",
]
