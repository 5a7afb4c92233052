from civic_intel.infra.repositories import (
    ComplaintRepository,
    InMemoryRepository,
    RepositoryConflict,
    RepositoryError,
    SupabaseRepository,
)

__all__ = [
    "ComplaintRepository",
    "InMemoryRepository",
    "SupabaseRepository",
    "RepositoryError",
    "RepositoryConflict",
]
