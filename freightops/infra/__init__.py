from freightops.infra.repositories import (
    InMemoryRepository,
    RepositoryError,
    SupabaseRepository,
    WorkflowRepository,
    build_repository,
)

__all__ = [
    "WorkflowRepository",
    "InMemoryRepository",
    "SupabaseRepository",
    "RepositoryError",
    "build_repository",
]
