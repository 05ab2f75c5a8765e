from enum import Enum


class BackendType(Enum):
    """Supported execution record backends."""

    IN_MEMORY = "in_memory"
    SQLITE = "sqlite"
