"""Service layer: dump handling, restore pipeline and integrations."""

from dbrestore.services.extract import ArchiveExtractor
from dbrestore.services.ownership import OwnershipNormalizer
from dbrestore.services.postgresql import PostgresClient
from dbrestore.services.restore import RestoreExecutor
from dbrestore.services.verify import VerificationGate

__all__ = [
    "ArchiveExtractor",
    "OwnershipNormalizer",
    "PostgresClient",
    "RestoreExecutor",
    "VerificationGate",
]
