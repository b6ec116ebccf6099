"""
Strategy selection for derived tables.

Each derived table has an atomic-SQL strategy and a chunked in-process
strategy that produce the same rows. The atomic one is used when the
store can run it; if it fails the chunked one runs instead, and a failure
there propagates to the caller.
"""

from abc import ABC, abstractmethod
import logging

from sqlalchemy.exc import SQLAlchemyError

from reconciler.database.repository import CatalogRepository
from reconciler.models.errors import StoreWriteError
from reconciler.models.schemas import MaterializeStats

logger = logging.getLogger(__name__)


class Materializer(ABC):
    name = "base"

    def __init__(self, repository: CatalogRepository):
        self.repository = repository

    @abstractmethod
    def materialize(self) -> MaterializeStats:
        ...


def materialize_with_fallback(
    repository: CatalogRepository,
    atomic: Materializer,
    chunked: Materializer,
    label: str,
) -> MaterializeStats:
    if repository.supports_atomic_sql:
        try:
            return atomic.materialize()
        except (StoreWriteError, SQLAlchemyError) as e:
            logger.warning(f"{label}: atomic SQL failed, using chunked materialization: {e}")
    else:
        logger.info(f"{label}: atomic SQL unavailable, using chunked materialization")
    return chunked.materialize()
