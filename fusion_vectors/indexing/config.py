from typing import Annotated, Literal

from annotated_types import Gt, Le
from pydantic import BaseModel

# above this many vectors a partition-based index builds and updates faster
IVFFLAT_MIN_ROWS = 1_000_000


class HNSWIndexing(BaseModel):
    """
    HNSW indexing configuration.

    Attributes:
        m: The max number of connections per graph layer.
        ef_construction: The size of the candidate list while building.
            Larger values improve recall at the cost of build time.
        ef_search: The size of the candidate list while querying.
    """

    implementation: Literal["hnsw"] = "hnsw"
    m: Annotated[int, Gt(gt=1), Le(le=100)] = 16
    ef_construction: Annotated[int, Gt(gt=0), Le(le=1000)] = 64
    ef_search: Annotated[int, Gt(gt=0), Le(le=1000)] = 40


class IVFFlatIndexing(BaseModel):
    """
    IVFFlat indexing configuration.

    Attributes:
        lists: The number of partitions.
        probes: The number of partitions visited per query.
    """

    implementation: Literal["ivfflat"] = "ivfflat"
    lists: Annotated[int, Gt(gt=0), Le(le=32768)] = 100
    probes: Annotated[int, Gt(gt=0), Le(le=32768)] = 10


class NoIndexing(BaseModel):
    """
    No indexing configuration. Queries scan every stored vector.
    """

    implementation: Literal["none"] = "none"


IndexingConfig = HNSWIndexing | IVFFlatIndexing | NoIndexing


def select_indexing(row_count: int) -> HNSWIndexing | IVFFlatIndexing:
    """Pick the index strategy suited to a corpus of `row_count` vectors."""
    if row_count > IVFFLAT_MIN_ROWS:
        return IVFFlatIndexing(lists=min(32768, max(100, int(row_count**0.5))))
    return HNSWIndexing()
