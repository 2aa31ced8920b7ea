"""Scheduler helpers for turning a URL list into ordered batches."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence

from fullscrape.orchestrator.jobs import count_batches


@dataclass(frozen=True)
class UrlBatch:
    """A contiguous slice of a job's URLs, processed as one progress unit."""

    index: int
    urls: Sequence[str]

    @property
    def number(self) -> int:
        return self.index + 1


def plan_batches(urls: Iterable[str], *, batch_size: int) -> List[UrlBatch]:
    """Partition ``urls`` into fixed-size batches preserving input order."""
    ordered = list(urls)
    return [
        UrlBatch(index=index, urls=tuple(ordered[index * batch_size:(index + 1) * batch_size]))
        for index in range(count_batches(len(ordered), batch_size))
    ]
