"""
Fork-join over the outer index of an operator block.

Worker ``w`` of ``W`` owns the indices ``w, w+W, w+2W, ...``. For every
owned index it calls ``compute(i)``, which must be side-effect free and
return the fully reduced values for that row. The calling thread then
hands each row to ``write(i, values)`` exactly once, in increasing index
order, so accumulation order and hence the assembled matrix do not depend
on the worker count.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Tuple, TypeVar

from tqdm.auto import tqdm

__all__ = ["run_rows", "strided_partition"]

R = TypeVar("R")


def strided_partition(n: int, num_workers: int) -> List[range]:
    """Index sets of each worker: ``range(w, n, W)``."""
    workers = max(1, min(int(num_workers), n))
    return [range(w, n, workers) for w in range(workers)]


def run_rows(
    n: int,
    compute: Callable[[int], R],
    write: Callable[[int, R], None],
    num_workers: int = 1,
    *,
    progress: bool = False,
    desc: Optional[str] = None,
) -> None:
    """
    Evaluate ``compute`` over ``range(n)`` and commit rows with ``write``.

    ``num_workers=1`` runs inline. Exceptions raised by a worker propagate
    to the caller once the pool has shut down; nothing is cancelled.
    """
    if n <= 0:
        return
    parts = strided_partition(n, num_workers)
    with tqdm(total=n, desc=desc, disable=not progress, leave=False) as bar:
        if len(parts) == 1:
            for i in range(n):
                write(i, compute(i))
                bar.update(1)
            return

        def _run(part: range) -> List[Tuple[int, R]]:
            return [(i, compute(i)) for i in part]

        results: List[Optional[R]] = [None] * n
        with ThreadPoolExecutor(max_workers=len(parts)) as pool:
            futures = [pool.submit(_run, part) for part in parts]
            for fut in as_completed(futures):
                rows = fut.result()
                for i, values in rows:
                    results[i] = values
                bar.update(len(rows))

        # commit in index order: rows of a cross-mesh block may share cells
        for i in range(n):
            write(i, results[i])
