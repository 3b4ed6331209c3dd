from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from itertools import islice
from typing import Callable, Dict, Iterable, Iterator, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")

_EXHAUSTED = object()


def map_ordered(func: Callable[[T], R], items: Iterable[T], max_workers: int) -> List[R]:
    """
    Run func over items on a thread pool and return results in input order.

    At most max_workers calls are in flight at once. The first worker exception
    cancels queued work and is re-raised.
    """
    max_workers = max(1, max_workers)
    source = iter(items)
    inflight: Dict[Future[R], int] = {}
    done_out_of_order: Dict[int, R] = {}
    results: List[R] = []
    submitted = 0

    with ThreadPoolExecutor(max_workers=max_workers) as executor:

        def submit_next() -> bool:
            nonlocal submitted
            item = next(source, _EXHAUSTED)
            if item is _EXHAUSTED:
                return False
            inflight[executor.submit(func, item)] = submitted  # type: ignore[arg-type]
            submitted += 1
            return True

        while len(inflight) < max_workers and submit_next():
            pass

        while inflight:
            finished, _ = wait(inflight.keys(), return_when=FIRST_COMPLETED)
            for fut in finished:
                idx = inflight.pop(fut)
                try:
                    done_out_of_order[idx] = fut.result()
                except BaseException:
                    for other in inflight:
                        other.cancel()
                    raise
            while len(inflight) < max_workers and submit_next():
                pass
            while len(results) in done_out_of_order:
                results.append(done_out_of_order.pop(len(results)))

    return results


def map_ordered_batches(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int,
    *,
    batch_size: int = 500,
) -> Iterator[R]:
    """
    Like map_ordered, but consumes items in batches so large streams are never
    fully materialized. Results are yielded in input order.
    """
    batch_size = max(1, batch_size)
    source = iter(items)
    while True:
        batch = list(islice(source, batch_size))
        if not batch:
            return
        yield from map_ordered(func, batch, max_workers=max_workers)

