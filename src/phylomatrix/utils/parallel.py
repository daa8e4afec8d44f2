from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Sequence, TypeVar

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

T = TypeVar("T")
R = TypeVar("R")


def map_with_progress(
    func: Callable[[T], R],
    items: Sequence[T],
    *,
    threads: int,
    description: str,
    console: Console | None = None,
) -> list[R]:
    """Run `func` over `items` on a thread pool; results come back in input order."""

    results: list[R | None] = [None] * len(items)
    if not items:
        return []

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(description, total=len(items))
        with ThreadPoolExecutor(max_workers=threads) as pool:
            futures = {pool.submit(func, item): idx for idx, item in enumerate(items)}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                progress.advance(task)

    return results  # type: ignore[return-value]
