import asyncio
from typing import Iterable, Awaitable, Optional, Callable, List


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        await cancel_tasks(task_list)
        if cleanup is not None:
            await cleanup()


async def cancel_tasks(tasks: Iterable[Optional[asyncio.Task]]) -> None:
    """Cancel the given tasks and wait until every one of them has finished."""
    pending = [t for t in tasks if t is not None]
    for t in pending:
        if not t.done():
            t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
