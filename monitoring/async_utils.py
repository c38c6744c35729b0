import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional


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
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def run_after(delay_s: float, func: Callable[[], Awaitable[Any]]) -> Any:
    """Await ``func()`` after ``delay_s`` seconds; used to stagger exchange calls."""
    if delay_s > 0:
        await asyncio.sleep(delay_s)
    return await func()


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
