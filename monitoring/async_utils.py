import asyncio
from typing import Iterable, Optional


async def cancel_tasks(tasks: Iterable[Optional[asyncio.Task]]) -> None:
    """Cancel unfinished tasks and wait until every one has settled."""
    pending = [t for t in tasks if t is not None]
    for task in pending:
        if not task.done():
            task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
