import asyncio
from typing import Any, Coroutine

from mailprowl.http_async import close_session


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run ``coro`` to completion on a fresh loop and close the shared HTTP session."""
    async def run_and_close():
        try:
            return await coro
        finally:
            await close_session()
    return asyncio.run(run_and_close())
