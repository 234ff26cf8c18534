"""
Helpers for running async service code inside synchronous Celery tasks.
"""
import asyncio
import threading
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

from filedrop.config import settings
from filedrop.database import create_engine, create_session_factory


def run_async(factory: Callable[[], Awaitable[Any]]) -> Any:
    """
    Run a coroutine to completion from synchronous code.

    Uses asyncio.run() when no loop is running in this thread, otherwise
    runs it on a fresh loop in a separate thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(factory())

    result = None
    exception = None

    def run_in_thread():
        nonlocal result, exception
        try:
            result = asyncio.run(factory())
        except Exception as e:
            exception = e

    thread = threading.Thread(target=run_in_thread)
    thread.start()
    thread.join()

    if exception:
        raise exception
    return result


@asynccontextmanager
async def worker_session_factory():
    """
    Session factory on an engine owned by the current event loop.

    Connections must not outlive the loop that opened them, so each task
    run gets its own engine and disposes it afterwards.
    """
    engine = create_engine(settings.database_url)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()
