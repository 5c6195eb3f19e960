"""
Helpers shared by the asynchronous gateway tests
"""

import asyncio
import sys
import textwrap
from typing import Callable, List


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll `predicate` until it is true or `timeout` expires"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def python_command(source: str) -> List[str]:
    """Command line running `source` with the current interpreter"""
    return [sys.executable, "-u", "-c", textwrap.dedent(source)]
