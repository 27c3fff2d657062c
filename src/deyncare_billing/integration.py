import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, TypeVar

from deyncare_billing.errors import TransientIntegrationError

T = TypeVar("T")


def call_with_timeout(func: Callable[..., T], timeout: float, *args: Any, description: str = "external call", **kwargs: Any) -> T:
    """
    Run ``func`` on a helper thread and wait at most ``timeout`` seconds.

    A call that overruns is abandoned (the thread is not joined) and reported
    as :class:`TransientIntegrationError`. Exceptions raised by ``func`` are
    re-raised unchanged.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="integration")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        logging.error(f"{description} timed out after {timeout}s")
        raise TransientIntegrationError(f"{description} timed out after {timeout}s", {"timeout": timeout})
    finally:
        executor.shutdown(wait=False)
