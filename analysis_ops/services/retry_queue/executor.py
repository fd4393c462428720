"""Job executor contract and loading."""

import importlib
import inspect
from typing import Protocol, runtime_checkable

from analysis_ops.operations.types import Tier


@runtime_checkable
class JobExecutor(Protocol):
    """Runs the multi-part generation for one session.

    Returns True on success. May raise; the retry processor treats an
    exception the same as a False return.
    """

    async def execute(self, session_id: str, tier: Tier, problem_statement: str) -> bool:
        ...


def load_executor(path: str) -> JobExecutor:
    """Import a "module:attribute" path.

    The attribute may be an executor instance, a class, or a zero-argument
    factory returning one.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Executor path must look like 'module:attribute', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    if inspect.isclass(target) or (
        callable(target) and not isinstance(target, JobExecutor)
    ):
        target = target()

    if not isinstance(target, JobExecutor):
        raise TypeError(f"{path} does not provide an execute() coroutine")
    return target
