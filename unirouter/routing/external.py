"""
Externally supplied rule predicates.

An ``externalFunction`` condition names a Python file (or an importable
dotted module) and optionally a function inside it.  The predicate is
called as ``fn(context, condition)`` and its result is coerced to
``bool``.  Plain functions and ``async def`` coroutines are both
supported.

Calls run on a shared worker pool so a caller-supplied timeout can bound
them.  A timed-out predicate keeps running in its worker thread until it
returns; the routing call simply stops waiting for it.
"""

import asyncio
import importlib
import importlib.util
import inspect
import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Optional, Union

from unirouter.exceptions import ExternalFunctionError

logger = logging.getLogger(__name__)

DEFAULT_EXPORT = "default"
FALLBACK_EXPORT = "evaluate"

_MAX_WORKERS = 8
_executor = ThreadPoolExecutor(max_workers=_MAX_WORKERS, thread_name_prefix="unirouter-external")
_load_counter = itertools.count()


def _is_file_reference(path: str) -> bool:
    return path.endswith(".py") or "/" in path or "\\" in path


def load_module(path: str, base_dir: Optional[Union[str, Path]] = None) -> ModuleType:
    """Load the module an external condition points at.

    File references are executed afresh on every call, so edits to a
    rule file take effect without a restart.  Dotted names go through
    the normal import system.

    Args:
        path: ``.py`` file path (relative paths resolve against
            *base_dir*, then the working directory) or dotted module.
        base_dir: Directory that relative file paths are relative to.

    Raises:
        ExternalFunctionError: If the module cannot be found or fails
            while executing.
    """
    if not _is_file_reference(path):
        try:
            return importlib.import_module(path)
        except Exception as exc:
            raise ExternalFunctionError(f"Cannot import module '{path}': {exc}") from exc

    file_path = Path(path).expanduser()
    if not file_path.is_absolute() and base_dir is not None:
        file_path = Path(base_dir) / file_path
    file_path = file_path.resolve()
    if not file_path.is_file():
        raise ExternalFunctionError(f"External rule file not found: {file_path}")

    module_name = f"unirouter_external_{file_path.stem}_{next(_load_counter)}"
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ExternalFunctionError(f"Cannot load external rule file: {file_path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise ExternalFunctionError(f"Error executing {file_path}: {exc}") from exc
    return module


def select_function(module: ModuleType, function_name: Optional[str] = None) -> Optional[Callable[..., Any]]:
    """Pick the predicate out of a loaded module.

    Preference: the configured *function_name*, then an attribute called
    ``default``, then one called ``evaluate``.  Returns ``None`` when
    none of them is callable.
    """
    for candidate in (function_name, DEFAULT_EXPORT, FALLBACK_EXPORT):
        if not candidate:
            continue
        fn = getattr(module, candidate, None)
        if callable(fn):
            return fn
    return None


def _invoke(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


async def _await(awaitable: Any) -> Any:
    return await awaitable


def call_predicate(
    fn: Callable[..., Any],
    context: Any,
    condition: Any,
    timeout: Optional[float] = None,
) -> bool:
    """Run a predicate on the worker pool and coerce its answer to bool.

    Raises:
        concurrent.futures.TimeoutError: If *timeout* elapses first.
        Exception: Whatever the predicate itself raised.
    """
    future = _executor.submit(_invoke, fn, context, condition)
    return bool(future.result(timeout=timeout))
