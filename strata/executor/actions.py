"""Running unit actions on an open transaction.

``sql`` and ``script`` actions are split into single statements;
``call`` actions import a ``package.module:function`` and hand it the
connection. The callable may be sync or async.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from typing import Any, Callable, Iterable

import aiosqlite

from strata.store.db import execute_script
from strata.types import CallAction, ScriptAction, SqlAction

_logger = logging.getLogger(__name__)


def load_callable(target: str) -> Callable[[aiosqlite.Connection], Any]:
    """Import ``package.module:function``."""
    module_name, _, attr = target.partition(":")
    module = importlib.import_module(module_name)
    fn = getattr(module, attr, None)
    if not callable(fn):
        raise TypeError(f"{target} is not callable")
    return fn


async def run_action(db: aiosqlite.Connection, action: SqlAction | ScriptAction | CallAction) -> None:
    if isinstance(action, SqlAction):
        await execute_script(db, action.sql)
    elif isinstance(action, ScriptAction):
        count = await execute_script(db, action.path.read_text(encoding="utf-8"))
        _logger.debug("Ran %d statements from %s", count, action.path)
    elif isinstance(action, CallAction):
        result = load_callable(action.target)(db)
        if inspect.isawaitable(result):
            await result
    else:
        raise TypeError(f"Unknown action {action!r}")


async def run_actions(db: aiosqlite.Connection, actions: Iterable) -> int:
    """Run actions in declared order; returns how many ran."""
    count = 0
    for action in actions:
        await run_action(db, action)
        count += 1
    return count
