"""Apply remote notifications to a Casbin enforcer.

Works with pycasbin's ``Enforcer`` and ``AsyncEnforcer``; any object offering
``load_policy()``, ``get_model()`` and ``build_role_links()`` will do.
Incremental changes go straight to the in-memory model so that applying
them does not publish a fresh notification back onto the channel.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from casbin_redis_watcher.errors import DecodeError
from casbin_redis_watcher.messages.codec import ChangeNotification, UpdateType, decode

logger = structlog.get_logger()


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


def _section(notification: ChangeNotification) -> str:
    # Older publishers leave Sec empty; the section is the ptype's first letter.
    if notification.sec:
        return notification.sec
    return notification.ptype[:1] or "p"


async def apply_notification(enforcer: Any, notification: ChangeNotification) -> bool:
    """Apply one notification; returns the model's success flag."""
    method = notification.method
    if method in (UpdateType.UPDATE, UpdateType.SAVE_POLICY) or not isinstance(
        method, UpdateType
    ):
        await _maybe_await(enforcer.load_policy())
        return True

    model = enforcer.get_model()
    sec = _section(notification)
    ptype = notification.ptype

    if method == UpdateType.ADD_POLICY:
        ok = model.add_policy(sec, ptype, notification.new_rule)
    elif method == UpdateType.ADD_POLICIES:
        ok = model.add_policies(sec, ptype, notification.new_rules)
    elif method == UpdateType.REMOVE_POLICY:
        ok = model.remove_policy(sec, ptype, notification.new_rule)
    elif method == UpdateType.REMOVE_POLICIES:
        ok = model.remove_policies(sec, ptype, notification.new_rules)
    elif method == UpdateType.REMOVE_FILTERED_POLICY:
        ok = model.remove_filtered_policy(
            sec, ptype, notification.field_index, *notification.field_values
        )
    elif method == UpdateType.UPDATE_POLICY:
        ok = model.update_policy(
            sec, ptype, notification.old_rule, notification.new_rule
        )
    else:
        ok = model.update_policies(
            sec, ptype, notification.old_rules, notification.new_rules
        )

    if sec == "g":
        await _maybe_await(enforcer.build_role_links())
    return bool(ok)


def default_update_callback(enforcer: Any) -> Callable[[str], Awaitable[None]]:
    """Build a watcher callback that keeps *enforcer* in sync.

    Unknown methods trigger a full ``load_policy()``.  Failures are logged
    and never raised into the subscription loop.
    """

    async def _callback(message: str) -> None:
        try:
            notification = decode(message)
        except DecodeError as exc:
            logger.error("enforcer_sync.decode_failed", error=str(exc))
            return

        try:
            ok = await apply_notification(enforcer, notification)
        except Exception:
            logger.exception(
                "enforcer_sync.apply_failed",
                method=str(notification.method),
                origin_id=notification.origin_id,
            )
            return

        if not ok:
            logger.warning(
                "enforcer_sync.no_change",
                method=str(notification.method),
                origin_id=notification.origin_id,
            )
        else:
            logger.debug(
                "enforcer_sync.applied",
                method=str(notification.method),
                origin_id=notification.origin_id,
            )

    return _callback
