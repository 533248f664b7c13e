#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
"""Background tasks that report how they ended"""
import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

T = TypeVar("T")


def create_handled_task(
    coroutine: Awaitable[T],
    *,
    message: str,
    message_args: tuple[Any, ...] = (),
    name: Optional[str] = None,
    keep: Optional[set] = None,
) -> "asyncio.Task[T]":
    """
    Schedule `coroutine` and log how it ended: failures with `message` %
    `message_args` and a traceback, cancellations at info.

    The event loop only holds weak references to tasks, so fire-and-forget
    callers pass a `keep` set that holds the task until it is done.
    """
    task = asyncio.ensure_future(coroutine)
    if name:
        task.set_name(name)

    def report(done: "asyncio.Task[T]") -> None:
        if keep is not None:
            keep.discard(done)
        if done.cancelled():
            logging.info("task %s was cancelled", done.get_name())
            return
        error = done.exception()
        if error:
            logging.error(message, *message_args, exc_info=error)
        else:
            logging.debug("task %s finished", done.get_name())

    if keep is not None:
        keep.add(task)
    task.add_done_callback(report)
    return task
