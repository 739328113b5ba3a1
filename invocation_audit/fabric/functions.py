"""
Functions the local fabric ships with for smoke runs.
"""

import asyncio
import math
from typing import Optional

from .local import InvocationContext, LocalExecutionFabric


def hello(context: InvocationContext, name: str) -> str:
    return f"Hello {name}!"


def fact(context: InvocationContext, n: int) -> int:
    return math.factorial(n)


def concat(context: InvocationContext, left: str, right: str) -> str:
    return left + right


def noargs(context: InvocationContext) -> str:
    return "successfully called function with no args."


def optional_arg(context: InvocationContext, arg: Optional[str] = None) -> str:
    return arg if arg is not None else "No arg"


def error(context: InvocationContext, argument: str) -> None:
    raise ValueError(f"Expected this error. Argument: {argument}")


async def async_call(context: InvocationContext) -> str:
    await asyncio.sleep(0)
    return "returned successfully from async function"


async def rejected(context: InvocationContext) -> None:
    await asyncio.sleep(0)
    raise RuntimeError("This promise is intentionally rejected.")


# The console functions differ only in the level they report under on a
# hosted runtime; locally every level is one line on the log channel.
def console_log(context: InvocationContext, message: str) -> str:
    context.log(message)
    return message


def console_warn(context: InvocationContext, message: str) -> str:
    context.log(message)
    return message


def console_error(context: InvocationContext, message: str) -> str:
    context.log(message)
    return message


def console_info(context: InvocationContext, message: str) -> str:
    context.log(message)
    return message


BUILTIN_FUNCTIONS = {
    "hello": hello,
    "fact": fact,
    "concat": concat,
    "noargs": noargs,
    "optionalArg": optional_arg,
    "error": error,
    "async": async_call,
    "rejected": rejected,
    "consoleLog": console_log,
    "consoleWarn": console_warn,
    "consoleError": console_error,
    "consoleInfo": console_info,
}


CONSOLE_FUNCTIONS = ("consoleLog", "consoleWarn", "consoleError", "consoleInfo")


def register_builtin_functions(fabric: LocalExecutionFabric) -> None:
    for name, func in BUILTIN_FUNCTIONS.items():
        fabric.register(name, func)
