import functools
import gzip
import inspect
import logging
import logging.handlers
import os
import shutil
import sys
from gzip import GzipFile
from pathlib import Path
from typing import Any, Callable

from .config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(module)s:%(funcName)s:%(lineno)d] %(message)s"

logger = logging.getLogger("upload_assembler")


def gzip_rotator(source: str, dest: str) -> None:
    """Compress a rotated log file and remove the uncompressed one"""
    with open(source, "rb") as f_in:
        with gzip.open(dest + ".gz", "wb") as f_out:
            assert isinstance(f_out, GzipFile)
            shutil.copyfileobj(f_in, f_out)
    os.remove(source)


def configure_logging(logs_dir: Path, level: str = "DEBUG") -> None:
    """
    Attach the daily rotating file handler and the stdout handler.

    Replaces handlers from an earlier call, so it can be called again after
    the settings changed.
    """
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(level.upper())
    formatter = logging.Formatter(LOG_FORMAT)

    logs_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.TimedRotatingFileHandler(
        logs_dir / "upload_assembler.log", when="midnight"
    )
    file_handler.rotator = gzip_rotator
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)


configure_logging(Path(settings.logs_dir), settings.log_level)


def log_exception[**P, R](
    prefix: str = "",
    default_return: R | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Log and swallow any exception raised by the decorated function.

    Meant for the edges of background work (pollers, handlers) where an
    exception would otherwise vanish inside a task. Works for sync and async
    functions. The log line lists the call's arguments by name, without
    `self`, and `prefix` may reference them with braces.

    Args:
        prefix: Optional prefix, e.g. "Polling staged upload {upload_id}"
        default_return: Value returned when an exception was swallowed

    Usage:
        @log_exception("Polling staged upload {upload_id}")
        async def poll(self, upload_id):
            ...
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        signature = inspect.signature(func)
        qualname = func.__qualname__

        # Stack: helper -> _report -> wrapper -> caller of the decorated function
        def describe_call(args: tuple, kwargs: dict) -> tuple[dict[str, Any], str]:
            try:
                bound = signature.bind(*args, **kwargs)
            except TypeError as e:
                logger.warning(
                    f"Failed to bind arguments for function {qualname}: {e}",
                    stacklevel=4,
                )
                raw = [f"args={args!r}"] if args else []
                if kwargs:
                    raw.append(f"kwargs={kwargs!r}")
                return {}, f"[{', '.join(raw)}] " if raw else ""

            bound.apply_defaults()
            shown = [f"{name}={value!r}" for name, value in bound.arguments.items() if name != "self"]
            return bound.arguments, f"[{', '.join(shown)}] " if shown else ""

        def render_prefix(arguments: dict[str, Any]) -> str:
            if not prefix:
                return ""
            if "{" not in prefix or "}" not in prefix:
                return f"{prefix}: "
            try:
                return f"{prefix.format_map(arguments)}: "
            except (KeyError, ValueError) as e:
                logger.warning(
                    f"Failed to format prefix '{prefix}' with arguments: {e}",
                    stacklevel=4,
                )
                return f"{prefix}: "

        def _report(e: Exception, args: tuple, kwargs: dict) -> None:
            arguments, call = describe_call(args, kwargs)
            logger.error(
                f"{call}{render_prefix(arguments)}{type(e).__name__}: {e}",
                exc_info=True,
                stacklevel=3,
            )

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    _report(e, args, kwargs)
                    return default_return  # type: ignore[return-value]

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _report(e, args, kwargs)
                return default_return  # type: ignore[return-value]

        return sync_wrapper  # type: ignore[return-value]

    return decorator
