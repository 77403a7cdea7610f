import logging
import sys
from configparser import RawConfigParser
from contextlib import contextmanager
from logging import Logger
from logging import config as logging_config
from typing import Any, Dict, Generator, List, Optional, Tuple, Union, cast

from tpmattest import config

# Default logging configuration
DEFAULT_LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "root": {"level": "INFO", "handlers": ["consoleHandler"]},
    "loggers": {
        "tpmattest": {
            "level": "INFO",
        },
    },
    "handlers": {
        "consoleHandler": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "formatter_formatter",
            "stream": "ext://sys.stderr",
        }
    },
    "formatters": {
        "formatter_formatter": {
            "format": "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
}

try:
    logging_config.dictConfig(DEFAULT_LOGGING_CONFIG)
except KeyError:
    logging.basicConfig(format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s", level=logging.DEBUG)


def _section_suffixes(raw_config: RawConfigParser, prefix: str) -> List[Tuple[str, Dict[str, str]]]:
    return [
        (section[len(prefix) :], dict(raw_config.items(section)))
        for section in raw_config.sections()
        if section.startswith(prefix)
    ]


def _handler_from_options(options: Dict[str, str], formatters: Dict[str, logging.Formatter]) -> logging.Handler:
    handler_class = options.get("class", "logging.StreamHandler")
    args = _parse_args(options.get("args", "()"))

    handler: logging.Handler
    if handler_class.endswith("FileHandler"):
        if not args:
            raise ValueError(f"{handler_class} needs a file name in args")
        handler = logging.FileHandler(filename=args[0])
    elif handler_class.endswith("StreamHandler"):
        handler = logging.StreamHandler(stream=args[0] if args else sys.stderr)
    else:
        raise ValueError(f"Unsupported handler class: {handler_class}")

    handler.setLevel(getattr(logging, options.get("level", "NOTSET").upper(), logging.NOTSET))
    formatter = formatters.get(options.get("formatter", ""))
    if formatter is not None:
        handler.setFormatter(formatter)
    return handler


def _apply_logger_options(
    logger: Logger, options: Dict[str, str], handlers: Dict[str, logging.Handler], root: bool = False
) -> None:
    logger.setLevel(options.get("level", "NOTSET").upper())
    if not root:
        logger.propagate = options.get("propagate", "1") == "1"
    names = [name.strip() for name in options.get("handlers", "").split(",") if name.strip()]
    logger.handlers = [handlers[name] for name in names if name in handlers]


def _configure_logging_from_raw(raw_config: RawConfigParser) -> None:
    """Apply the formatter_*, handler_* and logger_* sections of the logging component"""
    formatters = {
        name: logging.Formatter(options.get("format", "%(message)s"), options.get("datefmt"))
        for name, options in _section_suffixes(raw_config, "formatter_")
    }

    handlers = {
        name: _handler_from_options(options, formatters)
        for name, options in _section_suffixes(raw_config, "handler_")
    }

    for name, options in _section_suffixes(raw_config, "logger_"):
        if name == "root":
            _apply_logger_options(logging.getLogger(), options, handlers, root=True)
        else:
            _apply_logger_options(logging.getLogger(name), options, handlers)


def _parse_args(args_str: str) -> Tuple[Any, ...]:
    """
    Safely parse the `args` string from the configuration.

    Args:
        args_str (str): The string representation of arguments (e.g., "(sys.stderr,)").

    Returns:
        tuple: A parsed tuple of arguments.
    """
    if args_str == "()":
        return ()

    if args_str.startswith("(") and args_str.endswith(")"):
        args_list = [arg.strip() for arg in args_str[1:-1].split(",") if arg.strip()]
        parsed_args: List[Any] = []
        for arg in args_list:
            if arg == "sys.stdout":
                parsed_args.append(sys.stdout)
            elif arg == "sys.stderr":
                parsed_args.append(sys.stderr)
            else:
                parsed_args.append(arg.strip("'\""))
        return tuple(parsed_args)

    raise ValueError(f"Invalid args format: {args_str}")


@contextmanager
def _safe_logging_configuration() -> Generator[None, None, None]:
    """
    Context manager to safely apply logging configuration. If an error occurs,
    all loggers (root and named) are restored to their original state.
    """
    existing_loggers: Dict[str, Dict[str, Union[List[logging.Handler], int, bool]]] = {
        name: {
            "handlers": list(logger.handlers),
            "level": logger.level,
            "propagate": logger.propagate,
        }
        for name, logger in logging.Logger.manager.loggerDict.items()
        if isinstance(logger, logging.Logger)
    }
    root_logger: Logger = logging.getLogger()
    root_backup: Dict[str, Union[List[logging.Handler], int]] = {
        "handlers": list(root_logger.handlers),
        "level": root_logger.level,
    }

    try:
        yield
    except Exception:
        for name, logger in logging.Logger.manager.loggerDict.items():
            if name in existing_loggers and isinstance(logger, logging.Logger):
                logger.handlers = cast(List[logging.Handler], existing_loggers[name]["handlers"])
                logger.level = cast(int, existing_loggers[name]["level"])
                logger.propagate = cast(bool, existing_loggers[name]["propagate"])
        root_logger.handlers = cast(List[logging.Handler], root_backup["handlers"])
        root_logger.setLevel(cast(int, root_backup["level"]))
        raise


def _safe_get_config() -> Optional[RawConfigParser]:
    try:
        return config.get_config("logging")
    except Exception:
        return None


def init_logging(loggername: str) -> Logger:
    """
    Initializes the logging system for a specific logger.

    The logging component configuration, when installed, is applied on top
    of the default console configuration.

    Args:
        loggername (str): The name of the logger to initialize.

    Returns:
        Logger: The initialized logger instance.
    """
    logger = logging.getLogger(f"tpmattest.{loggername}")

    component_config = _safe_get_config()

    if component_config and component_config.sections():
        try:
            with _safe_logging_configuration():
                _configure_logging_from_raw(component_config)
        except Exception as e:
            logger.error("Logging configuration error: %s", e)

    return logger
