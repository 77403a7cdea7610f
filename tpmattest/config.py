import ast
import logging
import os
import os.path
from configparser import RawConfigParser
from typing import Any, Dict, List, Optional

logging.basicConfig(level=logging.INFO)
base_logger = logging.getLogger("tpmattest.config")


# Possible paths for base configuration files
CONFIG_FILES = {
    "verifier": ["/etc/tpmattest/verifier.conf", "/usr/etc/tpmattest/verifier.conf"],
    "logging": ["/etc/tpmattest/logging.conf", "/usr/etc/tpmattest/logging.conf"],
}

# Paths to directories in which options can be overriden using configuration
# snippets
CONFIG_SNIPPETS_DIRS = {
    "verifier": ["/usr/etc/tpmattest/verifier.conf.d", "/etc/tpmattest/verifier.conf.d"],
    "logging": ["/usr/etc/tpmattest/logging.conf.d", "/etc/tpmattest/logging.conf.d"],
}

CONFIG_ENV = {
    "verifier": "",
    "logging": "",
}

# Add files from environment variables, if set
if "TPMATTEST_VERIFIER_CONFIG" in os.environ:
    CONFIG_ENV["verifier"] = os.environ["TPMATTEST_VERIFIER_CONFIG"]
if "TPMATTEST_LOGGING_CONFIG" in os.environ:
    CONFIG_ENV["logging"] = os.environ["TPMATTEST_LOGGING_CONFIG"]

# Single instance
_config: Optional[Dict[str, RawConfigParser]] = None


def _validate_config_files(component: str, file_paths: List[str], files_read: List[str]) -> None:
    """Log the files that exist but could not be parsed.

    Args:
        component: The component name (e.g., 'verifier', 'logging')
        file_paths: List of file paths that were attempted to be read
        files_read: List of files that ConfigParser successfully read
    """
    for file_path in file_paths:
        if not os.path.exists(file_path):
            continue

        if not os.access(file_path, os.R_OK):
            base_logger.error("Config file %s for %s exists but is not readable", file_path, component)
            continue

        if file_path not in files_read:
            base_logger.error(
                "Config file %s exists but failed to parse; check the [%s] section for duplicate options",
                file_path,
                component,
            )


def get_config(component: str) -> RawConfigParser:
    """Find the configuration file to use for the given component and apply the
    overrides defined by configuration snippets.

    Configuration files are expected to be installed by the distribution on
    /usr/etc/tpmattest or /etc/tpmattest. If a configuration file is found in
    /etc/tpmattest, the configuration file in /usr/etc/tpmattest is ignored.

    If a configuration file path is set through a TPMATTEST_*_CONFIG
    environment variable, all configuration from other files for that
    component are ignored.

    The system administrator can define overrides for the values through
    configuration snippets in /etc/tpmattest/<component>.conf.d, where
    <component> is one of: "verifier" or "logging". Snippets are applied in
    lexical order.
    """

    global _config

    if not _config:
        _config = {}

    if not component:
        raise Exception("No component provided to get_config")

    if component not in _config:
        # Use RawConfigParser, so we can also use it as the logging config
        _config[component] = RawConfigParser()

        if not CONFIG_ENV or not isinstance(CONFIG_ENV, dict):
            raise Exception("Invalid CONFIG_ENV")

        if not component in CONFIG_ENV:
            raise Exception(f"Invalid component '{component}'")

        # Check for configuration set through environment variable. In case it
        # is, use the values from the file set through environment variable and
        # ignore the content from the other files.
        if CONFIG_ENV[component]:
            if os.path.isfile(CONFIG_ENV[component]):
                config_files = _config[component].read(CONFIG_ENV[component])
                base_logger.info("Reading configuration from %s", config_files)
                return _config[component]

            base_logger.info(
                "Configuration file %s for %s set through environment variable not found, falling back to installed configuration",
                CONFIG_ENV[component],
                component,
            )

        if not CONFIG_FILES or not isinstance(CONFIG_FILES, dict):
            raise Exception("Invalid CONFIG_FILES")

        if not component in CONFIG_FILES:
            raise Exception(f"Invalid component {component}")

        if not any(os.path.exists(c) for c in CONFIG_FILES[component]):
            base_logger.debug("Config file for component %s not found in %s", component, CONFIG_FILES[component])
        else:
            for c in CONFIG_FILES[component]:
                # The first base configuration file found is used, the others
                # are ignored
                config_file = _config[component].read(c)
                _validate_config_files(component, [c], config_file)

                if config_file:
                    base_logger.info("Reading configuration from %s", config_file)

                    if not component in CONFIG_SNIPPETS_DIRS:
                        raise Exception(f"Invalid component {component}")

                    for d in (x for x in CONFIG_SNIPPETS_DIRS[component] if os.path.exists(x)):
                        snippets = sorted(
                            [os.path.join(d, f) for f in os.listdir(d) if f and os.path.isfile(os.path.join(d, f))]
                        )
                        applied_snippets = _config[component].read(snippets)
                        _validate_config_files(component, snippets, applied_snippets)

                        if applied_snippets:
                            base_logger.info("Applied configuration snippets from %s", d)

                    break

    return _config[component]


def _get_env(component: str, option: str, section: Optional[str]) -> Optional[str]:
    opt_section = f"_{section.upper()}" if section else ""
    env_name = f"TPMATTEST_{component.upper()}{opt_section}_{option.upper()}"
    env_value = os.environ.get(env_name, None)
    if env_value is not None:
        log_msg = f'option "{option}" on section {section} for component {component}.conf was overriden by environment variable {env_name}'
        base_logger.info(log_msg.replace("on section None ", ""))

    return env_value


def getlist(component: str, option: str, section: Optional[str] = None, fallback: Optional[List[Any]] = None) -> List[Any]:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        read = env_value.strip('" ')
    else:
        read = get_config(component).get(section, option, fallback="").strip('" ')

    if read:
        try:
            l = ast.literal_eval(read)
            if isinstance(l, list):
                return [i.strip() if isinstance(i, str) else i for i in l]
            raise Exception(
                f"Config option '{option}' in section '{section}' " f"'of component {component} should be a list"
            )
        except Exception as e:
            raise Exception(
                f"Failed to get list from config for component '{component}', section '{section}', option '{option}'"
            ) from e

    if fallback is not None:
        return fallback

    raise Exception(f"Could not find option '{option}' in section '{section}' of component '{component}'")


def get(component: str, option: str, section: Optional[str] = None, fallback: str = "") -> str:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return env_value.strip('" ')

    return get_config(component).get(section, option, fallback=fallback).strip('" ')


def getint(component: str, option: str, section: Optional[str] = None, fallback: int = -1) -> int:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return int(env_value)

    return get_config(component).getint(section, option, fallback=fallback)


def getboolean(component: str, option: str, section: Optional[str] = None, fallback: bool = False) -> bool:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        env_value_lower = env_value.lower().strip('" ')
        if env_value_lower not in RawConfigParser.BOOLEAN_STATES:
            return fallback
        return RawConfigParser.BOOLEAN_STATES[env_value_lower]

    return get_config(component).getboolean(section, option, fallback=fallback)


def has_option(component: str, option: str, section: Optional[str] = None) -> bool:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return True

    return get_config(component).has_option(section, option)


# Hash algorithms accepted when nothing is configured
DEFAULT_ACCEPTED_HASH_ALGS = ["sha1", "sha256", "sha384", "sha512"]
