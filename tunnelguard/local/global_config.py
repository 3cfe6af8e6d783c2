import json
import logging
from pathlib import Path
from typing import Dict, Any, Tuple
import tunnelguard.settings as default_settings

log = logging.getLogger(__name__)


def coerce_setting(original_value: Any, value: Any) -> Any:
    """
    Coerces a raw override value to the type of the default it replaces.

    :param original_value: The default value of the setting.
    :param value: The raw value (usually a string or a JSON scalar).
    :return: The coerced value.
    :raises ValueError: If the value cannot be converted.
    """
    if isinstance(original_value, bool):
        return str(value).lower() in ('true', '1', 't', 'yes', 'y')
    if isinstance(original_value, Path):
        return Path(value)
    if original_value is not None:
        return type(original_value)(value)
    return value  # Cannot determine type, accept as is


class GlobalSync:
    """
    A singleton class that houses all application configuration.

    Values come from `settings.py` first, then from `overrides.json` for the
    keys whitelisted in `MODIFIABLE_SETTINGS`. Both the console and the
    background supervisor process load the same files, so an override written
    by `config set` is picked up by the next supervisor start.
    """

    def __init__(self) -> None:
        """Initializes the settings object by loading defaults and overrides."""
        self._config: Dict[str, Any] = {}
        self._load_defaults()
        self._load_overrides_from_file()

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return self._config.get(item, default)

    def __getattr__(self, name: str) -> Any:
        """Allows attribute access to settings, raising an AttributeError if not found."""
        if name.startswith('_'):
            raise AttributeError(name)
        if name in self._config:
            return self._config[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith('_'):
            super().__setattr__(name, value)
        else:
            self._config[name] = value

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from settings.py as the baseline."""
        for key in dir(default_settings):
            if key.isupper():
                self._config[key] = getattr(default_settings, key)

    def _load_overrides_from_file(self) -> None:
        """Loads whitelisted overrides from the JSON file."""
        overrides_path = Path(self._config["OVERRIDES_JSON_PATH"])
        if not overrides_path.exists():
            return

        try:
            with overrides_path.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file: {e}")
            return

        log.info(f"Loading runtime config overrides from {overrides_path}")
        for key, value in overrides.items():
            if key not in self._config["MODIFIABLE_SETTINGS"]:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                continue
            try:
                self._config[key] = coerce_setting(self._config.get(key), value)
                log.debug(f"Overridden setting: {key} = {value}")
            except (ValueError, TypeError) as e:
                log.error(f"Ignoring override '{key}={value}': {e}")

    def update_setting(self, key: str, value: Any) -> Tuple[bool, str]:
        """
        Updates a modifiable setting and persists it to the overrides file.

        :param key: The setting name.
        :param value: The new raw value.
        :return: A (success, message) tuple.
        """
        if key not in self._config["MODIFIABLE_SETTINGS"]:
            message = f"Setting '{key}' is not modifiable."
            log.warning(f"Rejected config update: {message}")
            return False, message

        try:
            new_value = coerce_setting(self._config.get(key), value)
        except (ValueError, TypeError) as e:
            message = f"Could not convert value '{value}' for key '{key}'. Error: {e}"
            log.error(f"Config update failed: {message}")
            return False, message

        self._config[key] = new_value
        if not self._save_overrides_to_disk():
            return False, f"Setting '{key}' changed in memory but could not be saved."

        message = f"Setting '{key}' updated to '{new_value}'. Restart required for the supervisor to apply it."
        log.info(message)
        return True, message

    def _save_overrides_to_disk(self) -> bool:
        """Persists the modifiable parts of the config to overrides.json."""
        overrides_path = Path(self._config["OVERRIDES_JSON_PATH"])
        current_overrides = {}
        if overrides_path.exists():
            try:
                current_overrides = json.loads(overrides_path.read_text())
            except json.JSONDecodeError:
                log.warning(f"Overrides file '{overrides_path}' is malformed and will be rewritten.")

        for key in self._config["MODIFIABLE_SETTINGS"]:
            if key in self._config:
                current_overrides[key] = self._config[key]

        try:
            overrides_path.parent.mkdir(parents=True, exist_ok=True)
            overrides_path.write_text(json.dumps(current_overrides, indent=4))
            return True
        except IOError as e:
            log.error(f"Failed to write overrides to '{overrides_path}': {e}")
            return False

# A singleton instance to be imported by other modules
app_globals = GlobalSync()
