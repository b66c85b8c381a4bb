import json
import logging
from pathlib import Path
from typing import Dict, Any, Tuple

import devward.settings as default_settings

log = logging.getLogger(__name__)


class MergedSettings:
    """
    A singleton holding the tool settings used by every devward command.

    Precedence, lowest first:
    1. Base values from `settings.py`.
    2. Environment and `.env` values (read by `python-dotenv` in settings.py).
    3. `overrides.json` in the devward home, for keys in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self) -> None:
        self.OVERRIDES_JSON_PATH: Path = default_settings.OVERRIDES_JSON_PATH
        self._load_defaults()
        self._load_overrides()

    def _load_defaults(self) -> None:
        """Copies every uppercase attribute of settings.py onto this object."""
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    def _read_overrides_file(self) -> Dict[str, Any]:
        if not self.OVERRIDES_JSON_PATH.exists():
            return {}
        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return {}
        if not isinstance(overrides, dict):
            log.error(f"Overrides file '{self.OVERRIDES_JSON_PATH}' does not contain an object. Ignoring.")
            return {}
        return overrides

    def _load_overrides(self) -> None:
        """
        Applies `overrides.json` on top of the defaults.

        Keys outside `MODIFIABLE_SETTINGS` are ignored with a warning.
        """
        overrides = self._read_overrides_file()
        if overrides:
            log.debug(f"Loading runtime configuration overrides from {self.OVERRIDES_JSON_PATH}")
        for key, value in overrides.items():
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Override setting '{key}' is unknown or not modifiable. Ignoring.")
                continue
            setattr(self, key, value)
            log.debug(f"Overridden setting: {key} = {value}")

    def get_modifiable(self) -> Dict[str, Any]:
        """Returns the current value of every runtime-modifiable setting."""
        return {key: getattr(self, key, None) for key in sorted(self.MODIFIABLE_SETTINGS)}

    def update_setting(self, key: str, value: Any) -> Tuple[bool, str]:
        """
        Changes a modifiable setting and persists it to the overrides file.

        The new value is coerced to the type of the current one.

        :param key: The setting name, e.g. 'STOP_GRACE_PERIOD'.
        :param value: The raw value, usually a string typed at the console.
        :return: A (success, message) tuple.
        """
        if key not in self.MODIFIABLE_SETTINGS:
            return False, f"Setting '{key}' is not modifiable."

        original_value = getattr(self, key, None)
        try:
            if isinstance(original_value, bool):
                new_value = str(value).lower() in ('true', '1', 't', 'yes', 'y')
            elif original_value is not None:
                new_value = type(original_value)(value)
            else:
                new_value = value
        except (ValueError, TypeError) as e:
            return False, f"Could not convert value '{value}' for key '{key}': {e}"

        setattr(self, key, new_value)
        self.save_overrides({key: new_value})
        return True, f"Setting '{key}' updated to '{new_value}'."

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Merges the given settings into the overrides JSON file.

        :param overrides_to_save: A dictionary of settings to persist.
        """
        filtered_overrides = {
            key: value
            for key, value in overrides_to_save.items()
            if key in self.MODIFIABLE_SETTINGS
        }
        if not filtered_overrides:
            log.warning("No modifiable settings provided to save.")
            return

        current = self._read_overrides_file()
        current.update(filtered_overrides)
        try:
            self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
            with self.OVERRIDES_JSON_PATH.open('w') as f:
                json.dump(current, f, indent=4)
            log.info(f"Configuration overrides saved to {self.OVERRIDES_JSON_PATH}")
        except IOError as e:
            log.error(f"Failed to write to overrides file '{self.OVERRIDES_JSON_PATH}': {e}")

# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
