import os
import yaml
import keyring

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"

KEYRING_SERVICE = "fitflow"
KEYRING_MARKER = "<keyring>"

ENV_OVERRIDES = {
    "FITFLOW_REMOTE_URL": "remote_url",
    "FITFLOW_API_KEY": "remote_api_key",
    "FITFLOW_ACCESS_TOKEN": "access_token",
    "FITFLOW_DB_PATH": "db_path",
}


class YamlConfig:
    """Settings file whose credentials may live in the OS keyring.

    With ``ENCRYPT_SETTINGS=1`` the remote API key and access token are
    written to the keyring and the YAML file only holds a marker.
    """

    SENSITIVE_KEYS = ("remote_api_key", "access_token")

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.use_keyring = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _read_file(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def load(self) -> dict:
        data = self._read_file()
        if not self.use_keyring:
            return data
        for key in self.SENSITIVE_KEYS:
            if key not in data:
                continue
            secret = keyring.get_password(KEYRING_SERVICE, key)
            if secret is None:
                del data[key]
            else:
                data[key] = secret
        return data

    def save(self, data: dict) -> None:
        out = dict(data)
        if self.use_keyring:
            for key in self.SENSITIVE_KEYS:
                if key in out:
                    keyring.set_password(KEYRING_SERVICE, key, str(out[key]))
                    out[key] = KEYRING_MARKER
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)

    def update(self, **values) -> dict:
        """Merge ``values`` into the stored settings and save them."""
        data = self.load()
        data.update(values)
        self.save(data)
        return data


def load_settings(path: str = "settings.yaml") -> SettingsSchema:
    """Return validated settings from ``path`` with environment overrides."""
    data = YamlConfig(path).load()
    for env, key in ENV_OVERRIDES.items():
        value = os.environ.get(env)
        if value:
            data[key] = value
    return validate_settings(data)
