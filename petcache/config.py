import json
import logging
import os
import sys

LOG = logging.getLogger(__name__)

# When frozen (PyInstaller) use the exe directory; otherwise use the directory
# of the main script so config.json and the cache stay alongside the app
# regardless of where the user launches it from.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.path.join(APP_DIR, "config.json")

DEFAULT_ORIGIN_BASE_URL = "https://seer2-pet-resource.yuuinih.com/public/fight"

DEFAULT_CONFIG = {
    "host": "127.0.0.1",  # loopback only; the client runs on the same machine
    "port_range_start": 8103,
    "port_range_end": 8200,  # exclusive
    "cache_dir": "",  # empty => <APP_DIR>/pets
    "origin_base_url": DEFAULT_ORIGIN_BASE_URL,
    "origin_suffix": ".swf",
    "user_agent": "petcache/1.0",
    "debug_logs": False,  # log every request line at INFO instead of DEBUG
    "log_level": "INFO",
}


class ConfigManager:
    def __init__(self):
        self.config = self.load_config()

    def load_config(self):
        if os.path.exists(CONFIG_FILE):
            try:
                with open(CONFIG_FILE, 'r') as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except Exception as e:
                LOG.warning("Error loading config %s: %s", CONFIG_FILE, e)
                return dict(DEFAULT_CONFIG)
        return dict(DEFAULT_CONFIG)

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings.
        """
        merged = cfg if isinstance(cfg, dict) else {}
        for key, val in DEFAULT_CONFIG.items():
            merged.setdefault(key, val)
        return merged

    def save_config(self):
        try:
            with open(CONFIG_FILE, 'w') as f:
                json.dump(self.config, f, indent=4)
        except Exception as e:
            LOG.warning("Error saving config %s: %s", CONFIG_FILE, e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()

    def cache_dir(self) -> str:
        path = self.config.get("cache_dir") or ""
        if not path:
            return os.path.join(APP_DIR, "pets")
        return os.path.abspath(os.path.expanduser(path))

    def port_range(self):
        return int(self.get("port_range_start", 8103)), int(self.get("port_range_end", 8200))
