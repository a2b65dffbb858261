"""
Configuration loader for the subscription ledger.

Centralized configuration management: static JSON files under config/ with
.env overrides. Chain endpoints and contract addresses are static
collaborators; nothing here is written back at runtime.

Usage:
    from config.loader import get_config, get_env_var

    config = get_config()
    chain_config = config.get_chain_config(11155111)
    poll_interval = config.get_timing_config()["event_source"]["poll_interval_seconds"]
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent

DEFAULT_CHAIN_ID = 11155111  # Sepolia


def _load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None:
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


class ConfigLoader:
    """
    Central configuration manager.

    Loads configuration from JSON files in the config/ directory.
    All accessor methods are cached via @lru_cache.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR
        self._project_root = _PROJECT_ROOT

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=8)
    def get_chain_config(self, chain_id: int = DEFAULT_CHAIN_ID) -> Dict[str, Any]:
        """Load chain-specific config: RPC endpoint, contract addresses, tokens."""
        return _load_json(self._config_dir / "chains" / f"{chain_id}.json")

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (logging)."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load polling intervals, confirmation depth and query window sizes."""
        return _load_json(self._config_dir / "timing.json")

    @lru_cache(maxsize=1)
    def get_cache_config(self) -> Dict[str, Any]:
        """Load event cache capacity / TTL and block timestamp cache size."""
        return _load_json(self._config_dir / "cache.json")

    @lru_cache(maxsize=1)
    def get_analytics_config(self) -> Dict[str, Any]:
        """Load analytics facade settings (error policy, default granularity)."""
        return _load_json(self._config_dir / "analytics.json")

    @lru_cache(maxsize=16)
    def get_config_file(self, config_name: str) -> Dict[str, Any]:
        """Load an arbitrary JSON config file from config/ directory."""
        return _load_json(self._config_dir / f"{config_name}.json")

    # ------------------------------------------------------------------
    # Chain helpers
    # ------------------------------------------------------------------

    def get_rpc_url(self, chain_id: int = DEFAULT_CHAIN_ID) -> str:
        """RPC URL for a chain, overridable with LEDGER_RPC_URL."""
        default = self.get_chain_config(chain_id).get("rpc", {}).get("http_url", "")
        return get_env_var("LEDGER_RPC_URL", default, str)

    def get_contract_address(self, contract: str, chain_id: int = DEFAULT_CHAIN_ID) -> str:
        """Deployed address of 'subscription_manager' or 'subscription_nft'."""
        return self.get_chain_config(chain_id).get("contracts", {}).get(contract, "")

    def get_token_symbols(self, chain_id: int = DEFAULT_CHAIN_ID) -> Dict[str, str]:
        """Map of lowercase token address -> symbol for a chain."""
        tokens = self.get_chain_config(chain_id).get("tokens", {})
        return {addr.lower(): symbol for addr, symbol in tokens.items()}

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------


def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()
