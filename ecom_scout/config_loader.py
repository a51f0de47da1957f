"""Configuration loading with YAML security."""
from pathlib import Path
from typing import Any

import yaml

from .models import AutomationConfig, DelayPolicy, SiteConfig


def load_config_secure(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration with security hardening.

    CRITICAL: Uses safe_load() to prevent code execution attacks.
    Never use yaml.load() without a SafeLoader.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Dictionary containing the configuration.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If config is not a valid dictionary.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        # CRITICAL: Use safe_load() - never yaml.load()
        config = yaml.safe_load(f)

    if not isinstance(config, dict):
        raise ValueError("Configuration must be a dictionary")

    return config


def load_sites(config_path: Path) -> list[SiteConfig]:
    """Load site configurations from YAML file.

    Args:
        config_path: Path to the sites YAML file.

    Returns:
        List of SiteConfig objects for each enabled site, in file order.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If sites section is missing or a site lacks required keys.
    """
    config = load_config_secure(config_path)

    if "sites" not in config:
        raise ValueError("Configuration must contain 'sites' section")

    sites: list[SiteConfig] = []

    for key, entry in (config["sites"] or {}).items():
        if not isinstance(entry, dict):
            continue

        for required in ("base_url", "search_url"):
            if not entry.get(required):
                raise ValueError(f"Site '{key}' is missing '{required}'")

        site = SiteConfig(
            key=str(key),
            display_name=entry.get("display_name", str(key)),
            base_url=entry["base_url"].rstrip("/"),
            search_url=entry["search_url"],
            home_url=entry.get("home_url"),
            enabled=bool(entry.get("enabled", True)),
            selectors=dict(entry.get("selectors") or {}),
            detail_url_patterns=tuple(entry.get("detail_url_patterns") or ()),
            location_confirmed_url_parts=tuple(entry.get("location_confirmed_url_parts") or ()),
        )
        if site.enabled:
            sites.append(site)

    return sites


def load_settings(config_path: Path) -> dict[str, Any]:
    """Load settings configuration from YAML file.

    Args:
        config_path: Path to the settings YAML file.

    Returns:
        Dictionary containing settings with defaults applied.
    """
    config = load_config_secure(config_path)

    # Apply defaults
    defaults = {
        "timeout_ms": 30000,
        "headless": True,
        "max_concurrent": 1,
        "min_products": 20,
        "max_rounds": 3,
        "product_wait_ms": 20000,
        "price_wait_ms": 10000,
        "detail_wait_ms": 8000,
        "job_timeout_s": 900,
        "max_jobs": 100,
        "output_dir": "./output",
        "save_artifacts": True,
        "delays": {},
    }

    for key, value in defaults.items():
        config.setdefault(key, value)

    return config


def build_automation_config(settings: dict[str, Any], **overrides: Any) -> AutomationConfig:
    """Build the frozen run configuration from loaded settings.

    Args:
        settings: Settings dictionary (usually from load_settings).
        **overrides: Field values that win over the settings (CLI flags).

    Returns:
        AutomationConfig for the run.
    """
    fields = AutomationConfig.__dataclass_fields__
    values = {k: v for k, v in settings.items() if k in fields and k != "delays"}
    values.update(overrides)

    if "output_dir" in values:
        values["output_dir"] = Path(values["output_dir"])
    if "delays" not in overrides:
        values["delays"] = DelayPolicy.from_dict(settings.get("delays"))

    return AutomationConfig(**values)
