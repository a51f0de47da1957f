"""Tests for configuration loader module."""
from pathlib import Path

import pytest
import yaml

from ecom_scout.config_loader import (
    build_automation_config,
    load_config_secure,
    load_settings,
    load_sites,
)
from ecom_scout.models import AutomationConfig, DelayPolicy, SiteConfig

CONFIG_DIR = Path(__file__).parent.parent / "config"


class TestLoadConfigSecure:
    """Tests for secure YAML loading."""

    def test_load_valid_yaml(self, tmp_path):
        """Test loading a valid YAML file."""
        yaml_content = """
key1: value1
key2: 123
nested:
  inner: true
"""
        filepath = tmp_path / "config.yaml"
        filepath.write_text(yaml_content)

        config = load_config_secure(filepath)

        assert config["key1"] == "value1"
        assert config["key2"] == 123
        assert config["nested"]["inner"] is True

    def test_file_not_found(self, tmp_path):
        """Test FileNotFoundError for missing file."""
        with pytest.raises(FileNotFoundError):
            load_config_secure(tmp_path / "nonexistent.yaml")

    def test_invalid_yaml_structure(self, tmp_path):
        """Test ValueError for non-dictionary YAML."""
        yaml_content = "- item1\n- item2\n- item3"
        filepath = tmp_path / "list.yaml"
        filepath.write_text(yaml_content)

        with pytest.raises(ValueError, match="must be a dictionary"):
            load_config_secure(filepath)

    def test_safe_load_prevents_code_execution(self, tmp_path):
        """Test that safe_load refuses python object tags."""
        dangerous_yaml = """
!!python/object/apply:os.system
args: ['echo HACKED']
"""
        filepath = tmp_path / "dangerous.yaml"
        filepath.write_text(dangerous_yaml)

        with pytest.raises(yaml.YAMLError):
            load_config_secure(filepath)


class TestLoadSites:
    """Tests for site configuration loading."""

    @pytest.fixture
    def valid_sites_yaml(self, tmp_path):
        """Create a sites YAML file with one disabled site."""
        yaml_content = """
sites:
  zepto:
    display_name: "Zepto"
    base_url: "https://www.zepto.com/"
    search_url: "https://www.zepto.com/search?query={query}"
    detail_url_patterns: ["/pn/"]
    selectors:
      product_card: "a[href*='/pn/']"
      location_input:
        - "input[type='text']"
        - "input"
  dmart:
    base_url: "https://www.dmart.in"
    search_url: "https://www.dmart.in/search?searchTerm={query}"
    enabled: false
  broken: "not a mapping"
"""
        filepath = tmp_path / "sites.yaml"
        filepath.write_text(yaml_content)
        return filepath

    def test_load_sites(self, valid_sites_yaml):
        """Test enabled sites are loaded as SiteConfig objects."""
        sites = load_sites(valid_sites_yaml)

        assert len(sites) == 1
        site = sites[0]
        assert isinstance(site, SiteConfig)
        assert site.key == "zepto"
        assert site.display_name == "Zepto"
        assert site.base_url == "https://www.zepto.com"
        assert site.detail_url_patterns == ("/pn/",)

    def test_selector_roles(self, valid_sites_yaml):
        """Test list roles join for queries and stay ordered for fallbacks."""
        site = load_sites(valid_sites_yaml)[0]

        assert site.selector("product_card") == "a[href*='/pn/']"
        assert site.selector("location_input") == "input[type='text'], input"
        assert site.selector_list("location_input") == ["input[type='text']", "input"]
        assert site.selector_list("card_name") == []
        assert site.selector("card_name") is None

    def test_display_name_defaults_to_key(self, tmp_path):
        """Test a site without display_name uses its key."""
        filepath = tmp_path / "sites.yaml"
        filepath.write_text(
            "sites:\n  jiomart:\n    base_url: https://www.jiomart.com\n"
            "    search_url: https://www.jiomart.com/search?q={query}\n"
        )

        assert load_sites(filepath)[0].display_name == "jiomart"

    def test_missing_sites_section(self, tmp_path):
        """Test ValueError when sites section is missing."""
        filepath = tmp_path / "no_sites.yaml"
        filepath.write_text("timeout_ms: 1000")

        with pytest.raises(ValueError, match="sites"):
            load_sites(filepath)

    def test_missing_search_url(self, tmp_path):
        """Test ValueError names the site lacking a required key."""
        filepath = tmp_path / "sites.yaml"
        filepath.write_text("sites:\n  zepto:\n    base_url: https://www.zepto.com\n")

        with pytest.raises(ValueError, match="zepto.*search_url"):
            load_sites(filepath)

    def test_empty_sites(self, tmp_path):
        """Test handling of empty sites section."""
        filepath = tmp_path / "empty_sites.yaml"
        filepath.write_text("sites: {}")

        assert load_sites(filepath) == []

    def test_shipped_sites_config(self):
        """Test the bundled sites.yaml loads every storefront."""
        sites = load_sites(CONFIG_DIR / "sites.yaml")

        keys = [s.key for s in sites]
        assert keys == ["instamart", "zepto", "dmart", "jiomart", "naturesbasket"]
        for site in sites:
            assert "{query}" in site.search_url
            assert site.selector("product_card")
            assert site.selector_list("location_suggestion")


class TestLoadSettings:
    """Tests for settings configuration loading."""

    def test_load_settings_with_defaults(self, tmp_path):
        """Test that default values are applied."""
        yaml_content = """
custom_setting: custom_value
"""
        filepath = tmp_path / "settings.yaml"
        filepath.write_text(yaml_content)

        settings = load_settings(filepath)

        # Custom setting preserved
        assert settings["custom_setting"] == "custom_value"

        # Defaults applied
        assert settings["timeout_ms"] == 30000
        assert settings["headless"] is True
        assert settings["max_concurrent"] == 1
        assert settings["min_products"] == 20
        assert settings["max_rounds"] == 3
        assert settings["max_jobs"] == 100

    def test_override_defaults(self, tmp_path):
        """Test that explicit values override defaults."""
        yaml_content = """
timeout_ms: 60000
headless: false
max_concurrent: 3
"""
        filepath = tmp_path / "settings.yaml"
        filepath.write_text(yaml_content)

        settings = load_settings(filepath)

        assert settings["timeout_ms"] == 60000
        assert settings["headless"] is False
        assert settings["max_concurrent"] == 3


class TestBuildAutomationConfig:
    """Tests for building the run configuration."""

    def test_settings_flow_into_config(self, tmp_path):
        """Test known keys are applied and unknown keys ignored."""
        settings = {
            "timeout_ms": 45000,
            "min_products": 10,
            "output_dir": str(tmp_path / "out"),
            "max_jobs": 50,
            "delays": {"step_min_ms": 100, "step_max_ms": 200, "unknown": 5},
        }

        config = build_automation_config(settings)

        assert isinstance(config, AutomationConfig)
        assert config.timeout_ms == 45000
        assert config.min_products == 10
        assert config.output_dir == tmp_path / "out"
        assert config.delays.step_min_ms == 100
        assert config.delays.step_max_ms == 200
        assert config.delays.settle_min_ms == DelayPolicy().settle_min_ms

    def test_overrides_win(self):
        """Test CLI overrides take precedence over settings."""
        config = build_automation_config(
            {"headless": True}, headless=False, delays=DelayPolicy.none()
        )

        assert config.headless is False
        assert config.delays.step_max_ms == 0

    def test_shipped_settings(self):
        """Test the bundled settings.yaml builds a config."""
        settings = load_settings(CONFIG_DIR / "settings.yaml")
        config = build_automation_config(settings)

        assert config.min_products == 20
        assert config.max_rounds == 3
        assert config.delays.typing_delay_ms == 120
