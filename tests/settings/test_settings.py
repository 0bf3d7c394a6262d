"""Settings loading and validation."""

import pytest
import yaml

from stock_config import (
    DEFAULT_SETTINGS_PATH,
    ReadPreference,
    StockSettings,
    get_settings,
)
from stock_config.loader import parse_flags, parse_settings


class TestDefaultSettings:
    def test_packaged_default_matches_schema_defaults(self):
        settings = get_settings()

        assert settings == StockSettings()
        assert DEFAULT_SETTINGS_PATH.exists()

    def test_load_logged(self, captured_logs):
        get_settings()

        loaded = [r for r in captured_logs() if r["message"] == "settings_loaded"]
        assert loaded
        assert loaded[0]["settings_name"] == "default"
        assert loaded[0]["read_preference"] == "primary"

    def test_load_from_path(self, tmp_path):
        path = tmp_path / "site.yaml"
        path.write_text(
            "name: site\n"
            "flags:\n"
            "  read_preference: secondary\n"
            "  dual_write_enabled: false\n"
            "reconciliation:\n"
            "  max_attempts: 2\n"
            "ledger:\n"
            "  default_shelf_life_days: 10\n"
            "log_level: debug\n"
        )

        settings = get_settings(path)

        assert settings.name == "site"
        assert settings.flags.read_preference is ReadPreference.SECONDARY
        assert not settings.flags.dual_write_enabled
        assert settings.reconciliation.max_attempts == 2
        assert settings.reconciliation.batch_size == 100
        assert settings.ledger.default_shelf_life_days == 10
        assert settings.log_level == "DEBUG"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_settings(tmp_path / "nope.yaml")

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert get_settings(path) == StockSettings()


class TestValidation:
    @pytest.mark.parametrize(
        "data",
        [
            {"colour": "blue"},
            {"flags": {"read_from": "primary"}},
            {"stores": {"timeout": 1}},
            {"reconciliation": {"retries": 3}},
        ],
    )
    def test_unknown_keys_rejected(self, data):
        with pytest.raises(ValueError, match="Unknown keys"):
            parse_settings(data)

    @pytest.mark.parametrize(
        "data",
        [
            {"stores": {"timeout_seconds": 0}},
            {"reconciliation": {"max_attempts": 0}},
            {"reconciliation": {"batch_size": 0}},
            {"reconciliation": {"backoff_base_seconds": 10, "backoff_cap_seconds": 5}},
            {"ledger": {"default_shelf_life_days": 0}},
            {"flags": {"dual_write_enabled": "yes"}},
        ],
    )
    def test_out_of_range_values_rejected(self, data):
        with pytest.raises(ValueError):
            parse_settings(data)

    def test_bad_read_preference(self):
        with pytest.raises(ValueError, match="read_preference must be one of"):
            parse_flags({"read_preference": "nearest"})

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError, match="expected a mapping"):
            get_settings(path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("flags: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            get_settings(path)

    def test_consistency_log_must_not_share_relational_database(self):
        url = "sqlite:////var/lib/stock/relational.db"

        with pytest.raises(ValueError, match="consistency_log_url"):
            parse_settings({"stores": {"relational_url": url, "consistency_log_url": url}})

    def test_separate_consistency_log_url(self):
        settings = parse_settings(
            {
                "stores": {
                    "relational_url": "sqlite:////var/lib/stock/relational.db",
                    "consistency_log_url": "sqlite:////var/lib/stock/log.db",
                }
            }
        )

        assert settings.stores.consistency_log_url == "sqlite:////var/lib/stock/log.db"
