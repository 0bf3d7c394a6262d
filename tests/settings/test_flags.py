"""Routing flag sources: static and file-backed with reload."""

import os

from stock_config import ReadPreference, RoutingFlags, StaticFlagSource, YamlFlagSource
from stock_config.flags import FeatureFlagSource


def _write(path, text, tick):
    path.write_text(text)
    # Force a distinct mtime; some filesystems have coarse timestamps.
    stamp = 1_700_000_000_000_000_000 + tick * 1_000_000_000
    os.utime(path, ns=(stamp, stamp))


class TestStaticFlagSource:
    def test_defaults_and_set(self):
        source = StaticFlagSource()

        assert source.current() == RoutingFlags()
        source.set(RoutingFlags(read_preference=ReadPreference.SECONDARY))
        assert source.current().read_preference is ReadPreference.SECONDARY

    def test_is_a_flag_source(self):
        assert isinstance(StaticFlagSource(), FeatureFlagSource)


class TestYamlFlagSource:
    def test_reads_flags_key_and_reloads(self, tmp_path):
        path = tmp_path / "flags.yaml"
        _write(path, "flags:\n  read_preference: primary\n", 1)
        source = YamlFlagSource(path)
        assert source.current().read_preference is ReadPreference.PRIMARY

        _write(path, "flags:\n  read_preference: secondary\n  dual_write_enabled: false\n", 2)

        flags = source.current()
        assert flags.read_preference is ReadPreference.SECONDARY
        assert not flags.dual_write_enabled

    def test_top_level_mapping(self, tmp_path):
        path = tmp_path / "flags.yaml"
        _write(path, "dual_write_enabled: false\n", 1)

        assert not YamlFlagSource(path).current().dual_write_enabled

    def test_invalid_file_keeps_last_good_flags(self, tmp_path, captured_logs):
        path = tmp_path / "flags.yaml"
        _write(path, "read_preference: secondary\n", 1)
        source = YamlFlagSource(path)

        _write(path, "read_preference: nearest\n", 2)

        assert source.current().read_preference is ReadPreference.SECONDARY
        assert any(r["message"] == "flag_file_invalid" for r in captured_logs())

    def test_missing_file_uses_fallback(self, tmp_path, captured_logs):
        fallback = RoutingFlags(dual_write_enabled=False)

        source = YamlFlagSource(tmp_path / "absent.yaml", fallback=fallback)

        assert source.current() == fallback
        assert any(r["message"] == "flag_file_unreadable" for r in captured_logs())

    def test_deleted_file_keeps_last_good_flags(self, tmp_path):
        path = tmp_path / "flags.yaml"
        _write(path, "read_preference: secondary\n", 1)
        source = YamlFlagSource(path)

        path.unlink()

        assert source.current().read_preference is ReadPreference.SECONDARY
