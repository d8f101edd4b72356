"""Tests for configuration loading and the logger."""

import json
import os

import pytest

from moss.modules.config import MossConfig, Settings, load_settings
from moss.modules.errors import ConfigError
from moss.modules.logger import Logger

CONFIG = """
[moss]
sysroot = {root}/sysroot
cache_dir = {root}/cache
path = {root}/overlay, {root}/main
workers = 4
strip = no
provider_policy = Strict
remotes = {root}/main=https://example.org/main.git

[providers]
sh = busybox

[logging]
level = DEBUG
log_to_file = false
log_format = json
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "moss.conf"
    path.write_text(CONFIG.format(root=tmp_path))
    return str(path)


class TestLoadSettings:
    def test_values_from_file(self, config_file, tmp_path):
        s = load_settings(config_file)
        assert s.sysroot == str(tmp_path / "sysroot")
        assert s.search_paths == (str(tmp_path / "overlay"), str(tmp_path / "main"))
        assert s.workers == 4
        assert s.strip is False
        assert s.provider_policy == "strict"
        assert s.provider_preferences == {"sh": "busybox"}
        assert s.remotes == {str(tmp_path / "main"): "https://example.org/main.git"}
        assert s.log_level == "debug"
        assert s.log_format == "json"
        assert s.installed_db_dir == os.path.join(str(tmp_path / "sysroot"), "var/lib/moss/installed")
        assert s.sources_dir == os.path.join(str(tmp_path / "cache"), "sources")

    def test_overrides_win(self, config_file):
        s = load_settings(config_file, workers=2, verbose_builds=None)
        assert s.workers == 2
        assert s.verbose_builds is False

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc:
            load_settings(str(tmp_path / "absent.conf"))
        assert exc.value.exit_code == 2

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "bad.conf"
        path.write_text("no section header\n")
        with pytest.raises(ConfigError, match="Couldn't parse"):
            load_settings(str(path))

    def test_invalid_values(self):
        with pytest.raises(ConfigError):
            Settings(workers=0)
        with pytest.raises(ConfigError):
            Settings(provider_policy="random")

    def test_defaults_without_file(self, tmp_path):
        cfg = MossConfig([str(tmp_path / "nothing.conf")]).reload()
        assert cfg.loaded_from is None
        assert cfg.getint("moss", "workers", fallback=1) == 1
        assert cfg.getlist("moss", "path") == []
        assert "moss" not in cfg


class TestLogger:
    def test_file_and_json_output(self, tmp_path, capsys):
        settings = Settings(log_dir=str(tmp_path / "log"), log_format="json",
                            log_to_console=False, log_level="info")
        log = Logger("test", settings)
        log.debug("hidden")
        log.child("sub").warning("careful")

        assert capsys.readouterr().out == ""
        with open(tmp_path / "log" / "moss.log") as fh:
            lines = [json.loads(line) for line in fh]
        assert len(lines) == 1
        assert lines[0]["logger"] == "sub"
        assert lines[0]["level"] == "WARNING"
        assert lines[0]["message"] == "careful"

    def test_console_plain_text(self, tmp_path, capsys):
        settings = Settings(log_dir=str(tmp_path), log_to_file=False, color_output=False)
        Logger("moss", settings).success("done")
        out = capsys.readouterr().out
        assert "[moss] [SUCCESS] done" in out
        assert "\033[" not in out

    def test_rotation(self, tmp_path):
        settings = Settings(log_dir=str(tmp_path), log_to_console=False, max_log_size_kb=1)
        log = Logger("moss", settings)
        for i in range(40):
            log.info(f"{i:02d} " + "x" * 60)
        rotated = (tmp_path / "moss.log.1").read_text()
        current = (tmp_path / "moss.log").read_text()
        assert os.path.getsize(tmp_path / "moss.log") <= 1024 + 100
        assert "[INFO] 39 " in current
        assert "[INFO] 39 " not in rotated
        assert "[INFO] 00 " not in current

    def test_no_rotation_by_default(self, tmp_path):
        settings = Settings(log_dir=str(tmp_path), log_to_console=False)
        log = Logger("moss", settings)
        for _ in range(40):
            log.info("x" * 60)
        assert not os.path.exists(tmp_path / "moss.log.1")
        assert len((tmp_path / "moss.log").read_text().splitlines()) == 40

    def test_colored_console_and_level(self, tmp_path, capsys):
        settings = Settings(log_dir=str(tmp_path), log_to_file=False, log_level="warning")
        log = Logger("moss", settings)
        log.info("quiet")
        log.error("loud")
        out = capsys.readouterr().out
        assert "quiet" not in out
        assert out.startswith("\033[91m[")
        assert out.rstrip("\n").endswith("loud\033[0m")
        assert not os.path.exists(tmp_path / "moss.log")
