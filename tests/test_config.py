"""Tests for flag / INI / default resolution."""

import pytest

from prism.config import Config, ConfigError, load_config, parse_duration, parse_listen


@pytest.fixture
def ini(tmp_path):
    def _write(body: str) -> str:
        path = tmp_path / "prism.ini"
        path.write_text(body, encoding="utf-8")
        return str(path)

    return _write


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path):
        config = load_config(["-c", str(tmp_path / "missing.ini")])

        assert config == Config()
        assert config.listen == ":4444"
        assert config.target == "http://localhost:4545"
        assert config.wait_timeout == 30.0
        assert config.grace_period == 30.0
        assert (config.browser_name, config.browser_version) == ("safari", "13.0")

    def test_ini_values(self, ini):
        path = ini(
            "[prism]\n"
            "listen = 127.0.0.1:5555\n"
            "target = http://grid:4444/wd/hub\n"
            "wait_timeout = 500ms\n"
            "grace_period = 2m\n"
            "browser_name = webkit\n"
            "browser_version = 605.1\n"
            "log_level = debug\n"
        )

        config = load_config(["-c", path])

        assert config.listen_host == "127.0.0.1"
        assert config.listen_port == 5555
        assert config.target == "http://grid:4444/wd/hub"
        assert config.wait_timeout == 0.5
        assert config.grace_period == 120.0
        assert config.browser_name == "webkit"
        assert config.browser_version == "605.1"
        assert config.log_level == "DEBUG"

    def test_flags_override_ini(self, ini):
        path = ini("[prism]\nbrowser_name = webkit\ngrace_period = 10\n")

        config = load_config(["-c", path, "--browser-name", "safari", "--grace-period", "5s"])

        assert config.browser_name == "safari"
        assert config.grace_period == 5.0

    def test_trace_level_is_known(self, tmp_path):
        config = load_config(["-c", str(tmp_path / "none.ini"), "--log-level", "trace"])

        assert config.log_level == "TRACE"

    @pytest.mark.parametrize(
        "argv",
        [
            ["--target", "ftp://grid"],
            ["--listen", "4444"],
            ["--listen", ":http"],
            ["--wait-timeout", "soon"],
            ["--log-level", "loud"],
        ],
    )
    def test_invalid_values_raise(self, tmp_path, argv):
        with pytest.raises(ConfigError):
            load_config(["-c", str(tmp_path / "none.ini"), *argv])


class TestParsers:
    @pytest.mark.parametrize(
        "value,expected",
        [("30", 30.0), ("30s", 30.0), ("1.5", 1.5), ("250ms", 0.25), ("2m", 120.0), (" 5 s ", 5.0)],
    )
    def test_parse_duration(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            (":4444", (None, 4444)),
            ("0.0.0.0:4444", ("0.0.0.0", 4444)),
            ("[::1]:4444", ("::1", 4444)),
            ("localhost:0", ("localhost", 0)),
        ],
    )
    def test_parse_listen(self, value, expected):
        assert parse_listen(value) == expected

    def test_parse_listen_rejects_out_of_range_port(self):
        with pytest.raises(ConfigError):
            parse_listen(":70000")
