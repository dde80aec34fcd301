import pytest
import yaml

from webfetch.config import Config


class TestConfigLoading:
    def test_packaged_defaults(self):
        config = Config(environ={})

        assert config.fetcher["timeout"] == 30000
        assert config.content["size_limit"] == 50000
        assert config.chunks["ttl_seconds"] == 600
        assert config.browser["headless"] is True
        assert config.i18n["locale"] == "en"
        assert config.debug is False

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        config = Config(config_path=tmp_path / "absent.yaml", environ={})

        assert config.get("fetcher", "max_redirects") == 10

    def test_file_values_merge_over_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"content": {"size_limit": 20000}}))

        config = Config(config_path=path, environ={})

        assert config.content["size_limit"] == 20000
        assert config.content["min_size_limit"] == 4096

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("content: [unclosed")

        with pytest.raises(ValueError):
            Config(config_path=path, environ={})

    def test_get_with_default(self):
        config = Config(environ={})

        assert config.get("nope", "missing", default="fallback") == "fallback"


class TestEnvOverrides:
    def test_typed_overrides(self):
        config = Config(environ={
            "WEBFETCH_TIMEOUT": "5000",
            "WEBFETCH_BROWSER_HEADLESS": "false",
            "WEBFETCH_CONTENT_SIZE_LIMIT": "8192",
            "WEBFETCH_LANG": "zh",
        })

        assert config.fetcher["timeout"] == 5000
        assert config.browser["headless"] is False
        assert config.content["size_limit"] == 8192
        assert config.i18n["locale"] == "zh"

    def test_debug_switch(self):
        assert Config(environ={"DEBUG": "true"}).debug is True
        assert Config(environ={"WEBFETCH_DEBUG": "true"}).debug is True

    def test_executable_path(self):
        config = Config(environ={"PLAYWRIGHT_EXECUTABLE_PATH": "/opt/chrome/chrome"})

        assert config.browser["executable_path"] == "/opt/chrome/chrome"
