import json

import pytest

from chainhook_lake.config import config_from_dict, load_config


class TestConfig:
    @pytest.fixture(autouse=True)
    def no_env_secret(self, monkeypatch):
        monkeypatch.delenv("CRON_SECRET", raising=False)

    def test_defaults(self):
        cfg = config_from_dict({})
        assert cfg.api_port == 8080
        assert cfg.cron_secret is None
        assert cfg.webhook_dedup is True
        assert cfg.stacks_api_url == "https://api.mainnet.hiro.so"
        assert cfg.ipfs_gateway == "https://ipfs.io/ipfs/"
        assert cfg.validation_concurrency == 3
        assert cfg.validation_batch_pause_ms == 800
        assert cfg.cors_allow_origins == []
        assert cfg.max_webhook_bytes == 64 * 1024 * 1024

    def test_env_secret_overrides_file(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "from-env")
        cfg = config_from_dict({"CRON_SECRET": "from-file"})
        assert cfg.cron_secret == "from-env"

    def test_blank_secret_disables_auth(self):
        assert config_from_dict({"CRON_SECRET": "   "}).cron_secret is None

    def test_normalizes_urls_and_origins(self):
        cfg = config_from_dict(
            {
                "STACKS_API_URL": "http://localhost:3999/",
                "IPFS_GATEWAY": "https://gw.example/ipfs",
                "CORS_ALLOW_ORIGINS": "https://a.example/, https://b.example",
                "WEBHOOK_DEDUP": "off",
            }
        )
        assert cfg.stacks_api_url == "http://localhost:3999"
        assert cfg.ipfs_gateway == "https://gw.example/ipfs/"
        assert cfg.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert cfg.webhook_dedup is False

    @pytest.mark.parametrize(
        "raw",
        [
            {"STACKS_API_URL": "ftp://node"},
            {"LOG_LEVEL": "loud"},
            {"VALIDATION_CONCURRENCY": 0},
            {"VALIDATION_BATCH_PAUSE_MS": -1},
            {"QUERY_TIMEOUT_SEC": 0},
            {"WEBHOOK_DEDUP": "maybe"},
            {"MAX_WEBHOOK_BYTES": 0},
        ],
    )
    def test_rejects_invalid_values(self, raw):
        with pytest.raises(ValueError):
            config_from_dict(raw)

    def test_load_missing_file_uses_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "absent.json"))
        assert cfg.api_host == "127.0.0.1"

    def test_load_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"API_PORT": 9999, "LOG_LEVEL": "DEBUG"}), encoding="utf-8")
        cfg = load_config(str(path))
        assert cfg.api_port == 9999
        assert cfg.log_level == "debug"

    def test_load_rejects_non_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(str(path))
