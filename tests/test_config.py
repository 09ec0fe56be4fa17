import pytest

from ledger_sync.config import load_app_config


def write_config(tmp_path, text):
    path = tmp_path / "ledger_sync_config.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_when_sections_are_missing(tmp_path):
    path = write_config(tmp_path, "")

    cfg = load_app_config(str(path))

    assert cfg.database.engine == "sqlite"
    assert cfg.database.path == (tmp_path / "data/db/ledger_sync.sqlite").resolve()
    assert cfg.remote.url is None
    assert cfg.remote.table == "transactions"
    assert cfg.sync.push_batch_size == 25
    assert cfg.sync.pull_page_size == 500
    assert cfg.sync.device_name
    assert cfg.identity.key == "auth_company_id"
    assert cfg.log_level == "INFO"


def test_values_and_relative_paths(tmp_path, monkeypatch):
    path = write_config(
        tmp_path,
        """
[database]
path = "local/ledger.sqlite"

[remote]
url = "https://abc.supabase.co/"
api_key_env = "MY_KEY"
timeout_seconds = 4.5

[sync]
push_batch_size = 10
pull_page_size = 200
interval_seconds = 15
device_name = "front-desk"

[identity]
secure_storage_path = "secure/id.json"
local_storage_path = "ls.json"

[logging]
level = "debug"
""",
    )
    monkeypatch.setenv("MY_KEY", "secret")

    cfg = load_app_config(str(path))

    assert cfg.database.path == (tmp_path / "local/ledger.sqlite").resolve()
    assert cfg.remote.url == "https://abc.supabase.co"
    assert cfg.remote.api_key == "secret"
    assert cfg.remote.timeout_seconds == 4.5
    assert cfg.sync.push_batch_size == 10
    assert cfg.sync.pull_page_size == 200
    assert cfg.sync.interval_seconds == 15.0
    assert cfg.sync.device_name == "front-desk"
    assert cfg.identity.secure_storage_path == (tmp_path / "secure/id.json").resolve()
    assert cfg.log_level == "DEBUG"


def test_api_key_missing_from_environment(tmp_path, monkeypatch):
    path = write_config(tmp_path, '[remote]\napi_key_env = "UNSET_LEDGER_KEY"\n')
    monkeypatch.delenv("UNSET_LEDGER_KEY", raising=False)

    assert load_app_config(str(path)).remote.api_key is None


@pytest.mark.parametrize(
    "text",
    [
        "[sync]\npush_batch_size = 0\n",
        "[sync]\npull_page_size = \"many\"\n",
        "[sync]\npush_batch_size = true\n",
        "[sync]\nbackoff_base_seconds = 10\nbackoff_max_seconds = 5\n",
        "[sync]\nbackoff_multiplier = 0.5\n",
        "[remote]\ntimeout_seconds = -1\n",
        "not valid toml [",
    ],
)
def test_invalid_values_are_rejected(tmp_path, text):
    path = write_config(tmp_path, text)
    with pytest.raises(ValueError):
        load_app_config(str(path))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_app_config(str(tmp_path / "nope.toml"))
