from dmrelay.cmd.server import load_config
from dmrelay.cmd.client import history_url


def test_defaults_without_file_or_env():
    cfg = load_config(None, env={})
    assert cfg["listen"] == "0.0.0.0:3000"
    assert cfg["db_path"] == "chat.db"
    assert cfg["allowed_origins"] == ["http://localhost:8000"]


def test_yaml_then_env_overrides(tmp_path):
    path = tmp_path / "server.yaml"
    path.write_text(
        "listen: '127.0.0.1:7001'\n"
        "db_path: data/x.db\n"
        "allowed_origins: http://app.example\n"
    )
    cfg = load_config(path, env={})
    assert cfg["listen"] == "127.0.0.1:7001"
    assert cfg["allowed_origins"] == ["http://app.example"]

    cfg = load_config(path, env={"PORT": "9000", "DB_PATH": "/tmp/y.db", "CORS_ORIGIN": "http://a, http://b"})
    assert cfg["listen"] == "127.0.0.1:9000"
    assert cfg["db_path"] == "/tmp/y.db"
    assert cfg["allowed_origins"] == ["http://a", "http://b"]


def test_wildcard_origin_disables_check():
    assert load_config(None, env={"CORS_ORIGIN": "*"})["allowed_origins"] is None


def test_empty_yaml_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path, env={})["listen"] == "0.0.0.0:3000"


def test_history_url_from_ws_url():
    assert history_url("ws://localhost:3000", "jane doe") == "http://localhost:3000/api/conversations/jane%20doe"
    assert history_url("wss://chat.example", "bob") == "https://chat.example/api/conversations/bob"
