import stat
import tomllib

from devpod_cli import config
from devpod_core.stack import default_topology


def test_config_path_env_override(tmp_path, monkeypatch) -> None:
    target = tmp_path / "devpod.toml"
    monkeypatch.setenv(config.ENV_CONFIG_PATH, str(target))
    assert config.config_path() == str(target)


def test_config_path_defaults_to_site_dir(monkeypatch) -> None:
    monkeypatch.delenv(config.ENV_CONFIG_PATH, raising=False)
    monkeypatch.setattr(config, "site_config_dir", lambda app: f"/etc/xdg/{app}")
    assert config.config_path() == "/etc/xdg/devpod/config.toml"


def test_missing_file_gives_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv(config.ENV_CONFIG_PATH, str(tmp_path / "absent.toml"))
    assert config.load_config() == config.default_config()


def test_save_and_load_round_trip(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv(config.ENV_CONFIG_PATH, str(tmp_path / "etc" / "config.toml"))
    cfg = config.default_config()
    cfg.ssh_port = 2022
    cfg.backup_schedule = "30 1 * * *"
    cfg.pull_backoff_s = 0.25

    path = config.save_config(cfg)
    with open(path, "rb") as f:
        data = tomllib.load(f)

    assert data["devpod"]["ssh_port"] == 2022
    assert stat.S_IMODE((tmp_path / "etc" / "config.toml").stat().st_mode) == 0o600
    assert config.load_config() == cfg


def test_bad_values_fall_back_to_defaults() -> None:
    cfg = config.from_toml(
        {
            "devpod": {
                "ssh_port": "twenty-two",
                "backup_schedule": "whenever",
                "backup_retention_days": 0,
                "pull_attempts": True,
                "unknown_key": 1,
            }
        }
    )
    defaults = config.default_config()
    assert cfg.ssh_port == defaults.ssh_port
    assert cfg.backup_schedule == defaults.backup_schedule
    assert cfg.backup_retention_days == defaults.backup_retention_days
    assert cfg.pull_attempts == defaults.pull_attempts


def test_set_value_validates() -> None:
    cfg = config.default_config()
    config.set_value(cfg, "SSH_PORT", "2200")
    assert cfg.ssh_port == 2200
    for key, raw in (("ssh_port", "abc"), ("backup_schedule", "0 3 *")):
        try:
            config.set_value(cfg, key, raw)
        except ValueError:
            continue
        raise AssertionError(f"{key}={raw!r} accepted")


def test_host_settings_and_topology(tmp_path) -> None:
    cfg = config.default_config()
    cfg.cfg_dir = str(tmp_path / "cfg")
    cfg.pull_attempts = 5
    settings = config.host_settings(cfg)
    assert settings.env_path == tmp_path / "cfg" / ".env"
    assert settings.pull_attempts == 5
    assert config.resolve_topology(cfg).names == default_topology().names

    custom = tmp_path / "topology.yml"
    custom.write_text("services:\n  web:\n    image: nginx:1.25\n", encoding="utf-8")
    cfg.topology_file = str(custom)
    assert config.resolve_topology(cfg).names == ["web"]
