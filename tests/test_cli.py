import json
from pathlib import Path

from nas_monitor import cli


def _write_config(tmp_path: Path, feed_source: str) -> Path:
    config_path = tmp_path / "nas-monitor.cfg"
    config_path.write_text(
        f"""
[registry]
source = {feed_source}
source_token = very-secret

[mqtt]
password = hunter2
        """.strip()
        + "\n",
        encoding="utf-8",
    )
    return config_path


def test_show_config_masks_secrets(tmp_path: Path, capsys) -> None:
    config_path = _write_config(tmp_path, str(tmp_path / "devices.json"))

    assert cli.main(["-c", str(config_path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert "[registry]" in output
    assert "source_token = ********" in output
    assert "password = ********" in output
    assert "hunter2" not in output
    assert "very-secret" not in output


def test_check_feed_lists_devices_and_bindings(tmp_path: Path, capsys) -> None:
    feed_path = tmp_path / "devices.json"
    feed_path.write_text(
        json.dumps(
            {
                "devices": [
                    {"id": "r1", "address": "10.0.0.1", "capabilities": ["disconnect"]},
                ],
                "sessions": [{"clientId": "c-42", "deviceId": "r1", "sessionId": "alice"}],
            }
        ),
        encoding="utf-8",
    )
    config_path = _write_config(tmp_path, str(feed_path))

    assert cli.main(["-c", str(config_path), "check-feed"]) == 0

    output = capsys.readouterr().out
    assert "1 device(s):" in output
    assert "r1" in output and "caps=disconnect" in output
    assert "c-42" in output and "-> r1/alice" in output


def test_check_feed_reports_unusable_feed(tmp_path: Path, capsys) -> None:
    config_path = _write_config(tmp_path, str(tmp_path / "devices.json"))

    assert cli.main(["-c", str(config_path), "check-feed", "--source", str(tmp_path / "nope.json")]) == 1

    assert "error: Cannot read device feed" in capsys.readouterr().err


def test_init_config_writes_defaults(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "etc" / "nas-monitor.cfg"

    assert cli.main(["-c", str(config_path), "init-config", "--source", "/srv/devices.json"]) == 0

    assert "Configuration written to" in capsys.readouterr().out
    written = config_path.read_text(encoding="utf-8")
    assert "[registry]" in written
    assert "source = /srv/devices.json" in written
    assert "[access]" in written


def test_init_config_keeps_existing_file_without_force(tmp_path: Path, capsys) -> None:
    config_path = _write_config(tmp_path, "/srv/devices.json")
    original = config_path.read_text(encoding="utf-8")

    assert cli.main(["-c", str(config_path), "init-config"]) == 1
    assert "already exists" in capsys.readouterr().err
    assert config_path.read_text(encoding="utf-8") == original

    assert cli.main(["-c", str(config_path), "init-config", "--force", "--source", "/srv/other.json"]) == 0
    rewritten = config_path.read_text(encoding="utf-8")
    assert "source = /srv/other.json" in rewritten
    assert "source_token = very-secret" in rewritten
