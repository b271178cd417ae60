"""Command-line checks."""

from pserver_lifecycle.main import main

CONFIG = """\
servers:
  survival:
    name: Survival
    idle_timeout: 15m
    schedules:
      - start: "0 18 * * *"
        stop: "0 23 * * *"
    control_api:
      type: shell
      start_command: ./start.sh
      stop_command: ./stop.sh
  lobby:
    control_api:
      type: shell
      start_command: ./start.sh
      stop_command: ./stop.sh
"""


def test_check_lists_servers_and_transitions(tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text(CONFIG, encoding="utf-8")
    env_file = tmp_path / ".env"
    env_file.write_text("", encoding="utf-8")

    code = main(["--env-file", str(env_file), "check", str(config), "--transitions", "2"])

    out = capsys.readouterr().out
    assert code == 0
    assert "[OK] 2 server(s) configured" in out
    assert "Survival (survival)" in out
    assert "Idle timeout: 15m 0s" in out
    assert "Schedules: none" in out
    assert out.count("opens") + out.count("closes") == 2


def test_check_reports_invalid_config(tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("servers:\n  lobby:\n    control_api: {type: nope}\n", encoding="utf-8")
    env_file = tmp_path / ".env"
    env_file.write_text("", encoding="utf-8")

    assert main(["--env-file", str(env_file), "check", str(config)]) == 1
    assert "Unknown control_api type" in capsys.readouterr().err
