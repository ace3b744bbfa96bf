from fluffer.config import load_config


def test_config_defaults_when_file_is_missing(tmp_path):
    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.timezone == "America/Los_Angeles"
    assert cfg.refresh_interval_seconds == 60
    assert cfg.future_limit_days == 14
    assert cfg.materiality_hours == 4
    assert cfg.calendar.calendar_id == "primary"
    assert cfg.discord.channel == "events"
    assert cfg.discord.command_prefix == "!"
    assert cfg.logging.file == "fluffer.log"


def test_config_uses_custom_values(tmp_path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        """
        timezone: 'Europe/London'
        future_limit_days: 30
        calendar:
          calendar_id: club@group.calendar.google.com
        discord:
          channel: '#Announcements'
          scheduled_events: false
        logging:
          level: debug
          file: ''
        """,
        encoding="utf-8",
    )

    cfg = load_config(str(cfg_path))

    assert cfg.timezone == "Europe/London"
    assert cfg.future_limit_days == 30
    assert cfg.calendar.calendar_id == "club@group.calendar.google.com"
    assert cfg.discord.channel == "announcements"
    assert cfg.discord.scheduled_events is False
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.file is None
