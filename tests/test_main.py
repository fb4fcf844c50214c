"""Tests for the command-line entry point and startup checks"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from daylapse.errors import StartupError
from daylapse.main import main, parse_arguments
from daylapse.utils import check_required_tools, required_tools


CONFIG_YAML = """\
location:
  name: Test Town
  latitude: 39.1
  longitude: -120.0
  timezone: UTC
source:
  url: https://www.youtube.com/watch?v=abc
storage:
  work_path: {work}
  output_path: {output}
"""


def sun_payload(day):
    return {
        'status': 'OK',
        'results': {
            'sunrise': f'{day.isoformat()}T12:45:10+00:00',
            'sunset': f'{(day + timedelta(days=1)).isoformat()}T03:52:41+00:00',
        },
    }


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'daylapse.yaml'
    path.write_text(CONFIG_YAML.format(work=tmp_path / 'frames', output=tmp_path / 'videos'))
    return path


def test_parse_arguments_defaults():
    args = parse_arguments([])
    assert args.config == '/etc/daylapse/daylapse.yaml'
    assert args.log_level == 'INFO'
    assert args.check is False


def test_required_tools_follow_resolver(config):
    assert required_tools(config) == ['ffmpeg']
    config.resolver = 'yt-dlp'
    assert required_tools(config) == ['ffmpeg', 'yt-dlp']


def test_missing_tool_is_startup_error(config):
    with patch("daylapse.utils.shutil.which", return_value=None):
        with pytest.raises(StartupError):
            check_required_tools(config)


def test_missing_config_exits(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(['--config', str(tmp_path / 'absent.yaml')])
    assert exc.value.code == 1


def test_invalid_config_exits(tmp_path):
    path = tmp_path / 'daylapse.yaml'
    path.write_text("location:\n  name: Nowhere\n")

    with pytest.raises(SystemExit) as exc:
        main(['--config', str(path)])
    assert exc.value.code == 1


def test_missing_tools_exit(config_file):
    with patch("daylapse.utils.shutil.which", return_value=None):
        with pytest.raises(SystemExit) as exc:
            main(['--config', str(config_file)])
    assert exc.value.code == 1


def test_check_prints_schedule(config_file, capsys):
    response = MagicMock(status_code=200)
    response.json.return_value = sun_payload(datetime.now(timezone.utc).date())

    with patch("daylapse.utils.shutil.which", side_effect=lambda tool: f"/usr/bin/{tool}"), \
            patch("daylapse.lookups.requests.get", return_value=response):
        main(['--config', str(config_file), '--check'])

    out = capsys.readouterr().out
    assert "Sunrise/sunset: 12:45:10 / 03:52:41" in out
    assert "Capture window: 12:15:10 - 04:37:41" in out
    assert "Interval:       11s" in out
