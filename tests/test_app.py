import pytest

from vidsolve import app
from vidsolve.core.errors import ContentUnplayableError
from vidsolve.core.models import PersonaFailure, ResolvedFormat


def make_format(**overrides):
    values = dict(itag=137, url="u", mime_type='video/mp4; codecs="avc1.640028"', codecs="avc1.640028",
                  quality_label="1080p", width=1920, height=1080, fps=30, bitrate=4000000,
                  audio_bitrate=0, content_length=5 * 1024 * 1024, persona_id="android_vr")
    values.update(overrides)
    return ResolvedFormat(**values)


def test_parser_commands():
    parser = app.build_parser()
    args = parser.parse_args(["fetch", "dQw4w9WgXcQ", "--itag", "18", "-o", "out.mp4"])
    assert args.command == "fetch"
    assert args.itag == 18
    assert str(args.output) == "out.mp4"

    with pytest.raises(SystemExit):
        parser.parse_args(["fetch", "dQw4w9WgXcQ"])


def test_describe_format():
    line = app.describe_format(make_format())
    assert "137" in line and "1080p" in line and "5.0 MiB" in line

    audio = app.describe_format(make_format(itag=140, mime_type="audio/mp4", codecs="mp4a.40.2",
                                            audio_bitrate=128000, content_length=None))
    assert "audio" in audio and "128k" in audio


def test_main_reports_persona_chain(monkeypatch, tmp_path, capsys):
    async def fail(args, config):
        raise ContentUnplayableError("abc", [PersonaFailure("android_vr", "unplayable", "LOGIN_REQUIRED")])

    monkeypatch.setattr(app, "run", fail)
    code = app.main(["--config", str(tmp_path / "settings.json"), "formats", "abc"])
    assert code == 2
    assert "android_vr [unplayable]: LOGIN_REQUIRED" in capsys.readouterr().err


def test_main_logs_unexpected_errors(monkeypatch, tmp_path):
    logged = []

    async def boom(args, config):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(app, "run", boom)
    monkeypatch.setattr(app, "log_error", lambda msg, exc=None: logged.append((msg, exc)))
    code = app.main(["--config", str(tmp_path / "settings.json"), "formats", "abc"])
    assert code == 1
    assert logged[0][0] == "Fatal error in main()"
    assert str(logged[0][1]) == "unexpected"
