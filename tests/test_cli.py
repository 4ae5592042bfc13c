import pytest

from falconagent.cli import main
from falconagent.config import VERSION, config, set_config


@pytest.fixture(autouse=True)
def keep_config():
    saved = config()
    yield
    set_config(saved)


def test_version(capsys):
    assert main(["-v"]) == 0
    assert capsys.readouterr().out == VERSION + "\n"


def test_check_prints_every_collector(capsys):
    assert main(["-check"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 12
    assert all(line.endswith(("... ok", "... fail")) for line in lines)
    names = {line.split("...")[0].strip() for line in lines}
    assert {"kernel", "du -bs", "ss -tln", "ps aux"} <= names


def test_missing_config_fails(tmp_path, capsys):
    assert main(["-c", str(tmp_path / "missing.json")]) == 1
    assert "is not existent" in capsys.readouterr().err


def test_invalid_config_fails(tmp_path, capsys):
    path = tmp_path / "cfg.json"
    path.write_text("{not json")
    assert main(["-c", str(path)]) == 1
    assert "parse config file" in capsys.readouterr().err


def test_unknown_option_exits():
    with pytest.raises(SystemExit) as info:
        main(["--nope"])
    assert info.value.code == 2