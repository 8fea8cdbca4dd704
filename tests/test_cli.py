import json

from click.testing import CliRunner

from mpv_dualsub import cli as cli_module
from mpv_dualsub.cli import cli

from tests.fakes import DOCUMENTS


def write(tmp_path, text, name="subs.ttml"):
    path = tmp_path / name
    path.write_text(text, encoding="utf8")
    return str(path)


class TestParseCommand:
    def test_lists_entries_and_regions(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", write(tmp_path, DOCUMENTS["en"])])
        assert result.exit_code == 0, result.output
        assert "00:00:00.500 --> 00:00:02.000  [bottom]\nHello" in result.output
        assert "region bottom: origin 10% 80%, extent 80% 10%, align after" in result.output
        assert "3 entries, 1 regions" in result.output

    def test_entry_at_time(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", write(tmp_path, DOCUMENTS["zh-Hant"]), "--at", "3.0"])
        assert result.exit_code == 0, result.output
        assert "再見" in result.output
        assert "你好" not in result.output

    def test_entry_at_time_uses_tolerance(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", write(tmp_path, DOCUMENTS["en"]), "--at", "2.05"])
        assert "Hello" in result.output

    def test_nothing_at_time(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", write(tmp_path, DOCUMENTS["en"]), "--at", "100"])
        assert result.exit_code == 0
        assert "no entry at 00:01:40.000" in result.output

    def test_json(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", write(tmp_path, DOCUMENTS["en"]), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [s["text"] for s in data["subtitles"]] == ["Hello", "Goodbye", "Good night"]
        assert data["regions"]["bottom"]["display_align"] == "after"

    def test_json_at_time(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", write(tmp_path, DOCUMENTS["en"]), "--at", "1", "--json"])
        assert json.loads(result.output)["text"] == "Hello"

    def test_document_without_entries(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", write(tmp_path, "<tt")])
        assert result.exit_code == 1
        assert "no subtitle entries" in result.output

    def test_missing_file(self, tmp_path):
        result = CliRunner().invoke(cli, ["parse", str(tmp_path / "nope.ttml")])
        assert result.exit_code == 2


class TestSaveExecutable:
    def test_writes_the_user_file_and_leaves_the_loaded_one(self, tmp_path, monkeypatch):
        loaded = tmp_path / "bundled.toml"
        loaded.write_text('[mpv]\n# executable = "mpv"\nstart_mpv = true\n', encoding="utf8")
        user = tmp_path / "home" / "config.toml"
        monkeypatch.setattr(cli_module, "get_config_path", lambda: loaded)
        monkeypatch.setattr(cli_module, "user_config_path", lambda: user)

        cli_module._save_executable("C:\\mpv\\mpv.exe")

        assert loaded.read_text(encoding="utf8") == '[mpv]\n# executable = "mpv"\nstart_mpv = true\n'
        assert user.read_text(encoding="utf8") == '[mpv]\nexecutable = "C:/mpv/mpv.exe"\nstart_mpv = true\n'

    def test_existing_user_file_is_updated_in_place(self, tmp_path, monkeypatch):
        user = tmp_path / "config.toml"
        user.write_text('[mpv]\nexecutable = "old"\n', encoding="utf8")
        monkeypatch.setattr(cli_module, "get_config_path", lambda: user)
        monkeypatch.setattr(cli_module, "user_config_path", lambda: user)

        cli_module._save_executable("/usr/bin/mpv")

        assert user.read_text(encoding="utf8") == '[mpv]\nexecutable = "/usr/bin/mpv"\n'
