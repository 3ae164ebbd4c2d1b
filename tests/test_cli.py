import textwrap

from click.testing import CliRunner

from ccdc_scoring import cli, database


def test_engine_exits_when_startup_fails(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", database.DB_PATH)

    def never_watch(*args, **kwargs):
        raise AssertionError("engine kept starting after a failed prepare")
    monkeypatch.setattr(cli, "ConfigWatcher", never_watch)

    path = tmp_path / "event.conf"
    path.write_text(textwrap.dedent(f"""
        [RequiredSettings]
        EventName = "Regional CCDC"
        EventType = "rvb"
        DBConnectURL = "sqlite:{tmp_path / 'scores.db'}"
        BindAddress = "127.0.0.1"

        [CredlistSettings]
        Credlist = [
            {{ CredlistName = "Users", CredlistPath = "users.credlist", CredlistExplainText = "user,pass" }},
        ]

        [[Team]]
        name = "team1"
        pw = "secret"
    """))

    result = CliRunner().invoke(cli.cli, ["engine", "--config", str(path)], obj={})

    assert result.exit_code == 1
    assert (tmp_path / "scores.db").exists()
