"""
Tests for the operator CLI.
"""

from unittest import mock

import pytest
import sqlalchemy as sa

from api.database import users
from api.scheduled_publisher import PublishStats
from cli.main import CLIError, MIN_PASSWORD_LENGTH, build_parser, create_user, main, run_with_database


def _user_row(engine, username):
    with engine.connect() as conn:
        return conn.execute(sa.select(users).where(users.c.username == username)).mappings().first()


class TestParser:
    """Tests for argument parsing."""

    def test_create_user_arguments(self):
        args = build_parser().parse_args(
            ["create-user", "alice", "alice@example.com", "-r", "curator", "-n", "Alice", "-p", "longpassword"]
        )

        assert args.username == "alice"
        assert args.role == "curator"
        assert args.display_name == "Alice"
        assert args.department is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_settings_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["settings"])

    def test_json_flag(self):
        assert build_parser().parse_args(["publish-scheduled", "--json"]).json is True
        assert build_parser().parse_args(["cleanup-history"]).json is False


class TestCreateUser:
    """Tests for the create-user command."""

    def test_creates_user(self, db_engine, capsys):
        main(["create-user", "alice", "alice@example.com", "-r", "curator", "-p", "longpassword", "-d", "Physics"])

        row = _user_row(db_engine, "alice")
        assert row["role"] == "CURATOR"
        assert row["display_name"] == "alice"
        assert row["department"] == "Physics"
        assert row["password_hash"] != "longpassword"
        assert "Created user alice" in capsys.readouterr().out

    def test_short_password_rejected(self, db_engine, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["create-user", "bob", "bob@example.com", "-p", "x" * (MIN_PASSWORD_LENGTH - 1)])

        assert exc_info.value.code == 1
        assert "at least 8 characters" in capsys.readouterr().out
        assert _user_row(db_engine, "bob") is None

    def test_invalid_role(self, db_engine, capsys):
        with pytest.raises(SystemExit):
            main(["create-user", "bob", "bob@example.com", "-r", "owner", "-p", "longpassword"])

        assert "Invalid role" in capsys.readouterr().out

    def test_prompts_for_password(self, db_engine):
        with mock.patch("cli.main.getpass.getpass", side_effect=["prompted-pass", "prompted-pass"]):
            main(["create-user", "carol", "carol@example.com"])

        assert _user_row(db_engine, "carol")["role"] == "VIEWER"

    def test_prompted_passwords_must_match(self, db_engine, capsys):
        with mock.patch("cli.main.getpass.getpass", side_effect=["prompted-pass", "different-pass"]):
            with pytest.raises(SystemExit):
                main(["create-user", "carol", "carol@example.com"])

        assert "Passwords do not match" in capsys.readouterr().out

    def test_duplicate_user(self, db_engine, viewer_user):
        with pytest.raises(CLIError):
            run_with_database(create_user, "viewer", "other@example.com", "Viewer", "longpassword", "VIEWER")


class TestScheduledCommands:
    def test_publish_scheduled_prints_summary(self, db_engine, capsys):
        stats = PublishStats(publishedVideos=1, publishedPosts=1)
        with mock.patch("cli.main.run_with_database", return_value=stats):
            main(["publish-scheduled"])

        out = capsys.readouterr().out
        assert "Published videos:   1" in out
        assert "Errors:             0" in out

    def test_publish_scheduled_exits_on_errors(self, db_engine):
        with mock.patch("cli.main.run_with_database", return_value=PublishStats(errorCount=2)):
            with pytest.raises(SystemExit) as exc_info:
                main(["publish-scheduled"])

        assert exc_info.value.code == 1

    def test_publish_scheduled_against_database(self, db_engine, capsys):
        main(["publish-scheduled", "--json"])

        assert '"publishedVideos": 0' in capsys.readouterr().out

    def test_cleanup_history(self, db_engine, capsys):
        main(["cleanup-history"])

        assert "削除対象の視聴履歴はありません" in capsys.readouterr().out

    def test_cleanup_status(self, db_engine, capsys):
        main(["cleanup-status"])

        out = capsys.readouterr().out
        assert "Cleanup enabled:  yes" in out
        assert "Pending rows:     0" in out

    def test_database_error_reported(self, db_engine, capsys):
        with mock.patch("cli.main.run_with_database", side_effect=RuntimeError("connection refused")):
            with pytest.raises(SystemExit):
                main(["cleanup-history"])

        assert "Error: connection refused" in capsys.readouterr().out


class TestSettingsCommands:
    """Tests for the settings subcommands."""

    def test_seed_then_get_and_set(self, db_engine, capsys):
        main(["settings", "seed"])
        assert "Seeded" in capsys.readouterr().out

        main(["settings", "set", "videos_per_page", "40"])
        assert "videos_per_page = 40" in capsys.readouterr().out

        main(["settings", "get", "videos_per_page"])
        assert capsys.readouterr().out.strip() == "videos_per_page = 40"

    def test_set_invalid_value(self, db_engine, capsys):
        with pytest.raises(SystemExit):
            main(["settings", "set", "videos_per_page", "1000"])

        assert "Validation error for 'videos_per_page'" in capsys.readouterr().out

    def test_set_unknown_key(self, db_engine, capsys):
        with pytest.raises(SystemExit):
            main(["settings", "set", "no_such_setting", "1"])

        assert "is not a known setting" in capsys.readouterr().out

    def test_list_empty(self, db_engine, capsys):
        main(["settings", "list"])

        assert "No settings found in database." in capsys.readouterr().out
