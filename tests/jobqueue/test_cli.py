"""
CLI Tests for the job queue.

Exit codes:
- 0 success
- 1 invalid input
- 2 schema error
- 3 publish rejected by a singleton constraint
"""

import json
import logging

import pytest

from src.jobqueue import JobState, SqliteJobStore
from src.jobqueue.cli import create_parser, main
from src.jobqueue.config import (
    EXIT_INVALID_INPUT,
    EXIT_PUBLISH_REJECTED,
    EXIT_SCHEMA_ERROR,
    EXIT_SUCCESS,
)


@pytest.fixture(autouse=True)
def restore_package_logger():
    """main() configures the package logger; undo it after each test."""
    package_logger = logging.getLogger("src.jobqueue")
    propagate = package_logger.propagate
    level = package_logger.level

    yield

    for handler in list(package_logger.handlers):
        handler.close()
    package_logger.handlers.clear()
    package_logger.propagate = propagate
    package_logger.setLevel(level)


@pytest.fixture
def db_url(temp_db_path: str) -> str:
    return f"sqlite:///{temp_db_path}"


def run(db_url: str, *args: str) -> int:
    return main(["--database-url", db_url, *args])


class TestParser:

    def test_publish_arguments(self):
        args = create_parser().parse_args(
            ["publish", "email", "--data", '{"a": 1}', "--priority", "3", "--next-slot"]
        )

        assert args.command == "publish"
        assert args.name == "email"
        assert args.priority == 3
        assert args.next_slot is True

    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_SUCCESS
        assert "usage" in capsys.readouterr().out


class TestCommands:

    def test_init_then_publish(self, db_url: str, temp_db_path: str, capsys):
        assert run(db_url, "init") == EXIT_SUCCESS

        assert run(db_url, "publish", "email", "--data", '{"to": "a@example.com"}') == EXIT_SUCCESS
        job_id = capsys.readouterr().out.strip().splitlines()[-1]

        store = SqliteJobStore(temp_db_path)
        job = store.get_job(job_id)
        assert job.name == "email"
        assert job.data == {"to": "a@example.com"}
        assert job.state == JobState.CREATED

    def test_publish_without_schema(self, db_url: str):
        assert run(db_url, "publish", "email") == EXIT_SCHEMA_ERROR

    def test_publish_invalid_json(self, db_url: str):
        run(db_url, "init")

        assert run(db_url, "publish", "email", "--data", "{not json") == EXIT_INVALID_INPUT

    def test_publish_rejected(self, db_url: str):
        run(db_url, "init")

        assert run(db_url, "publish", "email", "--singleton-key", "k") == EXIT_SUCCESS
        assert run(db_url, "publish", "email", "--singleton-key", "k") == EXIT_PUBLISH_REJECTED

    def test_cancel_and_counts(self, db_url: str, capsys):
        run(db_url, "init")
        run(db_url, "publish", "email")
        job_id = capsys.readouterr().out.strip().splitlines()[-1]

        assert run(db_url, "cancel", job_id) == EXIT_SUCCESS
        assert "Cancelled 1/1" in capsys.readouterr().out

        assert run(db_url, "counts") == EXIT_SUCCESS
        counts = json.loads(capsys.readouterr().out)
        assert counts["cancelled"] == 1
        assert counts["queues"]["email"]["all"] == 1

    def test_fail_created_job(self, db_url: str, capsys):
        run(db_url, "init")
        run(db_url, "publish", "email")
        job_id = capsys.readouterr().out.strip().splitlines()[-1]

        assert run(db_url, "fail", job_id, "--data", '{"message": "manual"}') == EXIT_SUCCESS
        assert "Failed 1/1" in capsys.readouterr().out

    def test_complete_requires_active(self, db_url: str, capsys):
        run(db_url, "init")
        run(db_url, "publish", "email")
        job_id = capsys.readouterr().out.strip().splitlines()[-1]

        assert run(db_url, "complete", job_id) == EXIT_SUCCESS
        assert "Completed 0/1" in capsys.readouterr().out

    def test_maintain_once(self, db_url: str, capsys):
        run(db_url, "init")
        capsys.readouterr()

        assert run(db_url, "maintain") == EXIT_SUCCESS
        stats = json.loads(capsys.readouterr().out)
        assert stats == {"expired": 0, "archived": 0, "purged": 0, "errors": []}

    def test_invalid_database_url(self):
        assert main(["--database-url", "mysql://localhost/db", "counts"]) == EXIT_INVALID_INPUT

    def test_dotenv_in_working_directory(self, tmp_path, monkeypatch):
        """Settings come from .env in the working directory."""
        (tmp_path / ".env").write_text("JOBQUEUE_DATABASE_URL=sqlite:///from_env.db\n")
        monkeypatch.chdir(tmp_path)
        # Registered so the value load_dotenv sets is removed after the test
        monkeypatch.setenv("JOBQUEUE_DATABASE_URL", "")
        monkeypatch.delenv("JOBQUEUE_DATABASE_URL")

        assert main(["init"]) == EXIT_SUCCESS
        assert (tmp_path / "from_env.db").exists()
