import pytest

from rosterauth.cli import import_roster
from rosterauth.roster.roster import RosterEntry
from rosterauth.roster.roster_import import ImportPolicy
from rosterauth.roster.roster_repo import InMemoryRosterRepository

CSV = "name,role,grade,email\nJane Doe,student,5,jane@school.edu\nJohn Roe,student,6,john@school.edu\n"


@pytest.fixture
def roster_csv(tmp_path):
    path = tmp_path / "students_roster.csv"
    path.write_text(CSV, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    "argv, expected",
    [
        ([], ImportPolicy.SKIP_EXISTING),
        (["--update-changed"], ImportPolicy.UPDATE_CHANGED),
        (["--upsert"], ImportPolicy.UPSERT),
    ],
)
def test_policy_from_args(argv, expected):
    args = import_roster.build_parser().parse_args(argv)
    assert import_roster.policy_from_args(args) == expected


def test_update_changed_and_upsert_are_exclusive():
    with pytest.raises(SystemExit):
        import_roster.build_parser().parse_args(["--update-changed", "--upsert"])


@pytest.mark.asyncio
async def test_run_import_uses_given_repository(test_settings, roster_csv):
    repo = InMemoryRosterRepository([RosterEntry(email="jane@school.edu", grade="4")])
    args = import_roster.build_parser().parse_args(["--csv", str(roster_csv), "--update-changed"])

    report = await import_roster.run_import(args, roster_repo=repo)

    assert (report.created, report.updated) == (1, 1)
    text = import_roster.format_report(report)
    assert "Mode: update_changed" in text
    assert "create john@school.edu" in text
    assert "grade: '4' -> '5'" in text


def test_main_dry_run_without_redis(test_settings, roster_csv, capsys):
    exit_code = import_roster.main(["--csv", str(roster_csv), "--dry-run"])

    assert exit_code == 0
    out = capsys.readouterr().out
    assert "(dry-run)" in out
    assert "created  : 2" in out


def test_main_without_redis_refuses_to_write(test_settings, roster_csv, capsys):
    exit_code = import_roster.main(["--csv", str(roster_csv)])

    assert exit_code == 1
    assert "REDIS_HOST" in capsys.readouterr().err


def test_main_missing_csv(test_settings, tmp_path, capsys):
    exit_code = import_roster.main(["--csv", str(tmp_path / "absent.csv")])

    assert exit_code == 1
    assert "Missing" in capsys.readouterr().err
