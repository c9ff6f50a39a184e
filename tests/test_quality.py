from pathlib import Path

import pytest

from taskloop.errors import QualityCheckFailed
from taskloop.quality import QualityGate


def test_failing_check_fails_the_gate(tmp_path: Path) -> None:
    result = QualityGate(tmp_path).run(["false"])

    assert result.passed is False
    assert result.failed_command == "false"
    assert result.results[0].exit_code != 0


def test_gate_stops_at_first_failure(tmp_path: Path) -> None:
    marker = tmp_path / "ran.txt"

    result = QualityGate(tmp_path).run(["true", "false", f"touch {marker}"])

    assert result.passed is False
    assert result.failed_command == "false"
    assert len(result.results) == 2
    assert not marker.exists()


def test_passing_checks_collect_output(tmp_path: Path) -> None:
    result = QualityGate(tmp_path).run(["echo lint ok", "echo tests ok"])

    assert result.passed is True
    assert result.failed_command is None
    assert "lint ok" in result.output
    assert "tests ok" in result.output


def test_empty_check_list_passes(tmp_path: Path) -> None:
    assert QualityGate(tmp_path).run([]).passed is True


def test_shell_operators_run_through_shell(tmp_path: Path) -> None:
    gate = QualityGate(tmp_path)

    result = gate.run_command("echo one && echo two")

    assert result.passed
    assert result.used_shell is True
    assert "two" in result.output
    assert gate.run_command("echo plain").used_shell is False


def test_timeout_marks_check_failed(tmp_path: Path) -> None:
    result = QualityGate(tmp_path, timeout_seconds=0.2).run_command("sleep 5")

    assert result.passed is False
    assert result.timed_out is True
    assert result.exit_code == -1


def test_missing_executable_is_reported(tmp_path: Path) -> None:
    result = QualityGate(tmp_path).run_command("definitely-not-a-real-binary --flag")

    assert result.passed is False
    assert result.exit_code == 127


def test_checks_run_in_repo_root(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("x", encoding="utf-8")

    assert QualityGate(tmp_path).run(["test -f marker.txt"]).passed is True


def test_enforce_raises_with_the_failed_result(tmp_path: Path) -> None:
    gate = QualityGate(tmp_path)

    with pytest.raises(QualityCheckFailed) as excinfo:
        gate.enforce(["true", "false"])

    assert excinfo.value.result.failed_command == "false"
    assert gate.enforce(["true"]).passed is True
