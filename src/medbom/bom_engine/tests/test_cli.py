import json
from pathlib import Path

from typer.testing import CliRunner

from medbom import __version__
from medbom.cli import app

FIXTURE = Path(__file__).parent / "fixtures" / "lighting.yaml"

runner = CliRunner()


def _json_output(text):
    lines = text.splitlines()
    start = lines.index("{")
    end = len(lines) - lines[::-1].index("}")
    return json.loads("\n".join(lines[start:end]))


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert result.stdout.strip() == __version__


def test_validate_valid_configuration():
    result = runner.invoke(app, ["--log-level", "ERROR", "validate", str(FIXTURE), "-c", "FX48-STD"])

    assert result.exit_code == 0, result.output
    payload = _json_output(result.stdout)
    assert payload["is_valid"] is True
    assert payload["derived_attributes"] == {"total_watts": "20"}


def test_validate_invalid_configuration_exits_1():
    result = runner.invoke(app, ["--log-level", "ERROR", "validate", str(FIXTURE), "-c", "FX48-BADVOLT"])

    assert result.exit_code == 1
    payload = _json_output(result.stdout)
    assert payload["is_valid"] is False
    assert payload["errors"][0]["rule_code"] == "REQ-VOLTAGE"


def test_unknown_configuration_code_exits_2():
    result = runner.invoke(app, ["--log-level", "ERROR", "validate", str(FIXTURE), "-c", "NOPE"])

    assert result.exit_code == 2


def test_generate_prints_the_bom():
    result = runner.invoke(app, ["--log-level", "ERROR", "generate", str(FIXTURE), "-c", "FX48-STD"])

    assert result.exit_code == 0, result.output
    payload = _json_output(result.stdout)
    assert payload["status"] == "PENDING_REVIEW"
    assert payload["version"] == "1.0"
    assert [line["component_id"] for line in payload["line_items"]] == [
        "HOUSING-48",
        "SCREW-M4",
        "CTRL-MODULE-T2",
        "LED-STRIP-48-4000K",
        "DIFFUSER-48-FROST",
    ]
    assert payload["metrics"]["total_cost"] == "266.05"


def test_generate_invalid_configuration_exits_2():
    result = runner.invoke(app, ["--log-level", "ERROR", "generate", str(FIXTURE), "-c", "FX48-BADVOLT"])

    assert result.exit_code == 2
