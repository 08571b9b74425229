"""Tests for the safeharbor command-line interface."""
import json
from unittest.mock import MagicMock, patch

import pytest

from safeharbor import cli
from safeharbor.services.resource_service.importer import ImportSummary
from safeharbor.shared.utils import configure_pii_salt


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class TestParser:

    def test_serve_port(self):
        args = cli.setup_parser().parse_args(["serve", "--port", "9000"])

        assert args.command == "serve"
        assert args.port == 9000

    def test_no_command_prints_help(self):
        with patch("sys.argv", ["safeharbor"]):
            assert cli.main() == 1


class TestCommands:

    def test_detect_prints_result(self, capsys):
        args = cli.setup_parser().parse_args(["detect", "having a panic attack right now"])

        assert cli.cmd_detect(args) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["detected"] is True
        assert output["crisis_type"] == "PANIC_ATTACK"
        assert "references" in output

    def test_analyze_reads_conversation(self, tmp_path, capsys):
        path = tmp_path / "conversation.json"
        path.write_text(json.dumps([
            {"content": "hello", "timestamp": "2026-10-19T12:00:00"},
            {"content": "how are you"},
        ]))
        args = cli.setup_parser().parse_args(["analyze", str(path)])

        assert cli.cmd_analyze(args) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["escalating"] is False

    def test_sweep_reports_count(self, capsys):
        services = MagicMock()
        services.scheduler.sweep.return_value = 3
        args = cli.setup_parser().parse_args(["sweep"])

        with patch(
            "safeharbor.services.crisis_engine.build_services", return_value=services
        ):
            assert cli.cmd_sweep(args) == 0

        assert "Follow-ups processed: 3" in capsys.readouterr().out

    def test_import_failure_exit_code(self, capsys):
        summary = ImportSummary(imported=2, failed=1, errors=[("Line A", "bad phone")])
        importer = MagicMock()
        importer.import_file.return_value = summary
        args = cli.setup_parser().parse_args(["import-resources", "helplines.tsv"])

        with patch("safeharbor.services.crisis_engine.build_services"), patch(
            "safeharbor.services.resource_service.ResourceImporter", return_value=importer
        ):
            assert cli.cmd_import_resources(args) == 1

        out = capsys.readouterr().out
        assert "Imported: 2" in out
        assert "Line A: bad phone" in out
