# backend/codeweave/core/tests/test_main.py
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from codeweave import main as cli
from codeweave.core.exceptions import PlanningError


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch('codeweave.main.configure_logging'):
        yield


def test_main_returns_run_request_exit_code(tmp_path: Path):
    with patch('codeweave.main.run_request', new=AsyncMock(return_value=0)) as run_request:
        assert cli.main(["Add a README", "--workspace", str(tmp_path)]) == 0
    run_request.assert_awaited_once_with(tmp_path, "Add a README")


def test_main_reports_core_errors(tmp_path: Path, capsys):
    with patch('codeweave.main.run_request', new=AsyncMock(side_effect=PlanningError("bad plan"))):
        assert cli.main(["x", "--workspace", str(tmp_path)]) == 2
    assert "bad plan" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_run_request_exit_code_follows_report(tmp_path: Path):
    report = MagicMock(status="PARTIALLY_COMPLETED", summary="Status: PARTIALLY_COMPLETED")
    orchestrator = MagicMock()
    orchestrator.handle_request = AsyncMock(return_value=report)
    with patch('codeweave.main.ConfigManager'), \
         patch('codeweave.main.create_collaborator'), \
         patch('codeweave.main.OrchestratorServices'), \
         patch('codeweave.main.CodingOrchestrator', return_value=orchestrator):
        assert await cli.run_request(tmp_path, "do it") == 1
    orchestrator.handle_request.assert_awaited_once_with("do it")


def test_print_progress(capsys):
    cli._print_progress({"task_id": "task1", "status": "RUNNING", "message": ""})
    cli._print_progress({"task_id": "task1", "status": "FAILED", "message": "boom"})
    assert capsys.readouterr().out.splitlines() == ["[RUNNING] task1", "[FAILED] task1 - boom"]
