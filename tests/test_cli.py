"""
Tests for the CLI interface.
"""
import base64
import os
import re
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from credit_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from credit_guard.core.errors import QuotaExceeded, RateLimited
from credit_guard.core.ledger import VipMatch
from credit_guard.core.orchestrator import BatchResult, GroupOutcome, ItemResult, ItemStatus
from credit_guard.core.service import RequestIdentity
from credit_guard.sdk.gateway import GridArtifact, SynthesisMode

runner = CliRunner()


@pytest.fixture
def mock_service():
    """Patch service construction with a mock."""
    with patch('credit_guard.cli.main._build_service') as mock_build:
        service = MagicMock()
        service.identify.side_effect = lambda ip, device: RequestIdentity(ip, device)
        mock_build.return_value = service
        yield service


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_banner(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Credit Guard" in result.output

    def test_status_shows_defaults(self):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Store: sqlite" in result.output
        assert "Payment mode: free" in result.output
        assert "Free quota per day: 3" in result.output

    def test_status_with_missing_config_fails(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "status"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output

    def test_init_creates_database(self, tmp_path):
        db_path = str(tmp_path / "ledger.db")
        result = runner.invoke(app, ["--db", db_path, "init"])
        assert result.exit_code == EXIT_CODE_PASS
        assert os.path.exists(db_path)

    def test_quota_command(self, mock_service):
        """Test quota output for a caller."""
        mock_service.get_quota.return_value = {
            "mode": "free", "remaining": 2, "used": 1, "limit": 3,
            "reset_at": "2024-01-02T00:00:00", "is_free_mode": True, "is_vip": False,
        }

        result = runner.invoke(app, ["quota", "--ip", "1.2.3.4", "--device", "dev1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Used: 1/3" in result.output
        assert "Remaining: 2" in result.output
        mock_service.get_quota.assert_called_once_with(RequestIdentity("1.2.3.4", "dev1"))

    def test_quota_requires_device(self, mock_service):
        result = runner.invoke(app, ["quota"])
        assert result.exit_code != EXIT_CODE_PASS

    def test_create_order(self, mock_service):
        mock_service.create_order.return_value = {
            "order_id": "order_1", "amount": 2.0, "payment_token": "token_1",
            "expires_at": "2024-01-01T00:15:00", "total_grids": 2, "remaining_grids": 2,
        }

        result = runner.invoke(app, ["create-order", "-n", "8", "-d", "dev1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "order_1" in result.output
        assert "Payment token: token_1" in result.output
        args, _ = mock_service.create_order.call_args
        assert args[1] == 8

    def test_domain_error_is_reported_with_code(self, mock_service):
        mock_service.get_quota.side_effect = RateLimited("Too many requests, retry in 5s", 5)

        result = runner.invoke(app, ["quota", "-d", "dev1"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "RATE_LIMITED" in result.output

    def test_mock_pay(self, mock_service):
        mock_service.confirm_payment.return_value = {
            "status": "paid", "order_id": "order_1", "paid_at": "2024-01-01T00:01:00",
        }
        result = runner.invoke(app, ["mock-pay", "order_1"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "order_1 is paid" in result.output

    def test_verify_order(self, mock_service):
        mock_service.verify_order.return_value = {
            "status": "paid", "order_id": "order_1", "payment_token": "token_1",
            "count": 8, "paid_at": None, "remaining_grids": 1, "total_grids": 2,
        }
        result = runner.invoke(app, ["verify-order", "order_1"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Grids: 1/2" in result.output

    def test_vip(self, mock_service):
        mock_service.ledger.vip_match.return_value = VipMatch(True, "device_id", 20)
        result = runner.invoke(app, ["vip", "-d", "dev1"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "device_id: 20 quota/day" in result.output


class TestGenerateCommand:
    """Test the batch generation command."""

    def _files(self, tmp_path, prompts):
        prompts_file = tmp_path / "prompts.txt"
        prompts_file.write_text("\n".join(prompts) + "\n\n", encoding="utf-8")
        reference = tmp_path / "ref.png"
        reference.write_bytes(b"fake-png")
        return prompts_file, reference

    def test_generate_success_writes_composites(self, tmp_path, mock_service):
        prompts_file, reference = self._files(tmp_path, ["wave", "laugh"])
        composite = base64.b64encode(b"composite").decode("ascii")
        mock_service.generate_batch.return_value = BatchResult(
            items=[
                ItemResult("p1", 0, ItemStatus.SUCCESS, tile_index=0),
                ItemResult("p2", 0, ItemStatus.SUCCESS, tile_index=1),
            ],
            groups=[GroupOutcome(
                0, SynthesisMode.INDEPENDENT, True,
                artifact=GridArtifact(composite, SynthesisMode.INDEPENDENT),
            )],
            anchor=composite,
        )
        out_dir = tmp_path / "out"

        result = runner.invoke(app, [
            "generate", str(prompts_file), "-r", str(reference),
            "--description", "a cat", "-d", "dev1", "-o", str(out_dir),
        ])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Batch Result" in result.output
        assert (out_dir / "group_0.png").read_bytes() == b"composite"

        args, kwargs = mock_service.generate_batch.call_args
        assert args[1] == [{"id": "p1", "prompt": "wave"}, {"id": "p2", "prompt": "laugh"}]
        assert args[2] == base64.b64encode(b"fake-png").decode("ascii")
        assert kwargs["token"] is None

    def test_generate_with_no_successes_fails(self, tmp_path, mock_service):
        prompts_file, reference = self._files(tmp_path, ["wave"])
        error = RateLimited("Provider rate limit reached")
        mock_service.generate_batch.return_value = BatchResult(
            items=[ItemResult("p1", 0, ItemStatus.FAILED, error="RATE_LIMITED")],
            groups=[GroupOutcome(0, SynthesisMode.INDEPENDENT, False, error=error, refunded=True)],
            rate_limited=True,
            error=error,
        )

        result = runner.invoke(app, [
            "generate", str(prompts_file), "-r", str(reference),
            "--description", "a cat", "-d", "dev1",
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "rate limited" in result.output

    def test_generate_rejected_request(self, tmp_path, mock_service):
        prompts_file, reference = self._files(tmp_path, ["wave"])
        mock_service.generate_batch.side_effect = QuotaExceeded("Daily free quota used up")

        result = runner.invoke(app, [
            "generate", str(prompts_file), "-r", str(reference),
            "--description", "a cat", "-d", "dev1",
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "QUOTA_EXCEEDED" in result.output


class TestLedgerAcrossCommands:
    """Orders created by one command are visible to the next."""

    def test_order_lifecycle_without_config(self, tmp_path):
        db_path = str(tmp_path / "ledger.db")
        assert runner.invoke(app, ["--db", db_path, "init"]).exit_code == EXIT_CODE_PASS

        created = runner.invoke(app, ["--db", db_path, "create-order", "-n", "4", "-d", "dev1"])
        assert created.exit_code == EXIT_CODE_PASS
        order_id = re.search(r"Order (order_[0-9a-f-]+)", created.output).group(1)

        pending = runner.invoke(app, ["--db", db_path, "verify-order", order_id])
        assert pending.exit_code == EXIT_CODE_PASS
        assert f"Order {order_id}: pending" in pending.output
        assert "Grids: 1/1" in pending.output

        paid = runner.invoke(app, ["--db", db_path, "mock-pay", order_id])
        assert paid.exit_code == EXIT_CODE_PASS

        verified = runner.invoke(app, ["--db", db_path, "verify-order", order_id])
        assert f"Order {order_id}: paid" in verified.output

    def test_unknown_order_in_fresh_ledger(self, tmp_path):
        db_path = str(tmp_path / "ledger.db")
        result = runner.invoke(app, ["--db", db_path, "verify-order", "order_missing"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Order not found" in result.output
