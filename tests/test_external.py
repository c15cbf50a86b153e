"""
Unit tests for the ares-package adapter and signer selection
"""

import subprocess
from unittest.mock import MagicMock, Mock, patch

import pytest

from ipk.deadline import Deadline
from ipk.errors import ExternalToolUnavailable, OperationTimeout, SigningFailure
from ipk.external import AresPackageAdapter
from ipk.signers import DelegatingSigner, LocalSigner, select_signer


TOOL = "/usr/bin/ares-package"


@pytest.fixture
def adapter(quiet_log):
    return AresPackageAdapter(tool_path=TOOL, log_callback=quiet_log)


class TestAvailability:
    @patch("ipk.external.os.path.isfile", return_value=False)
    @patch("ipk.external.shutil.which", return_value=None)
    def test_not_installed(self, mock_which, mock_isfile, quiet_log):
        adapter = AresPackageAdapter(log_callback=quiet_log)
        assert adapter.find_tool() is None
        assert adapter.available() is False

    @patch("ipk.external.subprocess.run")
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_available_when_version_succeeds(self, mock_which, mock_run, quiet_log):
        mock_run.return_value = Mock(returncode=0, stdout="1.12.0", stderr="")
        adapter = AresPackageAdapter(log_callback=quiet_log)

        assert adapter.available() is True
        assert mock_run.call_args[0][0] == [TOOL, "--version"]

    @patch("ipk.external.subprocess.run", side_effect=subprocess.TimeoutExpired(TOOL, 10))
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_probe_timeout_means_unavailable(self, mock_which, mock_run, quiet_log):
        assert AresPackageAdapter(log_callback=quiet_log).available() is False

    @patch("ipk.external.subprocess.run", side_effect=subprocess.TimeoutExpired(TOOL, 0))
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_spent_budget_is_not_replaced_by_default(self, mock_which, mock_run, adapter):
        assert adapter.available(timeout=0.0) is False
        assert mock_run.call_args[1]["timeout"] == 0.0

    @patch("ipk.external.subprocess.run")
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_version_check_timeout_capped(self, mock_which, mock_run, adapter):
        mock_run.return_value = Mock(returncode=0)
        adapter.available(timeout=60.0)
        assert mock_run.call_args[1]["timeout"] == AresPackageAdapter.PROBE_TIMEOUT

    @patch("ipk.external.subprocess.run")
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_probe_result_is_cached(self, mock_which, mock_run, adapter):
        mock_run.return_value = Mock(returncode=0)
        adapter.available()
        adapter.available()
        assert mock_run.call_count == 1


class TestSign:
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_sign_returns_produced_ipk(self, mock_which, adapter, tmp_path):
        out_dir = tmp_path / "out"

        def fake_run(cmd, **kwargs):
            assert cmd == [TOOL, str(tmp_path / "pkg"), "-o", str(out_dir)]
            (out_dir / "com.example.app_1.0.0_all.ipk").write_bytes(b"ipk")
            return Mock(returncode=0, stdout="Create com.example.app_1.0.0_all.ipk", stderr="")

        with patch("ipk.external.subprocess.run", side_effect=fake_run):
            produced = adapter.sign(str(tmp_path / "pkg"), str(out_dir))

        assert produced == out_dir / "com.example.app_1.0.0_all.ipk"

    @patch("ipk.external.subprocess.run")
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_non_zero_exit(self, mock_which, mock_run, adapter, tmp_path):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="appinfo.json missing")
        with pytest.raises(SigningFailure, match="appinfo.json missing"):
            adapter.sign(str(tmp_path / "pkg"), str(tmp_path / "out"))

    @patch("ipk.external.subprocess.run")
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_no_output(self, mock_which, mock_run, adapter, tmp_path):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
        with pytest.raises(SigningFailure, match="no .ipk"):
            adapter.sign(str(tmp_path / "pkg"), str(tmp_path / "out"))

    @patch("ipk.external.subprocess.run", side_effect=subprocess.TimeoutExpired(TOOL, 5))
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_timeout(self, mock_which, mock_run, adapter, tmp_path):
        with pytest.raises(OperationTimeout) as exc_info:
            adapter.sign(str(tmp_path / "pkg"), str(tmp_path / "out"), Deadline(5))
        assert isinstance(exc_info.value, TimeoutError)
        assert mock_run.call_args[1]["timeout"] <= 5

    @patch("ipk.external.shutil.which", return_value=None)
    def test_missing_tool(self, mock_which, adapter, tmp_path):
        with pytest.raises(ExternalToolUnavailable):
            adapter.sign(str(tmp_path / "pkg"), str(tmp_path / "out"))


class TestSelectSigner:
    def test_material_selects_local(self, rsa_material, quiet_log):
        adapter = MagicMock(spec=AresPackageAdapter)
        signer = select_signer(rsa_material, adapter, log_callback=quiet_log)
        assert isinstance(signer, LocalSigner)
        adapter.available.assert_not_called()

    def test_tool_selects_delegating(self, quiet_log):
        adapter = MagicMock(spec=AresPackageAdapter)
        adapter.available.return_value = True
        assert isinstance(select_signer(None, adapter, log_callback=quiet_log), DelegatingSigner)

    @patch("ipk.external.subprocess.run", side_effect=subprocess.TimeoutExpired(TOOL, 0))
    @patch("ipk.external.shutil.which", return_value=TOOL)
    def test_version_check_gets_callers_remaining_time(self, mock_which, mock_run, quiet_log):
        adapter = AresPackageAdapter(log_callback=quiet_log)
        with pytest.raises(ExternalToolUnavailable):
            select_signer(None, adapter, log_callback=quiet_log, probe_timeout=0.0)
        assert mock_run.call_args[1]["timeout"] == 0.0

    def test_nothing_available_is_a_hard_failure(self, quiet_log):
        adapter = MagicMock(spec=AresPackageAdapter)
        adapter.available.return_value = False
        with pytest.raises(ExternalToolUnavailable) as exc_info:
            select_signer(None, adapter, log_callback=quiet_log)
        assert exc_info.value.stage == "sign"
