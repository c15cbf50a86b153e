"""
Vendor signing tool adapter.

Wraps the webOS CLI `ares-package`, which repackages (and signs) an
extracted application tree. The tool is treated as an opaque capability:
path in, signed container out, non-zero exit means failure.
"""

import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from .deadline import Deadline
from .errors import ExternalToolUnavailable, OperationTimeout, SigningFailure, STAGE_SIGN


class AresPackageAdapter:
    """Delegate packaging and signing to the webOS `ares-package` tool."""

    TOOL_NAME = "ares-package"

    KNOWN_PATHS = [
        "/usr/local/bin/ares-package",
        "/usr/bin/ares-package",
        "/opt/webos-sdk/CLI/bin/ares-package",
        "~/webOS_TV_SDK/CLI/bin/ares-package",
        "/data/data/com.termux/files/usr/bin/ares-package",
    ]

    PROBE_TIMEOUT = 10.0

    def __init__(
        self,
        tool_path: Optional[str] = None,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ):
        self._tool_path = tool_path
        self.log_callback = log_callback or self._default_log
        self._available: Optional[bool] = None

    def _default_log(self, message: str, level: str = "info") -> None:
        print(message)

    def log(self, message: str, level: str = "info") -> None:
        self.log_callback(message, level)

    def find_tool(self) -> Optional[str]:
        """Find ares-package, checking PATH then common install locations."""
        if self._tool_path:
            return self._tool_path if shutil.which(self._tool_path) else None

        found = shutil.which(self.TOOL_NAME)
        if found:
            return found

        for path in self.KNOWN_PATHS:
            expanded = os.path.expanduser(path)
            if os.path.isfile(expanded) and os.access(expanded, os.X_OK):
                return expanded

        return None

    def available(self, timeout: Optional[float] = None) -> bool:
        """
        Check that the tool exists and answers `--version`.

        The probe never waits longer than `timeout` (capped at PROBE_TIMEOUT).
        """
        if self._available is not None:
            return self._available

        tool = self.find_tool()
        if tool is None:
            self._available = False
            return False

        try:
            result = subprocess.run(
                [tool, "--version"],
                capture_output=True,
                text=True,
                timeout=self.PROBE_TIMEOUT if timeout is None else min(timeout, self.PROBE_TIMEOUT),
            )
            self._available = result.returncode == 0
        except (OSError, subprocess.TimeoutExpired):
            self._available = False

        return self._available

    def _build_command(self, tool: str, package_dir: Path, output_dir: Path) -> List[str]:
        return [tool, str(package_dir), "-o", str(output_dir)]

    def sign(
        self,
        package_dir: str,
        output_dir: str,
        deadline: Optional[Deadline] = None,
    ) -> Path:
        """
        Package and sign an extracted tree.

        Returns:
            Path to the container the tool produced

        Raises:
            ExternalToolUnavailable: tool not found
            OperationTimeout: tool did not finish within the deadline
            SigningFailure: non-zero exit or no container produced
        """
        deadline = deadline or Deadline.unbounded()
        tool = self.find_tool()
        if tool is None:
            raise ExternalToolUnavailable(f"{self.TOOL_NAME} not found")

        package = Path(package_dir)
        out_dir = Path(output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)

        cmd = self._build_command(tool, package, out_dir)
        self.log(f"[*] Running: {' '.join(cmd)}")
        deadline.check(STAGE_SIGN)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=deadline.remaining(),
            )
        except subprocess.TimeoutExpired:
            raise OperationTimeout(
                f"{self.TOOL_NAME} did not finish within {deadline.timeout_seconds:g}s",
                stage=STAGE_SIGN,
            )
        except OSError as e:
            raise SigningFailure(f"Failed to run {self.TOOL_NAME}: {e}")

        if result.stdout:
            self.log(result.stdout.strip())

        if result.returncode != 0:
            error = result.stderr.strip() if result.stderr else f"exit code {result.returncode}"
            raise SigningFailure(f"{self.TOOL_NAME} failed: {error}")

        produced = sorted(out_dir.glob("*.ipk"), key=lambda p: p.stat().st_mtime)
        if not produced:
            raise SigningFailure(f"{self.TOOL_NAME} produced no .ipk in {out_dir}")

        self.log(f"[+] {self.TOOL_NAME} produced: {produced[-1].name}", "success")
        return produced[-1]
