import ctypes
import json
import os
import subprocess
from typing import Optional

from aovpn import config
from aovpn.logger import get_logger
from aovpn.models import OperationResult


class PowerShellRunner:
    """Runs cmdlets through powershell.exe and native tools like certreq.exe or netsh.exe."""

    def __init__(self, executable: Optional[str] = None) -> None:
        self.executable = executable or config.POWERSHELL_EXE
        self.logger = get_logger()

    def run(
        self,
        command: str,
        timeout: Optional[int] = None,
        success_message: str = "PowerShell command completed.",
    ) -> OperationResult:
        full_command = f"$ErrorActionPreference='Stop'; {command}"
        self.logger.debug("PowerShell: %s", command)
        try:
            process = self._execute(self._powershell_args(full_command), timeout)
        except subprocess.TimeoutExpired:
            return self._timeout_result(timeout)
        except OSError as exc:
            return OperationResult(False, f"Could not start PowerShell: {exc}", status="Error")

        stdout = (process.stdout or "").strip()
        stderr = (process.stderr or "").strip()
        details = "\n".join(part for part in [stdout, stderr] if part)
        if process.returncode != 0:
            message = stderr or stdout or "PowerShell command failed."
            self.logger.warning("PowerShell command failed: %s", message)
            return OperationResult(False, message, status="Error", details=details)
        return OperationResult(True, success_message, details=details)

    def run_json(self, command: str, timeout: Optional[int] = None) -> list[dict]:
        full_command = f"$ErrorActionPreference='Stop'; {command} | ConvertTo-Json -Depth 4"
        self.logger.debug("PowerShell (json): %s", command)
        try:
            process = self._execute(self._powershell_args(full_command), timeout)
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError(f"PowerShell command timed out after {exc.timeout} seconds.") from exc
        except OSError as exc:
            raise RuntimeError(f"Could not start PowerShell: {exc}") from exc

        stdout = (process.stdout or "").strip()
        stderr = (process.stderr or "").strip()
        if process.returncode != 0:
            raise RuntimeError(stderr or stdout or "PowerShell command failed.")
        if not stdout:
            return []

        try:
            parsed = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Failed to parse PowerShell output: {exc}") from exc

        if parsed is None:
            return []
        if isinstance(parsed, dict):
            return [parsed]
        return list(parsed)

    def run_executable(
        self,
        args: list[str],
        timeout: Optional[int] = None,
        success_message: str = "",
        encoding: Optional[str] = None,
    ) -> OperationResult:
        self.logger.debug("Running: %s", subprocess.list2cmdline(args))
        try:
            process = self._execute(args, timeout, encoding)
        except subprocess.TimeoutExpired:
            return self._timeout_result(timeout, args[0])
        except OSError as exc:
            return OperationResult(False, f"Could not start {args[0]}: {exc}", status="Error")

        stdout = (process.stdout or "").strip()
        stderr = (process.stderr or "").strip()
        details = "\n".join(part for part in [stdout, stderr] if part)
        if process.returncode != 0:
            message = stderr or stdout or f"{args[0]} exited with code {process.returncode}."
            self.logger.warning("%s failed: %s", args[0], message)
            return OperationResult(False, message, status="Error", details=details)
        return OperationResult(True, success_message or stdout or f"{args[0]} completed.", details=details)

    def is_admin(self) -> bool:
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except Exception:
            return False

    def ensure_admin(self, action: str) -> Optional[OperationResult]:
        if self.is_admin():
            return None
        message = f"Admin privileges are required to {action}. Run from an elevated prompt."
        self.logger.warning(message)
        return OperationResult(False, message, status="Error")

    @staticmethod
    def quote(value: str) -> str:
        return "'" + str(value).replace("'", "''") + "'"

    def _powershell_args(self, full_command: str) -> list[str]:
        return [
            self.executable,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            full_command,
        ]

    def _execute(
        self,
        args: list[str],
        timeout: Optional[int],
        encoding: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        return subprocess.run(
            args,
            capture_output=True,
            text=True,
            encoding=encoding,
            errors="replace",
            timeout=timeout or config.COMMAND_TIMEOUT,
            **self._hidden_window_kwargs(),
        )

    def _timeout_result(self, timeout: Optional[int], tool: str = "PowerShell") -> OperationResult:
        message = f"{tool} timed out after {timeout or config.COMMAND_TIMEOUT} seconds."
        self.logger.warning(message)
        return OperationResult(False, message, status="Error")

    def _hidden_window_kwargs(self) -> dict:
        kwargs: dict = {}
        if os.name != "nt":
            return kwargs
        startupinfo = subprocess.STARTUPINFO()
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        startupinfo.wShowWindow = 0
        kwargs["startupinfo"] = startupinfo
        kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        return kwargs
