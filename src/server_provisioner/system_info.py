"""System information detection for Server Provisioner."""

import os
import platform
import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from server_provisioner.types import CommandResult

SUPPORTED_DISTROS = ("ubuntu", "debian")


class SystemInfo:
    """Detect and store host facts."""

    def __init__(self, os_release: Path = Path("/etc/os-release")) -> None:
        """Initialize system information detection."""
        self._os_release = os_release
        self.distro = self._detect_distro()
        self.is_root = os.geteuid() == 0
        self.has_apt = shutil.which("apt-get") is not None
        self.has_systemd = shutil.which("systemctl") is not None

    def _read_os_release(self) -> Dict[str, str]:
        values: Dict[str, str] = {}
        if not self._os_release.exists():
            return values

        with open(self._os_release) as f:
            for line in f:
                if "=" in line:
                    key, _, value = line.strip().partition("=")
                    values[key] = value.strip('"')
        return values

    def _detect_distro(self) -> str:
        """Detect Linux distribution."""
        return self._read_os_release().get("ID", "unknown").lower()

    def _run_command(self, cmd: str, timeout: int = 10) -> CommandResult:
        """Execute a read-only shell command and return result."""
        try:
            result = subprocess.run(
                cmd,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
            return CommandResult(
                success=result.returncode == 0,
                stdout=result.stdout,
                stderr=result.stderr,
                return_code=result.returncode,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(False, "", "Command timed out", -1)
        except OSError as e:
            return CommandResult(False, "", str(e), -1)

    def swap_active(self) -> bool:
        """Return True when any swap device or file is in use."""
        result = self._run_command("swapon --show --noheadings")
        if result.success:
            return bool(result.stdout.strip())

        swaps = Path("/proc/swaps")
        if swaps.exists():
            return len(swaps.read_text().strip().splitlines()) > 1
        return False

    def primary_ip(self) -> str:
        """Get the host's first local IP address."""
        result = self._run_command("hostname -I")
        if result.success and result.stdout.split():
            return result.stdout.split()[0]
        return "your-server-ip"

    def hostname(self) -> str:
        return platform.node()

    def server_facts(self) -> Dict[str, str]:
        """Collect the facts printed at the start of a host bootstrap."""
        facts = {
            "OS": self._read_os_release().get("PRETTY_NAME", platform.platform()),
            "Kernel": platform.release(),
            "CPU Cores": str(os.cpu_count() or "unknown"),
        }

        meminfo = Path("/proc/meminfo")
        if meminfo.exists():
            match = re.search(r"^MemTotal:\s+(\d+)", meminfo.read_text(), re.MULTILINE)
            if match:
                facts["Total RAM"] = f"{int(match.group(1)) / 1024 / 1024:.1f}G"

        usage = shutil.disk_usage("/")
        facts["Disk Space"] = f"{usage.free / 1024 ** 3:.1f}G available"
        return facts

    def check_requirements(self) -> List[str]:
        """Check if system meets minimum requirements."""
        issues: List[str] = []

        if not self.is_root:
            issues.append("This tool must be run as root (use sudo)")

        if not self.has_apt:
            issues.append("apt-get not found; only Ubuntu/Debian hosts are supported")

        if not self.has_systemd:
            issues.append("systemctl not found; systemd is required")

        return issues

    def to_dict(self) -> Dict[str, str]:
        """Convert system info to dictionary."""
        return {
            "distro": self.distro,
            "is_root": str(self.is_root),
            "has_apt": str(self.has_apt),
            "has_systemd": str(self.has_systemd),
        }


def read_ssh_port(sshd_config: Path, drop_in_dir: Optional[Path] = None) -> int:
    """Return the SSH port configured for the daemon, defaulting to 22.

    Drop-in fragments are read first since sshd uses the first value it
    encounters and the main config includes them at the top.
    """
    candidates: List[Path] = []
    if drop_in_dir is not None and drop_in_dir.is_dir():
        candidates.extend(sorted(drop_in_dir.glob("*.conf")))
    candidates.append(sshd_config)

    for path in candidates:
        try:
            text = path.read_text()
        except OSError:
            continue
        for line in text.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0].lower() == "port" and parts[1].isdigit():
                return int(parts[1])
    return 22
