"""System health checker for pcibisect dependencies and configuration."""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..config.config import HarnessConfig
from ..core.workspace import Workspace
from ..device.sysfs import SysfsHost
from ..device.topology import resolve_group
from ..exceptions import HarnessError


logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Result of a single check operation."""

    category: str
    name: str
    passed: bool
    message: str
    details: Optional[str] = None
    warning: bool = False


class SystemChecker:
    """Validates pcibisect host dependencies and configuration."""

    def __init__(self, config: HarnessConfig, host: Optional[SysfsHost] = None):
        """Initialize system checker with configuration.

        Args:
            config: Loaded harness configuration
            host: Host control surface (default: sysfs under the configured root)
        """
        self.config = config
        self.host = host or SysfsHost(config.device.sysfs_root)
        self.results: List[CheckResult] = []

    def check_local_tools(self) -> List[CheckResult]:
        """Check availability of git and the QEMU binary.

        Returns:
            List of check results for local tools
        """
        results = []
        for tool in ["git", self.config.vm.qemu_binary]:
            tool_path = shutil.which(tool)
            if tool_path:
                results.append(
                    CheckResult(
                        category="Local System",
                        name=f"{tool} command",
                        passed=True,
                        message=f"Found at {tool_path}",
                    )
                )
            else:
                results.append(
                    CheckResult(
                        category="Local System",
                        name=f"{tool} command",
                        passed=False,
                        message=f"{tool} not found in PATH",
                    )
                )

        return results

    def check_iommu(self) -> List[CheckResult]:
        """Check IOMMU groups, the passthrough driver and the VFIO container.

        Returns:
            List of check results for host passthrough support
        """
        results = []
        category = "Passthrough"

        if self.host.iommu_enabled():
            results.append(
                CheckResult(category, "IOMMU groups", True, "Host exposes IOMMU groups")
            )
        else:
            results.append(
                CheckResult(
                    category,
                    "IOMMU groups",
                    False,
                    "No IOMMU groups found",
                    details="Enable VT-d/AMD-Vi in firmware and boot with intel_iommu=on or amd_iommu=on",
                )
            )

        driver = self.config.device.passthrough_driver
        if self.host.driver_loaded(driver):
            results.append(CheckResult(category, f"{driver} driver", True, "Driver registered"))
        else:
            results.append(
                CheckResult(
                    category,
                    f"{driver} driver",
                    False,
                    "Driver not registered",
                    details=f"Run: modprobe {driver}",
                )
            )

        container = self.host.vfio_path / "vfio"
        if container.exists():
            results.append(CheckResult(category, "VFIO container", True, f"Found at {container}"))
        else:
            results.append(
                CheckResult(category, "VFIO container", False, f"{container} does not exist")
            )

        return results

    def check_device(self) -> List[CheckResult]:
        """Check that the target device resolves to an isolation group.

        Returns:
            List of check results for the target device
        """
        category = "Device"
        address = self.config.device.address
        try:
            group = resolve_group(self.host, address)
        except HarnessError as exc:
            return [CheckResult(category, address, False, str(exc))]

        results = [
            CheckResult(
                category,
                address,
                True,
                f"IOMMU group {group.group_id}",
                details=", ".join(f"{m.address} ({m.kind.value})" for m in group.members),
            )
        ]
        if len(group.endpoints) > 1:
            results.append(
                CheckResult(
                    category,
                    "shared group",
                    True,
                    f"{len(group.endpoints)} endpoints will be taken from the host together",
                    warning=True,
                )
            )
        return results

    def check_workspace(self) -> List[CheckResult]:
        """Check that the workspace is a git working tree.

        Returns:
            List of check results for the workspace
        """
        workspace = Workspace(self.config.workspace)
        try:
            snapshot = workspace.snapshot()
        except HarnessError as exc:
            return [CheckResult("Workspace", "git tree", False, str(exc))]
        return [
            CheckResult(
                "Workspace",
                "git tree",
                True,
                f"{self.config.workspace} at {snapshot.short} {snapshot.subject}",
            )
        ]

    def check_images(self) -> List[CheckResult]:
        """Check that the configured VM images exist.

        A missing kernel is only a warning when a build command may produce it.

        Returns:
            List of check results for VM images
        """
        results = []
        vm = self.config.vm
        images: Dict[str, Optional[str]] = {
            "kernel": vm.kernel,
            "initrd": vm.initrd,
            "bios": vm.bios,
        }
        for index, disk in enumerate(vm.disks):
            images[f"disk {index}"] = disk

        for name, image in images.items():
            if not image:
                continue
            if Path(image).exists():
                results.append(CheckResult("VM Images", name, True, f"Found at {image}"))
            elif name == "kernel" and self.config.build.command:
                results.append(
                    CheckResult(
                        "VM Images",
                        name,
                        True,
                        f"{image} not found (expected from the build)",
                        warning=True,
                    )
                )
            else:
                results.append(CheckResult("VM Images", name, False, f"{image} not found"))

        return results

    def run_all_checks(self) -> bool:
        """Run all system checks and collect results.

        Returns:
            True if all checks passed, False otherwise
        """
        self.results = []

        logger.info("Checking local tools...")
        self.results.extend(self.check_local_tools())

        logger.info("Checking passthrough support...")
        self.results.extend(self.check_iommu())

        logger.info("Checking target device...")
        self.results.extend(self.check_device())

        logger.info("Checking workspace...")
        self.results.extend(self.check_workspace())

        logger.info("Checking VM images...")
        self.results.extend(self.check_images())

        return all(r.passed for r in self.results)

    def print_results(self):
        """Print formatted check results to console."""
        if not self.results:
            print("No checks performed.")
            return

        print("\nRunning pcibisect system checks...\n")

        # Group results by category
        categories: Dict[str, List[CheckResult]] = {}
        for result in self.results:
            categories.setdefault(result.category, []).append(result)

        for category, results in categories.items():
            print(f"[{category}]")
            for result in results:
                symbol = ("⚠" if result.warning else "✓") if result.passed else "✗"

                print(f"{symbol} {result.name}: {result.message}")
                if result.details:
                    print(f"  {result.details}")
            print()

        passed = sum(1 for r in self.results if r.passed and not r.warning)
        failed = sum(1 for r in self.results if not r.passed)
        warnings = sum(1 for r in self.results if r.warning)

        print(f"Summary: {passed} passed, {failed} failed, {warnings} warning(s)")

        if failed:
            failing = sorted({r.category for r in self.results if not r.passed})
            print(f"\n✗ Not ready for passthrough steps: fix {', '.join(failing)} first.")
            if "Passthrough" in failing or "Device" in failing:
                print("  Run 'pcibisect group' once the host is fixed to confirm the group members.")
        elif warnings:
            print("\nReady. Review the warnings before 'pcibisect run'.")
        else:
            print(f"\nReady: 'pcibisect run GOOD BAD' can bisect {self.config.device.address}.")
