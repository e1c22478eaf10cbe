#!/usr/bin/env python3
"""Host-side glue for the guest test oracle.

The oracle runs as the guest's init process, performs the reproducer check,
prints the success token if and only if the revision is good, and powers
the machine off. The host only depends on that output contract.
"""

import shlex
from dataclasses import dataclass
from typing import Optional

from pcibisect.config.config import DEFAULT_SUCCESS_TOKEN, OracleConfig


ENTRYPOINT_TEMPLATE = """#!/bin/sh
# pcibisect guest entrypoint, started by the kernel as init (PID 1).
# Prints {token} only when the reproducer passes, then powers off.

mount -t proc proc /proc 2>/dev/null
mount -t sysfs sysfs /sys 2>/dev/null
mount -t devtmpfs devtmpfs /dev 2>/dev/null
mount -o remount,rw / 2>/dev/null

if {test_command}; then
    echo {token}
fi

sync
poweroff -f 2>/dev/null || echo o > /proc/sysrq-trigger
"""


@dataclass
class GuestOracle:
    """Guest oracle contract.

    Attributes:
        entrypoint: Guest path of the oracle, booted through init=
        success_token: Line printed on the console when the revision is good
        test_command: Reproducer command used when rendering an entrypoint
    """

    entrypoint: str
    success_token: str = DEFAULT_SUCCESS_TOKEN
    test_command: Optional[str] = None

    @classmethod
    def from_config(cls, config: OracleConfig) -> "GuestOracle":
        return cls(
            entrypoint=config.entrypoint,
            success_token=config.success_token,
            test_command=config.test_command,
        )

    def kernel_cmdline(self, root_device: str, append: str = "") -> str:
        """Build the guest boot arguments with the oracle as init."""
        parts = [f"root={root_device}", "rw"]
        if append:
            parts.append(append.strip())
        parts.append(f"init={self.entrypoint}")
        return " ".join(parts)

    def matches(self, output: bytes) -> bool:
        """Check whether the console output contains the success token line.

        Surrounding whitespace is ignored since serial consoles emit CRLF.
        """
        text = output.decode("utf-8", errors="replace")
        return any(line.strip() == self.success_token for line in text.splitlines())

    def render_entrypoint(self) -> str:
        """Render an example guest entrypoint script for this oracle.

        Raises:
            ValueError: If no test command is configured
        """
        if not self.test_command:
            raise ValueError("oracle.test_command is required to render an entrypoint")
        return ENTRYPOINT_TEMPLATE.format(
            test_command=self.test_command,
            token=shlex.quote(self.success_token),
        )
