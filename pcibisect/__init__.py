"""pcibisect - Device-Passthrough Bisection Harness.

Bisects regressions that only reproduce on a physical PCI device by passing
the device through to an ephemeral virtual machine for every revision.
"""

__version__ = "0.1.0"
