"""Backend process management.

  - ProcessSupervisor: spawn, watch and terminate backend processes
  - ReadinessProbe:    poll a backend port until it accepts connections
"""

from stdio_gateway.process_manager.readiness import ReadinessProbe
from stdio_gateway.process_manager.supervisor import (
    BackendProcess,
    BackendStatus,
    ProcessSupervisor,
)

__all__ = ["BackendProcess", "BackendStatus", "ProcessSupervisor", "ReadinessProbe"]
