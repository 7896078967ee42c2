"""Camera drivers for uvc-bridge.

Supports two modes:
- HARDWARE: UVC cameras through OpenCV
- DIGITAL_TWIN: Simulated camera for testing without hardware

Use drivers.config to switch modes:
    from uvc_bridge.drivers import config
    config.use_digital_twin()  # or config.use_hardware()
"""

from uvc_bridge.drivers import cameras, config
from uvc_bridge.drivers.config import (
    DriverConfig,
    DriverFactory,
    DriverMode,
    configure,
    get_factory,
    use_digital_twin,
    use_hardware,
)

__all__ = [
    # Submodules
    "cameras",
    "config",
    # Configuration
    "DriverMode",
    "DriverConfig",
    "DriverFactory",
    "get_factory",
    "configure",
    "use_digital_twin",
    "use_hardware",
]
