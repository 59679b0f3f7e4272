"""Core package for the micro:bit BLE gateway - bridges BLE UART endpoints to a host process."""

__all__ = ["config", "logging", "devices", "discovery", "gateway"]
__version__ = "1.0.0"
