"""ScanLink - coverage path planning and BLE mission upload."""

__version__ = "0.1.0"
