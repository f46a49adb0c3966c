"""Node fleet control plane: SSH provisioning and status polling for Lite/Bob nodes."""

__version__ = "0.1.0"
