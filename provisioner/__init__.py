"""provisioner — declarative, resumable environment provisioning."""

__version__ = "0.1.0"
