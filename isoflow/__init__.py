"""isoflow - VLAN and flow isolation provisioning for VM/container endpoints."""

__version__ = "0.1.0"
