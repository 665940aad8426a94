"""Host networking: VLAN segments and OVS isolation flows."""
