"""Protocol adapters and the device registry."""
