"""Bridge daemon: registry file and local HTTP control port."""
