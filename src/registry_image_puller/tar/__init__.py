"""Docker tar archive assembly and tag reading."""
