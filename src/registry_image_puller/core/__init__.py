"""Registry access, shared types and progress reporting."""
